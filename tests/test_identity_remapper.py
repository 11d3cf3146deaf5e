import asyncio

from possync.sync.entities import build_entity_types, remote_id_matcher
from possync.sync.remap import IdentityRemapper
from possync.sync.store import MemoryRecordStore

REMOTE_PRODUCT = "0123456789abcdef01234567"


def _remapper(products, orders, policy="defer"):
    stores = {"products": MemoryRecordStore(products), "orders": MemoryRecordStore(orders)}
    remapper = IdentityRemapper(stores, build_entity_types(["products", "orders"]), remote_id_matcher(), policy)
    return remapper, stores


def _order(order_id, *product_ids, **extra):
    return {"id": order_id, "isSynced": False, "items": [{"productId": pid, "quantity": 1} for pid in product_ids], **extra}


def _product_ids(store, order_id):
    return [line["productId"] for line in store.get(order_id).payload["items"]]


def test_synced_product_placeholder_is_rewritten():
    remapper, stores = _remapper(
        [{"id": "p1", "remoteId": "P-99", "isSynced": True}],
        [_order("o1", "p1")],
    )

    assert asyncio.run(remapper.build_mapping("products")) == {"p1": "P-99"}
    deferred = asyncio.run(remapper.apply_mapping("orders"))

    assert deferred == set()
    assert _product_ids(stores["orders"], "o1") == ["P-99"]


def test_remote_shaped_and_known_remote_ids_untouched():
    remapper, stores = _remapper(
        [{"id": "p1", "remoteId": "P-99", "isSynced": True}],
        [_order("o1", REMOTE_PRODUCT, "P-99")],
    )

    asyncio.run(remapper.apply_mapping("orders"))

    assert _product_ids(stores["orders"], "o1") == [REMOTE_PRODUCT, "P-99"]


def test_unsynced_local_target_defers_record():
    remapper, stores = _remapper(
        [{"id": "p1", "remoteId": "P-99", "isSynced": True}, {"id": "p2", "isSynced": False}],
        [_order("o1", "p1", "p2")],
    )

    deferred = asyncio.run(remapper.apply_mapping("orders"))

    assert deferred == {"o1"}
    # Held records are left exactly as written.
    assert _product_ids(stores["orders"], "o1") == ["p1", "p2"]
    held = stores["orders"].get("o1")
    assert held.sync_error == "waiting_for_dependency products:p2"
    assert held.sync_attempts == 0
    assert held.last_sync_attempt_at
    assert held.is_synced is False


def test_missing_target_is_nulled():
    remapper, stores = _remapper([], [_order("o1", "ghost")])

    deferred = asyncio.run(remapper.apply_mapping("orders"))

    assert deferred == set()
    assert _product_ids(stores["orders"], "o1") == [None]


def test_null_policy_nulls_unsynced_target():
    remapper, stores = _remapper([{"id": "p2", "isSynced": False}], [_order("o1", "p2")], policy="null")

    deferred = asyncio.run(remapper.apply_mapping("orders"))

    assert deferred == set()
    assert _product_ids(stores["orders"], "o1") == [None]


def test_synced_and_deleted_dependents_are_skipped():
    remapper, stores = _remapper(
        [],
        [_order("o1", "ghost", isSynced=True), _order("o2", "ghost", isDeleted=True)],
    )

    asyncio.run(remapper.apply_mapping("orders"))

    assert _product_ids(stores["orders"], "o1") == ["ghost"]
    assert _product_ids(stores["orders"], "o2") == ["ghost"]


def test_explicit_mapping_overrides_cache():
    remapper, stores = _remapper([{"id": "p1", "isSynced": False}], [_order("o1", "p1")])

    asyncio.run(remapper.apply_mapping("orders", {"products": {"p1": "P-7"}}))

    assert _product_ids(stores["orders"], "o1") == ["P-7"]
