import asyncio

from _fakes import FakeTransport, make_engine, memory_stores
from possync.sync.errors import PlanInvalidError

REMOTE_A = "a" * 24
REMOTE_B = "b" * 24
REMOTE_C = "c" * 24


def test_pull_merges_remote_changes_without_clobbering_pending():
    stores = memory_stores()
    stores["products"].add({"id": "p1", "remoteId": REMOTE_A, "isSynced": True, "name": "Milk", "price": 10})
    stores["products"].add({"id": "p2", "remoteId": REMOTE_B, "isSynced": False, "name": "Bread (edited)"})
    stores["products"].add({"id": "p3", "remoteId": REMOTE_C, "isSynced": True, "name": "Eggs"})
    transport = FakeTransport()
    transport.changes["products"] = {
        "success": True,
        "updated": [
            {"_id": REMOTE_A, "name": "Milk", "price": 12},
            {"_id": REMOTE_B, "name": "Bread"},
            {"_id": "d" * 24, "localId": "p_local_9", "name": "Butter"},
            {"_id": "e" * 24, "name": "Jam"},
        ],
        "deleted": [{"_id": REMOTE_C}],
    }
    engine = make_engine(transport, stores)

    summary = asyncio.run(engine.pull_all(["products"]))

    result = summary.results["products"]
    assert summary.success is True
    assert (result.updated, result.deleted, result.skipped_pending) == (3, 1, 1)
    p1 = stores["products"].get("p1")
    assert (p1.payload["price"], p1.remote_id, p1.is_synced) == (12, REMOTE_A, True)
    assert stores["products"].get("p2").payload["name"] == "Bread (edited)"
    assert stores["products"].get("p_local_9").remote_id == "d" * 24
    assert stores["products"].get("e" * 24).payload["name"] == "Jam"
    p3 = stores["products"].get("p3")
    assert p3.is_deleted is True
    assert p3.needs_sync is False


def test_pull_sends_since_from_previous_pull():
    transport = FakeTransport()
    transport.changes["customers"] = {"success": True, "updated": [], "deleted": [], "serverTime": "2026-02-01T00:00:00Z"}
    engine = make_engine(transport, memory_stores())

    asyncio.run(engine.pull_all(["customers"]))
    asyncio.run(engine.pull_all(["customers"]))

    assert [since for _endpoint, _seller, since in transport.fetches] == [None, "2026-02-01T00:00:00Z"]


def test_pull_stops_on_plan_invalid():
    transport = FakeTransport()
    transport.changes["categories"] = PlanInvalidError("Plan expired")
    engine = make_engine(transport, memory_stores())

    summary = asyncio.run(engine.pull_all())

    assert summary.plan_invalid is True
    assert summary.success is False
    assert [endpoint for endpoint, _seller, _since in transport.fetches] == ["categories"]


def test_pull_requires_connectivity():
    transport = FakeTransport()
    engine = make_engine(transport, memory_stores(), is_online=lambda: False)

    summary = asyncio.run(engine.pull_all())

    assert summary.error == "offline"
    assert transport.fetches == []
