from possync.sync.models import BatchResponse, Record


def test_from_document_splits_control_fields_from_payload():
    record = Record.from_document(
        {
            "id": 42,
            "remoteId": "",
            "isSynced": "true",
            "syncAttempts": "2",
            "name": "Milk",
            "price": 10.5,
        }
    )

    assert record.id == "42"
    assert record.remote_id is None
    assert record.is_synced is True
    assert record.needs_sync is False
    assert record.sync_attempts == 2
    assert record.payload == {"name": "Milk", "price": 10.5}


def test_pending_states_all_need_sync():
    for value in (False, None, "false", 0):
        record = Record.from_document({"id": "c1", "isSynced": value})
        assert record.needs_sync is True


def test_to_document_flattens_payload_and_aliases():
    record = Record(id="c1", remote_id="C-1", is_synced=True, payload={"name": "Asha"})

    doc = record.to_document()

    assert doc == {"name": "Asha", "id": "c1", "remoteId": "C-1", "isSynced": True, "isDeleted": False, "syncAttempts": 0}


def test_to_wire_drops_diagnostics():
    record = Record.from_document(
        {
            "id": "c1",
            "isDeleted": True,
            "syncError": "boom",
            "syncAttempts": 2,
            "lastSyncAttemptAt": "2026-01-01T00:00:00+00:00",
            "name": "Asha",
        }
    )

    assert record.to_wire() == {"name": "Asha", "id": "c1", "isDeleted": True}


def test_fingerprint_ignores_sync_control_fields():
    a = Record.from_document({"id": "c1", "name": "Asha", "syncAttempts": 0})
    b = Record.from_document({"id": "c1", "name": "Asha", "syncAttempts": 3, "syncError": "x"})
    c = Record.from_document({"id": "c1", "name": "Asha K"})

    assert a.content_fingerprint() == b.content_fingerprint()
    assert a.content_fingerprint() != c.content_fingerprint()


def test_batch_response_unwraps_data_and_underscore_id():
    response = BatchResponse.from_payload(
        {
            "success": True,
            "data": {
                "results": {
                    "success": [{"id": "p1", "_id": "P-99", "action": "created"}, {"remoteId": "orphan"}],
                    "failed": [{"id": "p2", "message": "sku_taken"}],
                }
            },
        }
    )

    assert response.success is True
    assert [(o.id, o.remote_id, o.action) for o in response.succeeded] == [("p1", "P-99", "created")]
    assert [(o.id, o.error) for o in response.failed] == [("p2", "sku_taken")]


def test_batch_response_flags_plan_invalid():
    response = BatchResponse.from_payload({"success": False, "planInvalid": True, "error": "Plan expired"})

    assert response.success is False
    assert response.plan_invalid is True
    assert response.error == "Plan expired"
