from possync.sync.models import Record
from possync.sync.retry import RetryTracker


def _record(**payload) -> Record:
    return Record(id="o1", payload=payload or {"total": 10})


def test_exhausted_after_bound():
    tracker = RetryTracker(max_retries=3)
    record = _record()

    assert [tracker.record_failure("orders", record) for _ in range(3)] == [1, 2, 3]
    assert tracker.is_exhausted("orders", record) is True


def test_local_mutation_resets_count():
    tracker = RetryTracker(max_retries=3)
    record = _record(total=10)
    for _ in range(3):
        tracker.record_failure("orders", record)

    edited = _record(total=12)

    assert tracker.is_exhausted("orders", edited) is False
    assert tracker.attempts("orders", "o1") == 0


def test_seeds_from_persisted_attempts():
    tracker = RetryTracker(max_retries=3)
    record = Record(id="o1", sync_attempts=3, payload={"total": 10})

    assert tracker.is_exhausted("orders", record) is True


def test_success_and_reset_clear_entries():
    tracker = RetryTracker(max_retries=3)
    record = _record()
    tracker.record_failure("orders", record)
    tracker.record_failure("customers", Record(id="c1"))

    tracker.record_success("orders", "o1")
    assert tracker.attempts("orders", "o1") == 0

    tracker.reset("customers")
    assert tracker.snapshot() == {}


def test_persisted_attempts_ignored_when_content_changed_since_failure():
    failed = Record(id="o1", sync_attempts=3, payload={"total": 10})
    edited = Record(
        id="o1",
        sync_attempts=3,
        sync_fingerprint=failed.content_fingerprint(),
        payload={"total": 12},
    )
    unchanged = Record(id="o1", sync_attempts=3, sync_fingerprint=failed.content_fingerprint(), payload={"total": 10})

    assert RetryTracker(max_retries=3).is_exhausted("orders", edited) is False
    assert RetryTracker(max_retries=3).is_exhausted("orders", unchanged) is True


def test_peek_does_not_record_an_observation():
    tracker = RetryTracker(max_retries=3)
    record = Record(id="o1", sync_attempts=2, payload={"total": 10})

    assert tracker.peek("orders", record) == 2
    assert tracker.snapshot() == {}

    tracker.record_failure("orders", record)
    assert tracker.peek("orders", record) == 3
    assert tracker.peek("orders", _record(total=11)) == 0
    assert tracker.snapshot() == {"orders:o1": 3}
