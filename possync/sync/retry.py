from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from possync.sync.models import Record


@dataclass
class _Entry:
    attempts: int
    fingerprint: str


class RetryTracker:
    """Consecutive failure counts per ``(entity_type, id)``.

    A record whose content changed since its last failure starts over at
    zero. The count survives between sweeps and, the first time a record
    is seen, is seeded from the persisted ``syncAttempts`` unless the
    stored ``syncFingerprint`` shows the record was edited since.
    """

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries
        self._entries: dict[tuple[str, str], _Entry] = {}

    @staticmethod
    def _persisted_attempts(record: Record, fingerprint: str) -> int:
        if record.sync_fingerprint is not None and record.sync_fingerprint != fingerprint:
            return 0
        return record.sync_attempts

    def peek(self, entity_type: str, record: Record) -> int:
        """Current count for ``record`` without recording the observation."""
        fingerprint = record.content_fingerprint()
        entry = self._entries.get((entity_type, record.id))
        if entry is None:
            return self._persisted_attempts(record, fingerprint)
        return entry.attempts if entry.fingerprint == fingerprint else 0

    def observe(self, entity_type: str, record: Record) -> int:
        key = (entity_type, record.id)
        fingerprint = record.content_fingerprint()
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(self._persisted_attempts(record, fingerprint), fingerprint)
            self._entries[key] = entry
        elif entry.fingerprint != fingerprint:
            entry.attempts = 0
            entry.fingerprint = fingerprint
        return entry.attempts

    def attempts(self, entity_type: str, record_id: str) -> int:
        entry = self._entries.get((entity_type, record_id))
        return entry.attempts if entry else 0

    def is_exhausted(self, entity_type: str, record: Record) -> bool:
        return self.observe(entity_type, record) >= self.max_retries

    def record_failure(self, entity_type: str, record: Record) -> int:
        self.observe(entity_type, record)
        entry = self._entries[(entity_type, record.id)]
        entry.attempts += 1
        return entry.attempts

    def record_success(self, entity_type: str, record_id: str):
        self._entries.pop((entity_type, record_id), None)

    def reset(self, entity_type: Optional[str] = None):
        if entity_type is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k[0] == entity_type]:
            self._entries.pop(key, None)

    def snapshot(self) -> dict[str, int]:
        return {f"{et}:{rid}": e.attempts for (et, rid), e in self._entries.items() if e.attempts}
