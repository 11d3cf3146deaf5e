from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from possync.sync.entities import EntityType
from possync.sync.errors import PlanInvalidError, StoreError, TransportError
from possync.sync.models import PullResult, PullSummary, Record
from possync.sync.session import SessionContext
from possync.sync.store import MetadataStore, RecordStore
from possync.sync.utils import call_check, now_iso

logger = logging.getLogger("puller")


class ChangesTransport(Protocol):
    async def fetch_changes(self, endpoint: str, seller_id: str, since: Optional[str] = None) -> dict[str, Any]: ...


class IncrementalPuller:
    """Applies remote changes since the last pull to the local stores.

    A local record with unsent changes always wins over the incoming copy;
    the next sweep pushes it instead.
    """

    def __init__(
        self,
        stores: dict[str, RecordStore],
        entity_types: list[EntityType],
        transport: ChangesTransport,
        session: SessionContext,
        metadata: MetadataStore,
        is_remote_id: Callable[[Any], bool],
        is_online: Optional[Callable[[], Any]] = None,
        clock: Callable[[], str] = now_iso,
    ):
        self.stores = stores
        self.entity_types = list(entity_types)
        self.transport = transport
        self.session = session
        self.metadata = metadata
        self.is_remote_id = is_remote_id
        self.is_online = is_online
        self.clock = clock
        self._lock = asyncio.Lock()

    def _local_id(self, item: dict[str, Any]) -> Optional[str]:
        for candidate in (item.get("localId"), item.get("id")):
            if candidate and not self.is_remote_id(str(candidate)):
                return str(candidate)
        remote = item.get("_id") or item.get("id")
        return str(remote) if remote else None

    @staticmethod
    def _remote_id(item: dict[str, Any]) -> Optional[str]:
        remote = item.get("_id") or item.get("remoteId")
        return str(remote) if remote else None

    @staticmethod
    def _find(index: dict[str, Record], by_remote: dict[str, Record], item: dict[str, Any]) -> Optional[Record]:
        for key in ("localId", "id"):
            value = item.get(key)
            if value and str(value) in index:
                return index[str(value)]
        for key in ("_id", "remoteId", "id"):
            value = item.get(key)
            if value and str(value) in by_remote:
                return by_remote[str(value)]
        return None

    async def pull(self, entity_type: EntityType, seller_id: str) -> PullResult:
        result = PullResult(entity_type=entity_type.name, endpoint=entity_type.endpoint)
        store = self.stores[entity_type.name]
        since = await self.metadata.get_last_pull(entity_type.name)
        started_at = self.clock()

        data = await self.transport.fetch_changes(entity_type.endpoint, seller_id, since)
        updated = [i for i in data.get("updated") or [] if isinstance(i, dict)]
        deleted = [i for i in data.get("deleted") or [] if isinstance(i, dict)]

        existing = await store.list_all()
        index = {r.id: r for r in existing}
        by_remote = {r.remote_id: r for r in existing if r.remote_id}

        for item in updated:
            local = self._find(index, by_remote, item)
            if local is not None and local.needs_sync:
                result.skipped_pending += 1
                continue
            local_id = local.id if local is not None else self._local_id(item)
            if not local_id:
                logger.warning("pull_item_without_id entity=%s", entity_type.name)
                continue
            doc = {k: v for k, v in item.items() if k not in ("_id", "localId", "id", "remoteId", "isSynced")}
            record = Record.from_document({**doc, "id": local_id})
            record.remote_id = self._remote_id(item) or (local.remote_id if local else None)
            record.is_synced = True
            record.synced_at = started_at
            await store.update(record)
            index[record.id] = record
            if record.remote_id:
                by_remote[record.remote_id] = record
            result.updated += 1

        for item in deleted:
            local = self._find(index, by_remote, item)
            if local is None or local.is_deleted:
                continue
            if local.needs_sync:
                result.skipped_pending += 1
                continue
            local.is_deleted = True
            local.is_synced = True
            await store.update(local)
            result.deleted += 1

        next_since = data.get("serverTime") or data.get("timestamp") or started_at
        await self.metadata.set_last_pull(entity_type.name, str(next_since))
        logger.info(
            "pull_done entity=%s updated=%s deleted=%s skipped_pending=%s since=%s",
            entity_type.name,
            result.updated,
            result.deleted,
            result.skipped_pending,
            since,
        )
        return result

    async def pull_all(self, entity_types: Optional[list[str]] = None) -> PullSummary:
        summary = PullSummary()
        if self._lock.locked():
            summary.error = "pull_in_progress"
            return summary

        async with self._lock:
            if not await call_check(self.is_online):
                summary.error = "offline"
                return summary
            seller_id = await self.session.seller_id()
            if not seller_id:
                summary.error = "no_seller_context"
                return summary

            wanted = set(entity_types or [])
            for et in self.entity_types:
                if wanted and et.name not in wanted:
                    continue
                try:
                    summary.results[et.name] = await self.pull(et, seller_id)
                except PlanInvalidError as exc:
                    summary.plan_invalid = True
                    summary.error = str(exc) or "plan_invalid"
                    logger.warning("pull_stopped_plan_invalid entity=%s error=%s", et.name, summary.error)
                    break
                except (TransportError, StoreError) as exc:
                    logger.warning("pull_failed entity=%s error=%s", et.name, exc)
                    summary.results[et.name] = PullResult(entity_type=et.name, endpoint=et.endpoint, error=str(exc))

            summary.success = not summary.error and not any(r.error for r in summary.results.values())
            return summary
