from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from possync.sync.entities import EndpointGroup, EntityType
from possync.sync.errors import PlanInvalidError, StoreError, TransportError
from possync.sync.events import NotificationBus
from possync.sync.models import WAITING_FOR_DEPENDENCY, BatchResponse, EntityResult, FailedItem, GroupResult, Record
from possync.sync.retry import RetryTracker
from possync.sync.store import RecordStore
from possync.sync.utils import now_iso

logger = logging.getLogger("sync")

# (entity type name, operation key) -> True while a direct write path is submitting it
OperationPending = Callable[[str, str], bool]


class BatchTransport(Protocol):
    async def submit_batch(self, endpoint: str, seller_id: str, items: list[dict[str, Any]]) -> BatchResponse: ...


class StoreSyncer:
    def __init__(
        self,
        stores: dict[str, RecordStore],
        transport: BatchTransport,
        tracker: RetryTracker,
        bus: NotificationBus,
        is_remote_id: Callable[[Any], bool],
        is_operation_pending: Optional[OperationPending] = None,
        charge_transport_failures: bool = True,
        clock: Callable[[], str] = now_iso,
    ):
        self.stores = stores
        self.transport = transport
        self.tracker = tracker
        self.bus = bus
        self.is_remote_id = is_remote_id
        self.is_operation_pending = is_operation_pending
        self.charge_transport_failures = charge_transport_failures
        self.clock = clock

    def _pending_elsewhere(self, et: EntityType, record: Record) -> bool:
        if et.operation_key is None or self.is_operation_pending is None:
            return False
        try:
            key = et.operation_key(record.payload)
        except (TypeError, ValueError) as exc:
            logger.warning("operation_key_failed entity=%s id=%s error=%s", et.name, record.id, exc)
            return False
        return bool(self.is_operation_pending(et.name, key))

    async def _select(
        self,
        group: EndpointGroup,
        exclude: dict[str, set[str]],
        result: GroupResult,
    ) -> list[tuple[EntityType, Record]]:
        selected: list[tuple[EntityType, Record]] = []
        seen: dict[str, str] = {}
        for et in group.entity_types:
            per_type = result.per_type[et.name]
            try:
                records = await self.stores[et.name].list_all()
            except StoreError as exc:
                logger.error("store_list_failed entity=%s error=%s", et.name, exc)
                per_type.error = str(exc)
                continue

            held = exclude.get(et.name) or set()
            for record in records:
                if not record.needs_sync:
                    continue
                if record.id in held:
                    per_type.deferred += 1
                    continue
                if self._pending_elsewhere(et, record):
                    per_type.skipped_pending += 1
                    continue
                if self.tracker.is_exhausted(et.name, record):
                    per_type.skipped_exhausted += 1
                    continue
                if record.id in seen:
                    # Outcomes are keyed by id alone, so one batch cannot carry two records with the same id.
                    logger.warning(
                        "duplicate_id_held_back endpoint=%s id=%s entity=%s first_entity=%s",
                        group.endpoint,
                        record.id,
                        et.name,
                        seen[record.id],
                    )
                    per_type.deferred += 1
                    continue
                seen[record.id] = et.name
                selected.append((et, record))
        return selected

    def _wire(self, et: EntityType, record: Record) -> dict[str, Any]:
        return et.clean_payload(record.to_wire(), self.is_remote_id)

    async def sync_group(
        self,
        group: EndpointGroup,
        seller_id: str,
        exclude: Optional[dict[str, set[str]]] = None,
    ) -> GroupResult:
        """Send every pending record of the group in one batch and reconcile the reply.

        Raises ``PlanInvalidError`` untouched; every other failure is recorded
        on the records and in the returned result.
        """
        result = GroupResult(endpoint=group.endpoint, per_type={et.name: EntityResult() for et in group.entity_types})
        selected = await self._select(group, exclude or {}, result)
        if not selected:
            return result.tally()

        items = [self._wire(et, record) for et, record in selected]
        result.submitted = len(items)
        logger.info("batch_submit endpoint=%s items=%s types=%s", group.endpoint, len(items), ",".join(group.names))

        try:
            response = await self.transport.submit_batch(group.endpoint, seller_id, items)
        except PlanInvalidError:
            raise
        except TransportError as exc:
            logger.warning("batch_failed endpoint=%s items=%s error=%s", group.endpoint, len(items), exc)
            result.error = str(exc)
            aborted: set[str] = set()
            for et, record in selected:
                if et.name in aborted:
                    continue
                try:
                    await self._fail(et, record, str(exc), result.per_type[et.name], charge=self.charge_transport_failures)
                except StoreError as store_exc:
                    result.per_type[et.name].error = str(store_exc)
                    aborted.add(et.name)
            return result.tally()

        await self._reconcile(group, selected, response, result)
        result.tally()
        logger.info(
            "batch_done endpoint=%s synced=%s failed=%s",
            group.endpoint,
            result.synced,
            result.failed,
        )
        return result

    async def _reconcile(
        self,
        group: EndpointGroup,
        selected: list[tuple[EntityType, Record]],
        response: BatchResponse,
        result: GroupResult,
    ):
        succeeded = {o.id: o for o in response.succeeded}
        failed = {o.id: o for o in response.failed}

        # Re-read so a mutation made while the batch was in flight is not overwritten.
        current: dict[str, dict[str, Record]] = {}
        for et in group.entity_types:
            if not any(sel_et.name == et.name for sel_et, _ in selected):
                continue
            try:
                current[et.name] = {r.id: r for r in await self.stores[et.name].list_all()}
            except StoreError as exc:
                logger.error("store_list_failed entity=%s error=%s", et.name, exc)
                result.per_type[et.name].error = str(exc)

        for et, sent in selected:
            per_type = result.per_type[et.name]
            if et.name not in current or per_type.error:
                continue
            record = current[et.name].get(sent.id)
            if record is None:
                logger.info("record_gone_during_sync entity=%s id=%s", et.name, sent.id)
                continue
            try:
                if sent.id in succeeded:
                    await self._apply_success(et, sent, record, succeeded[sent.id], per_type)
                elif sent.id in failed:
                    await self._fail(et, record, failed[sent.id].error or "sync_failed", per_type)
                else:
                    await self._fail(et, record, "no_response_for_item", per_type)
            except StoreError as exc:
                logger.error("store_write_failed entity=%s id=%s error=%s", et.name, sent.id, exc)
                per_type.error = str(exc)

    async def _apply_success(self, et: EntityType, sent: Record, record: Record, outcome, per_type: EntityResult):
        store = self.stores[et.name]
        changed = record.content_fingerprint() != sent.content_fingerprint()
        if sent.is_deleted and outcome.action == "deleted":
            if record.is_deleted and not changed:
                await store.delete(record.id)
                self.tracker.record_success(et.name, record.id)
                per_type.deleted += 1
                logger.info("record_deleted entity=%s id=%s", et.name, record.id)
                return
            # Restored or edited while the deletion was in flight; the live version goes out next sweep.
            record.remote_id = outcome.remote_id or record.remote_id
            self._clear_failures(record)
            await store.update(record)
            self.tracker.record_success(et.name, record.id)
            per_type.requeued += 1
            logger.info("record_restored_during_sync entity=%s id=%s", et.name, record.id)
            return

        remote_id = outcome.remote_id or record.remote_id
        if not remote_id:
            await self._fail(et, record, "no_remote_id_assigned", per_type)
            return

        if changed:
            # Accepted version is stale; keep the new one pending but remember its remote id.
            record.remote_id = remote_id
            self._clear_failures(record)
            await store.update(record)
            self.tracker.record_success(et.name, record.id)
            per_type.requeued += 1
            logger.info("record_changed_during_sync entity=%s id=%s", et.name, record.id)
            return

        record.remote_id = remote_id
        record.is_synced = True
        record.is_deleted = False
        record.last_sync_attempt_at = None
        self._clear_failures(record)
        record.synced_at = self.clock()
        await store.update(record)
        self.tracker.record_success(et.name, record.id)
        per_type.synced += 1
        self.bus.emit_item_synced(et.name, record)

    @staticmethod
    def _clear_failures(record: Record):
        record.sync_error = None
        record.sync_attempts = 0
        record.sync_fingerprint = None

    async def _fail(self, et: EntityType, record: Record, error: str, per_type: EntityResult, charge: bool = True):
        if charge:
            attempts = self.tracker.record_failure(et.name, record)
        else:
            attempts = self.tracker.observe(et.name, record)
        record.is_synced = False
        record.sync_error = error
        record.sync_attempts = attempts
        record.last_sync_attempt_at = self.clock()
        record.sync_fingerprint = record.content_fingerprint()
        await self.stores[et.name].update(record)

        retry = attempts < self.tracker.max_retries
        per_type.failed += 1
        per_type.failed_items.append(FailedItem(id=record.id, error=error, retry=retry))
        if retry:
            logger.info("record_failed entity=%s id=%s attempts=%s error=%s", et.name, record.id, attempts, error)
        else:
            logger.warning(
                "record_retries_exhausted entity=%s id=%s attempts=%s error=%s",
                et.name,
                record.id,
                attempts,
                error,
            )

    async def reset_failures(self, entity_type: str) -> int:
        """Clear retry state of failed records so the next sweep sends them again."""
        store = self.stores[entity_type]
        count = 0
        for record in await store.list_all():
            if not record.needs_sync or (record.sync_attempts == 0 and not record.sync_error):
                continue
            record.sync_attempts = 0
            record.sync_error = None
            record.sync_fingerprint = None
            await store.update(record)
            count += 1
        self.tracker.reset(entity_type)
        return count

    async def status(self, entity_type: str) -> dict[str, int]:
        counts = {"total": 0, "pending": 0, "failed": 0, "waiting": 0, "exhausted": 0, "tombstones": 0}
        for record in await self.stores[entity_type].list_all():
            counts["total"] += 1
            if not record.needs_sync:
                continue
            counts["pending"] += 1
            if record.is_deleted:
                counts["tombstones"] += 1
            if (record.sync_error or "").startswith(WAITING_FOR_DEPENDENCY):
                counts["waiting"] += 1
            elif record.sync_error:
                counts["failed"] += 1
            if self.tracker.peek(entity_type, record) >= self.tracker.max_retries:
                counts["exhausted"] += 1
        return counts
