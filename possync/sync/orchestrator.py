from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from possync.sync.entities import EndpointGroup, EntityType, dependency_targets, group_by_endpoint
from possync.sync.errors import PlanInvalidError, StoreError
from possync.sync.events import NotificationBus
from possync.sync.models import EntityResult, SweepSummary
from possync.sync.remap import IdentityRemapper
from possync.sync.session import SessionContext
from possync.sync.syncer import StoreSyncer
from possync.sync.utils import call_check, now_iso

logger = logging.getLogger("sync")


class SyncOrchestrator:
    """Runs full sweeps over every endpoint group in dependency order.

    At most one sweep runs at a time: callers arriving while a sweep is in
    flight await that sweep and receive the same ``SweepSummary`` object.
    """

    def __init__(
        self,
        entity_types: list[EntityType],
        syncer: StoreSyncer,
        remapper: IdentityRemapper,
        session: SessionContext,
        bus: NotificationBus,
        is_online: Optional[Callable[[], Any]] = None,
        clock: Callable[[], str] = now_iso,
    ):
        self.entity_types = list(entity_types)
        self.groups: list[EndpointGroup] = group_by_endpoint(self.entity_types)
        self.targets = dependency_targets(self.entity_types)
        self.syncer = syncer
        self.remapper = remapper
        self.session = session
        self.bus = bus
        self.is_online = is_online
        self.clock = clock

        self.last_summary: Optional[SweepSummary] = None
        self.sweep_count = 0
        self.joined_count = 0
        self._inflight: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def run_all(self) -> SweepSummary:
        if self.running:
            self.joined_count += 1
            logger.info("sweep_joined_inflight")
        else:
            self._inflight = asyncio.create_task(self._sweep(), name="possync_sweep")
        # A cancelled caller must not cancel the sweep other callers are waiting on.
        return await asyncio.shield(self._inflight)

    async def retry_failed(self, entity_types: Optional[Iterable[str]] = None) -> SweepSummary:
        if self.running:
            await asyncio.shield(self._inflight)
        names = list(entity_types) if entity_types else [et.name for et in self.entity_types]
        for name in names:
            reset = await self.syncer.reset_failures(name)
            if reset:
                logger.info("failures_reset entity=%s records=%s", name, reset)
        return await self.run_all()

    async def _sweep(self) -> SweepSummary:
        summary = SweepSummary(started_at=self.clock())

        if not await call_check(self.is_online):
            summary.error = "offline"
            summary.finished_at = self.clock()
            logger.info("sweep_skipped reason=offline")
            self.last_summary = summary
            return summary

        seller_id = await self.session.seller_id()
        if not seller_id:
            summary.error = "no_seller_context"
            summary.finished_at = self.clock()
            logger.warning("sweep_skipped reason=no_seller_context")
            self.last_summary = summary
            return summary

        self.sweep_count += 1
        logger.info("sweep_started groups=%s", len(self.groups))
        self.remapper.reset()
        try:
            for group in self.groups:
                summary.groups.append(group.endpoint)
                if not await self._sync_group(group, seller_id, summary):
                    break
        except Exception as exc:
            logger.exception("sweep_failed: %s", exc)
            summary.error = str(exc) or exc.__class__.__name__

        summary.total_synced = sum(r.synced for r in summary.per_entity_results.values())
        summary.total_failed = sum(r.failed for r in summary.per_entity_results.values())
        summary.total_requeued = sum(r.requeued for r in summary.per_entity_results.values())
        entity_errors = any(r.error for r in summary.per_entity_results.values())
        summary.success = not summary.error and not entity_errors and summary.total_failed == 0
        summary.finished_at = self.clock()
        logger.info(
            "sweep_completed success=%s synced=%s failed=%s requeued=%s plan_invalid=%s error=%s",
            summary.success,
            summary.total_synced,
            summary.total_failed,
            summary.total_requeued,
            summary.plan_invalid,
            summary.error,
        )
        self.last_summary = summary
        self.bus.emit_sweep_completed(summary)
        return summary

    async def _sync_group(self, group: EndpointGroup, seller_id: str, summary: SweepSummary) -> bool:
        """Sync one group; False stops the sweep."""
        exclude: dict[str, set[str]] = {}
        active: list[EntityType] = []
        for et in group.entity_types:
            if et.references:
                try:
                    exclude[et.name] = await self.remapper.apply_mapping(et.name)
                except StoreError as exc:
                    logger.error("remap_failed entity=%s error=%s", et.name, exc)
                    summary.per_entity_results[et.name] = EntityResult(error=str(exc))
                    continue
            active.append(et)
        if not active:
            return True

        try:
            result = await self.syncer.sync_group(EndpointGroup(group.endpoint, active), seller_id, exclude)
        except PlanInvalidError as exc:
            summary.plan_invalid = True
            summary.error = str(exc) or "plan_invalid"
            logger.warning("sweep_stopped_plan_invalid endpoint=%s error=%s", group.endpoint, summary.error)
            return False

        summary.per_entity_results.update(result.per_type)
        for et in active:
            if et.name in self.targets and result.per_type[et.name].synced > 0:
                try:
                    await self.remapper.build_mapping(et.name)
                except StoreError as exc:
                    logger.error("mapping_rebuild_failed entity=%s error=%s", et.name, exc)
        return True
