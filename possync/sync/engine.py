from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from possync.core.config import AppConfig
from possync.sync.entities import EntityType, build_entity_types, remote_id_matcher
from possync.sync.errors import ConfigError
from possync.sync.events import NotificationBus
from possync.sync.models import PullSummary, SweepSummary
from possync.sync.orchestrator import SyncOrchestrator
from possync.sync.puller import IncrementalPuller
from possync.sync.remap import IdentityRemapper
from possync.sync.retry import RetryTracker
from possync.sync.scheduler import AutoSyncLoop, DebouncedScheduler
from possync.sync.session import SessionContext
from possync.sync.store import (
    MemoryMetadataStore,
    MetadataStore,
    RecordStore,
    SqliteMetadataStore,
    SqliteRecordStore,
    init_db,
)
from possync.sync.syncer import OperationPending, StoreSyncer
from possync.sync.transport import SyncTransport
from possync.sync.utils import now_iso

logger = logging.getLogger("sync")


class SyncEngine:
    """Owns one set of sync components wired to explicit collaborators.

    ``transport`` must provide ``submit_batch`` and, for pulls and the
    default connectivity check, ``fetch_changes`` and ``check_health``.
    """

    def __init__(
        self,
        stores: dict[str, RecordStore],
        transport: Any,
        session: SessionContext,
        entity_types: Optional[list[EntityType]] = None,
        metadata: Optional[MetadataStore] = None,
        is_online: Optional[Callable[[], Any]] = None,
        clock: Callable[[], str] = now_iso,
        is_operation_pending: Optional[OperationPending] = None,
        max_retries: int = 3,
        debounce_sec: float = 30,
        poll_interval_sec: float = 0,
        charge_transport_failures: bool = True,
        unresolved_reference_policy: str = "defer",
        remote_id_pattern: Optional[str] = None,
    ):
        self.entity_types = entity_types if entity_types is not None else build_entity_types()
        missing = [et.name for et in self.entity_types if et.name not in stores]
        if missing:
            raise ConfigError(f"missing_store entity_types={','.join(missing)}")

        if is_online is None and hasattr(transport, "check_health"):
            is_online = transport.check_health

        self.stores = stores
        self.transport = transport
        self.session = session
        self.is_online = is_online
        self.is_remote_id = remote_id_matcher(remote_id_pattern) if remote_id_pattern else remote_id_matcher()

        self.bus = NotificationBus()
        self.tracker = RetryTracker(max_retries=max_retries)
        self.remapper = IdentityRemapper(
            stores, self.entity_types, self.is_remote_id, unresolved_reference_policy, clock=clock
        )
        self.syncer = StoreSyncer(
            stores,
            transport,
            self.tracker,
            self.bus,
            self.is_remote_id,
            is_operation_pending=is_operation_pending,
            charge_transport_failures=charge_transport_failures,
            clock=clock,
        )
        self.orchestrator = SyncOrchestrator(
            self.entity_types,
            self.syncer,
            self.remapper,
            session,
            self.bus,
            is_online=is_online,
            clock=clock,
        )
        self.scheduler = DebouncedScheduler(self.orchestrator.run_all, is_online, quiet_period_sec=debounce_sec)
        self.auto_sync = AutoSyncLoop(self.orchestrator.run_all, is_online, interval_sec=poll_interval_sec)
        self.puller = IncrementalPuller(
            stores,
            self.entity_types,
            transport,
            session,
            metadata or MemoryMetadataStore(),
            self.is_remote_id,
            is_online=is_online,
            clock=clock,
        )

    @classmethod
    def from_config(cls, cfg: AppConfig, **kwargs) -> "SyncEngine":
        entity_types = build_entity_types(cfg.sync.entity_order or None, cfg.sync.endpoint_overrides)
        init_db(cfg.database.path)
        stores: dict[str, RecordStore] = {et.name: SqliteRecordStore(cfg.database.path, et.name) for et in entity_types}
        transport = SyncTransport(
            base_url=cfg.backend.base_url,
            timeout=int(cfg.backend.timeout_sec),
            api_token=cfg.backend.api_token,
            request_retries=int(cfg.backend.request_retries),
            health_timeout=int(cfg.backend.health_timeout_sec),
        )
        session = SessionContext(
            session_file=cfg.session.session_file,
            resolver=transport,
            profile={"email": cfg.session.email, "uid": cfg.session.uid, "displayName": cfg.session.display_name},
            seller_id=cfg.session.seller_id,
        )
        logger.info(
            "engine_configured base_url=%s entity_types=%s db=%s",
            cfg.backend.base_url,
            len(entity_types),
            cfg.database.path,
        )
        return cls(
            stores,
            transport,
            session,
            entity_types=entity_types,
            metadata=SqliteMetadataStore(cfg.database.path),
            max_retries=cfg.sync.max_retries,
            debounce_sec=cfg.sync.debounce_sec,
            poll_interval_sec=cfg.sync.poll_interval_sec,
            charge_transport_failures=cfg.sync.charge_transport_failures,
            unresolved_reference_policy=cfg.sync.unresolved_reference_policy,
            remote_id_pattern=cfg.sync.remote_id_pattern,
            **kwargs,
        )

    def subscribe(self, listener: Any) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    def schedule(self):
        self.scheduler.schedule()

    def cancel(self) -> bool:
        return self.scheduler.cancel()

    async def run_all(self) -> SweepSummary:
        return await self.orchestrator.run_all()

    async def retry_failed(self, entity_types: Optional[Iterable[str]] = None) -> SweepSummary:
        return await self.orchestrator.retry_failed(entity_types)

    async def pull_all(self, entity_types: Optional[list[str]] = None) -> PullSummary:
        return await self.puller.pull_all(entity_types)

    async def pending_counts(self) -> dict[str, dict[str, int]]:
        return {et.name: await self.syncer.status(et.name) for et in self.entity_types}

    async def status(self) -> dict[str, Any]:
        last = self.orchestrator.last_summary
        return {
            "running": self.orchestrator.running,
            "sweep_count": self.orchestrator.sweep_count,
            "joined_count": self.orchestrator.joined_count,
            "scheduler": self.scheduler.snapshot(),
            "auto_sync": self.auto_sync.snapshot(),
            "last_summary": last.model_dump() if last else None,
            "entities": await self.pending_counts(),
            "retry": self.tracker.snapshot(),
        }

    def start(self) -> bool:
        return self.auto_sync.start()

    async def stop(self):
        self.scheduler.cancel()
        await self.auto_sync.stop()
        await self.scheduler.drain()
