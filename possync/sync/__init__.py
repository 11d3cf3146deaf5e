from .engine import SyncEngine
from .entities import DEFAULT_ENTITY_TYPES, DEFAULT_SYNC_ORDER, EndpointGroup, EntityType, Reference
from .errors import ConfigError, PlanInvalidError, StoreError, SyncError, TransportError
from .events import CallbackListener, NotificationBus
from .models import Record, SweepSummary
from .store import MemoryRecordStore, SqliteRecordStore

__all__ = [
    "SyncEngine",
    "EntityType",
    "EndpointGroup",
    "Reference",
    "DEFAULT_ENTITY_TYPES",
    "DEFAULT_SYNC_ORDER",
    "Record",
    "SweepSummary",
    "NotificationBus",
    "CallbackListener",
    "MemoryRecordStore",
    "SqliteRecordStore",
    "SyncError",
    "TransportError",
    "PlanInvalidError",
    "StoreError",
    "ConfigError",
]
