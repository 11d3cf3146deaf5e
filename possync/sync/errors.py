class SyncError(RuntimeError):
    """Base class for synchronization failures."""


class TransportError(SyncError):
    """A request to the backend failed as a whole (network, timeout, bad reply)."""


class PlanInvalidError(SyncError):
    """The backend refused the seller's plan or session; retrying cannot help."""


class StoreError(SyncError):
    """Reading or writing the local record store failed."""


class ConfigError(SyncError):
    """Entity type or engine wiring is inconsistent."""
