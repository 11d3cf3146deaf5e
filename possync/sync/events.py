from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from possync.sync.models import Record, SweepSummary

logger = logging.getLogger("sync")


@dataclass
class CallbackListener:
    """Adapts plain callables to the listener interface."""

    item_synced: Optional[Callable[[str, Record], Any]] = None
    sweep_completed: Optional[Callable[[SweepSummary], Any]] = None

    def on_item_synced(self, entity_type: str, record: Record):
        if self.item_synced:
            self.item_synced(entity_type, record)

    def on_sweep_completed(self, summary: SweepSummary):
        if self.sweep_completed:
            self.sweep_completed(summary)


class NotificationBus:
    """Observer registry for UI-facing sync events.

    Listeners may implement either hook; a failing listener is logged and
    never interrupts the sweep or the other listeners.
    """

    def __init__(self):
        self._listeners: list[Any] = []

    def subscribe(self, listener: Any) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def __len__(self) -> int:
        return len(self._listeners)

    def _emit(self, hook: str, *args):
        for listener in list(self._listeners):
            fn = getattr(listener, hook, None)
            if fn is None:
                continue
            try:
                fn(*args)
            except Exception:
                logger.exception("listener_failed hook=%s listener=%r", hook, listener)

    def emit_item_synced(self, entity_type: str, record: Record):
        self._emit("on_item_synced", entity_type, record)

    def emit_sweep_completed(self, summary: SweepSummary):
        self._emit("on_sweep_completed", summary)
