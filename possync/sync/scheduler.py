from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from possync.sync.models import SweepSummary
from possync.sync.utils import call_check, now_iso

logger = logging.getLogger("scheduler")

RunSweep = Callable[[], Awaitable[SweepSummary]]


def _result_label(summary: SweepSummary) -> str:
    if summary.success:
        return "success"
    if summary.plan_invalid:
        return "plan_invalid"
    if summary.error:
        return "failed"
    return "warning"


class DebouncedScheduler:
    """Coalesces bursts of local writes into one delayed sweep.

    Each ``schedule()`` restarts the quiet period. When it elapses the sweep
    runs only if the connectivity check passes; otherwise the trigger is
    dropped and the next write re-arms it.
    """

    def __init__(
        self,
        run_sweep: RunSweep,
        is_online: Optional[Callable[[], Any]] = None,
        quiet_period_sec: float = 30,
    ):
        self.run_sweep = run_sweep
        self.is_online = is_online
        self.quiet_period_sec = quiet_period_sec
        self._timer: Optional[asyncio.Task] = None
        self._firing: set[asyncio.Task] = set()
        self._state: dict[str, object] = {
            "scheduled_count": 0,
            "fired_count": 0,
            "skipped_offline_count": 0,
            "last_fired_at": None,
            "last_result": None,
            "last_error": None,
        }

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def schedule(self):
        """Arm or restart the trigger; must be called from the event loop."""
        if self.pending:
            self._timer.cancel()
        self._state["scheduled_count"] = int(self._state["scheduled_count"]) + 1
        self._timer = asyncio.get_running_loop().create_task(self._wait_and_fire(), name="possync_debounce")
        logger.debug("sync_scheduled quiet_period_sec=%s", self.quiet_period_sec)

    def cancel(self) -> bool:
        if not self.pending:
            return False
        self._timer.cancel()
        self._timer = None
        logger.debug("sync_schedule_cancelled")
        return True

    async def _wait_and_fire(self):
        await asyncio.sleep(self.quiet_period_sec)
        # Past the quiet period the sweep is no longer cancellable through the timer.
        me = asyncio.current_task()
        if self._timer is me:
            self._timer = None
        if me is not None:
            self._firing.add(me)
        try:
            await self._fire()
        finally:
            if me is not None:
                self._firing.discard(me)

    async def _fire(self):
        if not await call_check(self.is_online):
            self._state["skipped_offline_count"] = int(self._state["skipped_offline_count"]) + 1
            logger.debug("scheduled_sync_dropped reason=offline")
            return

        self._state["fired_count"] = int(self._state["fired_count"]) + 1
        self._state["last_fired_at"] = now_iso()
        try:
            summary = await self.run_sweep()
        except Exception as exc:
            self._state.update(last_result="failed", last_error=str(exc))
            logger.exception("scheduled_sync_failed: %s", exc)
            return
        self._state.update(last_result=_result_label(summary), last_error=summary.error)

    async def drain(self):
        """Wait for sweeps the timer already started."""
        if self._firing:
            await asyncio.gather(*list(self._firing), return_exceptions=True)

    def snapshot(self) -> dict[str, object]:
        return {
            "pending": self.pending,
            "quiet_period_sec": self.quiet_period_sec,
            **self._state,
        }


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


class AutoSyncLoop:
    """Periodic sweep every ``interval_sec``; 0 disables it."""

    def __init__(
        self,
        run_sweep: RunSweep,
        is_online: Optional[Callable[[], Any]] = None,
        interval_sec: float = 30,
        run_immediately: bool = True,
    ):
        self.run_sweep = run_sweep
        self.is_online = is_online
        self.interval_sec = interval_sec
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._state: dict[str, object] = {
            "running": False,
            "run_count": 0,
            "skipped_offline_count": 0,
            "last_started_at": None,
            "last_finished_at": None,
            "last_result": None,
            "last_error": None,
        }

    @property
    def enabled(self) -> bool:
        return self.interval_sec > 0

    async def _tick(self):
        if not await call_check(self.is_online):
            self._state["skipped_offline_count"] = int(self._state["skipped_offline_count"]) + 1
            logger.debug("auto_sync_skipped reason=offline")
            return
        self._state.update(last_started_at=now_iso(), last_result="running", last_error=None)
        try:
            summary = await self.run_sweep()
            self._state.update(last_result=_result_label(summary), last_error=summary.error)
        except Exception as exc:
            self._state.update(last_result="failed", last_error=str(exc))
            logger.exception("auto_sync_failed: %s", exc)
        finally:
            self._state["run_count"] = int(self._state["run_count"]) + 1
            self._state["last_finished_at"] = now_iso()

    async def _loop(self, stop_event: asyncio.Event):
        self._state["running"] = True
        logger.info("auto_sync_started interval_sec=%s", self.interval_sec)
        try:
            if self.run_immediately:
                await self._tick()
            while not stop_event.is_set():
                if await _wait_stop_or_timeout(stop_event, self.interval_sec):
                    break
                await self._tick()
        finally:
            self._state["running"] = False
            logger.info("auto_sync_stopped")

    def start(self) -> bool:
        if not self.enabled:
            logger.info("auto_sync_disabled")
            return False
        if self._task and not self._task.done():
            return True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name="possync_auto_sync")
        return True

    async def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except Exception:
                logger.exception("auto_sync_stop_error")
        self._task = None
        self._stop_event = None

    def snapshot(self) -> dict[str, object]:
        return {"enabled": self.enabled, "interval_sec": self.interval_sec, **self._state}
