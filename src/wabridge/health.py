"""Source session liveness monitoring."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from wabridge.session.reconnector import ReconnectState

logger = structlog.get_logger()


class ActivityClock:
    """Timestamp of the last observed inbound or outbound message."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.last = clock()
        self.last_at = datetime.now(UTC)

    def touch(self) -> None:
        self.last = self._clock()
        self.last_at = datetime.now(UTC)

    def idle_for(self, now: float | None = None) -> float:
        return (self._clock() if now is None else now) - self.last


class HealthMonitor:
    """Warns when a ready session has been silent for ``stall_factor`` intervals.

    Only warns; reconnecting stays driven by the session's own disconnect
    events since a quiet account is not necessarily a dead one.
    """

    def __init__(
        self,
        *,
        activity: ActivityClock,
        state: Callable[[], ReconnectState],
        notify: Callable[[str], Any],
        interval_s: float = 60.0,
        stall_factor: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.activity = activity
        self._state = state
        self._notify = notify
        self.interval_s = interval_s
        self.stall_factor = stall_factor
        self._clock = clock

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._last_warning_at: float | None = None
        self.warnings = 0

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="health-monitor")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_s)
            try:
                self.check()
            except Exception as exc:
                logger.warning("health.check_error", error=str(exc))

    def check(self) -> bool:
        """Run one liveness check; returns True if a warning was emitted."""
        if self._state() is not ReconnectState.READY:
            return False

        now = self._clock()
        idle = self.activity.idle_for(now)
        threshold = self.stall_factor * self.interval_s
        if idle <= threshold:
            return False

        # at most one warning per tick, with ticks interval_s apart give or take jitter
        if self._last_warning_at is not None and now - self._last_warning_at < self.interval_s / 2:
            return False

        self._last_warning_at = now
        self.warnings += 1
        logger.warning("health.stalled", idle_s=round(idle, 1), threshold_s=threshold)
        minutes = max(1, round(threshold / 60))
        self._notify(
            "⚠️ <b>Health Warning</b>\n\n"
            f"No WhatsApp activity for {minutes} minutes. Connection may be unstable."
        )
        return True
