"""Cancellable observational timers: participation countdown and progress ticker.

Neither timer affects control flow. Expiry of the countdown only sets an
event; enforcement belongs to the TimeoutGuard checks in the state machine.
"""

from __future__ import annotations

import asyncio
import logging
import time

from .timing import TimeoutGuard, format_millis, format_timing

logger = logging.getLogger("phase2.contribute.timers")


class _TimerTask:
    name = "timer"

    def __init__(self, interval_s: float) -> None:
        self._interval_s = interval_s
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if not self.running:
            self._task = asyncio.create_task(self._loop(), name=self.name)
        return self._task  # type: ignore[return-value]

    async def cancel(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cancel()

    async def _loop(self) -> None:
        raise NotImplementedError


class Countdown(_TimerTask):
    """Logs the time left before the participation deadline."""

    name = "participation-countdown"

    def __init__(self, guard: TimeoutGuard, interval_s: float = 60.0) -> None:
        super().__init__(interval_s)
        self._guard = guard
        self.expired = asyncio.Event()

    async def _loop(self) -> None:
        while True:
            if self._guard.is_expired():
                logger.warning("Participation time expired")
                self.expired.set()
                return
            left = self._guard.time_left()
            if left is not None:
                logger.info("Contribution expires in %s", format_timing(left, with_days=left.days > 0))
            await asyncio.sleep(self._interval_s)


class ProgressTicker(_TimerTask):
    """Periodic "still working" refresh for a long step, with an optional ETA."""

    def __init__(self, label: str, eta_ms: int = 0, interval_s: float = 30.0) -> None:
        super().__init__(interval_s)
        self.name = f"progress-{label}"
        self._label = label
        self._eta_ms = eta_ms
        self._started = time.monotonic()
        self.ticks = 0

    async def _loop(self) -> None:
        self._started = time.monotonic()
        while True:
            await asyncio.sleep(self._interval_s)
            self.ticks += 1
            elapsed_ms = int((time.monotonic() - self._started) * 1000)
            if self._eta_ms > 0:
                logger.info("%s... %s (ETA %s)", self._label, format_millis(elapsed_ms), format_millis(self._eta_ms))
            else:
                logger.info("%s... %s", self._label, format_millis(elapsed_ms))
