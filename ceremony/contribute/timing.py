"""Deadline tracking and millisecond decomposition for countdowns and ETAs."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

SECONDS_PER_DAY = 86400
SECONDS_PER_HOUR = 3600
SECONDS_PER_MINUTE = 60


@dataclass(frozen=True)
class Timing:
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: int = 0


def now_ms() -> int:
    return int(time.time() * 1000)


def decompose_millis(millis: int | float) -> Timing:
    """Split a non-negative millisecond amount into days/hours/minutes/seconds.

    Sub-second remainders are truncated. Each field is produced by ``divmod``
    so hours < 24, minutes < 60 and seconds < 60 hold by construction.
    """
    if millis < 0:
        raise ValueError(f"cannot decompose negative duration: {millis}ms")
    delta = int(millis) // 1000
    days, delta = divmod(delta, SECONDS_PER_DAY)
    hours, delta = divmod(delta, SECONDS_PER_HOUR)
    minutes, seconds = divmod(delta, SECONDS_PER_MINUTE)
    return Timing(days=days, hours=hours, minutes=minutes, seconds=seconds)


def to_double_digits(amount: int) -> str:
    return f"0{amount}" if amount < 10 else str(amount)


def format_timing(timing: Timing, with_days: bool = False) -> str:
    """``hh:mm:ss`` (or ``dd:hh:mm:ss``)."""
    parts = [timing.hours, timing.minutes, timing.seconds]
    if with_days:
        parts.insert(0, timing.days)
    return ":".join(to_double_digits(p) for p in parts)


def format_millis(millis: int | float, with_days: bool = False) -> str:
    return format_timing(decompose_millis(abs(millis)), with_days=with_days)


def convert_millis_to_seconds(millis: int | float) -> float:
    return round(millis / 1000, 2)


class TimeoutGuard:
    """Deadline for the current contribution attempt.

    ``deadline_ms`` of ``None`` means the attempt is not time-bounded.
    """

    def __init__(self, deadline_ms: int | None = None, clock: Callable[[], int] = now_ms) -> None:
        self.deadline_ms = deadline_ms
        self._clock = clock

    @staticmethod
    def remaining(deadline_ms: int, now: int) -> Timing:
        return decompose_millis(max(0, deadline_ms - now))

    @staticmethod
    def expired(deadline_ms: int, now: int) -> bool:
        return now >= deadline_ms

    def now(self) -> int:
        return self._clock()

    def is_expired(self) -> bool:
        if self.deadline_ms is None:
            return False
        return self.expired(self.deadline_ms, self._clock())

    def time_left(self) -> Timing | None:
        if self.deadline_ms is None:
            return None
        return self.remaining(self.deadline_ms, self._clock())

    def seconds_left(self) -> float | None:
        """Seconds until the deadline, for ``asyncio.wait`` bounds."""
        if self.deadline_ms is None:
            return None
        return max(0.0, (self.deadline_ms - self._clock()) / 1000)
