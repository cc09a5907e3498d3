"""Clock and ticker abstractions.

Every delay the engine takes (typing simulation, retry backoff, scheduler
cadence) goes through a ``Clock`` so tests can swap in ``VirtualClock`` and
step through days of simulated time without sleeping.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional


class Clock(ABC):
    """Source of the current time and of cooperative sleeps."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware datetime."""

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""

    def local_now(self) -> datetime:
        """Current time in the local timezone (used for hour/day windows)."""
        return self.now().astimezone()


class SystemClock(Clock):
    """Wall-clock time backed by ``asyncio.sleep``."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


class VirtualClock(Clock):
    """Deterministic clock for tests and offline runs.

    ``sleep`` advances the clock instantly and yields to the event loop once so
    interleaving still happens at the same suspension points as in production.
    Local time equals the clock's own timezone, so day boundaries are exact.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def local_now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        if seconds > 0:
            self._now = self._now + timedelta(seconds=seconds)
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)


@dataclass
class PeriodicTrigger:
    """An ``every N seconds`` callback tracked against a clock."""

    name: str
    interval_seconds: float
    callback: Callable[[], Awaitable[None]]
    last_fired: Optional[datetime] = field(default=None)

    def is_due(self, now: datetime) -> bool:
        """Return ``True`` when the trigger should fire at ``now``."""

        if self.interval_seconds <= 0 or self.last_fired is None:
            return True
        return (now - self.last_fired).total_seconds() >= self.interval_seconds

    def seconds_until_due(self, now: datetime) -> float:
        if self.last_fired is None:
            return 0.0
        elapsed = (now - self.last_fired).total_seconds()
        return max(0.0, self.interval_seconds - elapsed)
