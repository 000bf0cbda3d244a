"""Time source for the scheduler.

Backoff delays are modelled as timers keyed to an absolute deadline, so
the scheduler asks the clock to wake it at a point in time instead of
sleeping for a duration. Tests substitute ManualClock to make retry
timing deterministic and instant.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now(self) -> float:
        """Current time in seconds (monotonic)."""
        ...

    async def sleep(self, delay: float) -> None: ...

    async def sleep_until(self, deadline: float) -> None:
        """Suspend until `deadline` without blocking the event loop."""
        ...


class SystemClock:
    """Wall clock backed by time.monotonic() and asyncio.sleep()."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0))

    async def sleep_until(self, deadline: float) -> None:
        delay = deadline - self.now()
        if delay > 0:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)

    def __repr__(self) -> str:
        return "SystemClock"


class ManualClock:
    """Virtual clock that jumps straight to each requested deadline.

    Every wake-up is recorded so tests can assert on observed backoff.

    Usage:
        clock = ManualClock()
        coordinator = RunCoordinator(executor, clock=clock)
        ...
        assert clock.now() == 7.0
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self.wakeups: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, delay: float) -> None:
        await self.sleep_until(self._now + max(delay, 0))

    async def sleep_until(self, deadline: float) -> None:
        self.wakeups.append(deadline)
        if deadline > self._now:
            self._now = deadline
        # Yield so the caller still suspends like a real sleep
        await asyncio.sleep(0)

    def __repr__(self) -> str:
        return f"ManualClock(now={self._now})"
