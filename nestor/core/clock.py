"""Logical clock used by every timer and polling loop in the host.

Production code runs on SystemClock, which delegates to the event loop.
Tests use ManualClock and call advance() to move time forward
deterministically instead of sleeping.

Usage:
    clock = ManualClock(start=datetime(2026, 1, 5, 10, 7, tzinfo=timezone.utc))
    handle = clock.call_later(5.0, on_idle)
    await clock.advance(5.001)   # on_idle has now run
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from nestor.core.cancel import CancellationToken


class TimerHandle(Protocol):
    """Cancellable handle returned by Clock.call_later()."""

    def cancel(self) -> None: ...


class Clock(Protocol):
    """Source of wall time, monotonic time, timers and sleeps."""

    def now(self) -> datetime:
        """Current wall time as an aware UTC datetime."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds, for measuring durations."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback after delay seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for the given number of seconds."""
        ...


class SystemClock:
    """Clock backed by the running event loop and the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), callback)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class _ManualTimer:
    def __init__(self, deadline: float, seq: int, callback: Callable[[], None]) -> None:
        self.deadline = deadline
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def __lt__(self, other: _ManualTimer) -> bool:
        return (self.deadline, self.seq) < (other.deadline, other.seq)

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Deterministic clock for tests.

    Time only moves when advance() is awaited. Timers whose deadline falls
    inside the advanced window fire in deadline order, and the event loop
    is given a chance to run between firings so that tasks woken by a timer
    observe the new time.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._elapsed + max(delay, 0.0), next(self._seq), callback)
        heapq.heappush(self._timers, timer)
        return timer

    async def sleep(self, seconds: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        handle = self.call_later(seconds, wake)
        try:
            await future
        finally:
            handle.cancel()

    @property
    def pending_timers(self) -> int:
        """Number of armed, uncancelled timers."""
        return sum(1 for t in self._timers if not t.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer that becomes due."""
        target = self._elapsed + seconds
        await _yield_to_loop()
        while self._timers and self._timers[0].deadline <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._elapsed = max(self._elapsed, timer.deadline)
            timer.callback()
            await _yield_to_loop()
        self._elapsed = target
        await _yield_to_loop()


async def _yield_to_loop(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def sleep_unless_cancelled(clock: Clock, seconds: float, token: CancellationToken) -> bool:
    """Sleep on the clock, waking early if the token is cancelled.

    Returns:
        True if the full sleep elapsed, False if cancellation cut it short.
    """
    if token.is_cancelled:
        return False
    stopped = asyncio.Event()
    token.on_cancel(stopped.set)
    sleeper = asyncio.ensure_future(clock.sleep(seconds))
    waiter = asyncio.ensure_future(stopped.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        sleeper.cancel()
        waiter.cancel()
        token.remove_callback(stopped.set)
    return not token.is_cancelled
