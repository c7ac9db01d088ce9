"""Tests for the logical clock used by timers and scheduling loops."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from nestor.core.cancel import CancellationToken
from nestor.core.clock import ManualClock, sleep_unless_cancelled


class TestManualClock:
    def test_now_starts_at_given_instant(self) -> None:
        start = datetime(2026, 3, 1, 10, 7, tzinfo=timezone.utc)
        clock = ManualClock(start)
        assert clock.now() == start
        assert clock.monotonic() == 0.0

    @pytest.mark.asyncio
    async def test_timers_fire_in_deadline_order(self) -> None:
        clock = ManualClock()
        fired: list[str] = []
        clock.call_later(2.0, lambda: fired.append("b"))
        clock.call_later(1.0, lambda: fired.append("a"))
        clock.call_later(5.0, lambda: fired.append("c"))

        await clock.advance(3.0)

        assert fired == ["a", "b"]
        assert clock.monotonic() == 3.0
        assert clock.pending_timers == 1

    @pytest.mark.asyncio
    async def test_cancelled_timer_does_not_fire(self) -> None:
        clock = ManualClock()
        fired = []
        handle = clock.call_later(1.0, lambda: fired.append(True))
        handle.cancel()
        await clock.advance(2.0)
        assert fired == []

    @pytest.mark.asyncio
    async def test_timer_sees_its_own_deadline(self) -> None:
        clock = ManualClock()
        seen: list[float] = []
        clock.call_later(1.5, lambda: seen.append(clock.monotonic()))
        await clock.advance(10.0)
        assert seen == [1.5]

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_advance(self) -> None:
        clock = ManualClock()
        sleeper = asyncio.create_task(clock.sleep(30.0))

        await clock.advance(29.0)
        assert not sleeper.done()

        await clock.advance(1.0)
        assert sleeper.done()

    @pytest.mark.asyncio
    async def test_now_advances_with_time(self) -> None:
        clock = ManualClock()
        start = clock.now()
        await clock.advance(90.0)
        assert clock.now() - start == timedelta(seconds=90)


class TestSleepUnlessCancelled:
    @pytest.mark.asyncio
    async def test_full_sleep_returns_true(self) -> None:
        clock = ManualClock()
        token = CancellationToken()
        task = asyncio.create_task(sleep_unless_cancelled(clock, 5.0, token))
        await clock.advance(5.0)
        assert await task is True

    @pytest.mark.asyncio
    async def test_cancellation_cuts_sleep_short(self) -> None:
        clock = ManualClock()
        token = CancellationToken()
        task = asyncio.create_task(sleep_unless_cancelled(clock, 60.0, token))
        await asyncio.sleep(0)

        token.cancel()

        assert await task is False

    @pytest.mark.asyncio
    async def test_already_cancelled_returns_immediately(self) -> None:
        token = CancellationToken()
        token.cancel()
        assert await sleep_unless_cancelled(ManualClock(), 60.0, token) is False
