"""Tests for cron, interval and once schedule arithmetic."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from nestor.core.errors import ScheduleError
from nestor.scheduler.schedule import (
    advance,
    first_run,
    next_cron_run,
    parse_kind,
    parse_once,
    validate_schedule,
)
from nestor.scheduler.types import ScheduleKind

UTC = ZoneInfo("UTC")
BERLIN = ZoneInfo("Europe/Berlin")


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestParseKind:
    def test_case_insensitive(self) -> None:
        assert parse_kind(" CRON ") is ScheduleKind.CRON
        assert parse_kind("interval") is ScheduleKind.INTERVAL

    def test_unknown(self) -> None:
        with pytest.raises(ScheduleError, match="Unknown schedule type"):
            parse_kind("weekly")


class TestCron:
    def test_next_quarter_hour(self) -> None:
        assert next_cron_run("*/15 * * * *", utc(2026, 3, 2, 10, 7), UTC) == utc(2026, 3, 2, 10, 15)

    def test_strictly_after(self) -> None:
        assert next_cron_run("*/15 * * * *", utc(2026, 3, 2, 10, 15), UTC) == utc(2026, 3, 2, 10, 30)

    def test_evaluated_in_local_timezone(self) -> None:
        # 11:07 in Berlin, so 09:00 local is tomorrow, 08:00 UTC in winter
        assert next_cron_run("0 9 * * *", utc(2026, 3, 2, 10, 7), BERLIN) == utc(2026, 3, 3, 8, 0)

    def test_local_time_kept_across_dst(self) -> None:
        # Berlin moves to CEST on 2026-03-29
        assert next_cron_run("0 9 * * *", utc(2026, 3, 28, 10, 0), BERLIN) == utc(2026, 3, 29, 7, 0)

    def test_result_is_utc(self) -> None:
        result = next_cron_run("0 9 * * *", utc(2026, 3, 2, 10, 7), BERLIN)
        assert result.utcoffset() == timedelta(0)

    @pytest.mark.parametrize("expression", ["* * * *", "* * * * * *", "61 * * * *", "nonsense"])
    def test_invalid_expressions(self, expression: str) -> None:
        with pytest.raises(ScheduleError):
            validate_schedule(ScheduleKind.CRON, expression)


class TestInterval:
    def test_first_run_is_one_period_out(self) -> None:
        now = utc(2026, 3, 2, 10, 7)
        assert first_run(ScheduleKind.INTERVAL, "60000", now, UTC) == now + timedelta(minutes=1)

    def test_anchored_on_previous_run(self) -> None:
        previous = utc(2026, 3, 2, 10, 0)
        fired_late = previous + timedelta(seconds=3)
        result = advance(ScheduleKind.INTERVAL, "60000", previous, fired_late, UTC)
        assert result == utc(2026, 3, 2, 10, 1)

    def test_missed_periods_are_skipped(self) -> None:
        previous = utc(2026, 3, 2, 10, 0)
        now = utc(2026, 3, 2, 10, 7, 30)
        assert advance(ScheduleKind.INTERVAL, "60000", previous, now, UTC) == utc(2026, 3, 2, 10, 8)

    def test_exact_boundary_moves_forward(self) -> None:
        previous = utc(2026, 3, 2, 10, 0)
        now = utc(2026, 3, 2, 10, 2)
        assert advance(ScheduleKind.INTERVAL, "60000", previous, now, UTC) == utc(2026, 3, 2, 10, 3)

    @pytest.mark.parametrize("value", ["0", "-5", "1.5", "soon"])
    def test_invalid_values(self, value: str) -> None:
        with pytest.raises(ScheduleError):
            validate_schedule(ScheduleKind.INTERVAL, value)


class TestOnce:
    def test_finished_after_firing(self) -> None:
        now = utc(2026, 3, 2, 10, 7)
        assert advance(ScheduleKind.ONCE, "2026-03-02T10:00:00Z", now, now, UTC) is None

    def test_naive_timestamp_is_local(self) -> None:
        assert parse_once("2026-03-02T09:00:00", BERLIN) == utc(2026, 3, 2, 8, 0)

    def test_zulu_suffix(self) -> None:
        assert parse_once("2026-03-02T09:00:00Z", BERLIN) == utc(2026, 3, 2, 9, 0)

    def test_first_run_is_the_timestamp(self) -> None:
        when = first_run(ScheduleKind.ONCE, "2026-04-01T12:00:00+02:00", utc(2026, 3, 2), UTC)
        assert when == utc(2026, 4, 1, 10, 0)

    def test_invalid_timestamp(self) -> None:
        with pytest.raises(ScheduleError, match="Invalid timestamp"):
            validate_schedule(ScheduleKind.ONCE, "next tuesday")
