"""Schedule arithmetic for cron, interval and once tasks.

All datetimes returned are aware and in UTC. Cron expressions are evaluated
in the configured IANA timezone so "0 9 * * *" means 09:00 local time,
including across DST changes.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from nestor.core.errors import ScheduleError
from nestor.scheduler.types import ScheduleKind


def parse_kind(value: str) -> ScheduleKind:
    """Map a wire schedule type onto a ScheduleKind.

    Raises:
        ScheduleError: If the kind is unknown.
    """
    try:
        return ScheduleKind(value.strip().lower())
    except ValueError:
        raise ScheduleError(f"Unknown schedule type: {value!r}") from None


def _interval_ms(value: str) -> int:
    try:
        ms = int(value)
    except ValueError:
        raise ScheduleError(f"Interval must be an integer number of milliseconds: {value!r}") from None
    if ms <= 0:
        raise ScheduleError(f"Interval must be positive: {value!r}")
    return ms


def _check_cron(value: str) -> None:
    if len(value.split()) != 5:
        raise ScheduleError(f"Cron expression must have five fields: {value!r}")
    if not croniter.is_valid(value):
        raise ScheduleError(f"Invalid cron expression: {value!r}")


def parse_once(value: str, tz: ZoneInfo) -> datetime:
    """Parse a one-shot timestamp. Naive timestamps are taken as local to tz."""
    try:
        when = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ScheduleError(f"Invalid timestamp: {value!r}") from None
    if when.tzinfo is None:
        when = when.replace(tzinfo=tz)
    return when.astimezone(timezone.utc)


def validate_schedule(kind: ScheduleKind, value: str) -> None:
    """Raise ScheduleError if value is not a valid schedule of this kind."""
    if kind is ScheduleKind.CRON:
        _check_cron(value)
    elif kind is ScheduleKind.INTERVAL:
        _interval_ms(value)
    else:
        parse_once(value, ZoneInfo("UTC"))


def next_cron_run(expression: str, after: datetime, tz: ZoneInfo) -> datetime:
    """First cron occurrence strictly after `after`."""
    _check_cron(expression)
    try:
        nxt = croniter(expression, after.astimezone(tz)).get_next(datetime)
    except (CroniterBadCronError, CroniterBadDateError) as e:
        raise ScheduleError(f"Cannot evaluate cron expression {expression!r}: {e}") from e
    return nxt.astimezone(timezone.utc)


def first_run(kind: ScheduleKind, value: str, now: datetime, tz: ZoneInfo) -> datetime:
    """When a newly created (or resumed) task should first fire."""
    if kind is ScheduleKind.CRON:
        return next_cron_run(value, now, tz)
    if kind is ScheduleKind.INTERVAL:
        return now + timedelta(milliseconds=_interval_ms(value))
    return parse_once(value, tz)


def advance(
    kind: ScheduleKind,
    value: str,
    previous: datetime,
    now: datetime,
    tz: ZoneInfo,
) -> datetime | None:
    """Next run after a task fired at `now` for its occurrence `previous`.

    Missed occurrences are skipped: the result is always after `now`, so a
    task that was due many times while the host was down fires once.
    Intervals stay anchored on the previous scheduled time, not on `now`.

    Returns:
        The next run, or None when the task is finished (once).
    """
    if kind is ScheduleKind.ONCE:
        return None
    if kind is ScheduleKind.CRON:
        return next_cron_run(value, now, tz)

    step = timedelta(milliseconds=_interval_ms(value))
    missed = (now - previous) // step
    nxt = previous + step * (missed + 1)
    while nxt <= now:
        nxt += step
    return nxt
