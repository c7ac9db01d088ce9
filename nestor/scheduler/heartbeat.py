"""Heartbeats: periodic self-checks that stay quiet when nothing is wrong.

A group opts in with <groups_dir>/<folder>/heartbeat-config.json:

    {
        "heartbeat": {
            "enabled": true,
            "every": "30m",
            "activeHours": {"start": 8, "end": 22, "timezone": "Europe/Berlin"},
            "suppressOk": true,
            "maxSuppressedChars": 300,
            "prompt": "Read HEARTBEAT.md and follow the instructions. ..."
        }
    }

The heartbeat becomes an ordinary scheduled task with id heartbeat-<folder>.
Active hours are not enforced by the scheduler: the prompt tells the agent
to answer HEARTBEAT_OK outside them, and that answer is then suppressed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from nestor.config.load_utils import read_json_object
from nestor.core.constants import HEARTBEAT_SENTINEL
from nestor.core.errors import LoadError, ScheduleError
from nestor.core.types import Group
from nestor.scheduler.scheduler import TaskScheduler
from nestor.scheduler.types import ScheduleKind

logger = logging.getLogger(__name__)

HEARTBEAT_CONFIG_FILE = "heartbeat-config.json"

DEFAULT_HEARTBEAT_PROMPT = (
    "Read HEARTBEAT.md and follow the instructions. "
    f"If nothing needs attention, respond with {HEARTBEAT_SENTINEL}."
)

DEFAULT_MAX_SUPPRESSED_CHARS = 300

_INTERVAL_RE = re.compile(r"^(\d+)([mh])$")
_SENTINEL_RE = re.compile(rf"\b{HEARTBEAT_SENTINEL}\b", re.IGNORECASE)
_PUNCTUATION_RE = re.compile(r"[^\w\s]")


class ActiveHours(BaseModel):
    """Local hours during which a heartbeat should do real work. end is exclusive."""

    model_config = ConfigDict(extra="forbid")

    start: int = Field(ge=0, le=23)
    end: int = Field(ge=0, le=24)
    timezone: str = "UTC"


class HeartbeatSettings(BaseModel):
    """Contents of the "heartbeat" object in heartbeat-config.json."""

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    enabled: bool = False
    every: str = "60m"
    active_hours: ActiveHours | None = None
    suppress_ok: bool = True
    max_suppressed_chars: int = Field(default=DEFAULT_MAX_SUPPRESSED_CHARS, ge=0)
    prompt: str | None = None


def parse_interval(every: str) -> int:
    """Parse "30m" / "2h" into milliseconds.

    Raises:
        ScheduleError: If the format is not <digits><m|h> or the value is zero.
    """
    match = _INTERVAL_RE.match(every.strip())
    if not match:
        raise ScheduleError(f'Invalid heartbeat interval {every!r}, use e.g. "60m" or "2h"')
    value = int(match.group(1))
    if value <= 0:
        raise ScheduleError(f"Heartbeat interval must be positive: {every!r}")
    minutes = value if match.group(2) == "m" else value * 60
    return minutes * 60 * 1000


def heartbeat_schedule(interval_ms: int) -> tuple[ScheduleKind, str]:
    """Choose a cron expression when the interval tiles the hour, else an interval."""
    minutes, remainder = divmod(interval_ms, 60 * 1000)
    if remainder == 0:
        if minutes == 60:
            return ScheduleKind.CRON, "0 * * * *"
        if 0 < minutes < 60 and 60 % minutes == 0:
            return ScheduleKind.CRON, f"*/{minutes} * * * *"
    return ScheduleKind.INTERVAL, str(interval_ms)


def _format_hour(hour: int) -> str:
    hour %= 24
    if hour == 0:
        return "12 AM"
    if hour < 12:
        return f"{hour} AM"
    if hour == 12:
        return "12 PM"
    return f"{hour - 12} PM"


def wrap_prompt_with_active_hours(settings: HeartbeatSettings, base_prompt: str) -> str:
    """Fold the active-hours window into the heartbeat prompt."""
    window = settings.active_hours
    if window is None:
        return base_prompt
    return (
        f"Check the current time in the {window.timezone} timezone. "
        f"If it is between {window.start}:00 and {window.end}:00 "
        f"({_format_hour(window.start)} to {_format_hour(window.end)}), "
        f"proceed with the heartbeat check. Otherwise respond with just "
        f'"{HEARTBEAT_SENTINEL}" (outside active hours).\n\n'
        f"If within active hours:\n{base_prompt}"
    )


def within_active_hours(now: datetime, window: ActiveHours) -> bool:
    """Whether `now` falls inside the window in its timezone.

    A window whose end precedes its start wraps past midnight (22 -> 6).
    """
    hour = now.astimezone(ZoneInfo(window.timezone)).hour
    if window.start == window.end:
        return True
    if window.start < window.end:
        return window.start <= hour < window.end
    return hour >= window.start or hour < window.end


def is_heartbeat_ok(response: str, max_chars: int = DEFAULT_MAX_SUPPRESSED_CHARS) -> bool:
    """Whether a heartbeat response is a routine all-clear that should not be sent.

    The response must contain the sentinel as a whole word (any case). With
    every sentinel and all punctuation removed, what remains must be at most
    max_chars characters.
    """
    content = response.strip()
    if not _SENTINEL_RE.search(content):
        return False
    remaining = _PUNCTUATION_RE.sub("", _SENTINEL_RE.sub("", content)).strip()
    if len(remaining) <= max_chars:
        logger.debug("Suppressing heartbeat response (%d chars remaining)", len(remaining))
        return True
    logger.debug(
        "Heartbeat response has %d chars beyond the sentinel (max %d), delivering",
        len(remaining),
        max_chars,
    )
    return False


def load_heartbeat_settings(group_dir: Path) -> HeartbeatSettings | None:
    """Load a group's heartbeat settings.

    Returns:
        Settings if the file exists, parses and has enabled=true; else None.
    """
    path = group_dir / HEARTBEAT_CONFIG_FILE
    try:
        data = read_json_object(path, "heartbeat config", missing_ok=True)
    except LoadError as e:
        logger.error("Failed to load heartbeat config for %s: %s", group_dir.name, e.message)
        return None
    if data is None:
        return None

    try:
        settings = HeartbeatSettings.model_validate(data.get("heartbeat") or {})
    except ValidationError as e:
        logger.error("Invalid heartbeat config %s: %s", path, e)
        return None

    if not settings.enabled:
        logger.debug("Heartbeat disabled for %s", group_dir.name)
        return None
    return settings


class HeartbeatScheduler:
    """Creates heartbeat tasks and answers suppression questions for them."""

    def __init__(self, scheduler: TaskScheduler, groups_dir: Path) -> None:
        self._scheduler = scheduler
        self._groups_dir = groups_dir
        self._settings: dict[str, HeartbeatSettings] = {}

    @staticmethod
    def task_id_for(folder: str) -> str:
        return f"heartbeat-{folder}"

    def settings_for(self, folder: str) -> HeartbeatSettings | None:
        return self._settings.get(folder)

    def should_suppress(self, folder: str, response: str) -> bool:
        """Apply the group's suppression policy to a heartbeat response."""
        settings = self._settings.get(folder)
        if settings is not None and not settings.suppress_ok:
            return False
        max_chars = (
            settings.max_suppressed_chars if settings is not None else DEFAULT_MAX_SUPPRESSED_CHARS
        )
        return is_heartbeat_ok(response, max_chars)

    async def initialize(self, group: Group) -> bool:
        """Create the heartbeat task for a group if it has one configured.

        An existing heartbeat task is left untouched so a restart does not
        reset its schedule.

        Returns:
            True if the group has an enabled heartbeat.
        """
        settings = load_heartbeat_settings(self._groups_dir / group.folder)
        if settings is None:
            return False

        try:
            interval_ms = parse_interval(settings.every)
        except ScheduleError as e:
            logger.error("Heartbeat for %s not scheduled: %s", group.folder, e.message)
            return False

        self._settings[group.folder] = settings
        task_id = self.task_id_for(group.folder)
        if await self._scheduler.get_task(task_id) is not None:
            logger.info("Heartbeat task %s already exists, leaving it as is", task_id)
            return True

        kind, value = heartbeat_schedule(interval_ms)
        prompt = wrap_prompt_with_active_hours(settings, settings.prompt or DEFAULT_HEARTBEAT_PROMPT)
        await self._scheduler.add_task(
            group.group_id,
            prompt,
            kind,
            value,
            task_id=task_id,
            is_heartbeat=True,
        )
        logger.info("Heartbeat initialized for %s (%s %s)", group.folder, kind.value, value)
        return True

    async def initialize_all(self, groups: Iterable[Group]) -> int:
        """Initialize heartbeats for every group; returns how many are enabled."""
        count = 0
        for group in groups:
            if await self.initialize(group):
                count += 1
        if count:
            logger.info("%d heartbeats initialized", count)
        else:
            logger.debug("No groups have an enabled heartbeat")
        return count
