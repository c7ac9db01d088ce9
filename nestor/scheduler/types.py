"""Scheduled task types."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ScheduleKind(str, Enum):
    """How a task's schedule_value is interpreted."""

    CRON = "cron"  # five-field cron expression
    INTERVAL = "interval"  # period in milliseconds
    ONCE = "once"  # ISO-8601 timestamp


class TaskStatus(str, Enum):
    """Disposition of a scheduled task. Tasks are never deleted."""

    ACTIVE = "active"
    PAUSED = "paused"
    DONE = "done"


@dataclass
class ScheduledTask:
    """A recurring or one-shot wake for a group.

    Attributes:
        id: Unique task id (heartbeats use "heartbeat-<folder>").
        group_id: Owning group.
        prompt: Payload enqueued for the group when the task fires.
        schedule_kind: cron, interval or once.
        schedule_value: Expression, milliseconds, or timestamp.
        next_run: Next due time (aware UTC); None once done.
        status: active, paused or done.
        last_run: When the task last fired.
        last_error: Why the task was disabled, if it was.
        created_at: Creation time.
        is_heartbeat: Responses are subject to heartbeat suppression.
    """

    id: str
    group_id: str
    prompt: str
    schedule_kind: ScheduleKind
    schedule_value: str
    next_run: datetime | None
    status: TaskStatus = TaskStatus.ACTIVE
    last_run: datetime | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_heartbeat: bool = False
