"""Task and heartbeat scheduling."""

from nestor.scheduler.types import ScheduledTask, ScheduleKind, TaskStatus

__all__ = ["ScheduleKind", "ScheduledTask", "TaskStatus"]
