"""Task scheduler.

Polls the store for due tasks on the injected clock and enqueues each one
for its group. A fired task's next_run is computed and persisted in the
same tick, before the next poll, which gives at-least-once delivery: a
crash between enqueue and persist can repeat one run, never lose one.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Protocol
from uuid import uuid4
from zoneinfo import ZoneInfo

from nestor.config.schema import SchedulerConfig
from nestor.core.cancel import CancellationToken
from nestor.core.clock import Clock, sleep_unless_cancelled
from nestor.core.errors import ScheduleError, StoreError
from nestor.queue.types import EntryKind
from nestor.scheduler.schedule import advance, first_run, parse_kind, validate_schedule
from nestor.scheduler.types import ScheduledTask, ScheduleKind, TaskStatus
from nestor.store.interface import Store

logger = logging.getLogger(__name__)


class TaskSink(Protocol):
    """Where due tasks are sent (the group queue)."""

    def enqueue(
        self,
        group_id: str,
        payload: str,
        *,
        kind: EntryKind = ...,
        task_id: str | None = ...,
    ) -> bool: ...


class TaskScheduler:
    """Fires scheduled tasks into the group queue."""

    def __init__(
        self,
        store: Store,
        sink: TaskSink,
        clock: Clock,
        config: SchedulerConfig,
    ) -> None:
        self._store = store
        self._sink = sink
        self._clock = clock
        self._config = config
        self._tz = ZoneInfo(config.timezone)
        # Serializes ticks with task management so a status change is never overwritten
        self._lock = asyncio.Lock()

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    # === Task management ===

    async def add_task(
        self,
        group_id: str,
        prompt: str,
        kind: ScheduleKind | str,
        value: str,
        *,
        task_id: str | None = None,
        is_heartbeat: bool = False,
    ) -> ScheduledTask:
        """Create a task.

        An invalid schedule does not raise: the task is stored paused with
        last_error set so the failure is visible in task listings.

        Raises:
            ScheduleError: If the schedule kind itself is unknown.
        """
        kind = parse_kind(kind) if isinstance(kind, str) else kind
        now = self._clock.now()
        task = ScheduledTask(
            id=task_id or f"task-{uuid4().hex[:12]}",
            group_id=group_id,
            prompt=prompt,
            schedule_kind=kind,
            schedule_value=value,
            next_run=None,
            created_at=now,
            is_heartbeat=is_heartbeat,
        )
        try:
            validate_schedule(kind, value)
            task.next_run = first_run(kind, value, now, self._tz)
        except ScheduleError as e:
            self._disable(task, e)
        async with self._lock:
            await asyncio.to_thread(self._store.create_task, task)
        logger.info(
            "Scheduled task %s for %s (%s %s, next %s)",
            task.id,
            group_id,
            kind.value,
            value,
            task.next_run.isoformat() if task.next_run else "-",
        )
        return task

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        return await asyncio.to_thread(self._store.get_task, task_id)

    async def list_tasks(self, group_id: str | None = None) -> list[ScheduledTask]:
        return await asyncio.to_thread(self._store.list_tasks, group_id)

    async def pause_task(self, task_id: str) -> ScheduledTask:
        async with self._lock:
            task = await self._require(task_id)
            if task.status is TaskStatus.ACTIVE:
                task.status = TaskStatus.PAUSED
                await asyncio.to_thread(self._store.update_task, task)
                logger.info("Paused task %s", task_id)
            return task

    async def resume_task(self, task_id: str) -> ScheduledTask:
        """Reactivate a paused task, recomputing next_run from now."""
        async with self._lock:
            return await self._resume(task_id)

    async def _resume(self, task_id: str) -> ScheduledTask:
        task = await self._require(task_id)
        if task.status is not TaskStatus.PAUSED:
            return task
        try:
            validate_schedule(task.schedule_kind, task.schedule_value)
            task.next_run = first_run(
                task.schedule_kind, task.schedule_value, self._clock.now(), self._tz
            )
        except ScheduleError as e:
            task.last_error = e.message
            await asyncio.to_thread(self._store.update_task, task)
            raise
        task.status = TaskStatus.ACTIVE
        task.last_error = None
        await asyncio.to_thread(self._store.update_task, task)
        logger.info("Resumed task %s (next %s)", task_id, task.next_run.isoformat())
        return task

    async def cancel_task(self, task_id: str) -> ScheduledTask:
        """Finish a task permanently. It stays in the store with status done."""
        async with self._lock:
            task = await self._require(task_id)
            task.status = TaskStatus.DONE
            task.next_run = None
            await asyncio.to_thread(self._store.update_task, task)
            logger.info("Cancelled task %s", task_id)
            return task

    async def _require(self, task_id: str) -> ScheduledTask:
        task = await self.get_task(task_id)
        if task is None:
            raise ScheduleError(f"Unknown task: {task_id}")
        return task

    # === Ticking ===

    async def tick(self) -> list[str]:
        """Fire every active task whose next_run is due.

        Returns:
            Ids of tasks that were enqueued.
        """
        async with self._lock:
            now = self._clock.now()
            try:
                due = await asyncio.to_thread(self._store.get_due_tasks, now)
            except StoreError as e:
                logger.error("Scheduler could not read due tasks: %s", e)
                return []

            fired: list[str] = []
            for task in due:
                try:
                    validate_schedule(task.schedule_kind, task.schedule_value)
                except ScheduleError as e:
                    self._disable(task, e)
                    await self._persist(task)
                    continue
                if not self._fire(task):
                    # Queue closed: leave next_run alone so the run survives a restart
                    break
                fired.append(task.id)
                self._reschedule(task, now)
                await self._persist(task)
            return fired

    async def _persist(self, task: ScheduledTask) -> None:
        try:
            await asyncio.to_thread(self._store.update_task, task)
        except StoreError as e:
            logger.error("Failed to persist task %s: %s", task.id, e)

    def _fire(self, task: ScheduledTask) -> bool:
        kind = EntryKind.HEARTBEAT if task.is_heartbeat else EntryKind.TASK
        accepted = self._sink.enqueue(task.group_id, task.prompt, kind=kind, task_id=task.id)
        if accepted:
            logger.info("Fired task %s for %s", task.id, task.group_id)
        return accepted

    def _reschedule(self, task: ScheduledTask, now: datetime) -> None:
        task.last_run = now
        previous = task.next_run or now
        try:
            task.next_run = advance(
                task.schedule_kind, task.schedule_value, previous, now, self._tz
            )
        except ScheduleError as e:
            self._disable(task, e)
            return
        if task.next_run is None:
            task.status = TaskStatus.DONE

    def _disable(self, task: ScheduledTask, error: ScheduleError) -> None:
        task.status = TaskStatus.PAUSED
        task.next_run = None
        task.last_error = error.message
        logger.error("Task %s disabled: %s", task.id, error.message)

    async def run(self, token: CancellationToken) -> None:
        """Tick every poll_interval until the token is cancelled."""
        logger.info(
            "Scheduler started (poll every %ss, timezone %s)",
            self._config.poll_interval,
            self._config.timezone,
        )
        while not token.is_cancelled:
            await self.tick()
            if not await sleep_unless_cancelled(self._clock, self._config.poll_interval, token):
                break
        logger.info("Scheduler stopped")

    async def flush(self) -> None:
        """Wait for an in-flight tick to finish persisting."""
        async with self._lock:
            pass
