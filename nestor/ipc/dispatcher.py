"""Authorization and dispatch of session task requests.

The mailbox a task file was found in identifies the issuing group; that is
the only identity trusted. The envelope's sourceGroupId must agree with it.

Authorization rules:
    - approve_contact, deny_contact, register_group: main group only
    - send_message / schedule_task targeting another group: main only
    - list_query for groups: main only
    - pause/resume/cancel of another group's task: main only
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, assert_never

from nestor.core.clock import Clock
from nestor.core.errors import IpcAuthorizationError, IpcProtocolError
from nestor.core.state import HostState
from nestor.core.types import Group
from nestor.ipc.mailbox import GroupMailbox
from nestor.ipc.protocol import (
    MAIN_ONLY_KINDS,
    ApproveContact,
    CancelTask,
    DenyContact,
    ListQuery,
    PauseTask,
    RegisterGroup,
    ResumeTask,
    ScheduleTask,
    SendMessage,
    TaskEnvelope,
    snapshot_input,
)
from nestor.scheduler.scheduler import TaskScheduler
from nestor.scheduler.types import ScheduledTask
from nestor.store.interface import ContactStatus, Store

logger = logging.getLogger(__name__)

SendCallback = Callable[[str, str], Awaitable[None]]
RegisterCallback = Callable[[Group], Awaitable[Group]]


def _task_summary(task: ScheduledTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "groupId": task.group_id,
        "prompt": task.prompt,
        "scheduleType": task.schedule_kind.value,
        "scheduleValue": task.schedule_value,
        "status": task.status.value,
        "nextRun": task.next_run.isoformat() if task.next_run else None,
        "lastRun": task.last_run.isoformat() if task.last_run else None,
        "lastError": task.last_error,
    }


def _group_summary(group: Group) -> dict[str, Any]:
    return {
        "groupId": group.group_id,
        "name": group.name,
        "folder": group.folder,
        "requiresTrigger": group.requires_trigger,
        "isMain": group.is_main,
    }


class IpcDispatcher:
    """Checks and executes task requests on behalf of a group."""

    def __init__(
        self,
        state: HostState,
        store: Store,
        scheduler: TaskScheduler,
        clock: Clock,
        ipc_root: Path,
        *,
        send_message: SendCallback,
        register_group: RegisterCallback,
    ) -> None:
        self._state = state
        self._store = store
        self._scheduler = scheduler
        self._clock = clock
        self._ipc_root = ipc_root
        self._send_message = send_message
        self._register_group = register_group

    async def authorize(self, group: Group, envelope: TaskEnvelope) -> None:
        """Raise IpcAuthorizationError unless the group may issue this request."""
        kind = envelope.kind.value
        if envelope.source_group_id != group.group_id:
            raise IpcAuthorizationError(
                group.group_id,
                kind,
                f"sourceGroupId {envelope.source_group_id!r} does not match the mailbox",
            )
        if group.is_main:
            return
        if envelope.kind in MAIN_ONLY_KINDS:
            raise IpcAuthorizationError(group.group_id, kind, "main group only")

        payload = envelope.payload
        match payload:
            case SendMessage(target_group_id=target) | ScheduleTask(target_group_id=target):
                if target is not None and target != group.group_id:
                    raise IpcAuthorizationError(
                        group.group_id, kind, f"cannot target another group ({target})"
                    )
            case ListQuery(what="groups"):
                raise IpcAuthorizationError(group.group_id, kind, "group listing is main only")
            case PauseTask(task_id=task_id) | ResumeTask(task_id=task_id) | CancelTask(
                task_id=task_id
            ):
                task = await self._scheduler.get_task(task_id)
                if task is not None and task.group_id != group.group_id:
                    raise IpcAuthorizationError(
                        group.group_id, kind, f"task {task_id} belongs to another group"
                    )
            case _:
                pass

    async def dispatch(self, group: Group, envelope: TaskEnvelope) -> None:
        """Execute an authorized request.

        Raises:
            IpcProtocolError: If the request refers to something that does not exist.
            ScheduleError: If a task operation fails.
        """
        payload = envelope.payload
        match payload:
            case SendMessage():
                target = payload.target_group_id or group.group_id
                if self._state.get_group(target) is None:
                    raise IpcProtocolError(f"send_message to unknown group {target}")
                await self._send_message(target, payload.text)
            case ScheduleTask():
                target = payload.target_group_id or group.group_id
                if self._state.get_group(target) is None:
                    raise IpcProtocolError(f"schedule_task for unknown group {target}")
                await self._scheduler.add_task(
                    target, payload.prompt, payload.schedule_kind, payload.schedule_value
                )
            case PauseTask():
                await self._scheduler.pause_task(payload.task_id)
            case ResumeTask():
                await self._scheduler.resume_task(payload.task_id)
            case CancelTask():
                await self._scheduler.cancel_task(payload.task_id)
            case ApproveContact():
                await asyncio.to_thread(
                    self._store.set_contact_status, payload.contact_id, ContactStatus.APPROVED
                )
                logger.info("Contact %s approved by %s", payload.contact_id, group.group_id)
            case DenyContact():
                await asyncio.to_thread(
                    self._store.set_contact_status, payload.contact_id, ContactStatus.BLOCKED
                )
                logger.info("Contact %s blocked by %s", payload.contact_id, group.group_id)
            case RegisterGroup():
                registered = await self._register_group(
                    Group(
                        group_id=payload.group_id,
                        name=payload.name,
                        folder=payload.folder,
                        requires_trigger=payload.requires_trigger,
                        additional_mounts=payload.additional_mounts,
                        added_at=self._clock.now(),
                    )
                )
                logger.info("Group %s registered (folder %s)", registered.group_id, registered.folder)
            case ListQuery():
                await self._answer_query(group, payload)
            case _:
                assert_never(payload)

    async def _answer_query(self, group: Group, query: ListQuery) -> None:
        if query.what == "groups":
            items = [_group_summary(g) for g in self._state.list_groups()]
        else:
            scope = None if group.is_main else group.group_id
            items = [_task_summary(t) for t in await self._scheduler.list_tasks(scope)]
        mailbox = GroupMailbox(self._ipc_root, group.folder)
        await asyncio.to_thread(
            mailbox.write_input, snapshot_input(query.what, items), self._clock.now()
        )
