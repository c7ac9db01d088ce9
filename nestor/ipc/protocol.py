"""IPC envelope codec.

Host and session exchange one JSON object per file. Input files flow
host -> session (the session polls its input/ directory); task files flow
session -> host (the host watches every group's tasks/ directory).

Task file wire format:
    {
        "type": "schedule_task",
        "sourceGroupId": "wa:1203@g.us",
        "payload": {"prompt": "...", "scheduleType": "cron", "scheduleValue": "0 9 * * *"},
        "createdAt": "2026-01-05T09:00:00Z"
    }

Task kinds form a closed union. Hyphenated spellings ("schedule-task") are
accepted on decode and normalized.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, assert_never

from nestor.core.errors import GroupError, IpcProtocolError
from nestor.core.types import AdditionalMount
from nestor.core.validation import validate_folder


class TaskKind(str, Enum):
    """Every request a session may make of the host."""

    SEND_MESSAGE = "send_message"
    SCHEDULE_TASK = "schedule_task"
    PAUSE_TASK = "pause_task"
    RESUME_TASK = "resume_task"
    CANCEL_TASK = "cancel_task"
    APPROVE_CONTACT = "approve_contact"
    DENY_CONTACT = "deny_contact"
    REGISTER_GROUP = "register_group"
    LIST_QUERY = "list_query"


# Kinds only the main group may issue, whatever their payload
MAIN_ONLY_KINDS: frozenset[TaskKind] = frozenset(
    {TaskKind.APPROVE_CONTACT, TaskKind.DENY_CONTACT, TaskKind.REGISTER_GROUP}
)


# === Task payload variants ===


@dataclass(frozen=True)
class SendMessage:
    text: str
    target_group_id: str | None = None


@dataclass(frozen=True)
class ScheduleTask:
    prompt: str
    schedule_kind: str
    schedule_value: str
    target_group_id: str | None = None


@dataclass(frozen=True)
class PauseTask:
    task_id: str


@dataclass(frozen=True)
class ResumeTask:
    task_id: str


@dataclass(frozen=True)
class CancelTask:
    task_id: str


@dataclass(frozen=True)
class ApproveContact:
    contact_id: str


@dataclass(frozen=True)
class DenyContact:
    contact_id: str


@dataclass(frozen=True)
class RegisterGroup:
    group_id: str
    name: str
    folder: str
    requires_trigger: bool = True
    additional_mounts: tuple[AdditionalMount, ...] = ()


@dataclass(frozen=True)
class ListQuery:
    what: Literal["tasks", "groups"]


TaskPayload = (
    SendMessage
    | ScheduleTask
    | PauseTask
    | ResumeTask
    | CancelTask
    | ApproveContact
    | DenyContact
    | RegisterGroup
    | ListQuery
)


@dataclass(frozen=True)
class TaskEnvelope:
    """A decoded task file.

    Attributes:
        kind: Task kind.
        source_group_id: Group the session claims to act for. The mailbox
            directory is authoritative; a mismatch is rejected.
        payload: Kind-specific payload.
        created_at: When the session wrote the file, if given.
        file_id: File name, the identity used for idempotent processing.
    """

    kind: TaskKind
    source_group_id: str
    payload: TaskPayload
    created_at: datetime | None = None
    file_id: str = ""


# === Input messages (host -> session) ===


@dataclass(frozen=True)
class InputMessage:
    """A file written into a session's input mailbox.

    Attributes:
        type: "message" (new user content), "close" (finish and exit) or
            "snapshot" (answer to a list_query).
        data: Type-specific fields merged into the JSON object.
    """

    type: Literal["message", "close", "snapshot"]
    data: dict[str, Any] = field(default_factory=dict)


def encode_input(message: InputMessage) -> str:
    """Serialize an input message to the JSON written into input/."""
    body: dict[str, Any] = {"type": message.type}
    body.update(message.data)
    return json.dumps(body, separators=(",", ":"))


def message_input(text: str, **extra: Any) -> InputMessage:
    return InputMessage("message", {"text": text, **extra})


def close_input() -> InputMessage:
    return InputMessage("close")


def snapshot_input(what: str, items: list[dict[str, Any]]) -> InputMessage:
    return InputMessage("snapshot", {"what": what, "items": items})


# === Decoding ===


def normalize_kind(raw: object) -> TaskKind:
    """Map a wire "type" value onto a TaskKind.

    Raises:
        IpcProtocolError: If the value is not a known kind.
    """
    if not isinstance(raw, str):
        raise IpcProtocolError(f"type must be a string, got: {type(raw).__name__}")
    try:
        return TaskKind(raw.strip().lower().replace("-", "_"))
    except ValueError:
        raise IpcProtocolError(f"Unknown task type: {raw!r}") from None


def _require_str(payload: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    raise IpcProtocolError(f"payload.{keys[0]} must be a non-empty string")


def _optional_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise IpcProtocolError(f"payload.{key} must be a string")
        return value
    return None


def _schedule_value(value: object) -> str:
    # Interval values arrive as numbers from some runtimes
    if isinstance(value, bool):
        raise IpcProtocolError("payload.scheduleValue must be a string or number")
    if isinstance(value, (int, float)):
        return str(int(value))
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise IpcProtocolError("payload.scheduleValue must be a non-empty string or number")


def _decode_payload(kind: TaskKind, payload: dict[str, Any]) -> TaskPayload:
    match kind:
        case TaskKind.SEND_MESSAGE:
            return SendMessage(
                text=_require_str(payload, "text"),
                target_group_id=_optional_str(payload, "groupId", "chatJid"),
            )
        case TaskKind.SCHEDULE_TASK:
            return ScheduleTask(
                prompt=_require_str(payload, "prompt"),
                schedule_kind=_require_str(payload, "scheduleType", "scheduleKind"),
                schedule_value=_schedule_value(payload.get("scheduleValue")),
                target_group_id=_optional_str(payload, "groupId", "targetGroupId"),
            )
        case TaskKind.PAUSE_TASK:
            return PauseTask(task_id=_require_str(payload, "taskId"))
        case TaskKind.RESUME_TASK:
            return ResumeTask(task_id=_require_str(payload, "taskId"))
        case TaskKind.CANCEL_TASK:
            return CancelTask(task_id=_require_str(payload, "taskId"))
        case TaskKind.APPROVE_CONTACT:
            return ApproveContact(contact_id=_require_str(payload, "contactId"))
        case TaskKind.DENY_CONTACT:
            return DenyContact(contact_id=_require_str(payload, "contactId"))
        case TaskKind.REGISTER_GROUP:
            mounts_raw = payload.get("additionalMounts") or []
            if not isinstance(mounts_raw, list):
                raise IpcProtocolError("payload.additionalMounts must be a list")
            try:
                mounts = tuple(AdditionalMount.from_dict(m) for m in mounts_raw)
            except (KeyError, TypeError, AttributeError) as e:
                raise IpcProtocolError(f"Invalid additionalMounts entry: {e}") from e
            try:
                folder = validate_folder(_require_str(payload, "folder"))
            except GroupError as e:
                raise IpcProtocolError(f"payload.folder: {e.message}") from e
            return RegisterGroup(
                group_id=_require_str(payload, "groupId"),
                name=_require_str(payload, "name"),
                folder=folder,
                requires_trigger=bool(payload.get("requiresTrigger", True)),
                additional_mounts=mounts,
            )
        case TaskKind.LIST_QUERY:
            what = payload.get("what")
            if what not in ("tasks", "groups"):
                raise IpcProtocolError(f"payload.what must be 'tasks' or 'groups', got: {what!r}")
            return ListQuery(what=what)
    assert_never(kind)


def parse_task_file(text: str, file_id: str = "") -> TaskEnvelope:
    """Parse the contents of a task file.

    Args:
        text: Raw file contents.
        file_id: File name, carried through for idempotence.

    Returns:
        The decoded envelope.

    Raises:
        IpcProtocolError: If the JSON is invalid or fails schema validation.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise IpcProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise IpcProtocolError("Task file must be a JSON object")

    kind = normalize_kind(data.get("type"))

    source = data.get("sourceGroupId")
    if not isinstance(source, str) or not source:
        raise IpcProtocolError("sourceGroupId must be a non-empty string")

    payload = data.get("payload", {})
    if not isinstance(payload, dict):
        raise IpcProtocolError(f"payload must be an object, got: {type(payload).__name__}")

    created_at: datetime | None = None
    created_raw = data.get("createdAt")
    if created_raw is not None:
        if not isinstance(created_raw, str):
            raise IpcProtocolError("createdAt must be an ISO-8601 string")
        try:
            created_at = datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
        except ValueError as e:
            raise IpcProtocolError(f"Invalid createdAt: {e}") from e

    return TaskEnvelope(
        kind=kind,
        source_group_id=source,
        payload=_decode_payload(kind, payload),
        created_at=created_at,
        file_id=file_id,
    )
