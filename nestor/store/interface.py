"""Persistent store interface consumed by the orchestration core.

The queue, session manager and scheduler only depend on this Protocol. The
SQLite implementation in nestor.store.sqlite is what the host wires in; tests
may substitute anything structurally compatible.

All methods are synchronous and potentially blocking. Async callers run them
through asyncio.to_thread().
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from nestor.core.types import Group
from nestor.scheduler.types import ScheduledTask


class ContactStatus(str, Enum):
    """Disposition of a contact that asked to talk to the assistant."""

    APPROVED = "approved"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class SessionCheckpoint:
    """Durable state written when a session ends.

    Attributes:
        group_id: Owning group.
        cursor: Id of the last inbound message delivered to the runtime.
        continuity: Runtime-issued session id used to resume the conversation.
        updated_at: When the checkpoint was written.
    """

    group_id: str
    cursor: str | None
    continuity: str | None
    updated_at: datetime


class Store(Protocol):
    """Persistence operations used by the host."""

    # === Groups ===

    def upsert_group(self, group: Group) -> None: ...

    def get_groups(self) -> list[Group]: ...

    # === Scheduled tasks ===

    def create_task(self, task: ScheduledTask) -> None: ...

    def get_task(self, task_id: str) -> ScheduledTask | None: ...

    def list_tasks(self, group_id: str | None = None) -> list[ScheduledTask]: ...

    def get_due_tasks(self, now: datetime) -> list[ScheduledTask]: ...

    def update_task(self, task: ScheduledTask) -> None: ...

    # === Session checkpoints ===

    def save_checkpoint(self, checkpoint: SessionCheckpoint) -> None: ...

    def get_checkpoint(self, group_id: str) -> SessionCheckpoint | None: ...

    # === Contacts ===

    def set_contact_status(self, contact_id: str, status: ContactStatus) -> None: ...

    def get_contact_status(self, contact_id: str) -> ContactStatus | None: ...

    def close(self) -> None: ...
