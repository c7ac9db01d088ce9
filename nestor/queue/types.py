"""Queue entry types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import uuid4

from nestor.core.types import InboundMessage


class EntryKind(str, Enum):
    """What produced a queue entry."""

    MESSAGE = "message"
    TASK = "task"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class QueueEntry:
    """One unit of work waiting for a group's session.

    Attributes:
        group_id: Target group.
        payload: Prompt text handed to the session.
        kind: message, task or heartbeat.
        enqueued_at: When the entry was accepted.
        task_id: Originating scheduled task, if any.
        message: Originating inbound message, if any (used as the cursor).
        entry_id: Unique id for logging.
    """

    group_id: str
    payload: str
    kind: EntryKind
    enqueued_at: datetime
    task_id: str | None = None
    message: InboundMessage | None = None
    entry_id: str = field(default_factory=lambda: uuid4().hex[:12])

    @property
    def is_scheduled(self) -> bool:
        return self.kind is not EntryKind.MESSAGE
