"""Per-group FIFO queue with a global session cap."""

from nestor.queue.group_queue import GroupQueue
from nestor.queue.types import EntryKind, QueueEntry

__all__ = ["EntryKind", "GroupQueue", "QueueEntry"]
