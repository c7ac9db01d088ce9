"""File-based IPC between the host and agent sessions."""

from nestor.ipc.mailbox import GroupMailbox
from nestor.ipc.protocol import (
    InputMessage,
    TaskEnvelope,
    TaskKind,
    encode_input,
    parse_task_file,
)

__all__ = [
    "GroupMailbox",
    "InputMessage",
    "TaskEnvelope",
    "TaskKind",
    "encode_input",
    "parse_task_file",
]
