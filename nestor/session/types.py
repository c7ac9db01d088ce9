"""Session state machine and per-session bookkeeping."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from nestor.core.errors import SessionStateError

if TYPE_CHECKING:
    from nestor.core.clock import TimerHandle
    from nestor.ipc.mailbox import GroupMailbox
    from nestor.session.runtime import RuntimeProcess


class SessionState(str, Enum):
    """Lifecycle states of an agent session."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"
    KILLED = "killed"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in _FINAL_STATES

    @property
    def is_live(self) -> bool:
        return self not in _FINAL_STATES


_FINAL_STATES = frozenset({SessionState.TERMINATED, SessionState.KILLED, SessionState.FAILED})

ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.PENDING: frozenset({SessionState.STARTING, SessionState.FAILED}),
    SessionState.STARTING: frozenset({SessionState.RUNNING, SessionState.FAILED}),
    SessionState.RUNNING: frozenset({SessionState.DRAINING}),
    SessionState.DRAINING: frozenset(
        {SessionState.TERMINATED, SessionState.KILLED, SessionState.FAILED}
    ),
    SessionState.TERMINATED: frozenset(),
    SessionState.KILLED: frozenset(),
    SessionState.FAILED: frozenset(),
}


class TerminationReason(str, Enum):
    """Why the host ended a session. A session that exits on its own has none."""

    IDLE_TIMEOUT = "idle-timeout"
    HARD_TIMEOUT = "hard-timeout"
    OUTPUT_CAP = "output-cap"
    SHUTDOWN = "shutdown"
    DRAINED = "drained"


@dataclass(frozen=True)
class SessionOutput:
    """One framed result emitted by the runtime on stdout.

    Attributes:
        status: "success" or "error".
        result: Text for the group, or None for a silent turn.
        new_session_id: Continuity marker to resume the conversation later.
    """

    status: str
    result: str | None
    new_session_id: str | None = None


@dataclass
class Session:
    """A live (or just-ended) agent session for one group.

    Only the SessionLifecycleManager mutates a Session; everyone else reads.
    """

    group_id: str
    folder: str
    name: str
    mailbox: GroupMailbox
    started_at: datetime
    is_scheduled: bool = False
    task_id: str | None = None
    state: SessionState = SessionState.PENDING
    termination_reason: TerminationReason | None = None
    process: RuntimeProcess | None = None
    last_activity: float = 0.0
    output_bytes: int = 0
    exit_code: int | None = None
    idle_timer: TimerHandle | None = None
    hard_timer: TimerHandle | None = None
    kill_timer: TimerHandle | None = None
    continuity: str | None = None
    cursor: str | None = None
    error: str | None = None
    reply_tags: deque[str | None] = field(default_factory=deque)
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=50))
    terminated: asyncio.Event = field(default_factory=asyncio.Event)

    def transition(self, new_state: SessionState) -> None:
        """Move to new_state.

        Raises:
            SessionStateError: If the transition is not allowed.
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise SessionStateError(
                f"Illegal session transition for {self.group_id}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def expect_reply(self, task_id: str | None) -> None:
        """Record that one more input awaits a reply; task_id tags scheduled input."""
        self.reply_tags.append(task_id)

    def reply_task_id(self) -> str | None:
        """Task id of the input the next framed result answers.

        The runtime answers inputs in order. Frames beyond the tracked
        inputs belong to the input that started the session.
        """
        if self.reply_tags:
            return self.reply_tags.popleft()
        return self.task_id

    def cancel_timers(self) -> None:
        for timer in (self.idle_timer, self.hard_timer, self.kill_timer):
            if timer is not None:
                timer.cancel()
        self.idle_timer = None
        self.hard_timer = None
        self.kill_timer = None

    def final_state(self) -> SessionState:
        """Final state implied by the termination reason and exit code."""
        if self.termination_reason is not None:
            return SessionState.KILLED
        if self.exit_code not in (0, None) or self.error is not None:
            return SessionState.FAILED
        return SessionState.TERMINATED
