"""Agent session lifecycle: state machine, runtime launcher and manager."""

from nestor.session.manager import SessionLifecycleManager
from nestor.session.runtime import AgentRuntime, RuntimeProcess, SpawnRequest, SubprocessRuntime
from nestor.session.types import Session, SessionOutput, SessionState, TerminationReason

__all__ = [
    "AgentRuntime",
    "RuntimeProcess",
    "Session",
    "SessionLifecycleManager",
    "SessionOutput",
    "SessionState",
    "SpawnRequest",
    "SubprocessRuntime",
    "TerminationReason",
]
