"""Core types, errors and host primitives."""

from nestor.core.cancel import CancellationToken
from nestor.core.clock import Clock, ManualClock, SystemClock
from nestor.core.errors import (
    ConfigError,
    IpcAuthorizationError,
    IpcProtocolError,
    MountSecurityError,
    NestorError,
    SessionError,
)
from nestor.core.types import AdditionalMount, Group, InboundMessage

__all__ = [
    "CancellationToken",
    "Clock",
    "ManualClock",
    "SystemClock",
    "NestorError",
    "ConfigError",
    "MountSecurityError",
    "IpcProtocolError",
    "IpcAuthorizationError",
    "SessionError",
    "AdditionalMount",
    "Group",
    "InboundMessage",
]
