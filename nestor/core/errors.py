"""Typed exception hierarchy for nestor."""

from __future__ import annotations


class NestorError(Exception):
    """Base class for all nestor errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigError(NestorError):
    """Raised for configuration issues (missing file, invalid JSON, validation failure)."""


class LoadError(NestorError):
    """Base class for loading errors (config, allowlist, group files)."""


class MountSecurityError(NestorError):
    """Raised when a requested mount violates the allowlist."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Mount denied for '{path}': {reason}")


class IpcProtocolError(NestorError):
    """Raised when an IPC file cannot be decoded or fails schema validation."""


class IpcAuthorizationError(NestorError):
    """Raised when a session requests a task it is not entitled to."""

    def __init__(self, group_id: str, kind: str, reason: str) -> None:
        self.group_id = group_id
        self.kind = kind
        self.reason = reason
        super().__init__(f"Group '{group_id}' may not run '{kind}': {reason}")


class SessionError(NestorError):
    """Base class for session lifecycle errors."""


class SessionStartError(SessionError):
    """Raised when a session cannot be started (mount denial, spawn failure)."""


class SessionStateError(SessionError):
    """Raised on an illegal session state transition."""


class ScheduleError(NestorError):
    """Raised for invalid schedule expressions or values."""


class StoreError(NestorError):
    """Raised when the persistent store cannot be read or written."""


class ChannelError(NestorError):
    """Raised when a channel adapter cannot deliver a message."""


class GroupError(NestorError):
    """Raised when a group registration is invalid (unsafe folder, folder clash)."""
