"""Core types for nestor.

Groups, their mount requests, and the normalized inbound message that channel
adapters hand to the host. All dataclasses are frozen for immutability.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class AdditionalMount:
    """A host directory a group asks to see inside its session.

    Attributes:
        host_path: Path on the host (may use ~).
        container_path: Relative path under the extra-mount root. Defaults to
            the basename of host_path.
        readonly: Requested access. The validator may tighten it, never loosen it.
    """

    host_path: str
    container_path: str | None = None
    readonly: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostPath": self.host_path,
            "containerPath": self.container_path,
            "readonly": self.readonly,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdditionalMount":
        return cls(
            host_path=data["hostPath"],
            container_path=data.get("containerPath"),
            readonly=data.get("readonly", True),
        )


@dataclass(frozen=True)
class Group:
    """A conversational context with its own workspace folder and session history.

    Attributes:
        group_id: Channel-qualified identifier (e.g. "wa:1203@g.us").
        name: Display name.
        folder: Workspace folder name under the groups directory.
        requires_trigger: Only messages addressed to the assistant wake it.
        additional_mounts: Extra host directories requested for the session.
        added_at: When the group was registered.
        is_main: The operator's own group, with administrative rights over IPC.
    """

    group_id: str
    name: str
    folder: str
    requires_trigger: bool = True
    additional_mounts: tuple[AdditionalMount, ...] = ()
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_main: bool = False

    def with_main_flag(self, main_folder: str) -> "Group":
        return replace(self, is_main=self.folder == main_folder)


@dataclass(frozen=True)
class InboundMessage:
    """A message received by a channel adapter, already normalized.

    Attributes:
        group_id: Group identifier in nestor's namespace.
        sender: Display name or address of the sender.
        text: Message body.
        timestamp: When the channel received it.
        message_id: Channel-native id, used as the processing cursor.
    """

    group_id: str
    sender: str
    text: str
    timestamp: datetime
    message_id: str | None = None
