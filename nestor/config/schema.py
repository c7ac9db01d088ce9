"""Pydantic models for nestor configuration validation."""

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from nestor.core.constants import MAIN_GROUP_FOLDER, get_default_allowlist_path
from nestor.core.errors import GroupError
from nestor.core.types import AdditionalMount, Group
from nestor.core.validation import validate_folder


def _default_timezone() -> str:
    return os.environ.get("TZ") or "UTC"


class PathsConfig(BaseModel):
    """Filesystem layout of the host.

    Relative paths are resolved against the working directory at startup.
    """

    model_config = ConfigDict(extra="forbid")

    groups_dir: Path = Path("groups")
    """Per-group workspace folders (mounted read-write into the group's session)."""

    data_dir: Path = Path("data")
    """Host-private data: IPC mailboxes live under data_dir/ipc."""

    store_path: Path = Path("store/nestor.db")
    """SQLite database for groups, tasks and session checkpoints."""

    log_dir: Path = Path(".nestor/logs")
    """Directory for host.log."""

    allowlist_path: Path = Field(default_factory=get_default_allowlist_path)
    """Mount allowlist. Must live outside groups_dir and data_dir."""


class RuntimeConfig(BaseModel):
    """How a session's opaque agent runtime is launched.

    The command is executable + args + one mount argument per approved mount
    + image. Placeholders: {name} in args; {host}, {container}, {readonly}
    in mount_arg.
    """

    model_config = ConfigDict(extra="forbid")

    executable: str = "docker"
    args: list[str] = ["run", "-i", "--rm", "--name", "{name}"]
    mount_arg: str = "--mount=type=bind,source={host},target={container}{readonly}"
    image: str = "nestor-agent:latest"
    workspace_mount: str = "/workspace/group"
    """Container path of the group's own folder."""

    ipc_mount: str = "/workspace/ipc"
    """Container path of the group's IPC mailbox."""


class SessionConfig(BaseModel):
    """Session lifetime limits. Durations are in seconds."""

    model_config = ConfigDict(extra="forbid")

    idle_timeout: float = Field(default=300.0, gt=0)
    """Tear a session down after this long without input or output."""

    hard_timeout: float = Field(default=1800.0, gt=0)
    """Absolute maximum session lifetime regardless of activity."""

    max_output_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    """Kill the session once its stdout exceeds this many bytes."""

    shutdown_grace: float = Field(default=10.0, ge=0)
    """How long host shutdown waits for sessions to exit before force-killing."""

    kill_grace: float = Field(default=2.0, ge=0)
    """SIGTERM -> SIGKILL delay when a session is killed."""


class QueueConfig(BaseModel):
    """Global concurrency governor."""

    model_config = ConfigDict(extra="forbid")

    max_concurrent_sessions: int = Field(default=5, ge=1)


class SchedulerConfig(BaseModel):
    """Task scheduler settings."""

    model_config = ConfigDict(extra="forbid")

    poll_interval: float = Field(default=60.0, gt=0)
    timezone: str = Field(default_factory=_default_timezone)
    """IANA timezone in which cron expressions are evaluated."""

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v!r}") from e
        return v


class IpcConfig(BaseModel):
    """IPC mailbox watcher settings."""

    model_config = ConfigDict(extra="forbid")

    poll_interval: float = Field(default=1.0, gt=0)
    settle_seconds: float = Field(default=2.0, ge=0)
    """Unparsable files younger than this are assumed to be still in flight."""

    ledger_size: int = Field(default=10000, ge=1)
    """How many processed file identities are remembered in memory."""

    processed_retention: float = Field(default=7 * 24 * 3600.0, gt=0)
    """Seconds a processed marker is kept before pruning."""


class WebhookChannelConfig(BaseModel):
    """Outbound HTTP webhook channel."""

    model_config = ConfigDict(extra="forbid")

    name: str = "webhook"
    prefix: str = "hook:"
    """Group ids starting with this prefix belong to this channel."""

    url: str
    token_env: str | None = None
    """Environment variable holding a bearer token."""

    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_backoff: float = Field(default=1.5, ge=1.0, le=5.0)


class ChannelsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    webhooks: list[WebhookChannelConfig] = []


class CollaborationWatchConfig(BaseModel):
    """A shared folder whose changes wake a group."""

    model_config = ConfigDict(extra="forbid")

    path: Path
    group_id: str
    poll_interval: float = Field(default=5.0, gt=0)


class MountRequestConfig(BaseModel):
    """An additional mount requested in a group's static registration."""

    model_config = ConfigDict(extra="forbid")

    host_path: str
    container_path: str | None = None
    readonly: bool = True


def _checked_folder(v: str) -> str:
    try:
        return validate_folder(v)
    except GroupError as e:
        raise ValueError(e.message) from e


class GroupConfig(BaseModel):
    """Static group registration."""

    model_config = ConfigDict(extra="forbid")

    group_id: str
    name: str
    folder: str
    requires_trigger: bool = True
    additional_mounts: list[MountRequestConfig] = []

    @field_validator("folder")
    @classmethod
    def validate_folder_name(cls, v: str) -> str:
        return _checked_folder(v)

    def to_group(self, main_folder: str) -> Group:
        return Group(
            group_id=self.group_id,
            name=self.name,
            folder=self.folder,
            requires_trigger=self.requires_trigger and self.folder != main_folder,
            additional_mounts=tuple(
                AdditionalMount(m.host_path, m.container_path, m.readonly)
                for m in self.additional_mounts
            ),
            is_main=self.folder == main_folder,
        )


class Config(BaseModel):
    """Root configuration for the nestor host."""

    model_config = ConfigDict(extra="forbid")

    assistant_name: str = "Nestor"
    """Name that triggers the assistant in groups requiring a trigger (@Nestor)."""

    main_group_folder: str = MAIN_GROUP_FOLDER
    paths: PathsConfig = PathsConfig()
    runtime: RuntimeConfig = RuntimeConfig()
    session: SessionConfig = SessionConfig()
    queue: QueueConfig = QueueConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    ipc: IpcConfig = IpcConfig()
    channels: ChannelsConfig = ChannelsConfig()
    collaboration: list[CollaborationWatchConfig] = []
    groups: list[GroupConfig] = []

    @field_validator("main_group_folder")
    @classmethod
    def validate_main_folder(cls, v: str) -> str:
        return _checked_folder(v)


# === Mount allowlist (separate file, camelCase keys) ===


class AllowedRoot(BaseModel):
    """A host directory tree sessions may mount."""

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    path: str
    allow_read_write: bool = False
    description: str | None = None
    blocked_patterns: list[str] = []


class MountAllowlist(BaseModel):
    """The mount allowlist document.

    Example mount-allowlist.json:
        {
            "allowedRoots": [
                {"path": "~/projects", "allowReadWrite": true},
                {"path": "/data/shared", "allowReadWrite": false,
                 "blockedPatterns": ["private"]}
            ],
            "blockedPatterns": ["secrets"],
            "nonMainReadOnly": true
        }
    """

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    allowed_roots: list[AllowedRoot] = []
    blocked_patterns: list[str] = []
    non_main_read_only: bool = True
