"""Configuration loading and validation."""

from nestor.config.loader import apply_env_overrides, load_config, load_mount_allowlist
from nestor.config.schema import (
    AllowedRoot,
    Config,
    GroupConfig,
    MountAllowlist,
    SessionConfig,
)

__all__ = [
    "AllowedRoot",
    "Config",
    "GroupConfig",
    "MountAllowlist",
    "SessionConfig",
    "apply_env_overrides",
    "load_config",
    "load_mount_allowlist",
]
