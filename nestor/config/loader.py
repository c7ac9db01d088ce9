"""Configuration loading with fail-fast behavior and layered merging.

Host config merges two layers (global ~/.nestor/config.json, then the
project's ./.nestor/config.json) and then applies NESTOR_* environment
overrides. The mount allowlist is loaded separately and on every session
spawn, so edits take effect without a restart.
"""

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from nestor.config.load_utils import read_json_object
from nestor.config.schema import Config, MountAllowlist
from nestor.core.constants import NESTOR_DIR_NAME, get_nestor_dir
from nestor.core.errors import ConfigError, LoadError
from nestor.core.utils import deep_merge

logger = logging.getLogger(__name__)

# Environment variable -> (section, key) in the merged config dict
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "NESTOR_ASSISTANT_NAME": (None, "assistant_name"),
    "NESTOR_MAX_CONCURRENT_SESSIONS": ("queue", "max_concurrent_sessions"),
    "NESTOR_IDLE_TIMEOUT": ("session", "idle_timeout"),
    "NESTOR_SESSION_TIMEOUT": ("session", "hard_timeout"),
    "NESTOR_MAX_OUTPUT_BYTES": ("session", "max_output_bytes"),
    "NESTOR_TIMEZONE": ("scheduler", "timezone"),
    "NESTOR_RUNTIME_IMAGE": ("runtime", "image"),
}


def load_config(path: Path | None = None, cwd: Path | None = None) -> Config:
    """Load host configuration.

    Args:
        path: Explicit config file path. If provided, skips layered loading
            (environment overrides still apply).
        cwd: Working directory for the local layer. Defaults to Path.cwd().

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If any config file contains invalid JSON or the merged
            config fails validation.
    """
    merged: dict[str, Any] = {}
    loaded_from: list[Path] = []

    if path is not None:
        layers = [path]
    else:
        effective_cwd = cwd or Path.cwd()
        layers = [
            get_nestor_dir() / "config.json",
            effective_cwd / NESTOR_DIR_NAME / "config.json",
        ]

    for layer in layers:
        try:
            if path is not None:
                data = read_json_object(layer, "config")
            else:
                data = read_json_object(layer, "config", missing_ok=True)
        except LoadError as e:
            raise ConfigError(e.message) from e
        if data:
            merged = deep_merge(merged, data)
            loaded_from.append(layer)

    merged = apply_env_overrides(merged, os.environ)

    if loaded_from:
        logger.info("Config loaded from: %s", [str(p) for p in loaded_from])
    else:
        logger.debug("No config files found, using defaults")

    try:
        return Config.model_validate(merged)
    except ValidationError as e:
        sources = ", ".join(str(p) for p in loaded_from) or "defaults"
        raise ConfigError(f"Config validation failed (merged from {sources}): {e}") from e


def apply_env_overrides(data: dict[str, Any], environ: Any) -> dict[str, Any]:
    """Overlay NESTOR_* environment variables onto a config dict.

    Values are passed through as strings; pydantic coerces them.
    """
    result = dict(data)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if not value:
            continue
        if section is None:
            result[key] = value
        else:
            result = deep_merge(result, {section: {key: value}})
    return result


def load_mount_allowlist(path: Path) -> MountAllowlist | None:
    """Load the mount allowlist, failing closed.

    Called on every session spawn; never cached.

    Returns:
        The parsed allowlist, or None when the file is missing or malformed.
        None means no additional mounts are approved.
    """
    try:
        data = read_json_object(path, "mount allowlist", missing_ok=True)
    except LoadError as e:
        logger.error("Mount allowlist unreadable, denying all additional mounts: %s", e.message)
        return None

    if data is None:
        logger.debug("No mount allowlist at %s, denying all additional mounts", path)
        return None

    try:
        return MountAllowlist.model_validate(data)
    except ValidationError as e:
        logger.error(
            "Mount allowlist %s failed validation, denying all additional mounts: %s", path, e
        )
        return None
