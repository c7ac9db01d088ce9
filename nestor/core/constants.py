"""Core constants and paths for nestor.

Single source of truth for global paths. The mount allowlist deliberately
lives under ~/.config rather than under the project or groups tree, so no
session mount can ever reach it.
"""

from pathlib import Path

NESTOR_DIR_NAME = ".nestor"

MAIN_GROUP_FOLDER = "main"

# Where approved additional mounts appear inside a session
EXTRA_MOUNT_ROOT = "/workspace/extra"

# Framing of result objects on a session's stdout
OUTPUT_START_MARKER = "---NESTOR_OUTPUT_START---"
OUTPUT_END_MARKER = "---NESTOR_OUTPUT_END---"

HEARTBEAT_SENTINEL = "HEARTBEAT_OK"


def get_nestor_dir() -> Path:
    """Get ~/.nestor (global config directory)."""
    return Path.home() / NESTOR_DIR_NAME


def get_default_config_path() -> Path:
    """Get default config file path."""
    return get_nestor_dir() / "config.json"


def get_default_allowlist_path() -> Path:
    """Get ~/.config/nestor/mount-allowlist.json."""
    return Path.home() / ".config" / "nestor" / "mount-allowlist.json"
