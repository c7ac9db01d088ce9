"""Shared utility functions for nestor."""

import re
import secrets
from datetime import datetime
from typing import Any


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dicts. Override values take precedence.

    Lists are REPLACED, not extended, so a local config can clear a list
    such as blockedPatterns or groups set by the global config.

    Args:
        base: Base dictionary.
        override: Dictionary with values to overlay.

    Returns:
        New merged dictionary (original dicts not modified).
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def unique_file_stem(now: datetime) -> str:
    """Sortable, unique file stem: epoch milliseconds plus random hex."""
    return f"{int(now.timestamp() * 1000)}-{secrets.token_hex(4)}"


_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_-]")


def safe_name(value: str) -> str:
    """Reduce an identifier to characters safe for file and container names."""
    return _UNSAFE_NAME.sub("-", value)
