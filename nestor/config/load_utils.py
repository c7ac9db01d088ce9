"""JSON object files: host config layers, the mount allowlist, heartbeat configs.

All three are small operator-edited files, so reads are size-capped and a
file must hold a single JSON object. An empty file counts as ``{}``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from nestor.core.errors import LoadError

logger = logging.getLogger(__name__)

MAX_JSON_FILE_BYTES = 1024 * 1024


def read_json_object(
    path: Path, what: str, *, missing_ok: bool = False
) -> dict[str, Any] | None:
    """Read a JSON object from path.

    Args:
        path: File to read.
        what: Human label used in error messages ("config", "mount allowlist").
        missing_ok: Return None instead of raising when the file is absent.

    Raises:
        LoadError: The file is missing (unless missing_ok), unreadable,
            oversized, not valid JSON, or not a JSON object.
    """
    if not path.is_file():
        if missing_ok:
            logger.debug("No %s file at %s", what, path)
            return None
        raise LoadError(f"{what}: {path} does not exist")

    try:
        size = path.stat().st_size
        if size > MAX_JSON_FILE_BYTES:
            raise LoadError(f"{what}: {path} is {size} bytes, limit is {MAX_JSON_FILE_BYTES}")
        raw = path.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise LoadError(f"{what}: cannot read {path}: {e}") from e

    if not raw.strip():
        return {}

    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise LoadError(f"{what}: {path} is not valid JSON ({e})") from e

    if not isinstance(value, dict):
        raise LoadError(f"{what}: {path} must hold a JSON object, not {type(value).__name__}")

    logger.debug("Loaded %s from %s", what, path)
    return value
