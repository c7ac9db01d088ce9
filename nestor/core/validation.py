"""Validation of identifiers that become host paths."""

import re

from nestor.core.errors import GroupError

# One path segment: no separators, no dot-files, no traversal
FOLDER_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]{0,63}")


def validate_folder(folder: str) -> str:
    """Validate a group folder name.

    The name is joined under the groups and IPC directories, so it must be
    a single plain segment: 1-64 characters of letters, digits, underscore
    or hyphen, starting with a letter or digit.

    Valid examples: "main", "family", "work_2026"
    Invalid examples: "../etc", "a/b", ".hidden", "", "C:"

    Returns:
        The folder name, unchanged.

    Raises:
        GroupError: If the name is not a safe single segment.
    """
    if not isinstance(folder, str) or not FOLDER_PATTERN.fullmatch(folder):
        raise GroupError(
            f"Invalid group folder {folder!r}: use 1-64 letters, digits, '_' or '-', "
            "starting with a letter or digit"
        )
    return folder
