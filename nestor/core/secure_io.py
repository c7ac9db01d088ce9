"""Secure file I/O utilities for nestor.

Mailbox files and store directories hold conversation content, so they are
created owner-only, and every file a reader may pick up is published with a
write-then-rename so a watcher never observes a half-written file.
"""

import os
import stat
import tempfile
from pathlib import Path

# Secure permissions for host directories (owner only)
SECURE_DIR_MODE: int = stat.S_IRWXU  # 0o700

# Secure permissions for host files (owner read/write only)
SECURE_FILE_MODE: int = stat.S_IRUSR | stat.S_IWUSR  # 0o600


def secure_mkdir(path: Path, parents: bool = True) -> None:
    """Create directory with secure permissions (0o700).

    Unlike Path.mkdir(), this ensures the final directory has secure
    permissions even when it already exists.

    Args:
        path: Directory path to create.
        parents: If True, create parent directories as needed.
    """
    if parents:
        for parent in reversed(list(path.parents)):
            if not parent.exists():
                parent.mkdir(mode=SECURE_DIR_MODE, exist_ok=True)

    if not path.exists():
        path.mkdir(mode=SECURE_DIR_MODE, exist_ok=True)

    os.chmod(path, SECURE_DIR_MODE)


def publish_file(path: Path, content: str | bytes) -> None:
    """Atomically publish a file via a hidden temp file and rename.

    The temp file lives in the same directory (same filesystem) and starts
    with a dot and ends with .tmp, both of which mailbox readers skip.

    Args:
        path: Final path of the file.
        content: Content to write (str or bytes).

    Raises:
        OSError: If the file cannot be written.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".tmp")
    try:
        os.fchmod(fd, SECURE_FILE_MODE)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
