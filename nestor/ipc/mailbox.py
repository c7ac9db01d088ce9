"""Per-group IPC mailbox directories.

Layout under <data_dir>/ipc/<folder>/:
    input/      host -> session messages (session consumes and deletes)
    tasks/      session -> host requests (host consumes)
    processed/  empty marker files named after consumed task files
    errors/     rejected or unparsable task files, kept for inspection
"""

import logging
from datetime import datetime
from pathlib import Path

from nestor.core.secure_io import publish_file, secure_mkdir
from nestor.core.utils import unique_file_stem
from nestor.ipc.protocol import InputMessage, encode_input

logger = logging.getLogger(__name__)


def is_candidate_file(path: Path) -> bool:
    """Whether a directory entry is a finished mailbox file.

    Hidden files, *.tmp and editor backups (*~) are in-flight or foreign.
    """
    name = path.name
    if name.startswith(".") or name.endswith(".tmp") or name.endswith("~"):
        return False
    return name.endswith(".json")


class GroupMailbox:
    """Filesystem mailbox shared by the host and one group's session."""

    def __init__(self, ipc_root: Path, folder: str) -> None:
        self.folder = folder
        self.root = ipc_root / folder
        self.input_dir = self.root / "input"
        self.tasks_dir = self.root / "tasks"
        self.processed_dir = self.root / "processed"
        self.errors_dir = self.root / "errors"

    def ensure(self) -> None:
        """Create all mailbox directories (owner-only)."""
        for directory in (self.input_dir, self.tasks_dir, self.processed_dir, self.errors_dir):
            secure_mkdir(directory)

    def write_input(self, message: InputMessage, now: datetime) -> Path:
        """Publish an input file for the session. Write-then-rename.

        Returns:
            Path of the published file.
        """
        secure_mkdir(self.input_dir)
        path = self.input_dir / f"{unique_file_stem(now)}.json"
        publish_file(path, encode_input(message))
        logger.debug("Wrote %s input %s for %s", message.type, path.name, self.folder)
        return path

    def pending_task_files(self) -> list[Path]:
        """Finished task files, oldest name first."""
        if not self.tasks_dir.is_dir():
            return []
        return sorted(
            (p for p in self.tasks_dir.iterdir() if p.is_file() and is_candidate_file(p)),
            key=lambda p: p.name,
        )

    def pending_input_files(self) -> list[Path]:
        if not self.input_dir.is_dir():
            return []
        return sorted(p for p in self.input_dir.iterdir() if is_candidate_file(p))

    def is_processed(self, name: str) -> bool:
        return (self.processed_dir / name).exists()

    def prune_processed(self, older_than: float) -> int:
        """Delete processed markers last touched before older_than (epoch seconds).

        A marker is kept while its task file is still in tasks/.

        Returns:
            Number of markers removed.
        """
        if not self.processed_dir.is_dir():
            return 0
        removed = 0
        for marker in self.processed_dir.iterdir():
            if (self.tasks_dir / marker.name).exists():
                continue
            try:
                if marker.stat().st_mtime < older_than:
                    marker.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        return removed

    def mark_processed(self, path: Path) -> None:
        """Record a consumed task file and remove it from tasks/."""
        secure_mkdir(self.processed_dir)
        (self.processed_dir / path.name).touch()
        path.unlink(missing_ok=True)

    def reject(self, path: Path, reason: str) -> None:
        """Move a task file to errors/ with a sidecar explaining why."""
        secure_mkdir(self.errors_dir)
        target = self.errors_dir / path.name
        try:
            path.replace(target)
        except FileNotFoundError:
            return
        publish_file(target.with_suffix(".error.txt"), reason + "\n")

    def clear_input(self) -> int:
        """Remove unconsumed input files left by a previous session."""
        removed = 0
        for path in self.pending_input_files():
            path.unlink(missing_ok=True)
            removed += 1
        return removed
