"""Collaboration folder watcher.

Shared folders (a synced drive, a folder a colleague drops files into) can
wake a group when their contents change. Folders are polled: each scan
takes a (mtime_ns, size) snapshot of every visible file, diffs it against
the previous one and enqueues at most one wake per group listing the
changes. The first scan only records the baseline.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from nestor.core.cancel import CancellationToken
from nestor.core.clock import Clock, sleep_unless_cancelled
from nestor.queue.types import EntryKind
from nestor.scheduler.scheduler import TaskSink

logger = logging.getLogger(__name__)

# Cap on paths listed in one wake prompt
MAX_LISTED_CHANGES = 20

Snapshot = dict[str, tuple[int, int]]


@dataclass(frozen=True)
class WatchedFolder:
    path: Path
    group_id: str


@dataclass(frozen=True)
class FileChange:
    path: str
    event: str  # created, modified or deleted


def _is_ignored(name: str) -> bool:
    return name.startswith(".") or name.endswith("~") or name.endswith(".tmp")


def snapshot_folder(root: Path) -> Snapshot:
    """Map every visible file below root to (mtime_ns, size). Hidden dirs are skipped."""
    snapshot: Snapshot = {}
    if not root.is_dir():
        return snapshot
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        for filename in filenames:
            if _is_ignored(filename):
                continue
            full = os.path.join(dirpath, filename)
            try:
                st = os.stat(full)
            except OSError:
                continue
            snapshot[full] = (st.st_mtime_ns, st.st_size)
    return snapshot


def diff_snapshots(before: Snapshot, after: Snapshot) -> list[FileChange]:
    changes: list[FileChange] = []
    for path, stamp in sorted(after.items()):
        if path not in before:
            changes.append(FileChange(path, "created"))
        elif before[path] != stamp:
            changes.append(FileChange(path, "modified"))
    for path in sorted(before.keys() - after.keys()):
        changes.append(FileChange(path, "deleted"))
    return changes


def format_wake_prompt(changes: list[FileChange]) -> str:
    lines = [f"- {c.event}: {c.path}" for c in changes[:MAX_LISTED_CHANGES]]
    if len(changes) > MAX_LISTED_CHANGES:
        lines.append(f"- ... and {len(changes) - MAX_LISTED_CHANGES} more")
    return (
        "Files changed in a collaboration folder you watch:\n"
        + "\n".join(lines)
        + "\n\nReview the changes and act on them if needed."
    )


class CollaborationWatcher:
    """Polls shared folders and wakes their groups on change."""

    def __init__(
        self,
        folders: list[WatchedFolder],
        sink: TaskSink,
        clock: Clock,
        poll_interval: float = 5.0,
    ) -> None:
        self._folders = [f for f in folders if f.path.expanduser().is_dir()]
        for missing in set(folders) - set(self._folders):
            logger.warning("Collaboration folder %s does not exist, not watching", missing.path)
        self._sink = sink
        self._clock = clock
        self._poll_interval = poll_interval
        self._snapshots: dict[Path, Snapshot] | None = None

    @property
    def watched(self) -> list[WatchedFolder]:
        return list(self._folders)

    async def scan_once(self) -> dict[str, list[FileChange]]:
        """Diff every folder and enqueue one wake per group that saw changes.

        Returns:
            Changes per group id (empty on the baseline scan).
        """
        current: dict[Path, Snapshot] = {}
        for folder in self._folders:
            current[folder.path] = await asyncio.to_thread(
                snapshot_folder, folder.path.expanduser()
            )

        previous = self._snapshots
        self._snapshots = current
        if previous is None:
            return {}

        by_group: dict[str, list[FileChange]] = {}
        for folder in self._folders:
            changes = diff_snapshots(previous.get(folder.path, {}), current[folder.path])
            if changes:
                by_group.setdefault(folder.group_id, []).extend(changes)

        for group_id, changes in by_group.items():
            logger.info("%d collaboration changes for %s", len(changes), group_id)
            self._sink.enqueue(group_id, format_wake_prompt(changes), kind=EntryKind.TASK)
        return by_group

    async def run(self, token: CancellationToken) -> None:
        if not self._folders:
            logger.debug("No collaboration folders to watch")
            return
        logger.info("Watching %d collaboration folders", len(self._folders))
        while not token.is_cancelled:
            try:
                await self.scan_once()
            except OSError as e:
                logger.warning("Collaboration scan failed: %s", e)
            if not await sleep_unless_cancelled(self._clock, self._poll_interval, token):
                break
