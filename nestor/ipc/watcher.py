"""IPC task watcher.

Polls every registered group's tasks/ directory on the injected clock.
Each finished task file is parsed, authorized against the mailbox it was
found in, dispatched, and recorded as processed. A file name that was
already processed (in memory, or by a marker in processed/) is discarded
without being dispatched again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from enum import Enum
from pathlib import Path

from nestor.config.schema import IpcConfig
from nestor.core.cancel import CancellationToken
from nestor.core.clock import Clock, sleep_unless_cancelled
from nestor.core.errors import IpcAuthorizationError, NestorError
from nestor.core.state import HostState
from nestor.core.types import Group
from nestor.ipc.dispatcher import IpcDispatcher
from nestor.ipc.mailbox import GroupMailbox
from nestor.ipc.protocol import parse_task_file

logger = logging.getLogger(__name__)

# Processed markers are pruned at most this often (clock seconds)
PRUNE_INTERVAL = 3600.0


class FileOutcome(str, Enum):
    """What happened to one task file during a scan."""

    DISPATCHED = "dispatched"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    REJECTED = "rejected"
    FAILED = "failed"


class IpcWatcher:
    """Consumes task files from all group mailboxes."""

    def __init__(
        self,
        state: HostState,
        dispatcher: IpcDispatcher,
        clock: Clock,
        config: IpcConfig,
        ipc_root: Path,
    ) -> None:
        self._state = state
        self._dispatcher = dispatcher
        self._clock = clock
        self._config = config
        self._ipc_root = ipc_root
        self._ledger: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._last_prune: float | None = None

    def _remember(self, folder: str, name: str) -> None:
        self._ledger[(folder, name)] = None
        while len(self._ledger) > self._config.ledger_size:
            self._ledger.popitem(last=False)

    def _seen(self, mailbox: GroupMailbox, name: str) -> bool:
        return (mailbox.folder, name) in self._ledger or mailbox.is_processed(name)

    async def scan_once(self) -> dict[FileOutcome, int]:
        """Process every pending task file once.

        Returns:
            Count of files per outcome.
        """
        counts: dict[FileOutcome, int] = {}
        await self._maybe_prune()
        for group in self._state.list_groups():
            mailbox = GroupMailbox(self._ipc_root, group.folder)
            try:
                paths = await asyncio.to_thread(mailbox.pending_task_files)
            except OSError as e:
                logger.warning("Cannot list tasks for %s: %s", group.folder, e)
                continue
            for path in paths:
                outcome = await self.handle_file(group, mailbox, path)
                counts[outcome] = counts.get(outcome, 0) + 1
        return counts

    async def _maybe_prune(self) -> None:
        now = self._clock.monotonic()
        if self._last_prune is not None and now - self._last_prune < PRUNE_INTERVAL:
            return
        self._last_prune = now
        # Marker mtimes are wall-clock, written by the filesystem
        cutoff = time.time() - self._config.processed_retention
        for group in self._state.list_groups():
            mailbox = GroupMailbox(self._ipc_root, group.folder)
            try:
                removed = await asyncio.to_thread(mailbox.prune_processed, cutoff)
            except OSError as e:
                logger.warning("Cannot prune processed markers for %s: %s", group.folder, e)
                continue
            if removed:
                logger.info("Pruned %d processed markers for %s", removed, group.folder)

    async def handle_file(self, group: Group, mailbox: GroupMailbox, path: Path) -> FileOutcome:
        """Parse, authorize and dispatch one task file."""
        name = path.name
        if self._seen(mailbox, name):
            logger.debug("Discarding already processed task file %s/%s", group.folder, name)
            await asyncio.to_thread(path.unlink, True)
            return FileOutcome.DUPLICATE

        try:
            text, mtime = await asyncio.to_thread(_read_with_mtime, path)
        except FileNotFoundError:
            return FileOutcome.DEFERRED
        except OSError as e:
            logger.warning("Cannot read task file %s: %s", path, e)
            return FileOutcome.DEFERRED

        try:
            envelope = parse_task_file(text, file_id=name)
        except NestorError as e:
            if time.time() - mtime < self._config.settle_seconds:
                # Possibly still being written by a writer that skips rename
                return FileOutcome.DEFERRED
            logger.warning("Rejecting malformed task file %s/%s: %s", group.folder, name, e.message)
            await asyncio.to_thread(mailbox.reject, path, e.message)
            return FileOutcome.REJECTED

        try:
            await self._dispatcher.authorize(group, envelope)
        except IpcAuthorizationError as e:
            logger.warning("Unauthorized task %s/%s: %s", group.folder, name, e.message)
            await self._settle(mailbox, path, e.message)
            return FileOutcome.REJECTED

        try:
            await self._dispatcher.dispatch(group, envelope)
        except NestorError as e:
            logger.error(
                "Task %s from %s failed: %s", envelope.kind.value, group.group_id, e.message
            )
            await self._settle(mailbox, path, e.message)
            return FileOutcome.FAILED
        except Exception as e:
            # Host callbacks and filesystem writes can fail in ways the protocol does not name
            logger.exception("Task %s from %s crashed", envelope.kind.value, group.group_id)
            await self._settle(mailbox, path, f"{type(e).__name__}: {e}")
            return FileOutcome.FAILED

        await self._settle(mailbox, path, None)
        logger.debug("Dispatched %s from %s (%s)", envelope.kind.value, group.group_id, name)
        return FileOutcome.DISPATCHED

    async def _settle(self, mailbox: GroupMailbox, path: Path, error: str | None) -> None:
        """Move a handled file out of tasks/ and remember it.

        The name is remembered only once the file has been dispatched or
        rejected, so a file is never discarded as a duplicate before it ran.
        If the move itself fails, the in-memory ledger still stops a rerun.
        """
        try:
            if error is None:
                await asyncio.to_thread(mailbox.mark_processed, path)
            else:
                await asyncio.to_thread(mailbox.reject, path, error)
        except OSError as e:
            logger.error("Could not retire task file %s/%s: %s", mailbox.folder, path.name, e)
        self._remember(mailbox.folder, path.name)

    async def run(self, token: CancellationToken) -> None:
        """Scan every poll_interval until the token is cancelled."""
        logger.info("IPC watcher started on %s", self._ipc_root)
        while not token.is_cancelled:
            try:
                await self.scan_once()
            except Exception:
                logger.exception("IPC scan failed")
            if not await sleep_unless_cancelled(self._clock, self._config.poll_interval, token):
                break
        logger.info("IPC watcher stopped")


def _read_with_mtime(path: Path) -> tuple[str, float]:
    mtime = path.stat().st_mtime
    return path.read_text(encoding="utf-8"), mtime
