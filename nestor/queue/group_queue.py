"""Per-group message queue and global concurrency governor.

Every group gets one worker task that consumes its entries in FIFO order,
so no two entries of a group are ever admitted concurrently and at most one
session per group is live. Across groups there is no ordering; the only
shared resource is the session slot semaphore.

Admission of an entry:
    1. Deliver into the group's running session, if there is one.
    2. Otherwise wait for a draining session of the group to finish.
    3. Acquire a global slot (blocks while the cap is reached) and start a
       session. The slot is held for the whole life of that session and
       returned by the manager's termination callback.

A start failure returns the slot, drops only that entry and reports the
failure to the group; later entries are admitted normally.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable

from nestor.core.clock import Clock
from nestor.core.errors import SessionStartError, SessionStateError
from nestor.core.state import HostState
from nestor.core.types import InboundMessage
from nestor.queue.types import EntryKind, QueueEntry
from nestor.session.manager import SessionLifecycleManager
from nestor.session.types import Session, SessionState, TerminationReason

logger = logging.getLogger(__name__)

FailureCallback = Callable[[QueueEntry, str], Awaitable[None]]


class _GroupLane:
    """Pending entries and the worker that drains them for one group."""

    def __init__(self) -> None:
        self.entries: deque[QueueEntry] = deque()
        self.wakeup = asyncio.Event()
        self.worker: asyncio.Task[None] | None = None
        self.busy = False


class GroupQueue:
    """Serializes work per group and caps concurrent sessions globally."""

    def __init__(
        self,
        state: HostState,
        manager: SessionLifecycleManager,
        clock: Clock,
        *,
        max_concurrent_sessions: int,
        on_failure: FailureCallback | None = None,
    ) -> None:
        self._state = state
        self._manager = manager
        self._clock = clock
        self._on_failure = on_failure
        self._slots = asyncio.Semaphore(max_concurrent_sessions)
        self._slot_holders: set[str] = set()
        self._lanes: dict[str, _GroupLane] = {}
        self._closed = False
        manager.add_termination_listener(self._on_session_terminated)

    def set_failure_callback(self, callback: FailureCallback) -> None:
        self._on_failure = callback

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_slots(self) -> int:
        """Sessions currently holding a slot."""
        return len(self._slot_holders)

    def pending_count(self, group_id: str) -> int:
        lane = self._lanes.get(group_id)
        return len(lane.entries) if lane else 0

    def enqueue(
        self,
        group_id: str,
        payload: str,
        *,
        kind: EntryKind = EntryKind.MESSAGE,
        task_id: str | None = None,
        message: InboundMessage | None = None,
    ) -> bool:
        """Accept work for a group. Never blocks.

        Returns:
            False if the queue is closed (host shutting down) and the entry
            was dropped.
        """
        if self._closed:
            logger.warning("Queue closed, dropping %s entry for %s", kind.value, group_id)
            return False

        entry = QueueEntry(
            group_id=group_id,
            payload=payload,
            kind=kind,
            enqueued_at=self._clock.now(),
            task_id=task_id,
            message=message,
        )
        lane = self._lanes.get(group_id)
        if lane is None:
            lane = self._lanes[group_id] = _GroupLane()
        lane.entries.append(entry)
        lane.wakeup.set()
        if lane.worker is None or lane.worker.done():
            lane.worker = asyncio.create_task(
                self._run_lane(group_id, lane), name=f"queue-{group_id}"
            )
        logger.debug("Enqueued %s %s for %s", kind.value, entry.entry_id, group_id)
        return True

    def drain_if_idle(self, group_id: str) -> bool:
        """Gracefully end a group's running session if nothing is waiting for it.

        Returns:
            True if a drain was requested.
        """
        lane = self._lanes.get(group_id)
        if lane is not None and (lane.entries or lane.busy):
            return False
        session = self._state.live_session(group_id)
        if session is None or session.state is not SessionState.RUNNING:
            return False
        return self._manager.request_drain(group_id, TerminationReason.DRAINED)

    async def _run_lane(self, group_id: str, lane: _GroupLane) -> None:
        while not self._closed:
            if not lane.entries:
                lane.wakeup.clear()
                await lane.wakeup.wait()
                continue
            entry = lane.entries.popleft()
            lane.busy = True
            try:
                await self._admit(entry)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Admission of %s for %s failed", entry.entry_id, group_id)
            finally:
                lane.busy = False

    async def _admit(self, entry: QueueEntry) -> None:
        group_id = entry.group_id
        while not self._closed:
            content: InboundMessage | str = entry.message or entry.payload
            if await self._manager.deliver(group_id, content, task_id=entry.task_id):
                logger.debug("Delivered %s into running session of %s", entry.entry_id, group_id)
                return

            live = self._state.live_session(group_id)
            if live is not None:
                # Draining (or not yet running): no retry into it, spawn afresh after
                await live.terminated.wait()
                continue

            await self._slots.acquire()
            if self._closed:
                self._slots.release()
                return
            try:
                session = await self._manager.start(
                    group_id,
                    entry.payload,
                    is_scheduled=entry.is_scheduled,
                    task_id=entry.task_id,
                    cursor=entry.message.message_id if entry.message else None,
                )
            except SessionStateError:
                self._slots.release()
                continue
            except SessionStartError as e:
                self._slots.release()
                logger.error("Dropping %s for %s: %s", entry.entry_id, group_id, e.message)
                await self._report_failure(entry, e.message)
                return
            except BaseException:
                self._slots.release()
                raise

            if session.state.is_final:
                # Exited before we could record it; the listener already ran
                self._slots.release()
            else:
                self._slot_holders.add(session.name)
            return

        logger.info("Queue closed, dropping %s for %s", entry.entry_id, group_id)

    async def _report_failure(self, entry: QueueEntry, error: str) -> None:
        if self._on_failure is None:
            return
        try:
            await self._on_failure(entry, error)
        except Exception:
            logger.exception("Failure callback raised for %s", entry.group_id)

    def _on_session_terminated(self, session: Session) -> None:
        if session.name in self._slot_holders:
            self._slot_holders.discard(session.name)
            self._slots.release()

    async def close(self) -> None:
        """Stop accepting entries and stop all workers. Pending entries are dropped."""
        if self._closed:
            return
        self._closed = True
        dropped = sum(len(lane.entries) for lane in self._lanes.values())
        workers = [lane.worker for lane in self._lanes.values() if lane.worker is not None]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        if dropped:
            logger.warning("Queue closed with %d pending entries dropped", dropped)
