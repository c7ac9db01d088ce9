"""The nestor host process.

Ties channels, the group queue, sessions, the scheduler and the IPC
watcher together and owns startup and shutdown.

Shutdown order: stop accepting work, close the queue, drain sessions
(force-killing any that outlive session.shutdown_grace), stop the
background loops, flush the scheduler, disconnect channels, close the
store. Calling shutdown() again while it runs awaits the same shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import re
import signal
from collections.abc import Coroutine
from dataclasses import replace
from typing import Any

from nestor.channels.base import Channel
from nestor.channels.router import format_inbound
from nestor.config.schema import Config
from nestor.core.cancel import CancellationToken
from nestor.core.clock import Clock, SystemClock
from nestor.core.errors import ChannelError, GroupError, StoreError
from nestor.core.types import Group, InboundMessage
from nestor.host.bootstrap import HostComponents, build_host_components
from nestor.ipc.dispatcher import IpcDispatcher
from nestor.ipc.watcher import IpcWatcher
from nestor.queue.types import EntryKind, QueueEntry
from nestor.scheduler.heartbeat import HeartbeatScheduler
from nestor.session.runtime import AgentRuntime
from nestor.session.types import Session, SessionOutput, SessionState
from nestor.store.interface import Store

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Something went wrong while handling that. Please try again."

# Runtimes may wrap private reasoning in <internal>...</internal>
_INTERNAL_RE = re.compile(r"<internal>.*?</internal>", re.DOTALL)


def strip_internal(text: str) -> str:
    return _INTERNAL_RE.sub("", text).strip()


class NestorHost:
    """Single host process owning all groups, queues and sessions."""

    def __init__(
        self,
        config: Config,
        *,
        clock: Clock | None = None,
        runtime: AgentRuntime | None = None,
        store: Store | None = None,
        channels: list[Channel] | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        self.token = CancellationToken()
        self.components: HostComponents = build_host_components(
            config, self.clock, runtime=runtime, store=store, channels=channels
        )
        c = self.components
        self.dispatcher = IpcDispatcher(
            c.state,
            c.store,
            c.scheduler,
            self.clock,
            c.manager.ipc_root,
            send_message=self.send,
            register_group=self.register_group,
        )
        self.ipc_watcher = IpcWatcher(
            c.state, self.dispatcher, self.clock, config.ipc, c.manager.ipc_root
        )
        c.manager.set_output_callback(self._on_output)
        c.manager.add_termination_listener(self._on_session_terminated)
        c.queue.set_failure_callback(self._on_start_failure)

        self._background: list[asyncio.Task[None]] = []
        self._pending: set[asyncio.Task[Any]] = set()
        self._shutdown_task: asyncio.Task[None] | None = None
        self._stopped = asyncio.Event()

    @property
    def heartbeats(self) -> HeartbeatScheduler:
        return self.components.heartbeats

    # === Startup ===

    async def start(self) -> None:
        """Load groups, initialize heartbeats, connect channels, start loops."""
        c = self.components
        for group in await asyncio.to_thread(c.store.get_groups):
            try:
                c.state.register_group(group)
            except GroupError as e:
                logger.error("Skipping stored group %s: %s", group.group_id, e.message)
        for group_config in self.config.groups:
            group = group_config.to_group(self.config.main_group_folder)
            existing = c.state.get_group(group.group_id)
            if existing is not None:
                group = replace(group, added_at=existing.added_at)
            await self.register_group(group, init_heartbeat=False)

        if c.state.main_group() is None:
            logger.warning(
                "No group uses the main folder %r; administrative IPC tasks are unavailable",
                self.config.main_group_folder,
            )

        await c.heartbeats.initialize_all(c.state.list_groups())
        await c.router.connect_all(self.on_inbound)

        self._background = [
            asyncio.create_task(c.scheduler.run(self.token), name="scheduler"),
            asyncio.create_task(self.ipc_watcher.run(self.token), name="ipc-watcher"),
            asyncio.create_task(c.collaboration.run(self.token), name="collaboration"),
        ]
        logger.info(
            "Host started: %d groups, %d channels, max %d concurrent sessions",
            len(c.state.list_groups()),
            len(c.router.channels),
            self.config.queue.max_concurrent_sessions,
        )

    async def register_group(self, group: Group, *, init_heartbeat: bool = True) -> Group:
        """Register (or update) a group and persist it."""
        c = self.components
        registered = c.state.register_group(group)
        try:
            await asyncio.to_thread(c.store.upsert_group, registered)
        except StoreError as e:
            logger.error("Failed to persist group %s: %s", registered.group_id, e)
        if init_heartbeat:
            await c.heartbeats.initialize(registered)
        return registered

    # === Message flow ===

    async def on_inbound(self, message: InboundMessage) -> None:
        """Entry point for channel adapters."""
        c = self.components
        if not c.state.accepting:
            logger.debug("Shutting down, ignoring message for %s", message.group_id)
            return
        group = c.state.get_group(message.group_id)
        if group is None:
            logger.debug("Dropping message from unregistered group %s", message.group_id)
            return
        if not c.router.should_wake(group, message):
            logger.debug("Message in %s does not address the assistant", group.group_id)
            return
        c.queue.enqueue(
            group.group_id, format_inbound(message), kind=EntryKind.MESSAGE, message=message
        )

    async def send(self, group_id: str, text: str) -> None:
        """Send text to a group, logging delivery failures."""
        try:
            await self.components.router.send(group_id, text)
        except ChannelError as e:
            logger.error("Could not deliver message to %s: %s", group_id, e.message)

    async def _on_output(self, session: Session, output: SessionOutput) -> None:
        c = self.components
        if output.status == "error":
            logger.warning("Session %s reported an error: %s", session.name, output.result)

        # Every frame answers one input, silent turns included
        reply_to = session.reply_task_id()
        text = strip_internal(output.result) if output.result else ""
        if text:
            is_heartbeat = reply_to == HeartbeatScheduler.task_id_for(session.folder)
            if is_heartbeat and c.heartbeats.should_suppress(session.folder, text):
                logger.info("Suppressed routine heartbeat response for %s", session.group_id)
            else:
                await self.send(session.group_id, text)
        elif output.status == "error":
            await self.send(session.group_id, FAILURE_MESSAGE)

        if session.is_scheduled:
            c.queue.drain_if_idle(session.group_id)

    def _on_session_terminated(self, session: Session) -> None:
        if session.state is SessionState.FAILED and not self.token.is_cancelled:
            self._spawn(self.send(session.group_id, FAILURE_MESSAGE))

    async def _on_start_failure(self, entry: QueueEntry, error: str) -> None:
        logger.error("Could not start a session for %s: %s", entry.group_id, error)
        await self.send(entry.group_id, FAILURE_MESSAGE)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # === Shutdown ===

    def request_shutdown(self) -> asyncio.Task[None]:
        """Start shutdown if it is not already running."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._do_shutdown())
        return self._shutdown_task

    async def shutdown(self) -> None:
        """Shut down once; concurrent and repeated calls await the same run."""
        await asyncio.shield(self.request_shutdown())

    async def _do_shutdown(self) -> None:
        c = self.components
        logger.info("Host shutting down")
        c.state.accepting = False
        self.token.cancel("host shutdown")

        await c.queue.close()
        await c.manager.shutdown(self.config.session.shutdown_grace)

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await c.scheduler.flush()
        await c.router.disconnect_all()
        await asyncio.to_thread(c.store.close)
        logger.info("Host stopped")
        self._stopped.set()

    async def run_forever(self) -> None:
        """Start, then run until SIGINT/SIGTERM triggers shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                logger.debug("Signal handlers not supported on this platform")
        await self.start()
        await self._stopped.wait()
