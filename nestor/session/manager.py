"""Session lifecycle manager.

Owns every session from spawn to release:

    pending -> starting -> running -> draining -> terminated | killed | failed

A session only leaves pending once the mount validator has approved its
full mount set. While running, an idle timer (reset by every delivery and
every output line) and a hard-deadline timer are armed on the injected
clock; whichever fires first drains the session. Exceeding the output cap
drains it immediately and discards the rest of its output.

When a session reaches a final state its timers are cleared, its process
released, its checkpoint persisted and every termination listener (the
group queue) notified exactly once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from nestor.config.loader import load_mount_allowlist
from nestor.config.schema import Config, MountAllowlist
from nestor.core.clock import Clock
from nestor.core.constants import OUTPUT_END_MARKER, OUTPUT_START_MARKER
from nestor.core.errors import MountSecurityError, SessionStartError, StoreError
from nestor.core.mount_security import validate_mounts
from nestor.core.secure_io import secure_mkdir
from nestor.core.state import HostState
from nestor.core.types import Group, InboundMessage
from nestor.core.utils import safe_name, unique_file_stem
from nestor.ipc.mailbox import GroupMailbox
from nestor.ipc.protocol import InputMessage, close_input, message_input
from nestor.session.runtime import AgentRuntime, SpawnRequest
from nestor.session.types import Session, SessionOutput, SessionState, TerminationReason
from nestor.store.interface import SessionCheckpoint, Store

logger = logging.getLogger(__name__)

OutputCallback = Callable[[Session, SessionOutput], Awaitable[None]]
TerminationListener = Callable[[Session], None]
AllowlistLoader = Callable[[Path], MountAllowlist | None]

_READ_CHUNK = 8192


class SessionLifecycleManager:
    """Starts, feeds, drains and releases agent sessions."""

    def __init__(
        self,
        state: HostState,
        config: Config,
        store: Store,
        runtime: AgentRuntime,
        clock: Clock,
        *,
        on_output: OutputCallback | None = None,
        allowlist_loader: AllowlistLoader = load_mount_allowlist,
    ) -> None:
        self._state = state
        self._config = config
        self._store = store
        self._runtime = runtime
        self._clock = clock
        self._on_output = on_output
        self._load_allowlist = allowlist_loader
        self._listeners: list[TerminationListener] = []
        self._tasks: set[asyncio.Future[object]] = set()

    @property
    def ipc_root(self) -> Path:
        return self._config.paths.data_dir / "ipc"

    def mailbox_for(self, folder: str) -> GroupMailbox:
        return GroupMailbox(self.ipc_root, folder)

    def add_termination_listener(self, listener: TerminationListener) -> None:
        self._listeners.append(listener)

    def set_output_callback(self, callback: OutputCallback) -> None:
        self._on_output = callback

    # === Start ===

    async def start(
        self,
        group_id: str,
        prompt: str,
        *,
        is_scheduled: bool = False,
        task_id: str | None = None,
        cursor: str | None = None,
    ) -> Session:
        """Start a session for a group with its first prompt.

        Termination listeners are NOT notified when start fails; the caller
        owns whatever it acquired for the attempt.

        Raises:
            SessionStartError: If the group is unknown, a mount is denied,
                or the runtime cannot be spawned.
            SessionStateError: If the group already has a live session.
        """
        group = self._state.get_group(group_id)
        if group is None:
            raise SessionStartError(f"Unknown group: {group_id}")

        now = self._clock.now()
        session = Session(
            group_id=group_id,
            folder=group.folder,
            name=f"nestor-{safe_name(group.folder)}-{unique_file_stem(now)}",
            mailbox=self.mailbox_for(group.folder),
            started_at=now,
            is_scheduled=is_scheduled,
            task_id=task_id,
            cursor=cursor,
        )
        self._state.attach_session(session)
        try:
            return await self._launch(session, group, prompt)
        except asyncio.CancelledError:
            self._abort_start(session)
            raise

    async def _launch(self, session: Session, group: Group, prompt: str) -> Session:
        group_id = session.group_id

        # Read fresh on every spawn, never cached
        allowlist_path = self._config.paths.allowlist_path
        try:
            allowlist = await asyncio.to_thread(self._load_allowlist, allowlist_path)
            approved = validate_mounts(
                group.additional_mounts,
                allowlist,
                is_main=group.is_main,
                allowlist_path=allowlist_path,
            )
        except MountSecurityError as e:
            self._fail_start(session, e.message)
            raise SessionStartError(e.message) from e

        group_dir = self._config.paths.groups_dir / group.folder
        for root, path in (
            (self._config.paths.groups_dir, group_dir),
            (self.ipc_root, session.mailbox.root),
        ):
            if not _directly_under(root, path):
                error = f"Group folder {group.folder!r} escapes {root}"
                self._fail_start(session, error)
                raise SessionStartError(error)

        session.transition(SessionState.STARTING)
        try:
            await asyncio.to_thread(self._prepare_dirs, session, group_dir)
            checkpoint = await asyncio.to_thread(self._store.get_checkpoint, group_id)
        except (OSError, StoreError) as e:
            self._fail_start(session, f"Session setup failed: {e}")
            raise SessionStartError(f"Session setup failed for {group_id}: {e}") from e
        if checkpoint is not None:
            session.continuity = checkpoint.continuity

        request = SpawnRequest(
            name=session.name,
            group_dir=group_dir.resolve(),
            ipc_dir=session.mailbox.root.resolve(),
            mounts=tuple(approved),
        )
        try:
            process = await self._runtime.spawn(request)
        except OSError as e:
            self._fail_start(session, f"Spawn failed: {e}")
            raise SessionStartError(f"Failed to spawn session for {group_id}: {e}") from e

        session.process = process
        initial = {
            "prompt": prompt,
            "groupFolder": group.folder,
            "groupId": group_id,
            "isMain": group.is_main,
            "sessionId": session.continuity,
            "isScheduledTask": session.is_scheduled,
        }
        await process.write_input(json.dumps(initial).encode("utf-8"))
        session.expect_reply(session.task_id)

        session.transition(SessionState.RUNNING)
        session.last_activity = self._clock.monotonic()
        self._arm_idle_timer(session)
        session.hard_timer = self._clock.call_later(
            self._config.session.hard_timeout,
            lambda: self._begin_drain(session, TerminationReason.HARD_TIMEOUT, graceful=False),
        )
        self._spawn(self._supervise(session))

        logger.info(
            "Session %s started for %s (%d additional mounts)",
            session.name,
            group_id,
            len(approved),
        )
        return session

    def _prepare_dirs(self, session: Session, group_dir: Path) -> None:
        secure_mkdir(group_dir / "logs")
        session.mailbox.ensure()
        stale = session.mailbox.clear_input()
        if stale:
            logger.debug("Cleared %d stale input files for %s", stale, session.folder)

    def _fail_start(self, session: Session, error: str) -> None:
        session.error = error
        session.transition(SessionState.FAILED)
        self._state.detach_session(session)
        session.terminated.set()
        logger.warning("Session for %s failed to start: %s", session.group_id, error)

    def _abort_start(self, session: Session) -> None:
        if session.state not in (SessionState.PENDING, SessionState.STARTING):
            return
        if session.process is not None:
            self._spawn(session.process.terminate(self._config.session.kill_grace))
        self._fail_start(session, "Start cancelled")

    # === Delivery ===

    async def deliver(
        self, group_id: str, message: InboundMessage | str, *, task_id: str | None = None
    ) -> bool:
        """Deliver content into a running session's input mailbox.

        task_id tags scheduled input so its reply can be attributed to the task.

        Returns:
            False if the group has no running session (none, or draining).
        """
        session = self._state.live_session(group_id)
        if session is None or session.state is not SessionState.RUNNING:
            return False

        if isinstance(message, InboundMessage):
            payload = message_input(
                message.text,
                sender=message.sender,
                timestamp=message.timestamp.isoformat(),
                messageId=message.message_id,
            )
            cursor = message.message_id
        else:
            payload = message_input(message)
            cursor = None

        try:
            await self._write_input(session, payload)
        except OSError as e:
            logger.warning("Delivery to %s failed: %s", group_id, e)
            return False
        # The session may have started draining while the write was in flight
        if session.state is not SessionState.RUNNING:
            return False
        if cursor is not None:
            session.cursor = cursor
        session.expect_reply(task_id)
        self._touch(session)
        return True

    async def _write_input(self, session: Session, message: InputMessage) -> None:
        await asyncio.to_thread(session.mailbox.write_input, message, self._clock.now())

    # === Draining and killing ===

    def request_drain(self, group_id: str, reason: TerminationReason) -> bool:
        """Ask a running session to finish and exit.

        Writes a close message, then force-kills after session.shutdown_grace.

        Returns:
            True if a running session started draining.
        """
        session = self._state.live_session(group_id)
        if session is None:
            return False
        return self._begin_drain(session, reason, graceful=True)

    async def kill(self, group_id: str, reason: TerminationReason) -> None:
        """Kill a group's session and wait until it is released."""
        session = self._state.live_session(group_id)
        if session is None:
            return
        if not self._begin_drain(session, reason, graceful=False):
            # Already draining gracefully; stop waiting for it
            self._spawn(self._force_release(session))
        await session.terminated.wait()

    async def wait_terminated(self, group_id: str) -> None:
        """Wait until the group has no live session."""
        session = self._state.live_session(group_id)
        if session is not None:
            await session.terminated.wait()

    def _begin_drain(
        self, session: Session, reason: TerminationReason | None, *, graceful: bool
    ) -> bool:
        if session.state is not SessionState.RUNNING:
            return False
        session.transition(SessionState.DRAINING)
        session.termination_reason = reason
        session.cancel_timers()
        logger.info(
            "Session %s draining (%s)", session.name, reason.value if reason else "exited"
        )
        if reason is None:
            return True
        if graceful:
            self._spawn(self._send_close(session))
            session.kill_timer = self._clock.call_later(
                self._config.session.shutdown_grace,
                lambda: self._spawn(self._force_release(session)),
            )
        else:
            self._spawn(self._force_release(session))
        return True

    async def _send_close(self, session: Session) -> None:
        try:
            await self._write_input(session, close_input())
        except OSError as e:
            logger.warning("Could not write close message for %s: %s", session.name, e)

    async def _force_release(self, session: Session) -> None:
        if session.process is None or session.state.is_final:
            return
        await session.process.terminate(self._config.session.kill_grace)

    # === Timers ===

    def _arm_idle_timer(self, session: Session) -> None:
        if session.idle_timer is not None:
            session.idle_timer.cancel()
        session.idle_timer = self._clock.call_later(
            self._config.session.idle_timeout,
            lambda: self._begin_drain(session, TerminationReason.IDLE_TIMEOUT, graceful=True),
        )

    def _touch(self, session: Session) -> None:
        if session.state is not SessionState.RUNNING:
            return
        session.last_activity = self._clock.monotonic()
        self._arm_idle_timer(session)

    # === Supervision ===

    async def _supervise(self, session: Session) -> None:
        assert session.process is not None
        process = session.process
        try:
            await asyncio.gather(self._read_stdout(session), self._read_stderr(session))
            session.exit_code = await process.wait()
        except Exception as e:
            logger.exception("Supervision of session %s failed", session.name)
            session.error = str(e)
            await process.terminate(self._config.session.kill_grace)
        self._begin_drain(session, None, graceful=False)
        await self._finalize(session)

    async def _read_stdout(self, session: Session) -> None:
        assert session.process is not None
        stream = session.process.stdout
        cap = self._config.session.max_output_bytes
        buffer = ""
        frame: list[str] | None = None

        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            if session.termination_reason is TerminationReason.OUTPUT_CAP:
                continue
            session.output_bytes += len(chunk)
            if session.output_bytes > cap:
                logger.warning(
                    "Session %s exceeded output cap (%d bytes), killing", session.name, cap
                )
                self._begin_drain(session, TerminationReason.OUTPUT_CAP, graceful=False)
                continue

            buffer += chunk.decode("utf-8", errors="replace")
            *lines, buffer = buffer.split("\n")
            for line in lines:
                self._touch(session)
                frame = await self._handle_line(session, line, frame)

        if buffer and session.termination_reason is not TerminationReason.OUTPUT_CAP:
            await self._handle_line(session, buffer, frame)

    async def _handle_line(
        self, session: Session, line: str, frame: list[str] | None
    ) -> list[str] | None:
        stripped = line.strip()
        if stripped == OUTPUT_START_MARKER:
            return []
        if stripped == OUTPUT_END_MARKER and frame is not None:
            await self._emit(session, "\n".join(frame))
            return None
        if frame is not None:
            frame.append(line)
            return frame
        if stripped:
            logger.debug("[%s] %s", session.folder, stripped)
        return None

    async def _emit(self, session: Session, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Session %s emitted malformed output frame: %s", session.name, e)
            return
        if not isinstance(data, dict):
            logger.warning("Session %s emitted non-object output frame", session.name)
            return

        result = data.get("result")
        output = SessionOutput(
            status=str(data.get("status", "success")),
            result=result if isinstance(result, str) else None,
            new_session_id=data.get("newSessionId"),
        )
        if output.new_session_id:
            session.continuity = output.new_session_id
        if self._on_output is None:
            return
        try:
            await self._on_output(session, output)
        except Exception:
            logger.exception("Output handler failed for session %s", session.name)

    async def _read_stderr(self, session: Session) -> None:
        assert session.process is not None
        stream = session.process.stderr
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                session.stderr_tail.append(text)
                logger.debug("[%s stderr] %s", session.folder, text)

    async def _finalize(self, session: Session) -> None:
        session.cancel_timers()
        session.transition(session.final_state())
        self._state.detach_session(session)

        checkpoint = SessionCheckpoint(
            group_id=session.group_id,
            cursor=session.cursor,
            continuity=session.continuity,
            updated_at=self._clock.now(),
        )
        try:
            await asyncio.to_thread(self._store.save_checkpoint, checkpoint)
        except StoreError as e:
            logger.error("Failed to persist checkpoint for %s: %s", session.group_id, e)

        try:
            await asyncio.to_thread(self._write_run_log, session)
        except OSError as e:
            logger.warning("Failed to write run log for %s: %s", session.name, e)

        logger.info(
            "Session %s %s (reason=%s, exit=%s, output=%d bytes)",
            session.name,
            session.state.value,
            session.termination_reason.value if session.termination_reason else "none",
            session.exit_code,
            session.output_bytes,
        )
        session.terminated.set()

        for listener in self._listeners:
            try:
                listener(session)
            except Exception:
                logger.exception("Termination listener failed for %s", session.name)

    def _write_run_log(self, session: Session) -> None:
        logs_dir = self._config.paths.groups_dir / session.folder / "logs"
        secure_mkdir(logs_dir)
        ended = self._clock.now()
        stamp = ended.strftime("%Y%m%dT%H%M%S")
        lines = [
            f"session: {session.name}",
            f"group: {session.group_id}",
            f"scheduled: {session.is_scheduled}",
            f"started: {session.started_at.isoformat()}",
            f"ended: {ended.isoformat()}",
            f"duration: {(ended - session.started_at).total_seconds():.1f}s",
            f"state: {session.state.value}",
            f"reason: {session.termination_reason.value if session.termination_reason else '-'}",
            f"exit_code: {session.exit_code}",
            f"output_bytes: {session.output_bytes}",
        ]
        if session.error:
            lines.append(f"error: {session.error}")
        if session.stderr_tail:
            lines.append("")
            lines.append("--- stderr (tail) ---")
            lines.extend(session.stderr_tail)
        (logs_dir / f"run-{stamp}-{safe_name(session.name)}.log").write_text(
            "\n".join(lines) + "\n", encoding="utf-8"
        )

    # === Shutdown ===

    async def shutdown(self, grace: float | None = None) -> None:
        """Drain every live session, force-killing those that outlive grace."""
        grace = self._config.session.shutdown_grace if grace is None else grace
        sessions = self._state.live_sessions()
        if not sessions:
            return

        logger.info("Draining %d live sessions", len(sessions))
        for session in sessions:
            self._begin_drain(session, TerminationReason.SHUTDOWN, graceful=True)

        waiter = asyncio.ensure_future(
            asyncio.gather(*(s.terminated.wait() for s in sessions))
        )
        sleeper = asyncio.ensure_future(self._clock.sleep(grace))
        await asyncio.wait({waiter, sleeper}, return_when=asyncio.FIRST_COMPLETED)
        sleeper.cancel()

        stragglers = [s for s in sessions if not s.terminated.is_set()]
        for session in stragglers:
            logger.warning("Force-killing session %s after shutdown grace", session.name)
            if session.state is SessionState.RUNNING:
                self._begin_drain(session, TerminationReason.SHUTDOWN, graceful=False)
            self._spawn(self._force_release(session))
        await waiter

    def _spawn(self, coro: Awaitable[object]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future[object]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session task failed", exc_info=task.exception())


def _directly_under(root: Path, path: Path) -> bool:
    """True if path resolves (through symlinks) to a direct child of root."""
    return path.resolve().parent == root.resolve()
