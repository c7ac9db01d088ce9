"""Agent runtime launcher.

The runtime is opaque: a command (typically a container CLI) that reads one
JSON object on stdin, writes framed results on stdout and exits. The
session manager only talks to it through RuntimeProcess, so tests can
substitute an in-memory fake.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from nestor.config.schema import RuntimeConfig
from nestor.core.mount_security import ApprovedMount
from nestor.core.process import terminate_process_tree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpawnRequest:
    """Everything needed to launch one session.

    Attributes:
        name: Unique session/container name.
        group_dir: Host path of the group's workspace folder.
        ipc_dir: Host path of the group's IPC mailbox.
        mounts: Additional mounts that passed validation.
    """

    name: str
    group_dir: Path
    ipc_dir: Path
    mounts: tuple[ApprovedMount, ...] = ()


class RuntimeProcess(Protocol):
    """A running session process."""

    pid: int | None
    stdout: asyncio.StreamReader
    stderr: asyncio.StreamReader

    async def write_input(self, data: bytes) -> None:
        """Write the initial input and close stdin."""
        ...

    async def wait(self) -> int:
        """Wait for exit and return the exit code."""
        ...

    async def terminate(self, grace: float) -> int | None:
        """SIGTERM, wait up to grace seconds, then SIGKILL."""
        ...


class AgentRuntime(Protocol):
    """Launches session processes."""

    async def spawn(self, request: SpawnRequest) -> RuntimeProcess: ...


def build_command(config: RuntimeConfig, request: SpawnRequest) -> list[str]:
    """Build the argv for a session.

    Layout: executable, args (with {name}), one mount argument per mount
    (group folder, IPC mailbox, then approved additional mounts), image.
    """

    def mount_arg(host: Path, container: str, readonly: bool) -> str:
        return config.mount_arg.format(
            host=str(host),
            container=container,
            readonly=",readonly" if readonly else "",
        )

    argv = [config.executable]
    argv.extend(arg.format(name=request.name) for arg in config.args)
    argv.append(mount_arg(request.group_dir, config.workspace_mount, False))
    argv.append(mount_arg(request.ipc_dir, config.ipc_mount, False))
    for mount in request.mounts:
        argv.append(mount_arg(mount.host_path, mount.container_path, mount.readonly))
    argv.append(config.image)
    return argv


class SubprocessProcess:
    """RuntimeProcess backed by an asyncio subprocess in its own process group."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid: int | None = process.pid
        assert process.stdout is not None and process.stderr is not None
        self.stdout = process.stdout
        self.stderr = process.stderr

    async def write_input(self, data: bytes) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Session process %s closed stdin before input was written", self.pid)
        finally:
            stdin.close()

    async def wait(self) -> int:
        return await self._process.wait()

    async def terminate(self, grace: float) -> int | None:
        return await terminate_process_tree(self._process, graceful_timeout=grace)


class SubprocessRuntime:
    """Launches the configured runtime command with asyncio subprocess APIs."""

    def __init__(self, config: RuntimeConfig) -> None:
        self._config = config

    async def spawn(self, request: SpawnRequest) -> RuntimeProcess:
        argv = build_command(self._config, request)
        logger.debug("Spawning session %s: %s", request.name, argv)
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        return SubprocessProcess(process)
