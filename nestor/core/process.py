"""Session process termination.

Agent runtimes are started in their own process group (start_new_session)
so that a container CLI and anything it forks can be signalled together:
SIGTERM -> wait -> SIGKILL to the process group.
"""

import asyncio
import logging
import os
import signal
from asyncio.subprocess import Process

logger = logging.getLogger(__name__)

GRACEFUL_TIMEOUT: float = 2.0


async def terminate_process_tree(
    process: Process,
    graceful_timeout: float = GRACEFUL_TIMEOUT,
) -> int | None:
    """Terminate a session process and all its children.

    Args:
        process: The asyncio subprocess to terminate.
        graceful_timeout: Seconds to wait after SIGTERM before SIGKILL.

    Returns:
        The process return code, or None if it could not be collected.
    """
    if process.returncode is not None:
        return process.returncode

    pid = process.pid
    if pid is None:
        return None

    _signal_group(process, pid, signal.SIGTERM)

    try:
        return await asyncio.wait_for(process.wait(), timeout=graceful_timeout)
    except TimeoutError:
        pass

    logger.warning("Session process %d ignored SIGTERM, sending SIGKILL", pid)
    _signal_group(process, pid, signal.SIGKILL)

    try:
        return await process.wait()
    except ProcessLookupError:
        return process.returncode


def _signal_group(process: Process, pid: int, sig: signal.Signals) -> None:
    try:
        pgid = os.getpgid(pid)
        os.killpg(pgid, sig)
        logger.debug("Sent %s to process group %d", sig.name, pgid)
    except (ProcessLookupError, PermissionError, OSError):
        # Group gone or not ours; fall back to the single process
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass
