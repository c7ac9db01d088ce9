"""Object graph bootstrap for the nestor host.

Creates and wires the host components in dependency order: store and
state first, then the session manager, the queue on top of it, the
scheduler feeding the queue, and the IPC watcher dispatching into all of
them.

Usage:
    configure_host_logging(config.paths.log_dir)
    components = build_host_components(config, clock=SystemClock())
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

from nestor.channels.base import Channel
from nestor.channels.router import ChannelRouter
from nestor.channels.webhook import WebhookChannel
from nestor.config.schema import Config
from nestor.core.clock import Clock
from nestor.core.secure_io import secure_mkdir
from nestor.core.state import HostState
from nestor.queue.group_queue import GroupQueue
from nestor.scheduler.heartbeat import HeartbeatScheduler
from nestor.scheduler.scheduler import TaskScheduler
from nestor.session.manager import SessionLifecycleManager
from nestor.session.runtime import AgentRuntime, SubprocessRuntime
from nestor.store.interface import Store
from nestor.store.sqlite import SqliteStore
from nestor.watchers.collaboration import CollaborationWatcher, WatchedFolder

logger = logging.getLogger(__name__)

HOST_LOGGER_NAME = "nestor"


def configure_host_logging(
    log_dir: Path,
    level: int = logging.INFO,
    console_level: int = logging.WARNING,
) -> Path:
    """Configure logging for the nestor namespace.

    Logs go to `{log_dir}/host.log` with rotation (5MB per file, 3 backups)
    and, at console_level, to stderr.

    Args:
        log_dir: Directory for host.log. Created if it doesn't exist.
        level: Logging level for file output (default INFO).
        console_level: Logging level for console output (default WARNING).

    Returns:
        Path to the host.log file.
    """
    secure_mkdir(log_dir)
    log_file = log_dir / "host.log"

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    ))

    host_logger = logging.getLogger(HOST_LOGGER_NAME)
    host_logger.setLevel(min(level, console_level))

    # Reconfiguring replaces handlers instead of stacking them
    host_logger.handlers.clear()
    host_logger.addHandler(file_handler)
    host_logger.addHandler(console_handler)
    host_logger.propagate = False

    logger.info("Host logging configured: %s", log_file)
    return log_file


@dataclass
class HostComponents:
    """Everything the host wires together."""

    config: Config
    clock: Clock
    state: HostState
    store: Store
    manager: SessionLifecycleManager
    queue: GroupQueue
    scheduler: TaskScheduler
    heartbeats: HeartbeatScheduler
    router: ChannelRouter
    collaboration: CollaborationWatcher


def build_channels(config: Config) -> list[Channel]:
    """Instantiate the channel adapters named in config."""
    return [WebhookChannel(hook) for hook in config.channels.webhooks]


def build_host_components(
    config: Config,
    clock: Clock,
    *,
    runtime: AgentRuntime | None = None,
    store: Store | None = None,
    channels: list[Channel] | None = None,
) -> HostComponents:
    """Create the host object graph.

    The IPC watcher is not built here because its dispatcher needs host
    callbacks; NestorHost adds it.
    """
    state = HostState(config.main_group_folder)
    store = store if store is not None else SqliteStore(config.paths.store_path)
    manager = SessionLifecycleManager(
        state,
        config,
        store,
        runtime if runtime is not None else SubprocessRuntime(config.runtime),
        clock,
    )
    queue = GroupQueue(
        state,
        manager,
        clock,
        max_concurrent_sessions=config.queue.max_concurrent_sessions,
    )
    scheduler = TaskScheduler(store, queue, clock, config.scheduler)
    heartbeats = HeartbeatScheduler(scheduler, config.paths.groups_dir)
    router = ChannelRouter(
        channels if channels is not None else build_channels(config),
        config.assistant_name,
    )
    folders = [WatchedFolder(w.path, w.group_id) for w in config.collaboration]
    poll = min((w.poll_interval for w in config.collaboration), default=5.0)
    collaboration = CollaborationWatcher(folders, queue, clock, poll_interval=poll)

    return HostComponents(
        config=config,
        clock=clock,
        state=state,
        store=store,
        manager=manager,
        queue=queue,
        scheduler=scheduler,
        heartbeats=heartbeats,
        router=router,
        collaboration=collaboration,
    )
