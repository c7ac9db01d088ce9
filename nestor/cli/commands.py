"""CLI commands for running and inspecting a nestor host.

Each function returns a process exit code:
    nestor run                        # Run the host
    nestor mounts check FOLDER        # Validate a group's additional mounts
    nestor tasks list [--group ID]    # List scheduled tasks
    nestor heartbeat check TEXT       # Would this response be suppressed?
"""

import asyncio
import logging
from pathlib import Path

from rich.table import Table

from nestor.cli.output import console, print_error, print_info
from nestor.config.loader import load_config, load_mount_allowlist
from nestor.config.schema import Config
from nestor.core.errors import NestorError
from nestor.core.mount_security import validate_mount
from nestor.host.app import NestorHost
from nestor.host.bootstrap import configure_host_logging
from nestor.scheduler.heartbeat import is_heartbeat_ok
from nestor.store.sqlite import SqliteStore


def _load(config_path: Path | None) -> Config | None:
    try:
        return load_config(config_path)
    except NestorError as e:
        print_error(e.message)
        return None


def cmd_run(config_path: Path | None, verbose: bool) -> int:
    """Run the host in the foreground until interrupted."""
    config = _load(config_path)
    if config is None:
        return 1
    log_file = configure_host_logging(
        config.paths.log_dir,
        level=logging.DEBUG if verbose else logging.INFO,
        console_level=logging.DEBUG if verbose else logging.WARNING,
    )
    print_info(f"Logging to {log_file}")
    console.print(
        f"Starting [bold]{config.assistant_name}[/bold] with "
        f"{len(config.groups)} configured groups"
    )
    asyncio.run(NestorHost(config).run_forever())
    return 0


def cmd_mounts_check(folder: str, config_path: Path | None) -> int:
    """Validate each additional mount configured for a group folder.

    Exit code is 0 only when every mount is allowed.
    """
    config = _load(config_path)
    if config is None:
        return 1
    group_config = next((g for g in config.groups if g.folder == folder), None)
    if group_config is None:
        print_error(f"No configured group uses folder {folder!r}")
        return 1
    group = group_config.to_group(config.main_group_folder)
    if not group.additional_mounts:
        print_info(f"Group {group.group_id} requests no additional mounts")
        return 0

    allowlist_path = config.paths.allowlist_path
    allowlist = load_mount_allowlist(allowlist_path)
    if allowlist is None:
        print_info(f"No usable allowlist at {allowlist_path}; every mount is denied")

    table = Table(title=f"Mounts for {group.name} ({group.group_id})")
    table.add_column("Requested")
    table.add_column("Decision")
    table.add_column("Target")
    table.add_column("Mode")
    table.add_column("Detail")

    denied = 0
    for mount in group.additional_mounts:
        decision = validate_mount(
            mount, allowlist, is_main=group.is_main, allowlist_path=allowlist_path
        )
        if decision.allowed:
            table.add_row(
                mount.host_path,
                "[green]allowed[/green]",
                decision.container_path or "",
                "ro" if decision.readonly else "rw",
                decision.detail,
            )
        else:
            denied += 1
            table.add_row(mount.host_path, "[red]denied[/red]", "", "", decision.detail)

    console.print(table)
    return 1 if denied else 0


def cmd_tasks_list(group_id: str | None, config_path: Path | None) -> int:
    config = _load(config_path)
    if config is None:
        return 1
    store_path = config.paths.store_path
    if not store_path.exists():
        print_info(f"No store at {store_path}")
        return 0

    store = SqliteStore(store_path)
    try:
        tasks = store.list_tasks(group_id)
    except NestorError as e:
        print_error(e.message)
        return 1
    finally:
        store.close()

    if not tasks:
        print_info("No scheduled tasks")
        return 0

    table = Table(title="Scheduled tasks")
    table.add_column("ID")
    table.add_column("Group")
    table.add_column("Schedule")
    table.add_column("Status")
    table.add_column("Next run")
    table.add_column("Last error")
    for task in tasks:
        table.add_row(
            task.id,
            task.group_id,
            f"{task.schedule_kind.value} {task.schedule_value}",
            task.status.value,
            task.next_run.isoformat() if task.next_run else "-",
            task.last_error or "",
        )
    console.print(table)
    return 0


def cmd_heartbeat_check(text: str, max_chars: int) -> int:
    """Exit 0 if the response would be suppressed, 1 if it would be delivered."""
    if is_heartbeat_ok(text, max_chars):
        console.print("[green]suppressed[/green]")
        return 0
    console.print("[yellow]delivered[/yellow]")
    return 1
