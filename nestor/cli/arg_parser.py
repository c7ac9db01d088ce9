"""Argument parsing for the nestor CLI."""

import argparse
from pathlib import Path

from nestor.core.constants import HEARTBEAT_SENTINEL
from nestor.scheduler.heartbeat import DEFAULT_MAX_SUPPRESSED_CHARS


def add_config_arg(parser: argparse.ArgumentParser) -> None:
    """Add --config argument to a parser."""
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Config file (default: ~/.nestor/config.json merged with ./.nestor/config.json)",
    )


def add_verbose_arg(parser: argparse.ArgumentParser) -> None:
    """Add --verbose argument to a parser."""
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show DEBUG logging on the console",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nestor",
        description="Personal-assistant host: per-group agent sessions, IPC and scheduling",
    )
    subparsers = parser.add_subparsers(dest="command")

    # nestor run - start the host
    run_parser = subparsers.add_parser(
        "run",
        help="Run the host until SIGINT/SIGTERM",
    )
    add_config_arg(run_parser)
    add_verbose_arg(run_parser)

    # ==========================================================================
    # mounts - allowlist diagnostics
    # ==========================================================================
    mounts_parser = subparsers.add_parser(
        "mounts",
        help="Inspect additional mounts against the allowlist",
    )
    mounts_subparsers = mounts_parser.add_subparsers(dest="mounts_command")
    check_parser = mounts_subparsers.add_parser(
        "check",
        help="Validate the additional mounts configured for a group folder",
    )
    check_parser.add_argument("folder", help="Group folder name")
    add_config_arg(check_parser)

    # ==========================================================================
    # tasks - scheduled task inspection
    # ==========================================================================
    tasks_parser = subparsers.add_parser(
        "tasks",
        help="Inspect scheduled tasks in the store",
    )
    tasks_subparsers = tasks_parser.add_subparsers(dest="tasks_command")
    list_parser = tasks_subparsers.add_parser(
        "list",
        help="List scheduled tasks",
    )
    list_parser.add_argument(
        "--group", "-g",
        dest="group_id",
        metavar="GROUP_ID",
        help="Only show tasks owned by this group",
    )
    add_config_arg(list_parser)

    # ==========================================================================
    # heartbeat - suppression check
    # ==========================================================================
    heartbeat_parser = subparsers.add_parser(
        "heartbeat",
        help="Heartbeat utilities",
    )
    heartbeat_subparsers = heartbeat_parser.add_subparsers(dest="heartbeat_command")
    hb_check_parser = heartbeat_subparsers.add_parser(
        "check",
        help=f"Check whether a response would be suppressed as {HEARTBEAT_SENTINEL}",
    )
    hb_check_parser.add_argument("text", help="Response text to check")
    hb_check_parser.add_argument(
        "--max-chars",
        type=int,
        default=DEFAULT_MAX_SUPPRESSED_CHARS,
        help=f"Suppression threshold in characters (default: {DEFAULT_MAX_SUPPRESSED_CHARS})",
    )

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)
