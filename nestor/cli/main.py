"""Entry point for the nestor CLI."""

from dotenv import load_dotenv

from nestor.cli.arg_parser import build_parser, parse_args
from nestor.cli.commands import (
    cmd_heartbeat_check,
    cmd_mounts_check,
    cmd_run,
    cmd_tasks_list,
)


def main(argv: list[str] | None = None) -> None:
    # Load .env file if present, before config reads the environment
    load_dotenv()
    args = parse_args(argv)
    try:
        if args.command == "run":
            exit_code = cmd_run(args.config, args.verbose)
        elif args.command == "mounts" and args.mounts_command == "check":
            exit_code = cmd_mounts_check(args.folder, args.config)
        elif args.command == "tasks" and args.tasks_command == "list":
            exit_code = cmd_tasks_list(args.group_id, args.config)
        elif args.command == "heartbeat" and args.heartbeat_command == "check":
            exit_code = cmd_heartbeat_check(args.text, args.max_chars)
        else:
            build_parser().print_help()
            exit_code = 1
    except KeyboardInterrupt:
        exit_code = 130
    raise SystemExit(exit_code)
