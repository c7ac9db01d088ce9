"""Tests for nestor CLI parsing and the inspection commands."""

import json
from pathlib import Path

import pytest

from nestor.cli.arg_parser import parse_args
from nestor.cli.commands import cmd_heartbeat_check, cmd_mounts_check, cmd_tasks_list
from nestor.cli.main import main
from nestor.config.loader import ENV_OVERRIDES
from nestor.scheduler.heartbeat import DEFAULT_MAX_SUPPRESSED_CHARS
from nestor.scheduler.types import ScheduledTask, ScheduleKind
from nestor.store.sqlite import SqliteStore


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    shared = tmp_path / "shared"
    (shared / "docs").mkdir(parents=True)
    allowlist = tmp_path / "allowlist.json"
    allowlist.write_text(json.dumps({"allowedRoots": [{"path": str(shared)}]}))

    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "paths": {
                    "groups_dir": str(tmp_path / "groups"),
                    "data_dir": str(tmp_path / "data"),
                    "store_path": str(tmp_path / "store" / "nestor.db"),
                    "log_dir": str(tmp_path / "logs"),
                    "allowlist_path": str(allowlist),
                },
                "groups": [
                    {
                        "group_id": "hook:work",
                        "name": "Work",
                        "folder": "work",
                        "additional_mounts": [{"host_path": str(shared / "docs")}],
                    },
                    {
                        "group_id": "hook:family",
                        "name": "Family",
                        "folder": "family",
                        "additional_mounts": [{"host_path": str(tmp_path)}],
                    },
                    {"group_id": "hook:me", "name": "Me", "folder": "main"},
                ],
            }
        )
    )
    return path


class TestParseArgs:
    def test_run(self) -> None:
        args = parse_args(["run", "-c", "/etc/nestor.json", "--verbose"])
        assert args.command == "run"
        assert args.config == Path("/etc/nestor.json")
        assert args.verbose is True

    def test_mounts_check(self) -> None:
        args = parse_args(["mounts", "check", "work"])
        assert (args.command, args.mounts_command, args.folder) == ("mounts", "check", "work")
        assert args.config is None

    def test_tasks_list_group_filter(self) -> None:
        args = parse_args(["tasks", "list", "--group", "hook:work"])
        assert args.group_id == "hook:work"

    def test_heartbeat_check_default_threshold(self) -> None:
        args = parse_args(["heartbeat", "check", "HEARTBEAT_OK"])
        assert args.text == "HEARTBEAT_OK"
        assert args.max_chars == DEFAULT_MAX_SUPPRESSED_CHARS


class TestHeartbeatCheck:
    def test_suppressed(self) -> None:
        assert cmd_heartbeat_check("HEARTBEAT_OK", 300) == 0

    def test_delivered(self) -> None:
        assert cmd_heartbeat_check("The freezer door is open.", 300) == 1

    def test_main_exit_code(self) -> None:
        with pytest.raises(SystemExit) as exc:
            main(["heartbeat", "check", "HEARTBEAT_OK all fine", "--max-chars", "3"])
        assert exc.value.code == 1


class TestMountsCheck:
    def test_allowed(self, config_file: Path) -> None:
        assert cmd_mounts_check("work", config_file) == 0

    def test_denied(self, config_file: Path) -> None:
        assert cmd_mounts_check("family", config_file) == 1

    def test_no_mounts(self, config_file: Path) -> None:
        assert cmd_mounts_check("main", config_file) == 0

    def test_unknown_folder(self, config_file: Path) -> None:
        assert cmd_mounts_check("garage", config_file) == 1

    def test_bad_config(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{broken")
        assert cmd_mounts_check("work", path) == 1


class TestTasksList:
    def test_no_store(self, config_file: Path) -> None:
        assert cmd_tasks_list(None, config_file) == 0

    def test_lists_tasks(self, config_file: Path, tmp_path: Path) -> None:
        store = SqliteStore(tmp_path / "store" / "nestor.db")
        store.create_task(
            ScheduledTask(
                id="heartbeat-work",
                group_id="hook:work",
                prompt="check",
                schedule_kind=ScheduleKind.CRON,
                schedule_value="*/30 * * * *",
                next_run=None,
            )
        )
        store.close()

        assert cmd_tasks_list("hook:work", config_file) == 0
        assert cmd_tasks_list("hook:nobody", config_file) == 0


def test_no_command_prints_help() -> None:
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 1
