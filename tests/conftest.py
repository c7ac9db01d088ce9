"""Shared pytest fixtures and configuration for pytest."""

import asyncio
import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from nestor.config.schema import Config, PathsConfig, SchedulerConfig, SessionConfig
from nestor.core.clock import ManualClock
from nestor.core.constants import OUTPUT_END_MARKER, OUTPUT_START_MARKER
from nestor.queue.types import EntryKind
from nestor.session.runtime import SpawnRequest
from nestor.store.sqlite import SqliteStore

# 2026-03-02 10:07 UTC, a Monday
EPOCH = datetime(2026, 3, 2, 10, 7, tzinfo=timezone.utc)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for platform-specific tests."""
    config.addinivalue_line("markers", "unix_only: mark test to run only on Unix")
    config.addinivalue_line("markers", "integration: end-to-end test of the wired host")


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Auto-skip tests based on platform markers."""
    skip_unix = pytest.mark.skip(reason="Unix-only test")

    for item in items:
        if "unix_only" in item.keywords and sys.platform == "win32":
            item.add_marker(skip_unix)


class RecordingSink:
    """Stands in for the group queue; records every enqueue."""

    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.entries: list[tuple[str, str, EntryKind, str | None]] = []

    def enqueue(
        self,
        group_id: str,
        payload: str,
        *,
        kind: EntryKind = EntryKind.MESSAGE,
        task_id: str | None = None,
        message=None,
    ) -> bool:
        if not self.accept:
            return False
        self.entries.append((group_id, payload, kind, task_id))
        return True


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(EPOCH)


@pytest.fixture
def store(tmp_path: Path):
    s = SqliteStore(tmp_path / "store" / "nestor.db")
    yield s
    s.close()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


class FakeProcess:
    """In-memory RuntimeProcess. Tests drive stdout and exit explicitly."""

    def __init__(self, pid: int) -> None:
        self.pid: int | None = pid
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.input: bytes | None = None
        self.terminate_calls = 0
        self._exit_code: int | None = None
        self._exited = asyncio.Event()

    async def write_input(self, data: bytes) -> None:
        self.input = data

    def initial_input(self) -> dict:
        assert self.input is not None
        return json.loads(self.input)

    def print(self, line: str) -> None:
        self.stdout.feed_data((line + "\n").encode("utf-8"))

    def emit(self, result: str | None, status: str = "success", **extra) -> None:
        """Write one framed result object."""
        self.print(OUTPUT_START_MARKER)
        self.print(json.dumps({"status": status, "result": result, **extra}))
        self.print(OUTPUT_END_MARKER)

    def exit(self, code: int = 0) -> None:
        if self._exited.is_set():
            return
        self._exit_code = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self._exit_code is not None
        return self._exit_code

    async def terminate(self, grace: float) -> int | None:
        self.terminate_calls += 1
        self.exit(-15)
        return self._exit_code


class FakeRuntime:
    """Records spawn requests and hands out FakeProcess instances."""

    def __init__(self) -> None:
        self.requests: list[SpawnRequest] = []
        self.processes: list[FakeProcess] = []
        self.fail_with: OSError | None = None

    async def spawn(self, request: SpawnRequest) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        self.requests.append(request)
        process = FakeProcess(pid=1000 + len(self.processes))
        self.processes.append(process)
        return process


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll predicate in real time; worker threads need real time to finish."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def host_config(tmp_path: Path) -> Config:
    """Config rooted in tmp_path with short, test-friendly limits."""
    return Config(
        paths=PathsConfig(
            groups_dir=tmp_path / "groups",
            data_dir=tmp_path / "data",
            store_path=tmp_path / "store" / "nestor.db",
            log_dir=tmp_path / "logs",
            allowlist_path=tmp_path / "config" / "mount-allowlist.json",
        ),
        session=SessionConfig(
            idle_timeout=5.0,
            hard_timeout=60.0,
            max_output_bytes=4096,
            shutdown_grace=2.0,
            kill_grace=0.1,
        ),
        scheduler=SchedulerConfig(timezone="UTC"),
    )
