"""Tests for the IPC task watcher: idempotence, settling and rejection."""

import json
import os
import time
from pathlib import Path

import pytest

from nestor.config.schema import IpcConfig, SchedulerConfig
from nestor.core.state import HostState
from nestor.core.types import Group
from nestor.ipc.dispatcher import IpcDispatcher
from nestor.ipc.mailbox import GroupMailbox
from nestor.ipc.watcher import FileOutcome, IpcWatcher
from nestor.scheduler.scheduler import TaskScheduler


class Fixture:
    def __init__(self, tmp_path: Path, store, sink, clock, settle_seconds: float) -> None:
        self.state = HostState("main")
        self.state.register_group(Group("hook:me", "Me", "main"))
        self.state.register_group(Group("hook:family", "Family", "family"))
        self.ipc_root = tmp_path / "ipc"
        self.sent: list[tuple[str, str]] = []
        self.send_error: Exception | None = None
        self.store = store
        self.clock = clock
        scheduler = TaskScheduler(store, sink, clock, SchedulerConfig(timezone="UTC"))
        self.dispatcher = IpcDispatcher(
            self.state,
            store,
            scheduler,
            clock,
            self.ipc_root,
            send_message=self._send,
            register_group=self._register,
        )
        self.config = IpcConfig(settle_seconds=settle_seconds)
        self.watcher = self.new_watcher()
        self.family = GroupMailbox(self.ipc_root, "family")
        self.family.ensure()

    def new_watcher(self) -> IpcWatcher:
        return IpcWatcher(self.state, self.dispatcher, self.clock, self.config, self.ipc_root)

    async def _send(self, group_id: str, text: str) -> None:
        if self.send_error is not None:
            error, self.send_error = self.send_error, None
            raise error
        self.sent.append((group_id, text))

    async def _register(self, group: Group) -> Group:
        return self.state.register_group(group)

    def drop(self, name: str, body: dict | str, source: str = "hook:family") -> Path:
        if isinstance(body, dict):
            body = json.dumps({"sourceGroupId": source, **body})
        path = self.family.tasks_dir / name
        path.write_text(body, encoding="utf-8")
        return path


def _send(text: str, **payload) -> dict:
    return {"type": "send_message", "payload": {"text": text, **payload}}


@pytest.fixture
def fx(tmp_path: Path, store, sink, clock) -> Fixture:
    return Fixture(tmp_path, store, sink, clock, settle_seconds=0.0)


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_same_file_twice_dispatches_once(self, fx: Fixture) -> None:
        fx.drop("100-a.json", _send("hello"))
        first = await fx.watcher.scan_once()

        fx.drop("100-a.json", _send("hello"))
        second = await fx.watcher.scan_once()

        assert first == {FileOutcome.DISPATCHED: 1}
        assert second == {FileOutcome.DUPLICATE: 1}
        assert fx.sent == [("hook:family", "hello")]
        assert fx.family.pending_task_files() == []

    @pytest.mark.asyncio
    async def test_processed_marker_survives_restart(self, fx: Fixture) -> None:
        fx.drop("100-a.json", _send("hello"))
        await fx.watcher.scan_once()

        fx.drop("100-a.json", _send("hello"))
        outcome = await fx.new_watcher().scan_once()

        assert outcome == {FileOutcome.DUPLICATE: 1}
        assert len(fx.sent) == 1

    @pytest.mark.asyncio
    async def test_files_processed_in_name_order(self, fx: Fixture) -> None:
        fx.drop("200-b.json", _send("second"))
        fx.drop("100-a.json", _send("first"))
        await fx.watcher.scan_once()
        assert [text for _, text in fx.sent] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_in_flight_files_ignored(self, fx: Fixture) -> None:
        fx.drop(".tmp_x.tmp", "{partial")
        assert await fx.watcher.scan_once() == {}


class TestMalformed:
    @pytest.mark.asyncio
    async def test_old_malformed_file_rejected(self, fx: Fixture) -> None:
        fx.drop("100-a.json", "{not json")
        outcome = await fx.watcher.scan_once()

        assert outcome == {FileOutcome.REJECTED: 1}
        assert (fx.family.errors_dir / "100-a.json").exists()
        assert "Invalid JSON" in (fx.family.errors_dir / "100-a.error.txt").read_text()

    @pytest.mark.asyncio
    async def test_young_malformed_file_deferred(
        self, tmp_path: Path, store, sink, clock
    ) -> None:
        fx = Fixture(tmp_path, store, sink, clock, settle_seconds=60.0)
        path = fx.drop("100-a.json", '{"type": "send_mes')
        now = time.time()
        os.utime(path, (now, now))

        assert await fx.watcher.scan_once() == {FileOutcome.DEFERRED: 1}
        assert path.exists()

        # Completed in place; the next scan picks it up
        fx.drop("100-a.json", _send("done"))
        assert await fx.watcher.scan_once() == {FileOutcome.DISPATCHED: 1}


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_task_moved_to_errors(self, fx: Fixture) -> None:
        fx.drop("100-a.json", _send("psst", groupId="hook:me"))
        outcome = await fx.watcher.scan_once()

        assert outcome == {FileOutcome.REJECTED: 1}
        assert fx.sent == []
        assert "another group" in (fx.family.errors_dir / "100-a.error.txt").read_text()

    @pytest.mark.asyncio
    async def test_spoofed_source_rejected(self, fx: Fixture) -> None:
        """A session cannot claim to be main by editing sourceGroupId."""
        fx.drop(
            "100-a.json",
            {"type": "register_group",
             "payload": {"groupId": "hook:x", "name": "X", "folder": "x"}},
            source="hook:me",
        )
        assert await fx.watcher.scan_once() == {FileOutcome.REJECTED: 1}
        assert fx.state.get_group("hook:x") is None

    @pytest.mark.asyncio
    async def test_failed_dispatch_kept_for_inspection(self, fx: Fixture) -> None:
        fx.drop("100-a.json", {"type": "pause_task", "payload": {"taskId": "missing"}})
        assert await fx.watcher.scan_once() == {FileOutcome.FAILED: 1}
        assert (fx.family.errors_dir / "100-a.json").exists()

    @pytest.mark.asyncio
    async def test_unexpected_dispatch_error_is_recorded_not_lost(self, fx: Fixture) -> None:
        fx.send_error = OSError("disk full")
        fx.drop("100-a.json", _send("hello"))

        first = await fx.watcher.scan_once()
        second = await fx.watcher.scan_once()

        assert first == {FileOutcome.FAILED: 1}
        assert second == {}
        assert fx.family.pending_task_files() == []
        assert (fx.family.errors_dir / "100-a.json").exists()
        sidecar = (fx.family.errors_dir / "100-a.error.txt").read_text()
        assert "OSError: disk full" in sidecar
        assert not fx.family.is_processed("100-a.json")

    @pytest.mark.asyncio
    async def test_file_is_not_remembered_before_it_runs(self, fx: Fixture) -> None:
        fx.send_error = RuntimeError("callback exploded")
        fx.drop("100-a.json", _send("first try"))
        await fx.watcher.scan_once()

        fx.drop("100-b.json", _send("second try"))
        assert await fx.watcher.scan_once() == {FileOutcome.DISPATCHED: 1}
        assert fx.sent == [("hook:family", "second try")]


class TestProcessedMarkers:
    @pytest.mark.asyncio
    async def test_old_markers_pruned_recent_kept(self, fx: Fixture) -> None:
        fx.family.processed_dir.mkdir(parents=True, exist_ok=True)
        old = fx.family.processed_dir / "1-old.json"
        recent = fx.family.processed_dir / "2-recent.json"
        lingering = fx.family.processed_dir / "3-lingering.json"
        for marker in (old, recent, lingering):
            marker.touch()
        fx.drop("3-lingering.json", _send("still here"))
        month_ago = time.time() - 30 * 24 * 3600
        os.utime(old, (month_ago, month_ago))
        os.utime(lingering, (month_ago, month_ago))

        await fx.watcher.scan_once()

        assert not old.exists()
        assert recent.exists()
        # Its task file was still pending, so the marker kept it from rerunning
        assert lingering.exists()
        assert fx.sent == []

    @pytest.mark.asyncio
    async def test_pruning_runs_at_most_hourly(self, fx: Fixture) -> None:
        await fx.watcher.scan_once()
        marker = fx.family.processed_dir / "1-old.json"
        marker.touch()
        month_ago = time.time() - 30 * 24 * 3600
        os.utime(marker, (month_ago, month_ago))

        await fx.clock.advance(60)
        await fx.watcher.scan_once()
        assert marker.exists()

        await fx.clock.advance(3600)
        await fx.watcher.scan_once()
        assert not marker.exists()
