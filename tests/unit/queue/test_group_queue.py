"""Tests for GroupQueue: per-group FIFO and the global session cap."""

import json

import pytest

from nestor.config.schema import Config
from nestor.core.state import HostState
from nestor.core.types import Group
from nestor.queue.group_queue import GroupQueue
from nestor.queue.types import EntryKind, QueueEntry
from nestor.session.manager import SessionLifecycleManager
from nestor.session.types import SessionState


def build(config: Config, store, runtime, clock, *, cap: int = 3):
    state = HostState("main")
    for folder in ("family", "work"):
        state.register_group(Group(f"hook:{folder}", folder.title(), folder))
    manager = SessionLifecycleManager(
        state, config, store, runtime, clock, allowlist_loader=lambda path: None
    )
    queue = GroupQueue(state, manager, clock, max_concurrent_sessions=cap)
    return state, manager, queue


def running(state: HostState, group_id: str) -> bool:
    session = state.live_session(group_id)
    return session is not None and session.state is SessionState.RUNNING


def input_payloads(manager: SessionLifecycleManager, folder: str) -> list[str]:
    return [
        json.loads(p.read_text())["text"]
        for p in manager.mailbox_for(folder).pending_input_files()
    ]


class TestPerGroupOrdering:
    @pytest.mark.asyncio
    async def test_burst_for_one_group_starts_one_session(
        self, host_config, store, runtime, clock, wait_until
    ) -> None:
        state, manager, queue = build(host_config, store, runtime, clock)
        try:
            for text in ("one", "two", "three"):
                assert queue.enqueue("hook:family", text)

            await wait_until(lambda: len(input_payloads(manager, "family")) == 2)

            assert len(runtime.processes) == 1
            assert runtime.processes[0].initial_input()["prompt"] == "one"
            assert sorted(input_payloads(manager, "family")) == ["three", "two"]
            assert queue.active_slots == 1
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_entry_for_draining_group_waits_and_spawns_afresh(
        self, host_config, store, runtime, clock, wait_until
    ) -> None:
        state, manager, queue = build(host_config, store, runtime, clock)
        try:
            queue.enqueue("hook:family", "first")
            await wait_until(lambda: running(state, "hook:family"))
            assert queue.drain_if_idle("hook:family")

            queue.enqueue("hook:family", "second")
            await wait_until(lambda: queue.pending_count("hook:family") == 0)
            assert len(runtime.processes) == 1

            runtime.processes[0].exit(0)
            await wait_until(lambda: len(runtime.processes) == 2)

            assert runtime.processes[1].initial_input()["prompt"] == "second"
            assert input_payloads(manager, "family") == []
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_scheduled_entry_flags_session(
        self, host_config, store, runtime, clock, wait_until
    ) -> None:
        state, manager, queue = build(host_config, store, runtime, clock)
        try:
            queue.enqueue("hook:family", "check plants", kind=EntryKind.TASK, task_id="t-1")
            await wait_until(lambda: len(runtime.processes) == 1)
            await wait_until(lambda: runtime.processes[0].input is not None)

            session = state.live_session("hook:family")
            assert session.is_scheduled
            assert session.task_id == "t-1"
            assert runtime.processes[0].initial_input()["isScheduledTask"] is True
        finally:
            await queue.close()


class TestGlobalCap:
    @pytest.mark.asyncio
    async def test_cap_blocks_other_groups_until_release(
        self, host_config, store, runtime, clock, wait_until
    ) -> None:
        state, manager, queue = build(host_config, store, runtime, clock, cap=1)
        try:
            queue.enqueue("hook:family", "a")
            await wait_until(lambda: queue.active_slots == 1)
            queue.enqueue("hook:work", "b")
            await wait_until(lambda: queue.pending_count("hook:work") == 0)

            assert len(runtime.processes) == 1
            assert state.live_session("hook:work") is None

            runtime.processes[0].exit(0)
            await wait_until(lambda: len(runtime.processes) == 2)
            await wait_until(lambda: runtime.processes[1].input is not None)

            assert runtime.processes[1].initial_input()["groupId"] == "hook:work"
            assert queue.active_slots == 1
        finally:
            await queue.close()


class TestFailures:
    @pytest.mark.asyncio
    async def test_start_failure_drops_only_that_entry(
        self, host_config, store, runtime, clock, wait_until
    ) -> None:
        state, manager, queue = build(host_config, store, runtime, clock, cap=1)
        failures: list[tuple[QueueEntry, str]] = []

        async def on_failure(entry: QueueEntry, error: str) -> None:
            failures.append((entry, error))
            runtime.fail_with = None

        queue.set_failure_callback(on_failure)
        runtime.fail_with = OSError("no runtime")
        try:
            queue.enqueue("hook:family", "doomed")
            queue.enqueue("hook:family", "survivor")
            await wait_until(lambda: len(runtime.processes) == 1)
            await wait_until(lambda: runtime.processes[0].input is not None)

            [(entry, error)] = failures
            assert entry.payload == "doomed"
            assert "no runtime" in error
            assert runtime.processes[0].initial_input()["prompt"] == "survivor"
            assert queue.active_slots == 1
        finally:
            await queue.close()


class TestClose:
    @pytest.mark.asyncio
    async def test_enqueue_after_close_is_refused(self, host_config, store, runtime, clock) -> None:
        state, manager, queue = build(host_config, store, runtime, clock)
        await queue.close()

        assert queue.closed
        assert queue.enqueue("hook:family", "late") is False
        assert queue.pending_count("hook:family") == 0

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, host_config, store, runtime, clock) -> None:
        state, manager, queue = build(host_config, store, runtime, clock)
        queue.enqueue("hook:family", "hi")
        await queue.close()
        await queue.close()
        assert queue.closed


class TestDrainIfIdle:
    @pytest.mark.asyncio
    async def test_no_session_means_no_drain(self, host_config, store, runtime, clock) -> None:
        state, manager, queue = build(host_config, store, runtime, clock)
        try:
            assert queue.drain_if_idle("hook:family") is False
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_running_session_is_drained(
        self, host_config, store, runtime, clock, wait_until
    ) -> None:
        state, manager, queue = build(host_config, store, runtime, clock)
        try:
            queue.enqueue("hook:family", "hi")
            await wait_until(lambda: running(state, "hook:family"))

            assert queue.drain_if_idle("hook:family") is True
            assert state.live_session("hook:family").state is SessionState.DRAINING
            assert queue.drain_if_idle("hook:family") is False
        finally:
            await queue.close()
