"""Tests for execution/registry.py -- tracking, cancelling and purging executions.

Uses LocalProcessRunner so executions run real /bin/sh processes, and a real
EventBus subscription to check the events each execution publishes.
"""

import asyncio

import pytest

from events.bus import EventBus
from events.types import EventType
from execution.registry import CommandExecutionRegistry, ExecutionStatus
from execution.runner import CommandResult, ProcessRunner
from metrics import MetricsCollector
from sandbox.errors import ContainerNotFoundError
from tests.conftest import LocalProcessRunner, SignalRecordingRunner, drain, event_types

CHANNEL = "alice"


@pytest.fixture()
async def registry(event_bus: EventBus, local_runner: LocalProcessRunner):
    reg = CommandExecutionRegistry(
        local_runner,
        event_bus,
        history_limit=3,
        retention_seconds=30.0,
        grace_seconds=0.5,
        background_startup_seconds=0.3,
    )
    yield reg
    await reg.shutdown()


class _BrokenRunner(ProcessRunner):
    """Runner whose container has disappeared."""

    async def run(self, container_name: str, command: str, **kwargs: object) -> CommandResult:
        raise ContainerNotFoundError(f"Container '{container_name}' is not available")


# =========================================================================
# Execute
# =========================================================================


class TestExecute:
    """Foreground executions run to completion."""

    async def test_execute_success(
        self, registry: CommandExecutionRegistry, event_bus: EventBus
    ) -> None:
        sub = event_bus.subscribe(CHANNEL)
        eid, result = await registry.execute("echo hi", "sandbox-alice", channel=CHANNEL, timeout=5)

        assert eid.startswith("exec_")
        assert result.success is True
        assert result.stdout == "hi\n"

        execution = registry.get(eid)
        assert execution is not None
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.finished_at is not None
        assert execution.text("stdout") == "hi\n"

        events = drain(sub)
        types = [t for t in event_types(events) if t != EventType.COMMAND_PROGRESS]
        assert types == [
            EventType.COMMAND_STARTED,
            EventType.COMMAND_OUTPUT,
            EventType.COMMAND_FINISHED,
        ]
        assert all(e.data["executionId"] == eid for e in events)
        finished = events[-1]
        assert finished.data["exitCode"] == 0
        assert finished.data["success"] is True

    async def test_execute_failure(self, registry: CommandExecutionRegistry) -> None:
        eid, result = await registry.execute("exit 2", "c", channel=CHANNEL, timeout=5)
        assert result.success is False
        assert result.exit_code == 2
        assert registry.get(eid).status == ExecutionStatus.FAILED

    async def test_failure_mentioning_missing_container(
        self, registry: CommandExecutionRegistry, event_bus: EventBus
    ) -> None:
        sub = event_bus.subscribe(CHANNEL)
        eid, result = await registry.execute(
            "echo 'No such container: foo' >&2; exit 1", "c", channel=CHANNEL, timeout=5
        )

        assert result.exit_code == 1
        assert "No such container: foo" in result.stderr
        assert registry.get(eid).status == ExecutionStatus.FAILED
        types = event_types(drain(sub))
        assert EventType.COMMAND_FINISHED in types
        assert EventType.COMMAND_ERROR not in types

    async def test_client_execution_id(self, registry: CommandExecutionRegistry) -> None:
        eid, _ = await registry.execute("true", "c", channel=CHANNEL, execution_id="my-run_1")
        assert eid == "my-run_1"

    async def test_invalid_execution_id(self, registry: CommandExecutionRegistry) -> None:
        with pytest.raises(ValueError):
            registry.submit("true", "c", channel=CHANNEL, execution_id="bad id!")

    async def test_duplicate_execution_id(self, registry: CommandExecutionRegistry) -> None:
        registry.submit("sleep 1", "c", channel=CHANNEL, execution_id="dup")
        with pytest.raises(ValueError):
            registry.submit("true", "c", channel=CHANNEL, execution_id="dup")

    async def test_output_callback_receives_chunks(self, registry: CommandExecutionRegistry) -> None:
        seen: list[str] = []
        await registry.execute(
            "echo one", "c", channel=CHANNEL, on_output=lambda s, c: seen.append(c)
        )
        assert "".join(seen) == "one\n"

    async def test_timeout_reported_as_error(
        self, registry: CommandExecutionRegistry, event_bus: EventBus
    ) -> None:
        sub = event_bus.subscribe(CHANNEL)
        eid, result = await registry.execute("sleep 30", "c", channel=CHANNEL, timeout=0.2)

        assert result.timed_out is True
        assert registry.get(eid).status == ExecutionStatus.FAILED
        types = event_types(drain(sub))
        assert EventType.COMMAND_ERROR in types
        assert EventType.COMMAND_FINISHED not in types

    async def test_runner_error_becomes_result(self, event_bus: EventBus) -> None:
        reg = CommandExecutionRegistry(_BrokenRunner(), event_bus)
        sub = event_bus.subscribe(CHANNEL)
        eid, result = await reg.execute("ls", "gone", channel=CHANNEL)

        assert result.success is False
        assert result.exit_code is None
        assert "not available" in (result.error or "")
        assert reg.get(eid).status == ExecutionStatus.FAILED
        errors = [e for e in drain(sub) if e.type == EventType.COMMAND_ERROR]
        assert len(errors) == 1
        assert errors[0].data["remediation"]
        await reg.shutdown()


# =========================================================================
# Cancel
# =========================================================================


class TestCancel:
    """Cancellation flips the status at once and kills the process."""

    async def test_cancel_running(
        self, registry: CommandExecutionRegistry, event_bus: EventBus
    ) -> None:
        sub = event_bus.subscribe(CHANNEL)
        eid = registry.submit("sleep 30", "c", channel=CHANNEL, timeout=60)
        await asyncio.sleep(0.2)

        assert registry.cancel(eid) is True
        execution = registry.get(eid)
        assert execution.status == ExecutionStatus.CANCELLED

        result = await asyncio.wait_for(registry.wait(eid), timeout=5)
        assert result.cancelled is True
        assert result.success is False
        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.process is not None
        assert execution.process.returncode is not None
        assert any(c.stream == "system" for c in execution.output)

        types = event_types(drain(sub))
        assert EventType.COMMAND_CANCELLED in types
        assert EventType.COMMAND_FINISHED not in types

    async def test_cancel_signals_container(self, event_bus: EventBus) -> None:
        runner = SignalRecordingRunner(grace_seconds=0.5)
        reg = CommandExecutionRegistry(runner, event_bus, grace_seconds=0.5)
        try:
            eid = reg.submit("sleep 30", "sandbox-alice", channel=CHANNEL)
            await asyncio.sleep(0.2)
            assert reg.cancel(eid) is True

            result = await asyncio.wait_for(reg.wait(eid), timeout=5)
            assert result.cancelled is True
            container_name, _, sig = runner.signals[0]
            assert container_name == "sandbox-alice"
            assert sig == "TERM"
        finally:
            await reg.shutdown()

    async def test_cancel_is_idempotent(self, registry: CommandExecutionRegistry) -> None:
        eid = registry.submit("sleep 30", "c", channel=CHANNEL)
        await asyncio.sleep(0.1)
        assert registry.cancel(eid) is True
        assert registry.cancel(eid) is False

    async def test_cancel_unknown(self, registry: CommandExecutionRegistry) -> None:
        assert registry.cancel("exec_missing") is False

    async def test_cancel_finished(self, registry: CommandExecutionRegistry) -> None:
        eid, _ = await registry.execute("true", "c", channel=CHANNEL)
        assert registry.cancel(eid) is False
        assert registry.get(eid).status == ExecutionStatus.COMPLETED

    async def test_cancel_before_spawn(self, registry: CommandExecutionRegistry) -> None:
        eid = registry.submit("sleep 30", "c", channel=CHANNEL)
        assert registry.cancel(eid) is True
        result = await asyncio.wait_for(registry.wait(eid), timeout=5)
        assert result.cancelled is True

    async def test_output_log_frozen_after_cancel(self, registry: CommandExecutionRegistry) -> None:
        eid = registry.submit("sleep 0.3; echo late", "c", channel=CHANNEL)
        await asyncio.sleep(0.1)
        registry.cancel(eid)
        await asyncio.wait_for(registry.wait(eid), timeout=5)
        assert "late" not in registry.get(eid).text("stdout")

    async def test_cancel_channel(self, registry: CommandExecutionRegistry) -> None:
        registry.submit("sleep 30", "c", channel=CHANNEL)
        registry.submit("sleep 30", "c", channel=CHANNEL)
        other = registry.submit("sleep 30", "c", channel="bob")
        await asyncio.sleep(0.1)

        assert registry.cancel_channel(CHANNEL) == 2
        assert registry.list_running(CHANNEL) == []
        assert [e.execution_id for e in registry.list_running()] == [other]


# =========================================================================
# Background commands
# =========================================================================


class TestBackground:
    """Dev servers return after the startup window and keep running."""

    async def test_background_returns_after_window(self, registry: CommandExecutionRegistry) -> None:
        eid, result = await asyncio.wait_for(
            registry.execute(
                "echo ready; sleep 30", "c", channel=CHANNEL, timeout=0.1, background=True
            ),
            timeout=5,
        )
        assert result.success is True
        assert result.background is True
        assert result.stdout == "ready\n"

        execution = registry.get(eid)
        assert execution.is_running
        assert execution.background is True
        assert registry.cancel(eid) is True

    async def test_background_that_exits_early(self, registry: CommandExecutionRegistry) -> None:
        _, result = await registry.execute("exit 1", "c", channel=CHANNEL, background=True)
        assert result.success is False
        assert result.exit_code == 1
        assert result.background is False


# =========================================================================
# Queries, history and retention
# =========================================================================


class TestQueries:
    async def test_list_running(self, registry: CommandExecutionRegistry) -> None:
        first = registry.submit("sleep 30", "c", channel=CHANNEL)
        await asyncio.sleep(0.01)
        second = registry.submit("sleep 30", "c", channel=CHANNEL)
        running = registry.list_running(CHANNEL)
        assert [e.execution_id for e in running] == [first, second]
        summary = running[0].to_summary()
        assert summary["id"] == first
        assert summary["status"] == "running"
        assert "startTime" in summary

    async def test_history_newest_first_and_capped(self, registry: CommandExecutionRegistry) -> None:
        for i in range(4):
            await registry.execute(f"echo {i}", "c", channel=CHANNEL)
        assert registry.history() == ["echo 3", "echo 2", "echo 1"]

    async def test_finished_executions_purged(
        self, event_bus: EventBus, local_runner: LocalProcessRunner
    ) -> None:
        reg = CommandExecutionRegistry(local_runner, event_bus, retention_seconds=0.1)
        eid, _ = await reg.execute("true", "c", channel=CHANNEL)
        assert reg.get(eid) is not None
        await asyncio.sleep(0.3)
        assert reg.get(eid) is None
        assert reg.history() == ["true"]
        await reg.shutdown()

    async def test_output_log_bounded(
        self, event_bus: EventBus, local_runner: LocalProcessRunner
    ) -> None:
        reg = CommandExecutionRegistry(local_runner, event_bus, max_output_chunks=2)
        eid, _ = await reg.execute(
            "echo a; sleep 0.05; echo b; sleep 0.05; echo c", "c", channel=CHANNEL
        )
        assert len(reg.get(eid).output) <= 2
        await reg.shutdown()


# =========================================================================
# Metrics and shutdown
# =========================================================================


class TestMetricsAndShutdown:
    async def test_metrics_recorded(
        self, event_bus: EventBus, local_runner: LocalProcessRunner
    ) -> None:
        collector = MetricsCollector()
        reg = CommandExecutionRegistry(local_runner, event_bus, metrics_collector=collector)
        await reg.execute("true", "c", channel=CHANNEL)
        await reg.execute("exit 1", "c", channel=CHANNEL)

        data = collector.get(CHANNEL)
        assert data.commands_started == 2
        assert data.commands_completed == 1
        assert data.commands_failed == 1
        await reg.shutdown()

    async def test_shutdown_cancels_running(
        self, event_bus: EventBus, local_runner: LocalProcessRunner
    ) -> None:
        reg = CommandExecutionRegistry(local_runner, event_bus, grace_seconds=0.5)
        eid = reg.submit("sleep 30", "c", channel=CHANNEL)
        await asyncio.sleep(0.1)
        await asyncio.wait_for(reg.shutdown(), timeout=5)
        execution = reg.get(eid)
        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.task.done()
