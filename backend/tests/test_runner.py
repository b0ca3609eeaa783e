"""Tests for execution/runner.py -- spawning and supervising one command.

Commands run through the local shell (LocalProcessRunner) so the streaming,
timeout and kill logic is exercised against real processes without Docker.
"""

import asyncio
import contextlib
import os
import signal
import time

import pytest

from execution.runner import ProcessRunner, is_missing_container_error, terminate_process
from sandbox.errors import ContainerNotFoundError, RuntimeNotInstalledError
from tests.conftest import LocalProcessRunner, SignalRecordingRunner

# =========================================================================
# Argument vector
# =========================================================================


class TestBuildArgv:
    def test_docker_exec_argv(self) -> None:
        runner = ProcessRunner("docker")
        assert runner.build_argv("sandbox-alice", "ls -la") == [
            "docker", "exec", "-i", "sandbox-alice", "sh", "-c", "ls -la",
        ]

    def test_custom_runtime_binary(self) -> None:
        assert ProcessRunner("podman").build_argv("c", "true")[0] == "podman"

    def test_pid_file_wrapper(self) -> None:
        argv = ProcessRunner("docker").build_argv("sandbox-alice", "npm test", "/tmp/.exec-1.pid")
        assert argv[:6] == ["docker", "exec", "-i", "sandbox-alice", "sh", "-c"]
        assert "echo $$ > /tmp/.exec-1.pid" in argv[6]
        assert argv[7] == "npm test"


# =========================================================================
# Normal completion
# =========================================================================


class TestRun:
    """Commands that exit on their own."""

    async def test_success(self, local_runner: LocalProcessRunner) -> None:
        result = await local_runner.run("c", "echo hi")
        assert result.success is True
        assert result.exit_code == 0
        assert result.stdout == "hi\n"
        assert result.error is None
        assert result.duration_ms >= 0

    async def test_non_zero_exit_is_a_result(self, local_runner: LocalProcessRunner) -> None:
        result = await local_runner.run("c", "echo oops 1>&2; exit 3")
        assert result.success is False
        assert result.exit_code == 3
        assert result.stderr == "oops\n"
        assert "code 3" in (result.error or "")
        assert result.timed_out is False

    async def test_output_property_combines_streams(self, local_runner: LocalProcessRunner) -> None:
        result = await local_runner.run("c", "echo out; echo err 1>&2")
        assert "out\n" in result.output
        assert "err\n" in result.output

    async def test_chunks_relayed_in_order(self, local_runner: LocalProcessRunner) -> None:
        chunks: list[tuple[str, str]] = []
        await local_runner.run(
            "c",
            "printf 'a\\n'; sleep 0.1; printf 'b\\n'; echo e 1>&2",
            on_output=lambda stream, chunk: chunks.append((stream, chunk)),
        )
        stdout = "".join(c for s, c in chunks if s == "stdout")
        stderr = "".join(c for s, c in chunks if s == "stderr")
        assert stdout == "a\nb\n"
        assert stderr == "e\n"

    async def test_output_seen_before_exit(self, local_runner: LocalProcessRunner) -> None:
        first_chunk_at: list[float] = []

        def on_output(stream: str, chunk: str) -> None:
            if not first_chunk_at:
                first_chunk_at.append(time.monotonic())

        started = time.monotonic()
        await local_runner.run("c", "echo early; sleep 0.5", on_output=on_output)
        finished = time.monotonic()
        assert first_chunk_at
        assert first_chunk_at[0] - started < finished - started - 0.3

    async def test_multibyte_output_decoded(self, local_runner: LocalProcessRunner) -> None:
        result = await local_runner.run("c", "printf 'h\\303\\251llo\\n'")
        assert result.stdout == "héllo\n"

    async def test_progress_phases(self, local_runner: LocalProcessRunner) -> None:
        phases: list[tuple[str, int]] = []
        await local_runner.run(
            "c",
            "echo 'added 12 packages in 2s'",
            on_progress=lambda phase, pct: phases.append((phase, pct)),
        )
        assert phases[0] == ("preparing", 0)
        assert ("dependencies installed", 90) in phases
        assert phases[-1] == ("finished", 100)

    async def test_on_spawn_receives_process(self, local_runner: LocalProcessRunner) -> None:
        spawned: list[asyncio.subprocess.Process] = []
        await local_runner.run("c", "true", on_spawn=spawned.append)
        assert len(spawned) == 1
        assert spawned[0].returncode == 0


# =========================================================================
# Timeout and cancellation
# =========================================================================


class TestTimeout:
    """A foreground command is killed when its timeout expires."""

    async def test_timeout_kills_process(self, local_runner: LocalProcessRunner) -> None:
        spawned: list[asyncio.subprocess.Process] = []
        started = time.monotonic()
        result = await local_runner.run("c", "sleep 30", timeout=0.2, on_spawn=spawned.append)
        elapsed = time.monotonic() - started

        assert result.timed_out is True
        assert result.success is False
        assert "timed out" in (result.error or "")
        assert elapsed < 0.2 + local_runner.grace_seconds + 2.0
        assert spawned[0].returncode is not None

    async def test_timeout_escalates_to_sigkill(self) -> None:
        runner = LocalProcessRunner(grace_seconds=0.2)
        result = await runner.run("c", "trap '' TERM; sleep 30", timeout=0.2)
        assert result.timed_out is True

    async def test_output_before_timeout_kept(self, local_runner: LocalProcessRunner) -> None:
        result = await local_runner.run("c", "echo partial; sleep 30", timeout=0.3)
        assert result.timed_out is True
        assert result.stdout == "partial\n"

    async def test_no_timeout(self, local_runner: LocalProcessRunner) -> None:
        result = await local_runner.run("c", "sleep 0.1; echo done", timeout=None)
        assert result.success is True


class TestCancellation:
    async def test_cancelling_run_kills_process(self, local_runner: LocalProcessRunner) -> None:
        spawned: list[asyncio.subprocess.Process] = []
        task = asyncio.create_task(local_runner.run("c", "sleep 30", on_spawn=spawned.append))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert spawned[0].returncode is not None

    async def test_terminate_finished_process_is_noop(self) -> None:
        process = await asyncio.create_subprocess_exec("true")
        await process.wait()
        await terminate_process(process, grace_seconds=0.1)
        assert process.returncode == 0


# =========================================================================
# Runtime failures
# =========================================================================


class TestRuntimeFailures:
    async def test_missing_runtime_binary(self) -> None:
        runner = ProcessRunner("/nonexistent/docker-binary")
        with pytest.raises(RuntimeNotInstalledError) as exc_info:
            await runner.run("c", "true")
        assert exc_info.value.kind == "environment"
        assert exc_info.value.remediation

    async def test_missing_container_reported(self, local_runner: LocalProcessRunner) -> None:
        with pytest.raises(ContainerNotFoundError):
            await local_runner.run(
                "c",
                "echo 'Error response from daemon: No such container: c' 1>&2; exit 1",
            )

    async def test_stopped_container_reported(self, local_runner: LocalProcessRunner) -> None:
        with pytest.raises(ContainerNotFoundError):
            await local_runner.run(
                "c",
                "echo 'Error response from daemon: container abc is not running' 1>&2; exit 1",
            )

    async def test_user_output_about_stopped_service(self, local_runner: LocalProcessRunner) -> None:
        result = await local_runner.run("c", "echo 'nginx is not running' >&2; exit 3")
        assert result.success is False
        assert result.exit_code == 3
        assert "nginx is not running" in result.stderr

    async def test_user_output_about_missing_container(self, local_runner: LocalProcessRunner) -> None:
        result = await local_runner.run("c", "echo 'No such container: foo' >&2; exit 1")
        assert result.exit_code == 1
        assert result.error == "Command exited with code 1"

    def test_only_runtime_error_line_counts(self) -> None:
        assert is_missing_container_error(1, "Error: No such container: abc\n") is True
        assert is_missing_container_error(
            1, "Error response from daemon: Container 3f2a is not running\n"
        ) is True
        assert is_missing_container_error(2, "Error: No such container: abc\n") is False
        assert is_missing_container_error(
            1, "building...\nError response from daemon: No such container: x\n"
        ) is False


# =========================================================================
# Killing inside the container
# =========================================================================


async def _wait_for_file(path) -> None:
    for _ in range(100):
        if path.exists() and path.read_text().strip():
            return
        await asyncio.sleep(0.02)
    raise AssertionError(f"{path} was never written")


class TestContainerKill:
    """Timeouts and cancellation signal the process tree inside the container."""

    async def test_timeout_signals_container(self) -> None:
        runner = SignalRecordingRunner(grace_seconds=0.5)
        result = await runner.run("sandbox-alice", "sleep 30", timeout=0.2)

        assert result.timed_out is True
        container_name, pid_file, sig = runner.signals[0]
        assert container_name == "sandbox-alice"
        assert pid_file.startswith("/tmp/.exec-")
        assert sig == "TERM"

    async def test_timeout_escalates_inside_container(self) -> None:
        runner = SignalRecordingRunner(grace_seconds=0.2)
        result = await runner.run("sandbox-alice", "trap '' TERM; sleep 30", timeout=0.2)

        assert result.timed_out is True
        assert [s for _, _, s in runner.signals] == ["TERM", "KILL"]

    async def test_cancel_signals_container(self) -> None:
        runner = SignalRecordingRunner(grace_seconds=0.5)
        task = asyncio.create_task(runner.run("sandbox-alice", "sleep 30"))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert runner.signals[0][0] == "sandbox-alice"
        assert runner.signals[0][2] == "TERM"

    async def test_tree_signal_uses_recorded_pid(self, local_runner: LocalProcessRunner, tmp_path) -> None:
        pid_file = tmp_path / "exec.pid"
        process = await local_runner.spawn("c", "sleep 30", str(pid_file))
        try:
            await _wait_for_file(pid_file)
            assert pid_file.read_text().strip() == str(process.pid)

            await local_runner.signal_container("c", str(pid_file), "KILL")
            await asyncio.wait_for(process.wait(), timeout=5)

            assert process.returncode != 0
            assert not pid_file.exists()
        finally:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)

    async def test_pid_file_removed_on_exit(self, local_runner: LocalProcessRunner, tmp_path) -> None:
        pid_file = tmp_path / "exec.pid"
        process = await local_runner.spawn("c", "true", str(pid_file))
        await process.wait()

        assert process.returncode == 0
        assert not pid_file.exists()

    async def test_signal_without_pid_file_is_noop(self, local_runner: LocalProcessRunner, tmp_path) -> None:
        await local_runner.signal_container("c", str(tmp_path / "missing.pid"), "TERM")
