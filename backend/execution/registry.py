"""Registry of in-flight and recently finished command executions.

The registry owns every CommandExecution: it allocates ids, runs commands via
the ProcessRunner, records their output, publishes lifecycle events on the
tenant channel, and supports cancellation of running commands.

Lifecycle of a record:
    running -> completed | failed | cancelled

Transitions are one-way and happen under the registry lock together with
``finished_at``. Once terminal, a record's output log is frozen and the
record is purged after the retention period.
"""

import asyncio
import re
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from events.bus import EventBus
from events.types import EventType, SandboxEvent
from execution.runner import (
    CommandResult,
    OutputCallback,
    ProcessRunner,
    ProgressCallback,
)
from sandbox.errors import SandboxError

if TYPE_CHECKING:
    from metrics import MetricsCollector

logger = structlog.get_logger(__name__)

_EXECUTION_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ExecutionStatus(StrEnum):
    """Execution lifecycle status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class OutputChunk:
    """One entry of an execution's output log."""

    stream: str  # "stdout", "stderr" or "system"
    data: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CommandExecution:
    """A single command run tracked by the registry.

    Attributes:
        execution_id: Unique id within the registry.
        command: The shell command.
        channel: Tenant key events are published on.
        container_name: Container the command runs in.
        background: True for long-running commands (dev servers).
        started_at: Unix timestamp when the command was submitted.
        status: Current ExecutionStatus.
        finished_at: Unix timestamp of the terminal transition.
        output: Bounded, ordered output log.
        process: OS process handle once spawned.
        result: Final CommandResult once the process has ended.
    """

    execution_id: str
    command: str
    channel: str
    container_name: str
    output: deque[OutputChunk]
    background: bool = False
    started_at: float = field(default_factory=time.time)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    finished_at: float | None = None
    process: asyncio.subprocess.Process | None = None
    result: CommandResult | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.status == ExecutionStatus.RUNNING

    def transition(self, status: ExecutionStatus) -> bool:
        """Apply a terminal transition. Returns False if already terminal."""
        if self.status != ExecutionStatus.RUNNING:
            return False
        self.status = status
        self.finished_at = time.time()
        return True

    def append_output(self, stream: str, data: str) -> bool:
        """Append to the output log unless the execution is terminal."""
        if self.status != ExecutionStatus.RUNNING:
            return False
        self.output.append(OutputChunk(stream=stream, data=data))
        return True

    def text(self, stream: str) -> str:
        return "".join(c.data for c in self.output if c.stream == stream)

    def to_summary(self) -> dict[str, Any]:
        return {
            "id": self.execution_id,
            "command": self.command,
            "startTime": self.started_at,
            "status": self.status.value,
            "background": self.background,
        }


class CommandExecutionRegistry:
    """Tracks command executions and publishes their lifecycle events.

    Usage:
        >>> registry = CommandExecutionRegistry(ProcessRunner(), bus)
        >>> result = await registry.execute(
        ...     "npm install", "sandbox-alice", channel="alice", timeout=180
        ... )
        >>> registry.cancel(execution_id)
    """

    def __init__(
        self,
        runner: ProcessRunner,
        event_bus: EventBus,
        *,
        history_limit: int = 50,
        retention_seconds: float = 30.0,
        grace_seconds: float = 5.0,
        background_startup_seconds: float = 3.0,
        max_output_chunks: int = 5000,
        metrics_collector: "MetricsCollector | None" = None,
    ) -> None:
        self._runner = runner
        self._event_bus = event_bus
        self._retention_seconds = retention_seconds
        self._grace_seconds = grace_seconds
        self._background_startup_seconds = background_startup_seconds
        self._max_output_chunks = max_output_chunks
        self._metrics = metrics_collector
        self._executions: dict[str, CommandExecution] = {}
        self._history: deque[str] = deque(maxlen=history_limit)
        self._lock = threading.Lock()
        self._kill_tasks: set[asyncio.Task[None]] = set()
        self._purge_handles: dict[str, asyncio.TimerHandle] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        command: str,
        container_name: str,
        *,
        channel: str,
        timeout: float | None = None,
        background: bool = False,
        execution_id: str | None = None,
        on_output: OutputCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Register a command and start running it.

        Args:
            command: Shell command to run.
            container_name: Target container.
            channel: Tenant key events are published on.
            timeout: Seconds before termination. Ignored for background
                commands, which run until they exit or are cancelled.
            background: Treat as a long-running server process.
            execution_id: Optional client-chosen id.
            on_output: Extra per-chunk callback.
            on_progress: Extra progress callback.

        Returns:
            The execution id.

        Raises:
            ValueError: If ``execution_id`` is malformed or already in use.
        """
        if execution_id is not None and not _EXECUTION_ID.match(execution_id):
            raise ValueError(f"Invalid execution id: {execution_id!r}")
        eid = execution_id or f"exec_{uuid.uuid4().hex[:12]}"

        execution = CommandExecution(
            execution_id=eid,
            command=command,
            channel=channel,
            container_name=container_name,
            background=background,
            output=deque(maxlen=self._max_output_chunks),
        )
        with self._lock:
            if eid in self._executions:
                raise ValueError(f"Execution id {eid} is already in use")
            self._executions[eid] = execution
            self._history.appendleft(command)

        logger.info(
            "command_started",
            execution_id=eid,
            channel=channel,
            container=container_name,
            command=command,
            background=background,
        )
        self._publish(
            execution,
            EventType.COMMAND_STARTED,
            {"command": command, "background": background},
        )
        if self._metrics is not None:
            self._metrics.record_command_started(channel)

        execution.task = asyncio.create_task(
            self._run(
                execution,
                timeout=None if background else timeout,
                on_output=on_output,
                on_progress=on_progress,
            )
        )
        return eid

    async def wait(self, execution_id: str) -> CommandResult:
        """Wait for an execution's result.

        Foreground commands resolve when the process ends. Background
        commands resolve after the startup window with a success marker and
        the output seen so far, or earlier if the process exits first.

        Raises:
            KeyError: If the execution is unknown.
        """
        execution = self.get(execution_id)
        if execution is None or execution.task is None:
            raise KeyError(execution_id)

        if execution.background:
            await asyncio.wait({execution.task}, timeout=self._background_startup_seconds)
            if not execution.task.done():
                if execution.status == ExecutionStatus.CANCELLED:
                    return self._cancelled_result(execution)
                return CommandResult(
                    success=True,
                    stdout=execution.text("stdout"),
                    stderr=execution.text("stderr"),
                    exit_code=None,
                    duration_ms=int((time.time() - execution.started_at) * 1000),
                    background=True,
                )

        await asyncio.shield(execution.task)
        assert execution.result is not None
        return execution.result

    async def execute(
        self,
        command: str,
        container_name: str,
        *,
        channel: str,
        timeout: float | None = None,
        background: bool = False,
        execution_id: str | None = None,
        on_output: OutputCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[str, CommandResult]:
        """Submit a command and wait for its result.

        Returns:
            Tuple of (execution_id, CommandResult).
        """
        eid = self.submit(
            command,
            container_name,
            channel=channel,
            timeout=timeout,
            background=background,
            execution_id=execution_id,
            on_output=on_output,
            on_progress=on_progress,
        )
        return eid, await self.wait(eid)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, execution_id: str) -> bool:
        """Cancel a running execution.

        The status flips to cancelled immediately; the process is terminated
        in the background inside its container (SIGTERM, then SIGKILL after
        the grace window).

        Returns:
            True if a running execution was cancelled, False if the id is
            unknown or the execution already finished.
        """
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or not execution.is_running:
                return False
            execution.append_output("system", "Command cancelled by user\n")
            execution.transition(ExecutionStatus.CANCELLED)
            process = execution.process

        logger.info("command_cancelled", execution_id=execution_id, channel=execution.channel)
        self._publish(execution, EventType.COMMAND_CANCELLED, {"command": execution.command})
        if process is not None:
            self._schedule_kill(process)
        return True

    def cancel_channel(self, channel: str) -> int:
        """Cancel every running execution of a tenant. Returns the count."""
        return sum(1 for e in self.list_running(channel) if self.cancel(e.execution_id))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, execution_id: str) -> CommandExecution | None:
        with self._lock:
            return self._executions.get(execution_id)

    def list_running(self, channel: str | None = None) -> list[CommandExecution]:
        """Running executions, oldest first, optionally for one tenant."""
        with self._lock:
            running = [
                e for e in self._executions.values()
                if e.is_running and (channel is None or e.channel == channel)
            ]
        return sorted(running, key=lambda e: e.started_at)

    def history(self) -> list[str]:
        """Most recent command strings, newest first."""
        with self._lock:
            return list(self._history)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel all running executions and wait for their processes."""
        for execution in self.list_running():
            self.cancel(execution.execution_id)
        with self._lock:
            tasks = [e.task for e in self._executions.values() if e.task is not None]
            handles = list(self._purge_handles.values())
            self._purge_handles.clear()
        for handle in handles:
            handle.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=self._grace_seconds + 2.0)
        if self._kill_tasks:
            await asyncio.wait(list(self._kill_tasks), timeout=self._grace_seconds + 2.0)
        logger.info("registry_shutdown", executions=len(tasks))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        execution: CommandExecution,
        *,
        timeout: float | None,
        on_output: OutputCallback | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        eid = execution.execution_id

        def handle_output(stream: str, chunk: str) -> None:
            with self._lock:
                appended = execution.append_output(stream, chunk)
            if not appended:
                return
            self._publish(execution, EventType.COMMAND_OUTPUT, {"type": stream, "data": chunk})
            if on_output is not None:
                on_output(stream, chunk)

        def handle_progress(phase: str, percentage: int) -> None:
            if not execution.is_running:
                return
            self._publish(
                execution,
                EventType.COMMAND_PROGRESS,
                {"phase": phase, "percentage": percentage},
            )
            if on_progress is not None:
                on_progress(phase, percentage)

        def handle_spawn(process: asyncio.subprocess.Process) -> None:
            with self._lock:
                execution.process = process
                cancelled = execution.status == ExecutionStatus.CANCELLED
            if cancelled:
                self._schedule_kill(process)

        error_published = False
        try:
            result = await self._runner.run(
                execution.container_name,
                execution.command,
                timeout=timeout,
                on_output=handle_output,
                on_progress=handle_progress,
                on_spawn=handle_spawn,
            )
        except SandboxError as e:
            logger.warning("command_failed_to_run", execution_id=eid, error=str(e))
            result = self._error_result(execution, str(e))
            self._publish(
                execution,
                EventType.COMMAND_ERROR,
                {"error": str(e), "remediation": e.remediation},
            )
            error_published = True
        except Exception as e:
            logger.exception("command_unexpected_error", execution_id=eid)
            result = self._error_result(execution, f"Unexpected error: {e}")
            self._publish(execution, EventType.COMMAND_ERROR, {"error": str(e)})
            error_published = True

        self._finish(execution, result, error_published=error_published)

    def _finish(
        self,
        execution: CommandExecution,
        result: CommandResult,
        *,
        error_published: bool,
    ) -> None:
        with self._lock:
            if execution.status == ExecutionStatus.CANCELLED:
                result.success = False
                result.cancelled = True
                result.error = "Command cancelled"
                transitioned = False
            else:
                status = ExecutionStatus.COMPLETED if result.success else ExecutionStatus.FAILED
                transitioned = execution.transition(status)
            execution.result = result

        logger.info(
            "command_finished",
            execution_id=execution.execution_id,
            status=execution.status.value,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
        )

        if transitioned and not error_published:
            if result.timed_out:
                self._publish(execution, EventType.COMMAND_ERROR, {"error": result.error})
            else:
                self._publish(
                    execution,
                    EventType.COMMAND_FINISHED,
                    {
                        "exitCode": result.exit_code,
                        "duration": result.duration_ms,
                        "success": result.success,
                    },
                )

        if self._metrics is not None:
            self._metrics.record_command_finished(
                execution.channel,
                status=execution.status.value,
                duration_ms=result.duration_ms,
                timed_out=result.timed_out,
            )

        loop = asyncio.get_running_loop()
        self._purge_handles[execution.execution_id] = loop.call_later(
            self._retention_seconds, self._purge, execution.execution_id
        )

    def _purge(self, execution_id: str) -> None:
        with self._lock:
            self._purge_handles.pop(execution_id, None)
            execution = self._executions.get(execution_id)
            if execution is not None and not execution.is_running:
                del self._executions[execution_id]
        logger.debug("execution_purged", execution_id=execution_id)

    def _schedule_kill(self, process: asyncio.subprocess.Process) -> None:
        task = asyncio.create_task(self._runner.terminate(process, self._grace_seconds))
        self._kill_tasks.add(task)
        task.add_done_callback(self._kill_tasks.discard)

    def _publish(self, execution: CommandExecution, event_type: EventType, data: dict[str, Any]) -> None:
        self._event_bus.publish(
            SandboxEvent(
                type=event_type,
                channel=execution.channel,
                data={"executionId": execution.execution_id, **data},
            )
        )

    @staticmethod
    def _error_result(execution: CommandExecution, error: str) -> CommandResult:
        return CommandResult(
            success=False,
            stdout=execution.text("stdout"),
            stderr=execution.text("stderr"),
            exit_code=None,
            duration_ms=int((time.time() - execution.started_at) * 1000),
            error=error,
        )

    @staticmethod
    def _cancelled_result(execution: CommandExecution) -> CommandResult:
        return CommandResult(
            success=False,
            stdout=execution.text("stdout"),
            stderr=execution.text("stderr"),
            exit_code=None,
            duration_ms=int((time.time() - execution.started_at) * 1000),
            cancelled=True,
            background=execution.background,
            error="Command cancelled",
        )
