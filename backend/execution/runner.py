"""Process runner for commands executed inside sandbox containers.

Each command runs as ``docker exec -i <container> sh -c <wrapper> <command>``
in its own process group. The wrapper records its in-container PID in a pid
file so that a timeout or cancellation can signal the process tree inside the
container, not just the local ``docker exec`` client. Stdout and stderr are
pumped concurrently and every chunk is relayed to the caller as soon as it is
read.
"""

import asyncio
import codecs
import contextlib
import os
import re
import shlex
import signal
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from execution.commands import detect_progress
from sandbox.errors import ContainerNotFoundError, RuntimeNotInstalledError

logger = structlog.get_logger(__name__)

OutputCallback = Callable[[str, str], None]
ProgressCallback = Callable[[str, int], None]
SpawnCallback = Callable[[asyncio.subprocess.Process], None]

READ_CHUNK_SIZE = 4096

# Only the runtime's own error line counts; user output that happens to
# mention a missing or stopped container is a normal command failure.
_DAEMON_MISSING_CONTAINER = re.compile(
    r"Error(?: response from daemon)?: "
    r"(?:No such container|[Cc]ontainer \S+ is not running)"
)

# $0 carries the user command so it never needs re-quoting. The wrapper holds
# off SIGTERM until its child exits, so the exec session ends only once the
# command itself is gone.
_PID_WRAPPER = (
    'trap : TERM; echo $$ > {pid_file}; sh -c "$0"; status=$?; '
    "rm -f {pid_file}; exit $status"
)

# Signals the recorded PID and all of its descendants, children first.
_TREE_SIGNAL = (
    'sig=$1; pid=$(cat "$2" 2>/dev/null) || exit 0; '
    'tree() { for child in $(pgrep -P "$1" 2>/dev/null); do tree "$child"; done; '
    'kill -"$sig" "$1" 2>/dev/null; }; '
    'tree "$pid"; [ "$sig" = KILL ] && rm -f "$2"; exit 0'
)

_HELPER_TIMEOUT_SECONDS = 10.0


@dataclass
class CommandResult:
    """Result of executing a command in a sandbox container.

    ``success`` is True only for a foreground command that exited 0 without
    timing out or being cancelled, or for a background command that was still
    alive when the startup window ended.
    """

    success: bool
    stdout: str
    stderr: str
    exit_code: int | None
    duration_ms: int
    timed_out: bool = False
    cancelled: bool = False
    background: bool = False
    error: str | None = None

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


def is_missing_container_error(exit_code: int | None, stderr: str) -> bool:
    """True when ``docker exec`` itself failed because the container is gone."""
    if exit_code != 1:
        return False
    return _DAEMON_MISSING_CONTAINER.match(stderr.lstrip()) is not None


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(sig)


async def terminate_process(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """Two-stage kill: SIGTERM the process group, SIGKILL after the grace window.

    Only reaches processes on this host. Returns once the process has exited.
    """
    if process.returncode is not None:
        return
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        logger.warning("process_kill_escalated", pid=process.pid, grace_seconds=grace_seconds)
        _signal_group(process, signal.SIGKILL)
        await process.wait()


class ProcessRunner:
    """Spawns commands in containers and streams their output.

    Attributes:
        runtime_binary: Container runtime CLI (``docker``).
        grace_seconds: Wait between SIGTERM and SIGKILL on timeout.
    """

    def __init__(self, runtime_binary: str = "docker", grace_seconds: float = 5.0) -> None:
        self.runtime_binary = runtime_binary
        self.grace_seconds = grace_seconds
        # process -> (container name, in-container pid file) while it runs
        self._targets: dict[asyncio.subprocess.Process, tuple[str, str]] = {}

    def exec_argv(self, container_name: str, argv: list[str]) -> list[str]:
        """Argument vector running ``argv`` inside ``container_name``."""
        return [self.runtime_binary, "exec", "-i", container_name, *argv]

    def build_argv(self, container_name: str, command: str, pid_file: str | None = None) -> list[str]:
        """Argument vector for running ``command`` inside ``container_name``.

        With ``pid_file`` the command runs under a wrapper shell that writes
        its PID there first.
        """
        if pid_file is None:
            return self.exec_argv(container_name, ["sh", "-c", command])
        wrapper = _PID_WRAPPER.format(pid_file=shlex.quote(pid_file))
        return self.exec_argv(container_name, ["sh", "-c", wrapper, command])

    async def spawn(
        self, container_name: str, command: str, pid_file: str | None = None
    ) -> asyncio.subprocess.Process:
        """Start the process without waiting for it.

        Raises:
            RuntimeNotInstalledError: If the runtime binary cannot be found.
        """
        argv = self.build_argv(container_name, command, pid_file)
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise RuntimeNotInstalledError(
                f"Container runtime '{argv[0]}' is not installed"
            ) from e

    async def signal_container(self, container_name: str, pid_file: str, sig: str) -> None:
        """Send ``sig`` (``TERM`` or ``KILL``) to the process tree recorded in ``pid_file``.

        Failures are logged; the local kill still runs.
        """
        argv = self.exec_argv(container_name, ["sh", "-c", _TREE_SIGNAL, "sh", sig, pid_file])
        try:
            helper = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(helper.wait(), timeout=_HELPER_TIMEOUT_SECONDS)
        except (OSError, TimeoutError) as e:
            logger.warning(
                "container_signal_failed", container=container_name, signal=sig, error=str(e)
            )

    async def terminate(
        self, process: asyncio.subprocess.Process, grace_seconds: float | None = None
    ) -> None:
        """Two-stage kill inside the container and on this host.

        SIGTERM goes to the in-container process tree; the local ``docker
        exec`` client ends on its own once that tree is gone. If it outlives
        the grace window, SIGKILL goes to the tree and to the local process
        group. Returns once the local process has exited.
        """
        grace = self.grace_seconds if grace_seconds is None else grace_seconds
        target = self._targets.get(process)
        if process.returncode is not None or target is None:
            await terminate_process(process, grace)
            return

        container_name, pid_file = target
        await self.signal_container(container_name, pid_file, "TERM")
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except TimeoutError:
            logger.warning("process_kill_escalated", pid=process.pid, grace_seconds=grace)
            await self.signal_container(container_name, pid_file, "KILL")
            _signal_group(process, signal.SIGKILL)
            await process.wait()

    async def run(
        self,
        container_name: str,
        command: str,
        *,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
        on_progress: ProgressCallback | None = None,
        on_spawn: SpawnCallback | None = None,
    ) -> CommandResult:
        """Run a command to completion, relaying output chunks as they arrive.

        Args:
            container_name: Target container.
            command: Shell command passed to ``sh -c``.
            timeout: Seconds before the process is terminated; None for no limit.
            on_output: Called with (stream, chunk) for every chunk read.
            on_progress: Called with (phase, percentage) on progress markers.
            on_spawn: Receives the OS process handle right after spawning.

        Returns:
            CommandResult. A non-zero exit status is a normal result.

        Raises:
            RuntimeNotInstalledError: If the runtime binary is missing.
            ContainerNotFoundError: If the runtime reports the container
                missing or stopped.
        """
        started = time.monotonic()
        pid_file = f"/tmp/.exec-{uuid.uuid4().hex[:12]}.pid"
        process = await self.spawn(container_name, command, pid_file)
        self._targets[process] = (container_name, pid_file)
        logger.debug("process_spawned", container=container_name, pid=process.pid)
        try:
            return await self._collect(
                process, container_name, command, started, timeout, on_output, on_progress, on_spawn
            )
        finally:
            self._targets.pop(process, None)

    async def _collect(
        self,
        process: asyncio.subprocess.Process,
        container_name: str,
        command: str,
        started: float,
        timeout: float | None,
        on_output: OutputCallback | None,
        on_progress: ProgressCallback | None,
        on_spawn: SpawnCallback | None,
    ) -> CommandResult:
        if on_spawn is not None:
            on_spawn(process)
        if on_progress is not None:
            on_progress("preparing", 0)

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        def relay(stream: str, chunk: str) -> None:
            (stdout_parts if stream == "stdout" else stderr_parts).append(chunk)
            if on_output is not None:
                on_output(stream, chunk)
            if on_progress is not None and stream == "stdout":
                hint = detect_progress(chunk)
                if hint is not None:
                    on_progress(*hint)

        drain = asyncio.ensure_future(_drain(process, relay))

        timed_out = False
        try:
            await asyncio.wait_for(asyncio.shield(drain), timeout=timeout)
        except TimeoutError:
            timed_out = True
            logger.warning(
                "command_timeout",
                container=container_name,
                command=command,
                timeout_seconds=timeout,
            )
            await self.terminate(process)
            await _settle(drain)
        except asyncio.CancelledError:
            await self.terminate(process)
            await _settle(drain)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        stdout = "".join(stdout_parts)
        stderr = "".join(stderr_parts)
        exit_code = process.returncode

        if not timed_out and is_missing_container_error(exit_code, stderr):
            raise ContainerNotFoundError(
                f"Container '{container_name}' is not available: {stderr.strip()}"
            )

        if timed_out:
            return CommandResult(
                success=False,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                duration_ms=duration_ms,
                timed_out=True,
                error=f"Command timed out after {timeout:g}s",
            )

        if on_progress is not None:
            on_progress("finished", 100)
        return CommandResult(
            success=exit_code == 0,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=duration_ms,
            error=None if exit_code == 0 else f"Command exited with code {exit_code}",
        )


async def _pump(
    reader: asyncio.StreamReader | None,
    stream: str,
    relay: Callable[[str, str], None],
) -> None:
    """Read raw chunks until EOF, decoding UTF-8 across chunk boundaries."""
    if reader is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await reader.read(READ_CHUNK_SIZE)
        if not data:
            tail = decoder.decode(b"", final=True)
            if tail:
                relay(stream, tail)
            return
        text = decoder.decode(data)
        if text:
            relay(stream, text)


async def _drain(
    process: asyncio.subprocess.Process,
    relay: Callable[[str, str], None],
) -> None:
    await asyncio.gather(
        _pump(process.stdout, "stdout", relay),
        _pump(process.stderr, "stderr", relay),
    )
    await process.wait()


async def _settle(drain: asyncio.Future) -> None:
    """Let the pumps reach EOF after a kill; give up after a short wait."""
    try:
        await asyncio.wait_for(asyncio.shield(drain), timeout=2.0)
    except TimeoutError:
        drain.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await drain
