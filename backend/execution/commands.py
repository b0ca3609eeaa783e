"""Command classification helpers and the common-commands catalogue.

These decide how a command is run (timeout, foreground or background) and
translate output markers into coarse progress phases.
"""

import re
from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class CommonCommand:
    """A suggested command shown in the terminal UI."""

    name: str
    command: str
    description: str
    category: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


COMMON_COMMANDS: tuple[CommonCommand, ...] = (
    CommonCommand("Install dependencies", "npm install", "Install project dependencies", "setup"),
    CommonCommand("Start dev server", "npm run dev", "Start the development server", "dev"),
    CommonCommand("Build project", "npm run build", "Create a production build", "build"),
    CommonCommand("List files", "ls -la", "Show files in the project directory", "info"),
    CommonCommand(
        "Check port",
        "netstat -tlnp | grep :3001",
        "Check whether the dev server port is listening",
        "info",
    ),
    CommonCommand("Node processes", "ps aux | grep node", "Show running node processes", "info"),
    CommonCommand(
        "Clean npm cache",
        "npm cache clean --force",
        "Clear the npm cache",
        "maintenance",
    ),
    CommonCommand("Disk usage", "df -h", "Show disk usage", "info"),
)

# Commands that start a dev server and never exit on their own.
_LONG_RUNNING = re.compile(
    r"\b("
    r"(npm|pnpm)\s+(run\s+)?(dev|start|serve|preview)"
    r"|yarn\s+(run\s+)?(dev|start|serve|preview)"
    r"|next\s+(dev|start)"
    r"|vite(\s+(dev|preview))?"
    r")\b"
)

_INSTALL = re.compile(r"\b(npm\s+(install|i|ci)|pnpm\s+(install|i|add)|yarn(\s+(install|add))?)\b")

_PROGRESS_MARKERS: tuple[tuple[re.Pattern[str], str, int], ...] = (
    (re.compile(r"npm install|installing|resolving packages", re.IGNORECASE), "installing dependencies", 50),
    (re.compile(r"added \d+ packages?|packages are looking for funding", re.IGNORECASE), "dependencies installed", 90),
    (re.compile(r"compiled successfully|ready in|ready on|local:\s+http", re.IGNORECASE), "compiled", 100),
)


def is_long_running(command: str) -> bool:
    """Whether the command starts a server that keeps running.

    Examples:
        >>> is_long_running("npm run dev")
        True
        >>> is_long_running("npm run build")
        False
    """
    return bool(_LONG_RUNNING.search(command))


def is_install(command: str) -> bool:
    return bool(_INSTALL.search(command))


def resolve_timeout(command: str, *, default: float, install: float) -> float:
    """Pick the execution timeout for a command.

    Dependency installs get the longer ``install`` budget.
    """
    return install if is_install(command) else default


def detect_progress(chunk: str) -> tuple[str, int] | None:
    """Map an output chunk to a (phase, percentage) pair, if it has a marker."""
    for pattern, phase, percentage in _PROGRESS_MARKERS:
        if pattern.search(chunk):
            return phase, percentage
    return None
