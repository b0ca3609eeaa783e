"""Command execution inside sandbox containers.

ProcessRunner runs one command and streams its output;
CommandExecutionRegistry tracks every execution so it can be queried and
cancelled by id.
"""

from execution.registry import CommandExecution, CommandExecutionRegistry, ExecutionStatus
from execution.runner import CommandResult, ProcessRunner

__all__ = [
    "CommandExecution",
    "CommandExecutionRegistry",
    "CommandResult",
    "ExecutionStatus",
    "ProcessRunner",
]
