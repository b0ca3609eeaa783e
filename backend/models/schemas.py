"""Pydantic schemas for API request/response models.

This module defines the data models used by the terminal, admin and health
endpoints. All models use Pydantic v2. Terminal and admin payloads use
camelCase field names on the wire; Python code uses snake_case attributes.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialising field names as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TerminalAction(StrEnum):
    """Actions accepted by POST /api/terminal."""

    EXECUTE = "execute"
    CANCEL = "cancel"
    CREATE_CONTAINER = "create-container"
    CLEANUP = "cleanup"
    HEALTH_CHECK = "health-check"


class TerminalQuery(StrEnum):
    """Actions accepted by GET /api/terminal."""

    STATUS = "status"
    COMMANDS = "commands"
    STREAM = "stream"


class AdminAction(StrEnum):
    """Actions accepted by POST /api/admin/containers."""

    CREATE = "create"
    REMOVE = "remove"
    CLEANUP = "cleanup"
    STATS = "stats"


# -----------------------------------------------------------------------------
# Terminal requests
# -----------------------------------------------------------------------------


class TerminalActionRequest(CamelModel):
    """Request body for POST /api/terminal.

    ``action`` is kept as a plain string so an unknown action is answered
    with a 400 and the usual error body rather than a validation error.
    """

    action: str = Field(
        description="Terminal action to perform",
        examples=["execute", "cancel", "create-container", "cleanup", "health-check"],
    )
    command: str | None = Field(
        default=None,
        description="Shell command (execute)",
        examples=["npm install"],
    )
    execution_id: str | None = Field(
        default=None,
        description="Execution id (cancel) or client-chosen id (execute)",
        examples=["exec_0123456789ab"],
    )
    project_path: str | None = Field(
        default=None,
        description="Project directory relative to the sandbox base path (create-container)",
        examples=["alice/todo-app"],
    )


# -----------------------------------------------------------------------------
# Terminal responses
# -----------------------------------------------------------------------------


class ContainerHealth(CamelModel):
    """Layered health: runtime, daemon, container, exec probe."""

    healthy: bool = False
    runtime_installed: bool = False
    daemon_running: bool = False
    container_running: bool = False
    network_reachable: bool = False
    error: str | None = None


class ContainerStatusInfo(CamelModel):
    """The caller's container as seen by the pool."""

    is_running: bool = Field(description="True if the tenant's container is running")
    status: str = Field(
        description="creating, running, stopped, error or not_created",
        examples=["running"],
    )
    container_id: str | None = None
    container_name: str | None = None
    project_path: str | None = None
    proxy_path: str | None = None
    preview_url: str | None = Field(
        default=None,
        description="URL where the tenant's dev server is reachable",
        examples=["http://localhost:3000/preview/alice/"],
    )
    host_port: int | None = None
    created_at: float | None = None
    last_active_at: float | None = None


class RunningCommand(CamelModel):
    id: str
    command: str
    start_time: float
    status: str
    background: bool = False


class StatusResponse(CamelModel):
    """Response for GET /api/terminal?action=status."""

    success: bool = True
    status: ContainerStatusInfo
    health: ContainerHealth
    running_commands: list[RunningCommand] = Field(default_factory=list)


class CommonCommandInfo(CamelModel):
    name: str
    command: str
    description: str
    category: str


class CommandsResponse(CamelModel):
    """Response for GET /api/terminal?action=commands."""

    success: bool = True
    common_commands: list[CommonCommandInfo]
    command_history: list[str] = Field(
        description="Recent command strings, newest first",
    )


class ExecuteResponse(CamelModel):
    """Response for the execute action."""

    success: bool
    output: str = ""
    error: str | None = None
    execution_id: str | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False
    background: bool = Field(
        default=False,
        description="True for dev servers that keep running after the response",
    )
    needs_container: bool = Field(
        default=False,
        description="True when the tenant has no running container",
    )


class CancelResponse(CamelModel):
    success: bool
    message: str
    execution_id: str


class CreateContainerResponse(CamelModel):
    """Response for the create-container action."""

    success: bool = True
    message: str
    container_id: str
    container_name: str
    project_path: str
    preview_url: str


class CleanupResponse(CamelModel):
    success: bool = True
    message: str
    cancelled_commands: int = 0
    container_removed: bool = False


class HealthCheckResponse(CamelModel):
    success: bool = True
    health: ContainerHealth


class DisconnectResponse(CamelModel):
    success: bool = True
    message: str


class ErrorResponse(CamelModel):
    """Error body shared by the terminal and admin endpoints.

    ``kind`` and ``remediation`` are set for runtime errors so the client can
    tell "install or start Docker" apart from "your command failed" and "the
    server is out of capacity".
    """

    success: Literal[False] = False
    error: str
    kind: str | None = None
    remediation: str | None = None
    needs_container: bool | None = None


# -----------------------------------------------------------------------------
# Admin
# -----------------------------------------------------------------------------


class AdminContainerRequest(CamelModel):
    """Request body for POST /api/admin/containers."""

    action: str = Field(
        description="Admin action to perform",
        examples=["create", "remove", "cleanup", "stats"],
    )
    user_id: str | None = Field(default=None, examples=["alice"])
    project_id: str | None = Field(default=None, examples=["todo-app"])


class AdminContainerInfo(CamelModel):
    """One pool record with usage information."""

    tenant_key: str
    container: ContainerStatusInfo
    idle_seconds: float
    uptime_seconds: float
    running_commands: int = 0
    stream_subscribers: int = 0
    stats: dict[str, Any] | None = Field(
        default=None,
        description="One-shot docker stats (cpuPercent, memoryUsageMb, ...)",
    )
    usage: dict[str, Any] | None = Field(
        default=None,
        description="Command counters collected for this tenant",
    )


class PoolSummary(CamelModel):
    total: int
    running: int
    capacity: int
    profile: str


class AdminContainersResponse(CamelModel):
    success: bool = True
    containers: list[AdminContainerInfo]
    summary: PoolSummary


class AdminActionResponse(CamelModel):
    success: bool = True
    message: str
    data: dict[str, Any] | None = None


# -----------------------------------------------------------------------------
# Service health
# -----------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    docker_available: bool = Field(
        default=False,
        description="Whether the Docker daemon is reachable",
    )
    active_containers: int = Field(
        default=0,
        description="Number of running sandbox containers",
    )
    profile: str | None = Field(
        default=None,
        description="Active deployment profile",
    )
