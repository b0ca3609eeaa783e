"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

from models.schemas import (
    AdminAction,
    AdminActionResponse,
    AdminContainerInfo,
    AdminContainerRequest,
    AdminContainersResponse,
    CancelResponse,
    CleanupResponse,
    CommandsResponse,
    CommonCommandInfo,
    ContainerHealth,
    ContainerStatusInfo,
    CreateContainerResponse,
    DisconnectResponse,
    ErrorResponse,
    ExecuteResponse,
    HealthCheckResponse,
    HealthResponse,
    PoolSummary,
    RunningCommand,
    StatusResponse,
    TerminalAction,
    TerminalActionRequest,
    TerminalQuery,
)

__all__ = [
    "AdminAction",
    "AdminActionResponse",
    "AdminContainerInfo",
    "AdminContainerRequest",
    "AdminContainersResponse",
    "CancelResponse",
    "CleanupResponse",
    "CommandsResponse",
    "CommonCommandInfo",
    "ContainerHealth",
    "ContainerStatusInfo",
    "CreateContainerResponse",
    "DisconnectResponse",
    "ErrorResponse",
    "ExecuteResponse",
    "HealthCheckResponse",
    "HealthResponse",
    "PoolSummary",
    "RunningCommand",
    "StatusResponse",
    "TerminalAction",
    "TerminalActionRequest",
    "TerminalQuery",
]
