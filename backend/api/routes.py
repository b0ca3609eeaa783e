"""HTTP API routes for the sandbox terminal.

This module defines ``/api/terminal`` (container status, command execution,
cancellation, container creation and cleanup, and the event stream) and the
``/health`` endpoint. The caller's tenant comes from the ``X-User-Id`` and
optional ``X-Project-Id`` headers.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from api.stream import stream_response
from config import settings
from models.schemas import (
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
    RunningCommand,
    StatusResponse,
    TerminalAction,
    TerminalActionRequest,
    TerminalQuery,
)
from sandbox.errors import CapacityError, SandboxError
from sandbox.security import make_tenant_key

if TYPE_CHECKING:
    from sandbox.lifecycle import HealthReport
    from sandbox.records import ContainerRecord
    from terminal_service import TerminalService

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def json_response(model: BaseModel, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(
        content=model.model_dump(by_alias=True, mode="json"),
        status_code=status_code,
    )


def error_response(error: Exception) -> JSONResponse:
    """Map an exception to the shared error body and an HTTP status.

    Validation errors are 400, capacity and environment errors are 503 with
    remediation text, other runtime errors are 500.
    """
    if isinstance(error, ValueError):
        return json_response(ErrorResponse(error=str(error)), status.HTTP_400_BAD_REQUEST)

    if isinstance(error, SandboxError):
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if isinstance(error, CapacityError) or error.kind == "environment"
            else status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        return json_response(
            ErrorResponse(error=str(error), kind=error.kind, remediation=error.remediation),
            code,
        )

    return json_response(ErrorResponse(error=str(error)), status.HTTP_500_INTERNAL_SERVER_ERROR)


def container_info(record: ContainerRecord | None) -> ContainerStatusInfo:
    """Wire form of a pool record; a missing record reports ``not_created``."""
    if record is None:
        return ContainerStatusInfo(is_running=False, status="not_created")
    return ContainerStatusInfo(
        is_running=record.is_running,
        status=record.status.value,
        container_id=record.container_id or None,
        container_name=record.container_name,
        project_path=record.project_path,
        proxy_path=record.proxy_path,
        preview_url=record.preview_url,
        host_port=record.host_port,
        created_at=record.created_at,
        last_active_at=record.last_active_at,
    )


def health_info(report: HealthReport) -> ContainerHealth:
    return ContainerHealth(
        healthy=report.healthy,
        runtime_installed=report.runtime_installed,
        daemon_running=report.daemon_running,
        container_running=report.container_running,
        network_reachable=report.network_reachable,
        error=report.error,
    )


# Terminal service dependency (set during application startup)
_terminal_service: TerminalService | None = None


def set_terminal_service(service: TerminalService) -> None:
    """Set the terminal service instance for the routes.

    This should be called during application startup to inject the service
    dependency.

    Args:
        service: The TerminalService instance to use for all routes.
    """
    global _terminal_service
    _terminal_service = service
    logger.info("terminal_service_configured")


def get_terminal_service() -> TerminalService:
    """Get the terminal service instance.

    Raises:
        RuntimeError: If the service has not been configured.
    """
    if _terminal_service is None:
        logger.error("terminal_service_not_configured")
        raise RuntimeError(
            "TerminalService not configured. Call set_terminal_service() during startup."
        )
    return _terminal_service


def get_tenant_key(
    x_user_id: Annotated[str | None, Header()] = None,
    x_project_id: Annotated[str | None, Header()] = None,
) -> str:
    """Resolve the caller's tenant key from request headers.

    Raises:
        HTTPException: 400 if an identifier is malformed.
    """
    try:
        return make_tenant_key(
            x_user_id or settings.default_user_id,
            x_project_id or None,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


TenantKey = Annotated[str, Depends(get_tenant_key)]


# -----------------------------------------------------------------------------
# /api/terminal
# -----------------------------------------------------------------------------


@router.get(
    "/api/terminal",
    summary="Query terminal state or open the event stream",
    description="action=status returns the container, its health and running "
    "commands; action=commands returns the command catalogue and history; "
    "action=stream opens a server-sent-events stream.",
    response_model=None,
)
async def terminal_get(
    tenant_key: TenantKey,
    action: Annotated[str, Query(description="status, commands or stream")] = "status",
) -> Response:
    service = get_terminal_service()

    try:
        if action == TerminalQuery.STATUS:
            terminal_status = await service.status(tenant_key)
            return json_response(
                StatusResponse(
                    status=container_info(terminal_status.container),
                    health=health_info(terminal_status.health),
                    running_commands=[
                        RunningCommand(
                            id=c["id"],
                            command=c["command"],
                            start_time=c["startTime"],
                            status=c["status"],
                            background=c["background"],
                        )
                        for c in terminal_status.running_commands
                    ],
                )
            )

        if action == TerminalQuery.COMMANDS:
            catalogue = service.commands()
            return json_response(
                CommandsResponse(
                    common_commands=[
                        CommonCommandInfo(**c) for c in catalogue["common_commands"]
                    ],
                    command_history=catalogue["command_history"],
                )
            )

        if action == TerminalQuery.STREAM:
            return stream_response(
                service.event_bus,
                tenant_key,
                keepalive_seconds=settings.stream_keepalive_seconds,
            )
    except Exception as e:
        logger.error("terminal_get_failed", action=action, tenant_key=tenant_key, error=str(e))
        return error_response(e)

    return json_response(ErrorResponse(error=f"Unsupported action: {action}"), status.HTTP_400_BAD_REQUEST)


@router.post(
    "/api/terminal",
    summary="Perform a terminal action",
    description="execute, cancel, create-container, cleanup or health-check.",
    response_model=None,
)
async def terminal_post(request: TerminalActionRequest, tenant_key: TenantKey) -> JSONResponse:
    service = get_terminal_service()
    action = request.action

    try:
        if action == TerminalAction.EXECUTE:
            return await _execute(service, tenant_key, request)

        if action == TerminalAction.CANCEL:
            if not request.execution_id:
                return json_response(
                    ErrorResponse(error="executionId is required"),
                    status.HTTP_400_BAD_REQUEST,
                )
            cancelled = service.cancel(request.execution_id)
            return json_response(
                CancelResponse(
                    success=cancelled,
                    message="Command cancelled"
                    if cancelled
                    else "Command could not be cancelled (it may have already finished)",
                    execution_id=request.execution_id,
                )
            )

        if action == TerminalAction.CREATE_CONTAINER:
            record = await service.create_container(tenant_key, request.project_path)
            return json_response(
                CreateContainerResponse(
                    message="Container created",
                    container_id=record.container_id,
                    container_name=record.container_name,
                    project_path=record.project_path,
                    preview_url=record.preview_url,
                )
            )

        if action == TerminalAction.CLEANUP:
            result = await service.cleanup(tenant_key)
            return json_response(
                CleanupResponse(
                    message="Cleanup complete",
                    cancelled_commands=result["cancelled_commands"],
                    container_removed=result["container_removed"],
                )
            )

        if action == TerminalAction.HEALTH_CHECK:
            report = await service.health_check(tenant_key)
            return json_response(HealthCheckResponse(health=health_info(report)))
    except Exception as e:
        logger.error("terminal_action_failed", action=action, tenant_key=tenant_key, error=str(e))
        return error_response(e)

    return json_response(ErrorResponse(error=f"Unsupported action: {action}"), status.HTTP_400_BAD_REQUEST)


async def _execute(
    service: TerminalService,
    tenant_key: str,
    request: TerminalActionRequest,
) -> JSONResponse:
    outcome = await service.execute(tenant_key, request.command or "", request.execution_id)

    if outcome.invalid:
        return json_response(ErrorResponse(error=outcome.error or "Invalid command"), status.HTTP_400_BAD_REQUEST)

    body = ExecuteResponse(
        success=outcome.success,
        output=outcome.output,
        error=outcome.error,
        execution_id=outcome.execution_id,
        exit_code=outcome.exit_code,
        duration_ms=outcome.duration_ms,
        timed_out=outcome.timed_out,
        cancelled=outcome.cancelled,
        background=outcome.background,
        needs_container=outcome.needs_container,
    )
    # Rejected before anything ran: the client has to create a container first.
    if outcome.needs_container and outcome.execution_id is None:
        return json_response(body, status.HTTP_400_BAD_REQUEST)
    return json_response(body)


@router.delete(
    "/api/terminal",
    summary="Disconnect an event stream",
    response_model=None,
)
async def terminal_delete(
    session: Annotated[str | None, Query(description="Stream session id")] = None,
) -> JSONResponse:
    service = get_terminal_service()
    if session and service.event_bus.unsubscribe(session):
        logger.info("stream_disconnected", session_id=session)
        return json_response(DisconnectResponse(message="Session disconnected"))
    return json_response(ErrorResponse(error="Session not found"), status.HTTP_404_NOT_FOUND)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health",
)
def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Declared sync so the Docker ping runs in the threadpool.

    Returns:
        HealthResponse with status, Docker availability and container count.
    """
    docker_available = False
    active_containers = 0
    profile: str | None = None

    try:
        service = get_terminal_service()
        lifecycle = service.pool.lifecycle
        docker_available = lifecycle.is_docker_available()
        active_containers = service.pool.running_count()
        profile = lifecycle.profile.name
    except RuntimeError:
        # TerminalService not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    return HealthResponse(
        status="healthy" if docker_available else "unhealthy",
        timestamp=time.time(),
        docker_available=docker_available,
        active_containers=active_containers,
        profile=profile,
    )
