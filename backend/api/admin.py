"""Admin API for inspecting and managing every tenant container.

``GET /api/admin/containers`` lists the pool with idle time, uptime, docker
stats and command counters. ``POST /api/admin/containers`` creates, removes
or inspects one tenant's container, or evicts every idle container at once.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from api.routes import container_info, error_response, get_terminal_service, json_response
from models.schemas import (
    AdminAction,
    AdminActionResponse,
    AdminContainerInfo,
    AdminContainerRequest,
    AdminContainersResponse,
    ErrorResponse,
    PoolSummary,
)
from sandbox.security import make_tenant_key

logger = structlog.get_logger(__name__)

admin_router = APIRouter(prefix="/api/admin")


@admin_router.get(
    "/containers",
    summary="List every tenant container",
    response_model=None,
)
async def list_containers(
    include_stats: Annotated[bool, Query(alias="includeStats")] = True,
) -> JSONResponse:
    service = get_terminal_service()
    try:
        items = await service.list_containers(include_stats=include_stats)
    except Exception as e:
        logger.error("admin_list_failed", error=str(e))
        return error_response(e)

    containers = [
        AdminContainerInfo(
            tenant_key=item["record"].tenant_key,
            container=container_info(item["record"]),
            idle_seconds=item["idle_seconds"],
            uptime_seconds=item["uptime_seconds"],
            running_commands=item["running_commands"],
            stream_subscribers=item["stream_subscribers"],
            stats=item["stats"],
            usage=item["usage"],
        )
        for item in items
    ]
    return json_response(
        AdminContainersResponse(
            containers=containers,
            summary=PoolSummary(**service.summary()),
        )
    )


@admin_router.post(
    "/containers",
    summary="Run an admin action on the pool",
    description="create, remove or stats for one tenant; cleanup evicts idle containers.",
    response_model=None,
)
async def container_action(request: AdminContainerRequest) -> JSONResponse:
    service = get_terminal_service()
    action = request.action

    try:
        if action == AdminAction.CLEANUP:
            evicted = await service.cleanup_idle()
            return json_response(
                AdminActionResponse(
                    message=f"Removed {len(evicted)} idle container(s)",
                    data={"evicted": evicted},
                )
            )

        if action not in (AdminAction.CREATE, AdminAction.REMOVE, AdminAction.STATS):
            return json_response(
                ErrorResponse(error=f"Unsupported action: {action}"),
                status.HTTP_400_BAD_REQUEST,
            )

        if not request.user_id:
            return json_response(ErrorResponse(error="userId is required"), status.HTTP_400_BAD_REQUEST)
        tenant_key = make_tenant_key(request.user_id, request.project_id)

        if action == AdminAction.CREATE:
            record = await service.create_container(tenant_key)
            logger.info("admin_container_created", tenant_key=tenant_key)
            return json_response(
                AdminActionResponse(
                    message=f"Container for {tenant_key} is running",
                    data=container_info(record).model_dump(by_alias=True),
                )
            )

        if action == AdminAction.REMOVE:
            removed = await service.remove_container(tenant_key)
            logger.info("admin_container_removed", tenant_key=tenant_key, removed=removed)
            return json_response(
                AdminActionResponse(
                    success=removed,
                    message=f"Container for {tenant_key} removed"
                    if removed
                    else f"No container for {tenant_key}",
                )
            )

        stats = await service.container_stats(tenant_key)
        if stats is None:
            return json_response(
                ErrorResponse(error=f"No container for {tenant_key}"),
                status.HTTP_404_NOT_FOUND,
            )
        return json_response(AdminActionResponse(message="ok", data=stats))
    except Exception as e:
        logger.error("admin_action_failed", action=action, error=str(e))
        return error_response(e)
