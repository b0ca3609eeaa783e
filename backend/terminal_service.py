"""Per-tenant terminal operations used by the HTTP layer.

TerminalService ties the container pool, the execution registry and the event
bus together: it decides which container a command runs in, picks timeouts,
and turns lifecycle failures into results the API can report.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from events.bus import EventBus
from events.types import EventType, SandboxEvent
from execution.commands import COMMON_COMMANDS, is_long_running, resolve_timeout
from execution.registry import CommandExecutionRegistry
from metrics import MetricsCollector
from sandbox.lifecycle import HealthReport
from sandbox.pool import ContainerPool
from sandbox.records import ContainerRecord
from sandbox.security import (
    make_tenant_key,
    sanitize_output,
    validate_command,
    validate_project_path,
)

logger = structlog.get_logger(__name__)


@dataclass
class ExecuteOutcome:
    """What the execute action reports back to the client."""

    success: bool
    output: str = ""
    error: str | None = None
    execution_id: str | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False
    background: bool = False
    needs_container: bool = False
    invalid: bool = False


@dataclass
class TerminalStatus:
    container: ContainerRecord | None
    health: HealthReport
    running_commands: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.container is not None and self.container.is_running


class TerminalService:
    """Coordinates terminal actions for each tenant.

    Attributes:
        pool: The multi-tenant container pool.
        registry: The command execution registry.
    """

    def __init__(
        self,
        pool: ContainerPool,
        registry: CommandExecutionRegistry,
        event_bus: EventBus,
        *,
        sandbox_base_path: str,
        command_timeout_seconds: float = 60.0,
        install_timeout_seconds: float = 180.0,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        self.pool = pool
        self.registry = registry
        self.event_bus = event_bus
        self.metrics = metrics_collector
        self._sandbox_base_path = sandbox_base_path
        self._command_timeout = command_timeout_seconds
        self._install_timeout = install_timeout_seconds
        pool.add_removal_listener(self._on_container_removed)

    @staticmethod
    def tenant_key(user_id: str, project_id: str | None = None) -> str:
        """Build the tenant key for a user and optional project.

        Raises:
            ValueError: If an identifier is invalid.
        """
        return make_tenant_key(user_id, project_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def status(self, tenant_key: str) -> TerminalStatus:
        """Container state, layered health and running commands for a tenant."""
        record = await self.pool.refresh(tenant_key)
        health = await self.pool.lifecycle.health_check(record)
        running = [e.to_summary() for e in self.registry.list_running(tenant_key)]
        return TerminalStatus(container=record, health=health, running_commands=running)

    def commands(self) -> dict[str, Any]:
        return {
            "common_commands": [c.to_dict() for c in COMMON_COMMANDS],
            "command_history": self.registry.history(),
        }

    def preview_url(self, tenant_key: str) -> str | None:
        record = self.pool.get(tenant_key)
        return record.preview_url if record is not None and record.is_running else None

    async def health_check(self, tenant_key: str) -> HealthReport:
        return await self.pool.lifecycle.health_check(self.pool.get(tenant_key))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def execute(
        self,
        tenant_key: str,
        command: str,
        execution_id: str | None = None,
    ) -> ExecuteOutcome:
        """Run a command in the tenant's container.

        Never raises: validation problems, a missing container and runtime
        failures are all reported through the returned ExecuteOutcome.
        """
        ok, err = validate_command(command)
        if not ok:
            return ExecuteOutcome(success=False, error=err, invalid=True)

        record = self.pool.get(tenant_key)
        if record is None or not record.is_running:
            return ExecuteOutcome(
                success=False,
                error="Container is not running; create a container first",
                needs_container=True,
            )

        self.pool.touch(tenant_key)
        background = is_long_running(command)
        timeout = resolve_timeout(
            command,
            default=self._command_timeout,
            install=self._install_timeout,
        )

        try:
            eid, result = await self.registry.execute(
                command,
                record.container_name,
                channel=tenant_key,
                timeout=timeout,
                background=background,
                execution_id=execution_id,
            )
        except ValueError as e:
            return ExecuteOutcome(success=False, error=str(e), invalid=True)

        self.pool.touch(tenant_key)

        needs_container = False
        if not result.success and result.exit_code is None and not (result.timed_out or result.cancelled):
            # The runner could not reach the container; reconcile the pool.
            refreshed = await self.pool.refresh(tenant_key)
            needs_container = refreshed is None or not refreshed.is_running

        return ExecuteOutcome(
            success=result.success,
            output=sanitize_output(result.output),
            error=result.error,
            execution_id=eid,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
            background=result.background,
            needs_container=needs_container,
        )

    def cancel(self, execution_id: str) -> bool:
        return self.registry.cancel(execution_id)

    async def create_container(
        self,
        tenant_key: str,
        project_path: str | None = None,
    ) -> ContainerRecord:
        """Ensure the tenant has a running container.

        Raises:
            ValueError: If ``project_path`` escapes the sandbox base path.
            SandboxError: If the container cannot be created.
        """
        resolved: str | None = None
        if project_path:
            ok, err, resolved = validate_project_path(self._sandbox_base_path, project_path)
            if not ok:
                raise ValueError(err)
        return await self.pool.ensure_container(tenant_key, resolved)

    async def cleanup(self, tenant_key: str) -> dict[str, Any]:
        """Remove the tenant's container and commands; its streams are closed afterwards."""
        cancelled = self.registry.cancel_channel(tenant_key)
        removed = await self.pool.remove_container(tenant_key, reason="cleanup")
        self.event_bus.publish(
            SandboxEvent(
                type=EventType.CONTAINER_CLEANED,
                channel=tenant_key,
                data={"cancelledCommands": cancelled, "containerRemoved": removed},
            )
        )
        self.event_bus.close_channel(tenant_key)
        logger.info("tenant_cleaned", tenant_key=tenant_key, cancelled=cancelled, removed=removed)
        return {"cancelled_commands": cancelled, "container_removed": removed}

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def list_containers(self, *, include_stats: bool = True) -> list[dict[str, Any]]:
        """Every pool record with idle time, uptime and (optionally) stats."""
        items: list[dict[str, Any]] = []
        for record in self.pool.snapshot():
            item: dict[str, Any] = {
                "record": record,
                "idle_seconds": round(record.idle_seconds(), 1),
                "uptime_seconds": round(record.uptime_seconds(), 1),
                "running_commands": len(self.registry.list_running(record.tenant_key)),
                "stream_subscribers": self.event_bus.get_subscriber_count(record.tenant_key),
                "stats": None,
                "usage": None,
            }
            if include_stats and record.is_running:
                item["stats"] = await self.pool.lifecycle.container_stats(record)
            if self.metrics is not None:
                usage = self.metrics.get(record.tenant_key)
                item["usage"] = usage.to_dict() if usage is not None else None
            items.append(item)
        return items

    async def remove_container(self, tenant_key: str) -> bool:
        """Remove a tenant's container; its running commands are cancelled."""
        return await self.pool.remove_container(tenant_key, reason="admin")

    async def cleanup_idle(self) -> list[str]:
        """Evict every idle container now instead of waiting for the sweep."""
        return await self.pool.evict_idle()

    async def container_stats(self, tenant_key: str) -> dict[str, Any] | None:
        """Resource usage for a tenant's container, or None without one."""
        record = self.pool.get(tenant_key)
        if record is None:
            return None
        return await self.pool.lifecycle.container_stats(record)

    def summary(self) -> dict[str, Any]:
        return {
            "total": len(self.pool.snapshot()),
            "running": self.pool.running_count(),
            "capacity": self.pool.max_containers,
            "profile": self.pool.lifecycle.profile.name,
        }

    async def shutdown(self) -> None:
        """Cancel every command and remove every container."""
        await self.registry.shutdown()
        await self.pool.shutdown()

    def _on_container_removed(self, tenant_key: str) -> None:
        cancelled = self.registry.cancel_channel(tenant_key)
        if cancelled:
            logger.info("commands_cancelled_on_removal", tenant_key=tenant_key, cancelled=cancelled)
