"""In-memory usage metrics per tenant.

This module provides the MetricsCollector class that accumulates command
counts and timing for each tenant. The admin API reads it to show how busy
each sandbox is.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.record_command_started("alice")
    >>> collector.record_command_finished("alice", status="completed", duration_ms=1200)
    >>> collector.get("alice")  # TenantMetricsData(...)
"""

import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class TenantMetricsData:
    """Accumulated metrics for a single tenant.

    Attributes:
        commands_started: Number of commands submitted.
        commands_completed: Commands that exited with status 0.
        commands_failed: Commands that exited non-zero or failed to run.
        commands_cancelled: Commands cancelled by the user.
        commands_timed_out: Commands terminated by their timeout.
        total_duration_ms: Sum of finished command durations.
        first_seen_at: Unix timestamp when tracking began.
        last_command_at: Unix timestamp of the latest submission.
    """

    commands_started: int = 0
    commands_completed: int = 0
    commands_failed: int = 0
    commands_cancelled: int = 0
    commands_timed_out: int = 0
    total_duration_ms: int = 0
    first_seen_at: float = field(default_factory=time.time)
    last_command_at: float | None = None

    def to_dict(self) -> dict[str, int | float | None]:
        """Convert to a plain dict for JSON responses.

        Returns:
            Dict with all metric fields using camelCase keys.
        """
        return {
            "commandsStarted": self.commands_started,
            "commandsCompleted": self.commands_completed,
            "commandsFailed": self.commands_failed,
            "commandsCancelled": self.commands_cancelled,
            "commandsTimedOut": self.commands_timed_out,
            "totalDurationMs": self.total_duration_ms,
            "lastCommandAt": self.last_command_at,
        }


class MetricsCollector:
    """In-memory collector that tracks per-tenant command metrics.

    All mutations happen on the event loop thread, so plain dict updates
    are sufficient.

    Attributes:
        _tenants: Mapping from tenant key to its metrics data.
    """

    def __init__(self) -> None:
        """Initialize an empty metrics collector."""
        self._tenants: dict[str, TenantMetricsData] = {}
        logger.info("metrics_collector_initialized")

    def record_command_started(self, tenant_key: str) -> None:
        """Count a submitted command, creating the tenant entry on first use.

        Args:
            tenant_key: The tenant the command belongs to.
        """
        data = self._tenants.setdefault(tenant_key, TenantMetricsData())
        data.commands_started += 1
        data.last_command_at = time.time()

    def record_command_finished(
        self,
        tenant_key: str,
        *,
        status: str,
        duration_ms: int,
        timed_out: bool = False,
    ) -> None:
        """Record the outcome of a finished command.

        If the tenant is not being tracked, this is a no-op with a warning.

        Args:
            tenant_key: The tenant the command belongs to.
            status: Terminal execution status (completed, failed, cancelled).
            duration_ms: Wall-clock duration of the command.
            timed_out: Whether the command hit its timeout.
        """
        data = self._tenants.get(tenant_key)
        if data is None:
            logger.warning("metrics_record_no_tenant", tenant_key=tenant_key)
            return

        if status == "completed":
            data.commands_completed += 1
        elif status == "cancelled":
            data.commands_cancelled += 1
        else:
            data.commands_failed += 1
        if timed_out:
            data.commands_timed_out += 1
        data.total_duration_ms += duration_ms

        logger.debug(
            "metrics_command_recorded",
            tenant_key=tenant_key,
            status=status,
            duration_ms=duration_ms,
        )

    def get(self, tenant_key: str) -> TenantMetricsData | None:
        """Get current metrics for a tenant.

        Args:
            tenant_key: The tenant to query.

        Returns:
            Current TenantMetricsData, or None if not tracked.
        """
        return self._tenants.get(tenant_key)

    def forget(self, tenant_key: str) -> TenantMetricsData | None:
        """Stop tracking a tenant, returning its final metrics."""
        return self._tenants.pop(tenant_key, None)
