"""Container record bookkeeping shared by the lifecycle manager and pool."""

import time
from dataclasses import asdict, dataclass, field, replace
from enum import StrEnum
from typing import Any


class ContainerStatus(StrEnum):
    """Lifecycle status of a tenant's container."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class ContainerRecord:
    """Book-keeping for one tenant's container.

    Attributes:
        tenant_key: ``userId`` or ``userId:projectId``.
        container_id: Runtime-assigned id (empty until created).
        container_name: Derived, deterministic name.
        status: Current lifecycle status.
        created_at: Unix timestamp of creation.
        last_active_at: Unix timestamp of the last command or status touch.
        project_path: Host directory bind-mounted at /app.
        proxy_path: URL path prefix routed to this container.
        preview_url: Full URL where the dev server is reachable.
        internal_port: Dev server port inside the container.
        host_port: Published host port (port-mapping profiles only).
        image: Image the container was started from.
    """

    tenant_key: str
    container_name: str
    project_path: str
    proxy_path: str
    preview_url: str
    internal_port: int
    container_id: str = ""
    status: ContainerStatus = ContainerStatus.CREATING
    created_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)
    host_port: int | None = None
    image: str = ""

    @property
    def is_running(self) -> bool:
        return self.status == ContainerStatus.RUNNING

    def touch(self, now: float | None = None) -> None:
        self.last_active_at = time.time() if now is None else now

    def idle_seconds(self, now: float | None = None) -> float:
        return max(0.0, (time.time() if now is None else now) - self.last_active_at)

    def uptime_seconds(self, now: float | None = None) -> float:
        return max(0.0, (time.time() if now is None else now) - self.created_at)

    def snapshot(self) -> "ContainerRecord":
        """Independent copy for readers outside the pool lock."""
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
