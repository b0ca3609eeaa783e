"""Docker container lifecycle management for tenant sandboxes.

This module provides the ContainerLifecycleManager class that creates,
inspects, health-checks and destroys the per-tenant containers. Every Docker
SDK call is blocking, so each one runs in the default executor.

Image resolution falls back in this order:
    1. the preferred sandbox image (built from an inline Dockerfile if absent)
    2. the public base image (pulled if absent)
    3. any locally cached ``node`` image
"""

import asyncio
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from io import BytesIO
from pathlib import Path
from typing import Any, TypeVar

import docker
import structlog
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from events.bus import EventBus
from events.types import EventType, SandboxEvent
from sandbox.errors import (
    ContainerCreationError,
    DaemonUnavailableError,
    ImageUnavailableError,
    RuntimeNotInstalledError,
    SandboxError,
)
from sandbox.profiles import DeploymentProfile
from sandbox.records import ContainerRecord, ContainerStatus
from sandbox.security import tenant_slug

logger = structlog.get_logger()

T = TypeVar("T")

# Timeouts (seconds) for blocking Docker SDK calls
DOCKER_CALL_TIMEOUT = 30
IMAGE_TIMEOUT = 600

WORKDIR = "/app"

# Inline Dockerfile for the preferred sandbox image
SANDBOX_DOCKERFILE = """\
FROM {base_image}
RUN apk add --no-cache git curl
WORKDIR {workdir}
EXPOSE {port}
CMD ["tail", "-f", "/dev/null"]
"""

# Container hardening applied to every sandbox
CONTAINER_SECURITY: dict[str, Any] = {
    "security_opt": ["no-new-privileges"],
}


@dataclass
class HealthReport:
    """Layered health of the runtime and a tenant's container.

    Each layer is only checked when the previous one passed.
    """

    runtime_installed: bool = False
    daemon_running: bool = False
    container_running: bool = False
    network_reachable: bool = False
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return (
            self.runtime_installed
            and self.daemon_running
            and self.container_running
            and self.network_reachable
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "runtimeInstalled": self.runtime_installed,
            "daemonRunning": self.daemon_running,
            "containerRunning": self.container_running,
            "networkReachable": self.network_reachable,
            "error": self.error,
        }


class ContainerLifecycleManager:
    """Creates and destroys tenant containers according to a deployment profile.

    Attributes:
        profile: The active DeploymentProfile.
        docker_binary: Runtime CLI name, used for the installation check.
        sandbox_base_path: Host directory holding tenant project folders.
        public_base_url: External URL of the reverse proxy.
    """

    def __init__(
        self,
        profile: DeploymentProfile,
        event_bus: EventBus,
        *,
        docker_binary: str = "docker",
        sandbox_base_path: str = "/tmp/sandboxes",
        public_base_url: str = "http://localhost:3000",
        client: docker.DockerClient | None = None,
    ) -> None:
        self.profile = profile
        self.docker_binary = docker_binary
        self.sandbox_base_path = sandbox_base_path
        self.public_base_url = public_base_url.rstrip("/")
        self._event_bus = event_bus
        self._client = client
        self._allocated_ports: set[int] = set()

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise DaemonUnavailableError(f"Cannot connect to the Docker daemon: {e}") from e
        return self._client

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def container_name(self, tenant_key: str) -> str:
        return f"{self.profile.container_prefix}-{tenant_slug(tenant_key)}"

    def default_project_path(self, tenant_key: str) -> str:
        return str(Path(self.sandbox_base_path) / tenant_slug(tenant_key))

    def proxy_path(self, tenant_key: str) -> str:
        if not self.profile.uses_proxy:
            return "/"
        return f"{self.profile.proxy_path_prefix}{tenant_slug(tenant_key)}/"

    def preview_url(self, tenant_key: str, host_port: int | None = None) -> str:
        if host_port is not None:
            return f"http://localhost:{host_port}"
        return f"{self.public_base_url}{self.proxy_path(tenant_key)}"

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def runtime_installed(self) -> bool:
        return shutil.which(self.docker_binary) is not None

    def is_docker_available(self) -> bool:
        """Check if the Docker daemon is reachable.

        Returns:
            True if the Docker daemon responds to a ping.
        """
        try:
            self.client.ping()
            return True
        except (SandboxError, DockerException):
            return False

    async def check_environment(self) -> None:
        """Verify the runtime is installed and its daemon is reachable.

        Raises:
            RuntimeNotInstalledError: The runtime CLI is not on PATH.
            DaemonUnavailableError: The daemon does not answer a ping.
        """
        if not self.runtime_installed():
            raise RuntimeNotInstalledError(
                f"Container runtime '{self.docker_binary}' is not installed"
            )
        try:
            await self._call(lambda: self.client.ping())
        except (DockerException, TimeoutError) as e:
            raise DaemonUnavailableError(f"Docker daemon is not reachable: {e}") from e

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_container(
        self,
        tenant_key: str,
        project_path: str | None = None,
    ) -> ContainerRecord:
        """Create and start a container for a tenant.

        Any stale container holding the derived name is force-removed first.
        On failure after image resolution the half-created container is
        removed before the error propagates.

        Args:
            tenant_key: The tenant to create a container for.
            project_path: Host directory to mount at /app. Defaults to a
                per-tenant directory under ``sandbox_base_path``.

        Returns:
            A ContainerRecord with status RUNNING.

        Raises:
            RuntimeNotInstalledError, DaemonUnavailableError: Environment errors.
            ImageUnavailableError: Every image fallback failed.
            ContainerCreationError: The runtime rejected the container.
        """
        await self.check_environment()

        name = self.container_name(tenant_key)
        project_dir = project_path or self.default_project_path(tenant_key)

        try:
            if await self._call(self._remove_by_name, name):
                logger.info("stale_container_removed", tenant_key=tenant_key, container=name)
                self._publish(
                    tenant_key,
                    EventType.CONTAINER_CLEANED,
                    {"containerName": name, "stale": True},
                )
            await self._call(lambda: Path(project_dir).mkdir(parents=True, exist_ok=True))
            if self.profile.uses_proxy:
                await self._call(self._ensure_network)
        except (OSError, DockerException, TimeoutError) as e:
            raise ContainerCreationError(f"Failed to prepare sandbox for {tenant_key}: {e}") from e

        try:
            image = await self.resolve_image(tenant_key)
        except (DockerException, TimeoutError) as e:
            raise ContainerCreationError(f"Failed to resolve sandbox image: {e}") from e

        host_port = None if self.profile.uses_proxy else self._allocate_port()
        try:
            container = await self._call(
                self._run_container, tenant_key, name, image, project_dir, host_port
            )
        except (DockerException, TimeoutError) as e:
            self._release_port(host_port)
            logger.error("container_creation_failed", tenant_key=tenant_key, error=str(e))
            try:
                await self._call(self._remove_by_name, name)
            except (DockerException, TimeoutError) as cleanup_error:
                logger.warning("container_cleanup_failed", container=name, error=str(cleanup_error))
            raise ContainerCreationError(f"Failed to create container {name}: {e}") from e

        record = ContainerRecord(
            tenant_key=tenant_key,
            container_name=name,
            container_id=container.id,
            project_path=project_dir,
            proxy_path=self.proxy_path(tenant_key),
            preview_url=self.preview_url(tenant_key, host_port),
            internal_port=self.profile.internal_port,
            host_port=host_port,
            image=image,
            status=ContainerStatus.RUNNING,
        )

        logger.info(
            "container_created",
            tenant_key=tenant_key,
            container=name,
            container_id=container.id[:12],
            image=image,
            host_port=host_port,
        )
        self._publish(
            tenant_key,
            EventType.CONTAINER_CREATED,
            {
                "containerName": name,
                "containerId": container.id,
                "previewUrl": record.preview_url,
            },
        )
        return record

    async def resolve_image(self, tenant_key: str) -> str:
        """Resolve the image to start a tenant container from.

        Raises:
            ImageUnavailableError: If no usable image can be found or fetched.
        """
        preferred = self.profile.preferred_image
        base = self.profile.base_image

        if await self._call(self._image_exists, preferred):
            return preferred
        try:
            await self._call(self._build_preferred_image, timeout=IMAGE_TIMEOUT)
            logger.info("sandbox_image_built", image=preferred)
            return preferred
        except (BuildError, DockerException, TimeoutError) as e:
            logger.warning("sandbox_image_build_failed", image=preferred, error=str(e))

        if await self._call(self._image_exists, base):
            return base

        self._publish(tenant_key, EventType.PULLING_IMAGE, {"image": base})
        try:
            await self._call(self.client.images.pull, base, timeout=IMAGE_TIMEOUT)
            self._publish(tenant_key, EventType.IMAGE_PULLED, {"image": base})
            logger.info("base_image_pulled", image=base)
            return base
        except (DockerException, TimeoutError) as e:
            logger.warning("base_image_pull_failed", image=base, error=str(e))

        fallback = await self._call(self._find_local_node_image)
        if fallback is not None:
            logger.info("using_cached_node_image", image=fallback)
            return fallback

        raise ImageUnavailableError.for_base_image(
            f"No sandbox image available: could not build {preferred}, "
            f"pull {base}, or find a local node image",
            base,
        )

    # ------------------------------------------------------------------
    # Destruction and inspection
    # ------------------------------------------------------------------

    async def destroy_container(self, record: ContainerRecord) -> None:
        """Stop and remove a tenant's container. A missing container is not an error.

        Raises:
            SandboxError: If the runtime fails to remove the container.
        """
        try:
            await self._call(lambda: self._remove_by_name(record.container_name, stop_first=True))
        except (DockerException, TimeoutError) as e:
            logger.error("container_destroy_failed", container=record.container_name, error=str(e))
            raise SandboxError(f"Failed to remove container {record.container_name}: {e}") from e
        finally:
            self._release_port(record.host_port)
        logger.info("container_destroyed", tenant_key=record.tenant_key, container=record.container_name)

    async def inspect_status(self, record: ContainerRecord) -> str:
        """Live runtime status: running, exited, ..., not_found or unknown."""
        try:
            return await self._call(self._container_status, record.container_name)
        except (DockerException, TimeoutError) as e:
            logger.warning("container_inspect_failed", container=record.container_name, error=str(e))
            return "unknown"

    async def health_check(self, record: ContainerRecord | None) -> HealthReport:
        """Layered health check. Never raises.

        Layers: runtime installed -> daemon running -> container running ->
        container answers an exec probe.
        """
        report = HealthReport()
        if not self.runtime_installed():
            report.error = f"Container runtime '{self.docker_binary}' is not installed"
            return report
        report.runtime_installed = True
        try:
            return await self._call(self._health_check_blocking, record, report)
        except Exception as e:
            logger.warning("health_check_error", error=str(e))
            report.error = str(e)
            return report

    async def container_stats(self, record: ContainerRecord) -> dict[str, Any]:
        """One-shot resource usage of a tenant's container; empty on failure."""
        try:
            return await self._call(self._stats_blocking, record.container_name)
        except (DockerException, TimeoutError) as e:
            logger.debug("container_stats_failed", container=record.container_name, error=str(e))
            return {}

    # ------------------------------------------------------------------
    # Blocking helpers (run in executor)
    # ------------------------------------------------------------------

    async def _call(self, func: Callable[..., T], *args: Any, timeout: float = DOCKER_CALL_TIMEOUT) -> T:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, lambda: func(*args)),
            timeout=timeout,
        )

    def _remove_by_name(self, name: str, stop_first: bool = False) -> bool:
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return False
        if stop_first:
            try:
                container.stop(timeout=5)
            except NotFound:
                return False
            except APIError as e:
                logger.debug("container_stop_failed", container=name, error=str(e))
        try:
            container.remove(force=True)
        except NotFound:
            return False
        return True

    def _ensure_network(self) -> None:
        name = self.profile.network_name
        if not self.client.networks.list(names=[name]):
            self.client.networks.create(name, driver="bridge")
            logger.info("network_created", network=name)

    def _image_exists(self, image: str) -> bool:
        try:
            self.client.images.get(image)
            return True
        except ImageNotFound:
            return False

    def _build_preferred_image(self) -> None:
        dockerfile = SANDBOX_DOCKERFILE.format(
            base_image=self.profile.base_image,
            workdir=WORKDIR,
            port=self.profile.internal_port,
        )
        self.client.images.build(
            fileobj=BytesIO(dockerfile.encode()),
            tag=self.profile.preferred_image,
            rm=True,
        )

    def _find_local_node_image(self) -> str | None:
        for image in self.client.images.list():
            for tag in image.tags:
                repository = tag.rsplit(":", 1)[0]
                if repository.rsplit("/", 1)[-1] == "node":
                    return tag
        return None

    def _run_container(
        self,
        tenant_key: str,
        name: str,
        image: str,
        project_dir: str,
        host_port: int | None,
    ) -> Any:
        port = self.profile.internal_port
        kwargs: dict[str, Any] = {
            "command": ["tail", "-f", "/dev/null"],
            "name": name,
            "detach": True,
            "working_dir": WORKDIR,
            "volumes": {project_dir: {"bind": WORKDIR, "mode": "rw"}},
            "labels": {
                "sandbox": "true",
                "sandbox.tenant": tenant_key,
                "sandbox.profile": self.profile.name,
            },
            "mem_limit": self.profile.memory_limit,
            "nano_cpus": self.profile.nano_cpus,
            "environment": {
                "NODE_ENV": "development",
                "PORT": str(port),
                "HOST": "0.0.0.0",
            },
            **CONTAINER_SECURITY,
        }
        if self.profile.uses_proxy:
            kwargs["network"] = self.profile.network_name
        else:
            kwargs["ports"] = {f"{port}/tcp": host_port}
        return self.client.containers.run(image, **kwargs)

    def _container_status(self, name: str) -> str:
        try:
            return self.client.containers.get(name).status
        except NotFound:
            return "not_found"

    def _health_check_blocking(self, record: ContainerRecord | None, report: HealthReport) -> HealthReport:
        try:
            self.client.ping()
        except (SandboxError, DockerException) as e:
            report.error = f"Docker daemon is not reachable: {e}"
            return report
        report.daemon_running = True

        if record is None:
            report.error = "No container for this tenant"
            return report
        try:
            container = self.client.containers.get(record.container_name)
        except NotFound:
            report.error = f"Container {record.container_name} not found"
            return report
        if container.status != "running":
            report.error = f"Container {record.container_name} is {container.status}"
            return report
        report.container_running = True

        result = container.exec_run(["echo", "health-check"])
        if result.exit_code == 0 and b"health-check" in (result.output or b""):
            report.network_reachable = True
        else:
            report.error = f"Exec probe failed with exit code {result.exit_code}"
        return report

    def _stats_blocking(self, name: str) -> dict[str, Any]:
        container = self.client.containers.get(name)
        stats = container.stats(stream=False)

        cpu = stats.get("cpu_stats", {})
        precpu = stats.get("precpu_stats", {})
        cpu_delta = cpu.get("cpu_usage", {}).get("total_usage", 0) - precpu.get(
            "cpu_usage", {}
        ).get("total_usage", 0)
        system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
        online_cpus = cpu.get("online_cpus") or 1
        cpu_percent = (cpu_delta / system_delta) * online_cpus * 100 if system_delta > 0 else 0.0

        memory = stats.get("memory_stats", {})
        networks = stats.get("networks", {}) or {}

        uptime_seconds: float | None = None
        started_at = (container.attrs or {}).get("State", {}).get("StartedAt", "")
        if started_at:
            try:
                # Docker timestamps carry nanoseconds; fromisoformat accepts at most 6 digits
                head, _, frac = started_at.rstrip("Z").partition(".")
                started = datetime.fromisoformat(f"{head}.{(frac or '0')[:6]}+00:00")
                uptime_seconds = round((datetime.now(UTC) - started).total_seconds(), 1)
            except ValueError:
                pass

        return {
            "cpuPercent": round(cpu_percent, 2),
            "memoryUsageMb": round(memory.get("usage", 0) / (1024 * 1024), 2),
            "memoryLimitMb": round(memory.get("limit", 0) / (1024 * 1024), 2),
            "networkRxBytes": sum(n.get("rx_bytes", 0) for n in networks.values()),
            "networkTxBytes": sum(n.get("tx_bytes", 0) for n in networks.values()),
            "uptimeSeconds": uptime_seconds,
        }

    # ------------------------------------------------------------------
    # Ports and events
    # ------------------------------------------------------------------

    def _allocate_port(self) -> int:
        """Allocate the next free host port from the profile range.

        Raises:
            ContainerCreationError: If the range is exhausted.
        """
        start, end = self.profile.host_port_range
        for port in range(start, end + 1):
            if port not in self._allocated_ports:
                self._allocated_ports.add(port)
                return port
        raise ContainerCreationError(f"No free host ports in range {start}-{end}")

    def _release_port(self, port: int | None) -> None:
        if port is not None:
            self._allocated_ports.discard(port)

    def _publish(self, channel: str, event_type: EventType, data: dict[str, Any]) -> None:
        self._event_bus.publish(SandboxEvent(type=event_type, channel=channel, data=data))
