"""Applies generated nginx configuration to the reverse-proxy container.

The config file lives in a host directory that is bind-mounted (read-only)
into the proxy container. Writes go through a temp file and ``os.replace`` so
nginx never reads a half-written file; the directory, not the file, is
mounted so the container sees the replaced inode.
"""

import asyncio
import os
import tempfile
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import docker
import structlog
from docker.errors import DockerException, NotFound

from events.bus import EventBus
from events.types import EventType, SandboxEvent
from proxy.nginx import (
    Block,
    ProxyConfigDocument,
    base_template,
    render,
    routes_from_snapshot,
)
from sandbox.errors import ProxyConfigError, SandboxError
from sandbox.profiles import DeploymentProfile
from sandbox.records import ContainerRecord

logger = structlog.get_logger(__name__)

CONFIG_FILENAME = "nginx.conf"
CONTAINER_CONFIG_DIR = "/etc/nginx/sandbox"
CONTAINER_CONFIG_PATH = f"{CONTAINER_CONFIG_DIR}/{CONFIG_FILENAME}"

PROXY_CALL_TIMEOUT = 60


class ProxyConfigManager:
    """Keeps the reverse proxy's routes in line with the running containers.

    ``sync`` is serialised: concurrent callers each regenerate from the
    snapshot current at the time they hold the lock, so the last applied
    configuration always reflects the latest pool state.

    Attributes:
        profile: Active deployment profile.
        config_dir: Host directory holding the generated config.
        last_applied: Most recently applied document, if any.
        last_error: Error of the most recent failed apply, if any.
    """

    def __init__(
        self,
        profile: DeploymentProfile,
        event_bus: EventBus,
        *,
        config_dir: str,
        main_app_upstream: str = "host.docker.internal:3000",
        client: docker.DockerClient | None = None,
    ) -> None:
        self.profile = profile
        self.config_dir = config_dir
        self.template: Block = base_template(profile, main_app_upstream)
        self.last_applied: ProxyConfigDocument | None = None
        self.last_error: str | None = None
        self._event_bus = event_bus
        self._client = client
        self._lock = asyncio.Lock()

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    @property
    def config_path(self) -> Path:
        return Path(self.config_dir) / CONFIG_FILENAME

    def regenerate(self, snapshot: Iterable[ContainerRecord]) -> ProxyConfigDocument:
        """Render the full configuration for a pool snapshot."""
        return render(self.template, routes_from_snapshot(snapshot))

    async def apply(self, document: ProxyConfigDocument) -> bool:
        """Write the document and reload (or start) the proxy.

        Failures are logged and remembered in ``last_error``; the next sync
        retries.

        Returns:
            True if the proxy now serves ``document``.
        """
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_atomic, document.text)
            action = await asyncio.wait_for(
                loop.run_in_executor(None, self._reload_or_start),
                timeout=PROXY_CALL_TIMEOUT,
            )
        except (OSError, DockerException, SandboxError, TimeoutError) as e:
            self.last_error = str(e)
            logger.warning("proxy_apply_failed", error=str(e), routes=len(document.routes))
            return False

        previous = self.last_applied.routes if self.last_applied else ()
        self.last_applied = document
        self.last_error = None
        logger.info("proxy_reloaded", action=action, routes=len(document.routes))

        changed = set(previous).symmetric_difference(document.routes)
        for tenant_key in sorted({r.tenant_key for r in changed}):
            self._event_bus.publish(
                SandboxEvent(
                    type=EventType.PROXY_RELOADED,
                    channel=tenant_key,
                    data={"action": action, "routes": len(document.routes)},
                )
            )
        return True

    async def sync(self, snapshot_provider: Callable[[], Iterable[ContainerRecord]]) -> bool:
        """Regenerate from the latest snapshot and apply it.

        A regenerated document identical to the last applied one is skipped.
        """
        async with self._lock:
            document = self.regenerate(snapshot_provider())
            if (
                self.last_applied is not None
                and self.last_error is None
                and document.text == self.last_applied.text
            ):
                return True
            return await self.apply(document)

    async def shutdown(self) -> None:
        """Remove the proxy container."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._remove_proxy)
        except DockerException as e:
            logger.warning("proxy_shutdown_failed", error=str(e))

    # ------------------------------------------------------------------
    # Blocking helpers
    # ------------------------------------------------------------------

    def _write_atomic(self, text: str) -> None:
        directory = Path(self.config_dir)
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".nginx-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.config_path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _reload_or_start(self) -> str:
        name = self.profile.proxy_container_name
        try:
            proxy = self.client.containers.get(name)
        except NotFound:
            proxy = None

        if proxy is not None and proxy.status == "running":
            self._exec_checked(proxy, ["nginx", "-t", "-c", CONTAINER_CONFIG_PATH])
            self._exec_checked(proxy, ["nginx", "-s", "reload", "-c", CONTAINER_CONFIG_PATH])
            return "reloaded"

        if proxy is not None:
            proxy.remove(force=True)

        self.client.containers.run(
            self.profile.proxy_image,
            command=["nginx", "-g", "daemon off;", "-c", CONTAINER_CONFIG_PATH],
            name=name,
            detach=True,
            network=self.profile.network_name,
            ports={"80/tcp": self.profile.proxy_port},
            volumes={str(Path(self.config_dir).resolve()): {"bind": CONTAINER_CONFIG_DIR, "mode": "ro"}},
            extra_hosts={"host.docker.internal": "host-gateway"},
            restart_policy={"Name": "unless-stopped"},
            labels={"sandbox.proxy": "true", "sandbox.profile": self.profile.name},
        )
        return "started"

    @staticmethod
    def _exec_checked(container: Any, cmd: list[str]) -> None:
        result = container.exec_run(cmd)
        if result.exit_code != 0:
            output = (result.output or b"").decode("utf-8", errors="replace").strip()
            raise ProxyConfigError(f"{' '.join(cmd)} failed: {output}")

    def _remove_proxy(self) -> None:
        try:
            self.client.containers.get(self.profile.proxy_container_name).remove(force=True)
        except NotFound:
            pass
