"""Deployment profiles for the container pool.

A profile bundles every parameter that distinguishes one deployment from
another: resource limits, networking mode, naming, proxy path prefix and
pool caps. Three built-in profiles are provided; ``resolve_profile`` picks one
by name and applies any overrides from Settings.
"""

from dataclasses import dataclass, replace
from enum import StrEnum

from config import Settings


class NetworkMode(StrEnum):
    """How a sandbox container is reached."""

    # Container publishes its dev server port on the host.
    PORT_MAPPING = "port_mapping"
    # Container is only reachable on a private network through the proxy.
    INTERNAL = "internal"


@dataclass(frozen=True)
class DeploymentProfile:
    """Immutable configuration for one deployment style.

    Attributes:
        name: Profile identifier.
        network_mode: PORT_MAPPING or INTERNAL.
        network_name: Private docker network (INTERNAL mode only).
        container_prefix: Prefix of sandbox container names.
        proxy_path_prefix: URL path prefix routed to sandboxes (e.g. /preview/).
        memory_limit: Docker memory limit string.
        cpu_limit: Fractional CPU limit.
        max_containers: Pool capacity.
        idle_ttl_seconds: Idle time after which a container is evicted.
        sweep_interval_seconds: Interval between eviction sweeps.
        internal_port: Dev server port inside the container.
        base_image: Public fallback image.
        preferred_image: Locally built image tried first.
        proxy_container_name: Name of the nginx proxy container.
        proxy_image: Image used for the proxy container.
        proxy_port: Host port the proxy listens on.
        frame_ancestors: CSP frame-ancestors sources; empty disables the header.
        host_port_range: Inclusive (start, end) range for PORT_MAPPING mode.
    """

    name: str
    network_mode: NetworkMode
    network_name: str
    container_prefix: str
    proxy_path_prefix: str
    memory_limit: str
    cpu_limit: float
    max_containers: int
    idle_ttl_seconds: float
    sweep_interval_seconds: float
    internal_port: int = 3001
    base_image: str = "node:22-alpine"
    preferred_image: str = "sandbox-node:latest"
    proxy_container_name: str = "sandbox-proxy"
    proxy_image: str = "nginx:alpine"
    proxy_port: int = 80
    frame_ancestors: tuple[str, ...] = ()
    host_port_range: tuple[int, int] = (3001, 4000)

    @property
    def uses_proxy(self) -> bool:
        return self.network_mode == NetworkMode.INTERNAL

    @property
    def nano_cpus(self) -> int:
        return int(self.cpu_limit * 1_000_000_000)


BASIC = DeploymentProfile(
    name="basic",
    network_mode=NetworkMode.PORT_MAPPING,
    network_name="bridge",
    container_prefix="sandbox",
    proxy_path_prefix="/",
    memory_limit="1g",
    cpu_limit=1.0,
    max_containers=50,
    idle_ttl_seconds=60 * 60,
    sweep_interval_seconds=30 * 60,
    base_image="node:18-alpine",
)

PRODUCTION = DeploymentProfile(
    name="production",
    network_mode=NetworkMode.INTERNAL,
    network_name="sandbox-network",
    container_prefix="sandbox",
    proxy_path_prefix="/sandbox/",
    memory_limit="512m",
    cpu_limit=0.5,
    max_containers=1000,
    idle_ttl_seconds=60 * 60,
    sweep_interval_seconds=30 * 60,
    base_image="node:18-alpine",
    proxy_container_name="nginx-proxy",
)

IFRAME = DeploymentProfile(
    name="iframe",
    network_mode=NetworkMode.INTERNAL,
    network_name="iframe-network",
    container_prefix="iframe-sandbox",
    proxy_path_prefix="/preview/",
    memory_limit="256m",
    cpu_limit=0.3,
    max_containers=500,
    idle_ttl_seconds=60 * 60,
    sweep_interval_seconds=30 * 60,
    proxy_container_name="nginx-iframe-proxy",
    frame_ancestors=("'self'", "http://localhost:*", "https://localhost:*"),
)

PROFILES: dict[str, DeploymentProfile] = {
    p.name: p for p in (BASIC, PRODUCTION, IFRAME)
}


def resolve_profile(settings: Settings) -> DeploymentProfile:
    """Select the configured profile and apply Settings overrides.

    Raises:
        ValueError: If the profile name is unknown.
    """
    try:
        profile = PROFILES[settings.deployment_profile]
    except KeyError:
        known = ", ".join(sorted(PROFILES))
        raise ValueError(
            f"Unknown deployment profile '{settings.deployment_profile}' (known: {known})"
        ) from None

    overrides: dict[str, object] = {}
    if settings.max_containers is not None:
        overrides["max_containers"] = settings.max_containers
    if settings.idle_ttl_minutes is not None:
        overrides["idle_ttl_seconds"] = settings.idle_ttl_minutes * 60
    if settings.sweep_interval_minutes is not None:
        overrides["sweep_interval_seconds"] = settings.sweep_interval_minutes * 60
    return replace(profile, **overrides) if overrides else profile
