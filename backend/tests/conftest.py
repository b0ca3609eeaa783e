"""Shared test fixtures for backend tests.

Provides a fresh EventBus, a process runner that runs commands with the
local shell instead of ``docker exec``, a MagicMock Docker client, and a fake
lifecycle manager so tests never touch real Docker containers.
"""

import asyncio
import sys
from typing import Any
from unittest.mock import MagicMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import EventBus, Subscription, reset_event_bus  # noqa: E402
from events.types import EventType, SandboxEvent  # noqa: E402
from execution.runner import ProcessRunner  # noqa: E402
from sandbox.lifecycle import HealthReport  # noqa: E402
from sandbox.profiles import IFRAME, DeploymentProfile  # noqa: E402
from sandbox.records import ContainerRecord, ContainerStatus  # noqa: E402
from sandbox.security import tenant_slug  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


def drain(subscription: Subscription) -> list[SandboxEvent]:
    """Take every event currently buffered for a subscription."""
    events: list[SandboxEvent] = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


def event_types(events: list[SandboxEvent]) -> list[EventType]:
    return [e.type for e in events]


# ---------------------------------------------------------------------------
# Process runner
# ---------------------------------------------------------------------------


class LocalProcessRunner(ProcessRunner):
    """Runs commands with /bin/sh on the test host; the container is ignored."""

    def exec_argv(self, container_name: str, argv: list[str]) -> list[str]:
        return ["/bin/sh", *argv[1:]]


class SignalRecordingRunner(LocalProcessRunner):
    """LocalProcessRunner that remembers every in-container signal it sends."""

    def __init__(self, grace_seconds: float = 0.5) -> None:
        super().__init__(grace_seconds=grace_seconds)
        self.signals: list[tuple[str, str, str]] = []

    async def signal_container(self, container_name: str, pid_file: str, sig: str) -> None:
        self.signals.append((container_name, pid_file, sig))
        await super().signal_container(container_name, pid_file, sig)


@pytest.fixture()
def local_runner() -> LocalProcessRunner:
    return LocalProcessRunner(grace_seconds=0.5)


# ---------------------------------------------------------------------------
# Mock Docker client
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_docker_client() -> MagicMock:
    """A Docker SDK client double; tests override return values per case."""
    client = MagicMock()
    client.ping.return_value = True
    client.networks.list.return_value = [MagicMock()]
    client.containers.run.return_value = MagicMock(id="f" * 64)
    return client


# ---------------------------------------------------------------------------
# Fake lifecycle manager
# ---------------------------------------------------------------------------


def make_record(
    tenant_key: str = "alice",
    *,
    profile: DeploymentProfile = IFRAME,
    status: ContainerStatus = ContainerStatus.RUNNING,
    container_id: str = "cid-1",
    **overrides: Any,
) -> ContainerRecord:
    """Build a ContainerRecord the way the iframe profile names things."""
    slug = tenant_slug(tenant_key)
    fields: dict[str, Any] = {
        "tenant_key": tenant_key,
        "container_name": f"{profile.container_prefix}-{slug}",
        "container_id": container_id,
        "project_path": f"/tmp/sandboxes/{slug}",
        "proxy_path": f"{profile.proxy_path_prefix}{slug}/",
        "preview_url": f"http://localhost:3000{profile.proxy_path_prefix}{slug}/",
        "internal_port": profile.internal_port,
        "status": status,
    }
    fields.update(overrides)
    return ContainerRecord(**fields)


class FakeLifecycle:
    """In-memory stand-in for ContainerLifecycleManager.

    Attributes:
        created: Tenant keys in creation order.
        destroyed: Tenant keys in destruction order.
        live_status: What ``inspect_status`` reports per tenant.
        fail_create: Exception raised by the next creations, if set.
        create_delay: Seconds each creation takes.
        max_in_flight: Highest number of creations observed at once.
    """

    def __init__(self, profile: DeploymentProfile = IFRAME, *, create_delay: float = 0.0) -> None:
        self.profile = profile
        self.create_delay = create_delay
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.live_status: dict[str, str] = {}
        self.fail_create: Exception | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def create_container(
        self,
        tenant_key: str,
        project_path: str | None = None,
    ) -> ContainerRecord:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.create_delay:
                await asyncio.sleep(self.create_delay)
            if self.fail_create is not None:
                raise self.fail_create
        finally:
            self.in_flight -= 1
        self.created.append(tenant_key)
        self.live_status[tenant_key] = "running"
        overrides = {"project_path": project_path} if project_path else {}
        return make_record(
            tenant_key,
            profile=self.profile,
            container_id=f"cid-{len(self.created)}",
            **overrides,
        )

    async def destroy_container(self, record: ContainerRecord) -> None:
        self.destroyed.append(record.tenant_key)
        self.live_status.pop(record.tenant_key, None)

    async def inspect_status(self, record: ContainerRecord) -> str:
        return self.live_status.get(record.tenant_key, "not_found")

    async def health_check(self, record: ContainerRecord | None) -> HealthReport:
        report = HealthReport(runtime_installed=True, daemon_running=True)
        if record is None or not record.is_running:
            report.error = "No container for this tenant"
            return report
        report.container_running = True
        report.network_reachable = True
        return report

    async def container_stats(self, record: ContainerRecord) -> dict[str, Any]:
        return {"cpuPercent": 1.5, "memoryUsageMb": 64.0}

    def is_docker_available(self) -> bool:
        return True


@pytest.fixture()
def fake_lifecycle() -> FakeLifecycle:
    return FakeLifecycle()
