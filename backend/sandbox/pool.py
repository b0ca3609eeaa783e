"""Multi-tenant pool of sandbox containers.

The pool maps tenant keys to ContainerRecords and is the only component that
creates or removes containers on behalf of tenants. It guarantees:

- ``ensure_container`` is idempotent and serialised per tenant, so concurrent
  calls for the same tenant create exactly one container, while different
  tenants proceed concurrently.
- The number of running and creating containers never exceeds the profile cap.
- A failed creation leaves no record behind.
- After every create or remove the reverse-proxy configuration is resynced.
"""

import asyncio
import contextlib
import time
from collections import Counter
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING

import structlog

from events.bus import EventBus
from events.types import EventType, SandboxEvent
from sandbox.errors import CapacityError, SandboxError
from sandbox.lifecycle import ContainerLifecycleManager
from sandbox.records import ContainerRecord, ContainerStatus

if TYPE_CHECKING:
    from proxy.manager import ProxyConfigManager

logger = structlog.get_logger(__name__)

RemovalListener = Callable[[str], None]


class ContainerPool:
    """Tenant-keyed registry of running containers.

    Attributes:
        max_containers: Cap on running plus creating containers.
        idle_ttl_seconds: Idle time after which a container is evicted.
        sweep_interval_seconds: Interval of the background eviction loop.
    """

    def __init__(
        self,
        lifecycle: ContainerLifecycleManager,
        event_bus: EventBus,
        *,
        max_containers: int,
        idle_ttl_seconds: float,
        sweep_interval_seconds: float,
        proxy: "ProxyConfigManager | None" = None,
    ) -> None:
        self.max_containers = max_containers
        self.idle_ttl_seconds = idle_ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._lifecycle = lifecycle
        self._event_bus = event_bus
        self._proxy = proxy
        self._records: dict[str, ContainerRecord] = {}
        self._creating: set[str] = set()
        self._tenant_locks: dict[str, asyncio.Lock] = {}
        # holders plus waiters per tenant lock; a lock is dropped at zero
        self._lock_users: Counter[str] = Counter()
        self._removal_listeners: list[RemovalListener] = []

    @property
    def lifecycle(self) -> ContainerLifecycleManager:
        return self._lifecycle

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Register a callback invoked with the tenant key after each removal."""
        self._removal_listeners.append(listener)

    # ------------------------------------------------------------------
    # Create / remove
    # ------------------------------------------------------------------

    async def ensure_container(
        self,
        tenant_key: str,
        project_path: str | None = None,
    ) -> ContainerRecord:
        """Return the tenant's running container, creating it if necessary.

        A record that is no longer running is discarded and replaced.

        Args:
            tenant_key: The tenant to serve.
            project_path: Host directory to mount when a container is created.

        Returns:
            A snapshot of the running record.

        Raises:
            CapacityError: The pool is full even after an idle sweep.
            SandboxError: Creation failed (environment, image or runtime).
        """
        async with self._tenant_lock(tenant_key):
            record = self._records.get(tenant_key)
            if record is not None and record.is_running:
                record.touch()
                return record.snapshot()

            if record is not None:
                logger.info("replacing_stale_container", tenant_key=tenant_key, status=record.status.value)
                await self._remove_locked(tenant_key, reason="stale")

            if not self._try_reserve(tenant_key):
                await self.evict_idle()
                if not self._try_reserve(tenant_key):
                    logger.warning("pool_capacity_reached", tenant_key=tenant_key, max_containers=self.max_containers)
                    raise CapacityError(
                        f"Container limit reached ({self.max_containers}); try again later"
                    )

            try:
                record = await self._lifecycle.create_container(tenant_key, project_path)
            finally:
                self._creating.discard(tenant_key)
            self._records[tenant_key] = record
            snapshot = record.snapshot()

        logger.info(
            "pool_container_ready",
            tenant_key=tenant_key,
            container=record.container_name,
            running=self.running_count(),
        )
        await self._sync_proxy()
        return snapshot

    async def remove_container(self, tenant_key: str, *, reason: str = "removed") -> bool:
        """Destroy a tenant's container and drop its record.

        The record is dropped even if the runtime fails to remove the
        container.

        Returns:
            True if the tenant had a record.
        """
        async with self._tenant_lock(tenant_key):
            removed = await self._remove_locked(tenant_key, reason=reason)
        if removed:
            await self._sync_proxy()
        return removed

    async def _remove_locked(self, tenant_key: str, *, reason: str) -> bool:
        record = self._records.pop(tenant_key, None)
        if record is None:
            return False

        try:
            await self._lifecycle.destroy_container(record)
        except SandboxError as e:
            logger.warning("pool_destroy_failed", tenant_key=tenant_key, error=str(e))

        logger.info("pool_container_removed", tenant_key=tenant_key, reason=reason)
        self._event_bus.publish(
            SandboxEvent(
                type=EventType.CONTAINER_REMOVED,
                channel=tenant_key,
                data={"containerName": record.container_name, "reason": reason},
            )
        )
        for listener in self._removal_listeners:
            listener(tenant_key)
        return True

    @contextlib.asynccontextmanager
    async def _tenant_lock(self, tenant_key: str) -> AsyncIterator[None]:
        """Hold the tenant's lock; it is dropped once unused and the tenant has no record."""
        lock = self._tenant_locks.setdefault(tenant_key, asyncio.Lock())
        self._lock_users[tenant_key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[tenant_key] -= 1
            if not self._lock_users[tenant_key]:
                del self._lock_users[tenant_key]
                if tenant_key not in self._records:
                    self._tenant_locks.pop(tenant_key, None)

    def _try_reserve(self, tenant_key: str) -> bool:
        """Claim a creation slot. Synchronous, so atomic on the event loop."""
        if self.occupied_count() >= self.max_containers:
            return False
        self._creating.add(tenant_key)
        return True

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    async def evict_idle(self, now: float | None = None) -> list[str]:
        """Remove every container idle for at least ``idle_ttl_seconds``.

        Tenants with an operation in progress are skipped.

        Returns:
            Tenant keys that were evicted.
        """
        now = time.time() if now is None else now
        candidates = [
            key for key, record in self._records.items()
            if record.idle_seconds(now) >= self.idle_ttl_seconds
        ]

        evicted: list[str] = []
        for key in candidates:
            if self._lock_users[key]:
                continue
            async with self._tenant_lock(key):
                record = self._records.get(key)
                if record is None or record.idle_seconds(now) < self.idle_ttl_seconds:
                    continue
                await self._remove_locked(key, reason="idle")
                evicted.append(key)

        if evicted:
            logger.info("idle_containers_evicted", count=len(evicted), tenants=evicted)
            await self._sync_proxy()
        return evicted

    async def start_eviction_loop(self) -> asyncio.Task[None]:
        """Start a background task that periodically evicts idle containers.

        The task runs until cancelled (typically at application shutdown).

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """
        interval = self.sweep_interval_seconds

        async def _loop() -> None:
            logger.info("eviction_loop_started", interval_seconds=interval)
            while True:
                try:
                    await asyncio.sleep(interval)
                    await self.evict_idle()
                except asyncio.CancelledError:
                    logger.info("eviction_loop_stopped")
                    return
                except Exception as e:
                    logger.error("eviction_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="container_eviction")

    # ------------------------------------------------------------------
    # Queries and bookkeeping
    # ------------------------------------------------------------------

    def get(self, tenant_key: str) -> ContainerRecord | None:
        record = self._records.get(tenant_key)
        return record.snapshot() if record is not None else None

    def touch(self, tenant_key: str) -> bool:
        """Mark a tenant as active. Returns False if it has no record."""
        record = self._records.get(tenant_key)
        if record is None:
            return False
        record.touch()
        return True

    def snapshot(self) -> list[ContainerRecord]:
        """Copies of every record, sorted by tenant key."""
        return [self._records[k].snapshot() for k in sorted(self._records)]

    def running_count(self) -> int:
        return sum(1 for r in self._records.values() if r.is_running)

    def occupied_count(self) -> int:
        """Running containers plus creations in progress."""
        return self.running_count() + len(self._creating)

    async def refresh(self, tenant_key: str) -> ContainerRecord | None:
        """Reconcile a record with the live runtime status.

        A container that no longer exists is dropped from the pool; one that
        stopped is marked STOPPED (and replaced on the next ensure).
        """
        record = self._records.get(tenant_key)
        if record is None:
            return None

        live = await self._lifecycle.inspect_status(record)
        if live == "unknown":
            return record.snapshot()

        changed = False
        async with self._tenant_lock(tenant_key):
            current = self._records.get(tenant_key)
            if current is None:
                return None
            if live == "not_found":
                self._records.pop(tenant_key, None)
                logger.warning("container_vanished", tenant_key=tenant_key)
                for listener in self._removal_listeners:
                    listener(tenant_key)
                changed = True
            elif live == "running" and not current.is_running:
                current.status = ContainerStatus.RUNNING
                changed = True
            elif live != "running" and current.is_running:
                current.status = ContainerStatus.STOPPED
                changed = True
            result = self._records.get(tenant_key)
            snapshot = result.snapshot() if result is not None else None

        if changed:
            await self._sync_proxy()
        return snapshot

    async def shutdown(self) -> None:
        """Remove every container (application shutdown)."""
        keys = list(self._records)
        logger.info("pool_shutdown", containers=len(keys))
        for key in keys:
            await self.remove_container(key, reason="shutdown")

    async def _sync_proxy(self) -> None:
        if self._proxy is None:
            return
        await self._proxy.sync(self.snapshot)
