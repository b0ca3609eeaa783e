"""FastAPI application entry point for the sandbox runtime backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.admin import admin_router
from api.routes import router, set_terminal_service
from config import configure_logging, settings
from events import get_event_bus
from execution import CommandExecutionRegistry, ProcessRunner
from metrics import MetricsCollector
from proxy import ProxyConfigManager
from sandbox import ContainerLifecycleManager, ContainerPool, resolve_profile
from terminal_service import TerminalService

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the event bus, lifecycle manager, proxy manager, container pool,
    execution registry and terminal service, and starts the idle-eviction
    loop. On shutdown every running command is cancelled and every container
    removed.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    profile = resolve_profile(settings)

    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        profile=profile.name,
        max_containers=profile.max_containers,
    )

    event_bus = get_event_bus(settings.event_queue_size)
    metrics_collector = MetricsCollector()

    lifecycle = ContainerLifecycleManager(
        profile,
        event_bus,
        docker_binary=settings.docker_binary,
        sandbox_base_path=settings.sandbox_base_path,
        public_base_url=settings.public_base_url,
    )
    proxy = (
        ProxyConfigManager(
            profile,
            event_bus,
            config_dir=settings.proxy_config_dir,
            main_app_upstream=settings.proxy_main_app_upstream,
        )
        if profile.uses_proxy
        else None
    )
    pool = ContainerPool(
        lifecycle,
        event_bus,
        max_containers=profile.max_containers,
        idle_ttl_seconds=profile.idle_ttl_seconds,
        sweep_interval_seconds=profile.sweep_interval_seconds,
        proxy=proxy,
    )
    registry = CommandExecutionRegistry(
        ProcessRunner(settings.docker_binary, grace_seconds=settings.kill_grace_seconds),
        event_bus,
        history_limit=settings.command_history_limit,
        retention_seconds=settings.execution_retention_seconds,
        grace_seconds=settings.kill_grace_seconds,
        background_startup_seconds=settings.background_startup_seconds,
        max_output_chunks=settings.execution_log_max_chunks,
        metrics_collector=metrics_collector,
    )
    terminal_service = TerminalService(
        pool,
        registry,
        event_bus,
        sandbox_base_path=settings.sandbox_base_path,
        command_timeout_seconds=settings.command_timeout_seconds,
        install_timeout_seconds=settings.install_timeout_seconds,
        metrics_collector=metrics_collector,
    )

    # Register terminal service with routes
    set_terminal_service(terminal_service)

    # Store on app.state for access
    app.state.terminal_service = terminal_service
    app.state.proxy = proxy

    # Start periodic idle-container eviction
    app.state.eviction_task = await pool.start_eviction_loop()

    logger.info("resources_initialized")
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    eviction_task = app.state.eviction_task
    if eviction_task and not eviction_task.done():
        eviction_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction_task

    # Cancels running commands first, then removes every container.
    await app.state.terminal_service.shutdown()
    if app.state.proxy is not None:
        await app.state.proxy.shutdown()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Sandbox Runtime",
    description="Container lifecycle and command execution backend for an "
    "AI-assisted sandbox IDE: per-tenant Docker containers, streamed command "
    "output and reverse-proxied preview URLs.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["terminal"])
app.include_router(admin_router, tags=["admin"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points at the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Sandbox Runtime API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
