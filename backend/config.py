"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the sandbox
runtime backend. All settings can be overridden via environment variables or
a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        docker_binary: Name (or path) of the container runtime CLI.
        deployment_profile: Built-in profile to run with (basic, production, iframe).
        max_containers: Override for the profile's container cap.
        idle_ttl_minutes: Override for the profile's idle eviction threshold.
        sweep_interval_minutes: Override for the profile's eviction sweep interval.
        sandbox_base_path: Host directory holding per-tenant project folders.
        command_timeout_seconds: Timeout for ordinary commands.
        install_timeout_seconds: Timeout for dependency installs.
        kill_grace_seconds: Wait between SIGTERM and SIGKILL.
        execution_retention_seconds: How long finished executions stay queryable.
        command_history_limit: Number of command strings kept in history.
        background_startup_seconds: Output window returned for dev servers.
        execution_log_max_chunks: Maximum output chunks kept per execution.
        event_queue_size: Per-subscriber event queue bound.
        stream_keepalive_seconds: Interval between SSE keep-alive comments.
        proxy_config_dir: Host directory the proxy config file is written to.
        proxy_main_app_upstream: host:port of the IDE frontend served at / by the proxy.
        public_base_url: Externally visible URL of the reverse proxy.
        default_user_id: Tenant used when a request carries no user header.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Container runtime
    docker_binary: str = "docker"
    deployment_profile: str = "iframe"
    # Profile overrides (None keeps the profile default)
    max_containers: int | None = None
    idle_ttl_minutes: int | None = None
    sweep_interval_minutes: int | None = None
    sandbox_base_path: str = "/tmp/sandboxes"

    # Command execution
    command_timeout_seconds: float = 60.0
    install_timeout_seconds: float = 180.0
    kill_grace_seconds: float = 5.0
    execution_retention_seconds: float = 30.0
    command_history_limit: int = 50
    background_startup_seconds: float = 3.0
    execution_log_max_chunks: int = 5000

    # Event streaming
    event_queue_size: int = 1000
    stream_keepalive_seconds: float = 15.0

    # Reverse proxy
    proxy_config_dir: str = "/tmp/sandbox-proxy"
    proxy_main_app_upstream: str = "host.docker.internal:3000"
    public_base_url: str = "http://localhost:3000"

    # Server Configuration
    default_user_id: str = "default"
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    @field_validator("deployment_profile")
    @classmethod
    def normalize_profile(cls, v: str) -> str:
        """Profile names are matched case-insensitively."""
        return v.strip().lower()

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
