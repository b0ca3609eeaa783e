"""Event type definitions for the sandbox runtime event system.

This module defines the events that flow from command execution and container
lifecycle operations to connected terminal clients. Every externally visible
state change produces an event on the owning tenant's channel.
"""

import json
import time
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the sandbox runtime.

    Events are categorized by:
    - Stream control: Connection handshake and shutdown sentinel
    - Command lifecycle: Start, output, progress, and terminal states
    - Container lifecycle: Creation, image acquisition, and removal
    - Proxy: Reverse-proxy configuration changes
    """

    # Stream control
    CONNECTED = "connected"
    STREAM_CLOSED = "stream-closed"

    # Command lifecycle
    COMMAND_STARTED = "command-started"
    COMMAND_OUTPUT = "command-output"
    COMMAND_PROGRESS = "command-progress"
    COMMAND_FINISHED = "command-finished"
    COMMAND_ERROR = "command-error"
    COMMAND_CANCELLED = "command-cancelled"

    # Container lifecycle
    CONTAINER_CREATED = "container-created"
    CONTAINER_REMOVED = "container-removed"
    CONTAINER_CLEANED = "container-cleaned"
    PULLING_IMAGE = "pulling-image"
    IMAGE_PULLED = "image-pulled"

    # Proxy
    PROXY_RELOADED = "proxy-reloaded"


class SandboxEvent(BaseModel):
    """An event published on a tenant channel.

    Each event includes:
    - type: The category of event (from EventType enum)
    - channel: The tenant key the event belongs to
    - timestamp: Unix timestamp when the event occurred
    - data: Event-specific payload

    Payload schemas by event type:

    COMMAND_STARTED:
        - executionId: str
        - command: str
        - background: bool

    COMMAND_OUTPUT:
        - executionId: str
        - type: str - "stdout", "stderr" or "system"
        - data: str - Output chunk

    COMMAND_PROGRESS:
        - executionId: str
        - phase: str
        - percentage: int

    COMMAND_FINISHED:
        - executionId: str
        - exitCode: int | None
        - duration: int - Milliseconds
        - success: bool

    COMMAND_ERROR:
        - executionId: str
        - error: str

    COMMAND_CANCELLED:
        - executionId: str

    CONTAINER_CREATED / CONTAINER_REMOVED / CONTAINER_CLEANED:
        - containerName: str
        - containerId: str (when known)

    PULLING_IMAGE / IMAGE_PULLED:
        - image: str
    """

    type: EventType
    channel: str
    timestamp: float = Field(default_factory=time.time)
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def iso_timestamp(self) -> str:
        """Timestamp as an ISO-8601 string in UTC."""
        return datetime.fromtimestamp(self.timestamp, tz=UTC).isoformat()

    def to_payload(self) -> dict[str, Any]:
        """Wire representation sent to stream clients."""
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.iso_timestamp,
        }

    def to_sse(self) -> str:
        """Frame the event as a single server-sent-events message."""
        return f"data: {json.dumps(self.to_payload())}\n\n"
