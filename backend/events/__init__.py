"""Event system for sandbox status broadcasting.

This package provides the event infrastructure between command execution /
container lifecycle code and connected terminal clients. It is based on an
async pub/sub pattern using bounded asyncio.Queue instances, one per
subscriber, grouped by tenant channel.

Key Components:
    - EventType: Enum of all event types in the system
    - SandboxEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution
    - Subscription: A registered consumer (session id, channel, queue)

Usage:
    >>> from events import EventBus, EventType, SandboxEvent
    >>>
    >>> bus = EventBus()
    >>> sub = bus.subscribe("user_1:proj_1")
    >>> bus.publish(SandboxEvent(
    ...     type=EventType.CONTAINER_CREATED,
    ...     channel="user_1:proj_1",
    ...     data={"containerName": "sandbox-user_1--proj_1"},
    ... ))
    >>> event = await sub.queue.get()

Event Flow:
    1. The registry and pool publish events on the tenant channel
    2. The terminal stream endpoint subscribes to that channel
    3. Events are forwarded to the client as server-sent events
    4. DELETE /api/terminal?session=... unsubscribes and ends the stream
"""

from events.bus import (
    EventBus,
    Subscription,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    SandboxEvent,
)

__all__ = [
    "EventBus",
    "EventType",
    "SandboxEvent",
    "Subscription",
    "get_event_bus",
    "reset_event_bus",
]
