"""Async event bus for tenant-scoped status broadcasting.

This module provides an EventBus class that fans out command output and
container lifecycle events to every stream client subscribed to a tenant
channel.

The event bus supports:
- Multiple subscribers per channel, each with its own bounded queue
- Non-blocking delivery (a slow subscriber loses events, publishers never wait)
- Subscriber removal by session id with a sentinel so stream loops exit
- Closing a whole channel when its tenant is cleaned up
"""

import asyncio
import contextlib
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass

import structlog

from events.types import EventType, SandboxEvent

logger = structlog.get_logger()


@dataclass
class Subscription:
    """A registered stream consumer.

    Attributes:
        session_id: Identifier used to unsubscribe (the ``session`` query
            parameter of the terminal DELETE endpoint).
        channel: Tenant key the subscriber listens to.
        queue: Bounded queue receiving SandboxEvent objects.
    """

    session_id: str
    channel: str
    queue: asyncio.Queue[SandboxEvent]


class EventBus:
    """Async pub/sub event bus for sandbox events.

    The EventBus manages subscriptions per channel (tenant key). Publishing
    never blocks: each subscriber owns a bounded asyncio.Queue and an event
    that does not fit is dropped for that subscriber only.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock that is
        never held across an await. Queue puts must happen on the event loop
        thread.

    Usage:
        >>> bus = EventBus()
        >>> sub = bus.subscribe("user_1")
        >>> bus.publish(SandboxEvent(
        ...     type=EventType.COMMAND_OUTPUT,
        ...     channel="user_1",
        ...     data={"executionId": "abc", "type": "stdout", "data": "hi"},
        ... ))
        >>> event = await sub.queue.get()
        >>> bus.unsubscribe(sub.session_id)
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        """Initialize an empty event bus.

        Args:
            max_queue_size: Bound of each subscriber queue.
        """
        self._max_queue_size = max_queue_size
        self._channels: dict[str, dict[str, Subscription]] = defaultdict(dict)
        self._sessions: dict[str, Subscription] = {}
        self._lock = threading.Lock()
        logger.info("event_bus_initialized", max_queue_size=max_queue_size)

    def subscribe(self, channel: str, session_id: str | None = None) -> Subscription:
        """Subscribe to events for a channel.

        Args:
            channel: The tenant key to listen to.
            session_id: Optional caller-chosen id. One is generated if omitted.

        Returns:
            The new Subscription.

        Raises:
            ValueError: If ``session_id`` is already registered.
        """
        sid = session_id or f"stream_{uuid.uuid4().hex[:12]}"
        queue: asyncio.Queue[SandboxEvent] = asyncio.Queue(maxsize=self._max_queue_size)
        subscription = Subscription(session_id=sid, channel=channel, queue=queue)

        with self._lock:
            if sid in self._sessions:
                raise ValueError(f"Stream session {sid} is already subscribed")
            self._sessions[sid] = subscription
            self._channels[channel][sid] = subscription
            subscriber_count = len(self._channels[channel])

        logger.info(
            "subscriber_added",
            channel=channel,
            session_id=sid,
            subscriber_count=subscriber_count,
        )
        return subscription

    def unsubscribe(self, session_id: str) -> bool:
        """Remove a subscriber and signal its consumer to stop.

        Args:
            session_id: The subscription to remove.

        Returns:
            True if the subscription existed, False otherwise.
        """
        with self._lock:
            subscription = self._sessions.pop(session_id, None)
            if subscription is None:
                return False
            channel_subs = self._channels.get(subscription.channel)
            if channel_subs is not None:
                channel_subs.pop(session_id, None)
                if not channel_subs:
                    del self._channels[subscription.channel]

        self._signal_closed(subscription, reason="unsubscribed")
        logger.info(
            "subscriber_removed",
            channel=subscription.channel,
            session_id=session_id,
        )
        return True

    def publish(self, event: SandboxEvent) -> int:
        """Publish an event to all subscribers of its channel.

        Must be called from the event loop thread. Never blocks: when a
        subscriber's queue is full the event is dropped for that subscriber.

        Args:
            event: The SandboxEvent to publish.

        Returns:
            Number of subscribers the event was delivered to.
        """
        with self._lock:
            subscribers = list(self._channels.get(event.channel, {}).values())

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "queue_full_event_dropped",
                    channel=event.channel,
                    session_id=subscription.session_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            channel=event.channel,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )
        return delivered

    def close_channel(self, channel: str) -> int:
        """Remove every subscriber of a channel, signalling each one.

        Args:
            channel: The tenant key to close.

        Returns:
            Number of subscribers removed.
        """
        with self._lock:
            channel_subs = self._channels.pop(channel, {})
            for sid in channel_subs:
                self._sessions.pop(sid, None)

        for subscription in channel_subs.values():
            self._signal_closed(subscription, reason="channel_closed")

        if channel_subs:
            logger.info("channel_closed", channel=channel, subscribers_removed=len(channel_subs))
        return len(channel_subs)

    def _signal_closed(self, subscription: Subscription, *, reason: str) -> None:
        """Push the STREAM_CLOSED sentinel, evicting the oldest event if full."""
        sentinel = SandboxEvent(
            type=EventType.STREAM_CLOSED,
            channel=subscription.channel,
            data={"reason": reason},
        )
        queue = subscription.queue
        if queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                queue.get_nowait()
        with contextlib.suppress(asyncio.QueueFull):
            queue.put_nowait(sentinel)

    def get_subscriber_count(self, channel: str) -> int:
        """Get the number of subscribers for a channel."""
        with self._lock:
            return len(self._channels.get(channel, {}))


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus(max_queue_size: int = 1000) -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.

    Returns:
        The global EventBus instance
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus(max_queue_size=max_queue_size)
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
