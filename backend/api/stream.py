"""Server-sent-events stream of a tenant's sandbox events.

The stream opens with a ``connected`` frame carrying the session id the
client can later pass to ``DELETE /api/terminal?session=<id>``. After that
every event published on the tenant channel is forwarded as one frame, and a
comment line is sent whenever the channel has been quiet for the keep-alive
interval so intermediaries do not close the connection.
"""

import asyncio
from collections.abc import AsyncIterator

import structlog
from fastapi.responses import StreamingResponse

from events.bus import EventBus, Subscription
from events.types import EventType, SandboxEvent

logger = structlog.get_logger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def event_stream(
    event_bus: EventBus,
    subscription: Subscription,
    *,
    keepalive_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for a subscription until it is closed.

    The subscription is removed from the bus when the generator finishes,
    including when the client disconnects and the generator is cancelled.
    """
    session_id = subscription.session_id
    try:
        yield SandboxEvent(
            type=EventType.CONNECTED,
            channel=subscription.channel,
            data={"sessionId": session_id},
        ).to_sse()

        while True:
            try:
                event = await asyncio.wait_for(subscription.queue.get(), timeout=keepalive_seconds)
            except TimeoutError:
                yield KEEPALIVE_FRAME
                continue

            yield event.to_sse()
            if event.type == EventType.STREAM_CLOSED:
                break
    finally:
        event_bus.unsubscribe(session_id)
        logger.info("stream_finished", session_id=session_id, channel=subscription.channel)


def stream_response(
    event_bus: EventBus,
    tenant_key: str,
    *,
    keepalive_seconds: float = 15.0,
) -> StreamingResponse:
    """Subscribe to a tenant channel and wrap it in a streaming response."""
    subscription = event_bus.subscribe(tenant_key)
    logger.info("stream_opened", session_id=subscription.session_id, channel=tenant_key)
    return StreamingResponse(
        event_stream(event_bus, subscription, keepalive_seconds=keepalive_seconds),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
