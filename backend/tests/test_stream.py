"""Tests for api/stream.py -- server-sent-events framing of tenant events."""

import json

from api.stream import KEEPALIVE_FRAME, event_stream
from events.bus import EventBus
from events.types import EventType, SandboxEvent


def parse_frame(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


class TestEventStream:
    async def test_connected_frame_first(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("alice", session_id="stream_abc")
        stream = event_stream(event_bus, sub)

        frame = parse_frame(await anext(stream))

        assert frame["type"] == "connected"
        assert frame["data"] == {"sessionId": "stream_abc"}
        assert "timestamp" in frame
        await stream.aclose()

    async def test_forwards_events_until_closed(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("alice")
        event_bus.publish(
            SandboxEvent(
                type=EventType.COMMAND_OUTPUT,
                channel="alice",
                data={"executionId": "exec_1", "type": "stdout", "data": "hi\n"},
            )
        )
        event_bus.unsubscribe(sub.session_id)

        frames = [f async for f in event_stream(event_bus, sub)]

        payloads = [parse_frame(f) for f in frames]
        assert [p["type"] for p in payloads] == ["connected", "command-output", "stream-closed"]
        assert payloads[1]["data"]["data"] == "hi\n"

    async def test_keepalive_when_idle(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("alice")
        stream = event_stream(event_bus, sub, keepalive_seconds=0.05)

        await anext(stream)
        assert await anext(stream) == KEEPALIVE_FRAME
        await stream.aclose()

    async def test_unsubscribes_on_close(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("alice")
        stream = event_stream(event_bus, sub)
        await anext(stream)

        await stream.aclose()

        assert event_bus.unsubscribe(sub.session_id) is False
        assert event_bus.get_subscriber_count("alice") == 0

    async def test_channel_close_ends_stream(self, event_bus: EventBus) -> None:
        sub = event_bus.subscribe("alice")
        event_bus.close_channel("alice")

        frames = [f async for f in event_stream(event_bus, sub)]

        assert parse_frame(frames[-1])["data"] == {"reason": "channel_closed"}
