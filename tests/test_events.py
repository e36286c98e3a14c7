"""Identity event bus tests."""

import json

import pytest

from idforge.services.events import IdentityEventBus


def test_publish_without_subscribers_is_a_no_op():
    bus = IdentityEventBus()

    bus.publish("INSERT", {"id": "a"})

    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_subscribers_receive_shaped_events():
    bus = IdentityEventBus()

    async with bus.subscribe() as first, bus.subscribe() as second:
        bus.publish("UPDATE", {"id": "a", "status": "completed"})
        bus.publish("DELETE", {"id": "b", "status": "failed"})

        update = first.get_nowait()
        delete = first.get_nowait()
        assert second.qsize() == 2

    assert update["eventType"] == "UPDATE"
    assert update["table"] == "identities"
    assert update["new"] == {"id": "a", "status": "completed"}
    assert update["old"] == {}
    assert delete["new"] == {}
    assert delete["old"] == {"id": "b"}
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_lagging_subscriber_drops_events():
    bus = IdentityEventBus(max_queue_size=2)

    async with bus.subscribe() as queue:
        bus.publish_many("INSERT", [{"id": str(i)} for i in range(5)])

        assert queue.qsize() == 2
        assert queue.get_nowait()["new"]["id"] == "0"


@pytest.mark.asyncio
async def test_stream_yields_ndjson_lines():
    bus = IdentityEventBus()
    stream = bus.stream(heartbeat_seconds=0.01)

    subscribed = json.loads(await stream.__anext__())
    heartbeat = json.loads(await stream.__anext__())
    bus.publish("INSERT", {"id": "a"})
    change = json.loads(await stream.__anext__())
    await stream.aclose()

    assert subscribed == {"type": "subscribed"}
    assert heartbeat == {"type": "heartbeat"}
    assert change["type"] == "change"
    assert change["eventType"] == "INSERT"
    assert change["new"] == {"id": "a"}
    assert bus.subscriber_count == 0
