import asyncio
import threading

import pytest

from lanrelay.events import StreamEventBus


@pytest.mark.asyncio
async def test_subscribers_receive_events_in_order():
    bus = StreamEventBus()
    queue = await bus.subscribe()

    bus.publish("created", "studio", {"status": "starting"})
    bus.publish("started", "studio")

    first = await asyncio.wait_for(queue.get(), timeout=1)
    second = await asyncio.wait_for(queue.get(), timeout=1)
    assert (first["event"], second["event"]) == ("created", "started")
    assert first["payload"] == {"status": "starting"}
    assert int(second["id"]) == int(first["id"]) + 1


@pytest.mark.asyncio
async def test_payload_is_copied_at_publish_time():
    bus = StreamEventBus()
    queue = await bus.subscribe()
    payload = {"status": "running"}

    bus.publish("started", "studio", payload)
    payload["status"] = "stopped"

    event = await asyncio.wait_for(queue.get(), timeout=1)
    assert event["payload"]["status"] == "running"


@pytest.mark.asyncio
async def test_late_subscriber_replays_from_last_event_id():
    bus = StreamEventBus()
    first_id = bus.publish("created", "a")
    bus.publish("started", "a")
    bus.publish("stopped", "a")

    queue = await bus.subscribe(last_event_id=first_id)

    assert [queue.get_nowait()["event"] for _ in range(queue.qsize())] == ["started", "stopped"]
    assert len(bus.history_snapshot()) == 3


@pytest.mark.asyncio
async def test_unsubscribe_and_unknown_events():
    bus = StreamEventBus()
    queue = await bus.subscribe()
    bus.unsubscribe(queue)

    bus.publish("deleted", "a")
    assert queue.empty()
    with pytest.raises(ValueError):
        bus.publish("exploded", "a")


@pytest.mark.asyncio
async def test_slow_subscriber_keeps_newest_events():
    bus = StreamEventBus(max_queue_size=2)
    queue = await bus.subscribe()

    for _ in range(5):
        bus.publish("error", "a")

    ids = [queue.get_nowait()["id"] for _ in range(queue.qsize())]
    assert ids == ["4", "5"]


@pytest.mark.asyncio
async def test_publish_from_worker_thread_is_delivered_on_loop():
    bus = StreamEventBus()
    queue = await bus.subscribe()

    thread = threading.Thread(target=bus.publish, args=("stopped", "a"))
    thread.start()
    thread.join()

    event = await asyncio.wait_for(queue.get(), timeout=1)
    assert event["event"] == "stopped"


@pytest.mark.asyncio
async def test_subscription_can_follow_one_stream():
    bus = StreamEventBus()
    queue = await bus.subscribe(stream_id="studio")

    bus.publish("started", "lobby")
    bus.publish("started", "studio")

    event = await asyncio.wait_for(queue.get(), timeout=1)
    assert event["streamId"] == "studio"
    assert queue.empty()
