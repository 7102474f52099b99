"""EventBus delivery, filtering, and overflow behavior."""

from __future__ import annotations

import pytest

from workforce.engine.events import EventBus


@pytest.mark.asyncio
async def test_events_reach_every_subscriber_in_order():
    bus = EventBus()
    first: list[str] = []
    second: list[str] = []

    async def _first(event):
        first.append(event["event"])

    async def _second(event):
        second.append(event["event"])

    bus.subscribe(_first)
    bus.subscribe(_second)
    bus.start()
    for name in ("a", "b", "c"):
        bus.publish({"event": name})
    await bus.drain()

    assert first == ["a", "b", "c"]
    assert second == ["a", "b", "c"]
    await bus.stop()


@pytest.mark.asyncio
async def test_subscriber_filter_limits_events():
    bus = EventBus()
    seen: list[str] = []

    async def _only_tasks(event):
        seen.append(event["event"])

    bus.subscribe(_only_tasks, events={"task-completed"})
    bus.start()
    bus.publish({"event": "message-queued"})
    bus.publish({"event": "task-completed"})
    await bus.drain()

    assert seen == ["task-completed"]
    assert len(bus.recent()) == 2
    await bus.stop()


@pytest.mark.asyncio
async def test_full_buffer_drops_oldest_event():
    bus = EventBus(buffer_size=2)
    seen: list[int] = []

    async def _collect(event):
        seen.append(event["n"])

    bus.subscribe(_collect, name="collector")
    for n in range(3):
        bus.publish({"event": "tick", "n": n})
    await bus.drain()

    assert seen == [1, 2]
    stats = bus.stats()
    assert stats["published"] == 3
    assert stats["subscribers"][0]["dropped"] == 1
    await bus.stop()


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_stop_delivery():
    bus = EventBus()
    seen: list[str] = []

    async def _flaky(event):
        if event["event"] == "bad":
            raise ValueError("boom")
        seen.append(event["event"])

    bus.subscribe(_flaky)
    bus.start()
    bus.publish({"event": "bad"})
    bus.publish({"event": "good"})
    await bus.drain()

    assert seen == ["good"]
    await bus.stop()


@pytest.mark.asyncio
async def test_events_published_by_handlers_are_drained():
    bus = EventBus()
    seen: list[str] = []

    async def _chain(event):
        seen.append(event["event"])
        if event["event"] == "first":
            bus.publish({"event": "second"})

    bus.subscribe(_chain)
    bus.start()
    bus.publish({"event": "first"})
    await bus.drain()

    assert seen == ["first", "second"]
    await bus.stop()
