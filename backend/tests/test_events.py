from __future__ import annotations

import asyncio
from typing import List

from relay_core.events import PRIORITY_HIGH, PRIORITY_LOW, Event, EventBus


def test_high_priority_is_dispatched_before_low():
    seen: List[str] = []

    async def scenario() -> None:
        bus = EventBus(batch_delay=0)
        bus.subscribe("sync", lambda event: seen.append(f"sync:{event.payload['n']}"))
        bus.subscribe("notify", lambda event: seen.append(f"notify:{event.payload['n']}"))

        bus.publish(Event("notify", {"n": 1}, priority=PRIORITY_LOW))
        bus.publish(Event("notify", {"n": 2}, priority=PRIORITY_LOW))
        bus.publish(Event("sync", {"n": 1}, priority=PRIORITY_HIGH))
        bus.publish(Event("sync", {"n": 2}, priority=PRIORITY_HIGH))
        await bus.drain()

    asyncio.run(scenario())

    assert seen == ["sync:1", "sync:2", "notify:1", "notify:2"]


def test_high_priority_arriving_mid_drain_runs_before_next_batch():
    seen: List[str] = []

    async def scenario() -> None:
        bus = EventBus(batch_size=2, batch_delay=0)

        def on_notify(event: Event) -> None:
            seen.append(f"notify:{event.payload['n']}")
            if event.payload["n"] == 1:
                bus.publish(Event("sync", {"n": 1}, priority=PRIORITY_HIGH))

        bus.subscribe("notify", on_notify)
        bus.subscribe("sync", lambda event: seen.append("sync:1"))
        for n in range(1, 5):
            bus.publish(Event("notify", {"n": n}))
        await bus.drain()

    asyncio.run(scenario())

    assert seen == ["notify:1", "notify:2", "sync:1", "notify:3", "notify:4"]


def test_failing_handler_does_not_block_others(caplog):
    seen: List[int] = []

    async def scenario() -> None:
        bus = EventBus()

        def broken(event: Event) -> None:
            raise RuntimeError("boom")

        async def working(event: Event) -> None:
            await asyncio.sleep(0)
            seen.append(event.payload["n"])

        bus.subscribe("sync", broken)
        bus.subscribe("sync", working)
        bus.publish(Event("sync", {"n": 7}, priority=PRIORITY_HIGH))
        await bus.drain()

    asyncio.run(scenario())

    assert seen == [7]
    assert "Event handler failed for sync" in caplog.text


def test_unsubscribe_and_queue_controls():
    seen: List[int] = []
    bus = EventBus()
    unsubscribe = bus.subscribe("sync", lambda event: seen.append(1))
    unsubscribe()
    unsubscribe()

    # No running loop: events wait in the queue.
    bus.publish(Event("sync", priority=PRIORITY_HIGH))
    bus.publish(Event("notify"))
    assert bus.queue_status() == {"high": 1, "low": 1, "processing": False}

    bus.clear_queues()
    assert bus.queue_status()["high"] == 0
    asyncio.run(bus.drain())
    assert seen == []
