"""Two-queue priority event bus.

High-priority events (state sync) are always dispatched before low-priority
ones (notification generation). Low-priority events go out in small batches
so high-priority work arriving mid-drain is picked up between batches.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union


logger = logging.getLogger(__name__)

PRIORITY_HIGH = "high"
PRIORITY_LOW = "low"

LEG_UPDATE = "leg_update"
RUNNER_UPDATE = "runner_update"
LEG_STARTED = "leg_started"
LEG_FINISHED = "leg_finished"
HANDOFF = "handoff"
RACE_COMPLETE = "race_complete"


@dataclass
class Event:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: str = PRIORITY_LOW
    source: Optional[str] = None
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))


Handler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self, batch_size: int = 5, batch_delay: float = 0.05) -> None:
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._handlers: Dict[str, List[Handler]] = {}
        self._high: Deque[Event] = deque()
        self._low: Deque[Event] = deque()
        self._task: Optional[asyncio.Task] = None
        self._processing = False

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        if event.priority == PRIORITY_HIGH:
            self._high.append(event)
        else:
            self._low.append(event)
        self._ensure_running()

    def publish_all(self, events: List[Event]) -> None:
        for event in events:
            self.publish(event)

    def _ensure_running(self) -> None:
        if self._processing or (self._task is not None and not self._task.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; events stay queued until drain() runs.
            return
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        self._processing = True
        try:
            while self._high or self._low:
                while self._high:
                    await self._dispatch(self._high.popleft())
                if not self._low:
                    continue
                batch = [self._low.popleft() for _ in range(min(self.batch_size, len(self._low)))]
                await asyncio.gather(*(self._dispatch(event) for event in batch))
                if self._low:
                    await asyncio.sleep(self.batch_delay)
        finally:
            self._processing = False

    async def _dispatch(self, event: Event) -> None:
        for handler in list(self._handlers.get(event.type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.type)

    async def drain(self) -> None:
        """Wait until both queues are empty and nothing is being dispatched."""

        while True:
            if self._task is not None and not self._task.done():
                await self._task
                continue
            if self._high or self._low:
                await self._run()
                continue
            return

    def queue_status(self) -> Dict[str, Any]:
        return {
            "high": len(self._high),
            "low": len(self._low),
            "processing": self._processing,
        }

    def clear_queues(self) -> None:
        self._high.clear()
        self._low.clear()
