"""In-process event bus.

Components publish plain dict events (always carrying an ``"event"``
key) without awaiting anyone. Each subscriber owns a bounded
asyncio.Queue drained by its own worker task, so a slow subscriber
never stalls a publisher or another subscriber. When a queue is full
the oldest pending event is dropped and counted.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .config import EventCallback, fire_event

logger = logging.getLogger(__name__)


@dataclass
class _Subscription:
    name: str
    callback: EventCallback
    events: frozenset[str] | None
    queue: asyncio.Queue[dict[str, Any]]
    dropped: int = 0
    worker: asyncio.Task[None] | None = field(default=None, repr=False)

    def wants(self, event_name: str) -> bool:
        return self.events is None or event_name in self.events


class EventBus:
    """Fan-out of engine events to async subscribers."""

    def __init__(self, buffer_size: int = 1000, history_size: int = 200) -> None:
        self._buffer_size = max(1, buffer_size)
        self._subscriptions: list[_Subscription] = []
        self._history: deque[dict[str, Any]] = deque(maxlen=history_size)
        self._started = False
        self.published = 0

    def subscribe(
        self,
        callback: EventCallback,
        events: list[str] | set[str] | None = None,
        name: str | None = None,
    ) -> None:
        """Register a callback, optionally restricted to some event names."""
        sub = _Subscription(
            name=name or getattr(callback, "__qualname__", repr(callback)),
            callback=callback,
            events=frozenset(events) if events else None,
            queue=asyncio.Queue(maxsize=self._buffer_size),
        )
        self._subscriptions.append(sub)
        if self._started:
            sub.worker = asyncio.create_task(self._run(sub))
        logger.debug("Event subscriber added: %s", sub.name)

    def publish(self, event: dict[str, Any]) -> None:
        """Enqueue an event for every interested subscriber. Never blocks."""
        name = event.get("event", "")
        self.published += 1
        self._history.append(event)
        for sub in self._subscriptions:
            if not sub.wants(name):
                continue
            if sub.queue.full():
                try:
                    sub.queue.get_nowait()
                    sub.queue.task_done()
                except asyncio.QueueEmpty:
                    pass
                sub.dropped += 1
                logger.warning(
                    "Event buffer full for %s, dropped oldest event (total=%d)",
                    sub.name, sub.dropped,
                )
            sub.queue.put_nowait(event)

    def start(self) -> None:
        """Start one worker per subscriber. Requires a running loop."""
        if self._started:
            return
        self._started = True
        for sub in self._subscriptions:
            if sub.worker is None:
                sub.worker = asyncio.create_task(self._run(sub))

    async def drain(self) -> None:
        """Wait until every queued event has been handled.

        Handlers may publish further events; keep waiting until the
        bus is quiet.
        """
        if not self._started:
            self.start()
        while any(not sub.queue.empty() for sub in self._subscriptions):
            for sub in self._subscriptions:
                await sub.queue.join()
        for sub in self._subscriptions:
            await sub.queue.join()

    async def stop(self) -> None:
        """Cancel subscriber workers. Pending events are discarded."""
        workers = [s.worker for s in self._subscriptions if s.worker is not None]
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        for sub in self._subscriptions:
            sub.worker = None
        self._started = False

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Most recently published events, oldest first."""
        events = list(self._history)
        if limit is not None:
            events = events[-limit:]
        return events

    def stats(self) -> dict[str, Any]:
        return {
            "published": self.published,
            "subscribers": [
                {
                    "name": s.name,
                    "pending": s.queue.qsize(),
                    "dropped": s.dropped,
                }
                for s in self._subscriptions
            ],
        }

    async def _run(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await fire_event(sub.callback, event)
            finally:
                sub.queue.task_done()
