"""Event bus and event definitions for engine observers."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from enum import Enum


class EventTopic(str, Enum):
    """Enumerates supported event channels."""

    SNAPSHOT = "snapshot"
    LOG = "log"


class EventSubscription:
    """Async iterator over events for a given topic."""

    def __init__(self, bus: EventBus, topic: EventTopic) -> None:
        self._bus = bus
        self._topic = topic
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._active = True
        self._bus._register(topic, self._queue)

    def __aiter__(self) -> AsyncIterator[object]:
        return self

    async def __anext__(self) -> object:
        if not self._active:
            raise StopAsyncIteration
        return await self._queue.get()

    async def get(self) -> object:
        """Retrieve the next event payload."""
        return await self.__anext__()

    def get_nowait(self) -> object | None:
        """Return the next queued payload, or None when nothing is pending."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        """Unsubscribe from the event bus."""
        if self._active:
            self._active = False
            self._bus._unregister(self._topic, self._queue)

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Simple pub/sub event bus built on asyncio queues."""

    def __init__(self) -> None:
        self._topics: defaultdict[EventTopic, list[asyncio.Queue[object]]] = defaultdict(list)

    def subscribe(self, topic: EventTopic) -> EventSubscription:
        """Subscribe to a topic."""
        return EventSubscription(self, topic)

    def publish_nowait(self, topic: EventTopic, payload: object) -> None:
        """Publish payload without suspending; subscriber queues are unbounded."""
        for queue in list(self._topics.get(topic, [])):
            queue.put_nowait(payload)

    async def publish(self, topic: EventTopic, payload: object) -> None:
        """Publish payload to all subscribers of topic."""
        for queue in list(self._topics.get(topic, [])):
            await queue.put(payload)

    def _register(self, topic: EventTopic, queue: asyncio.Queue[object]) -> None:
        self._topics[topic].append(queue)

    def _unregister(self, topic: EventTopic, queue: asyncio.Queue[object]) -> None:
        subscribers = self._topics.get(topic)
        if not subscribers:
            return
        try:
            subscribers.remove(queue)
        except ValueError:
            return
        if not subscribers:
            self._topics.pop(topic, None)
