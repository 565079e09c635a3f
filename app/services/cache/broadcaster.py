"""
Cache invalidation broadcaster.

Each live Server-Sent Events connection registers a queue-backed subscriber.
Broadcasting never blocks: a subscriber whose queue is closed or full is
dropped from the registry.
"""

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CACHE_INVALIDATED_EVENT = "cache_invalidated"


def format_sse(event: dict[str, Any], event_name: str | None = None) -> str:
    """Serialize one event as an SSE frame."""
    data = json.dumps(event, ensure_ascii=False)
    name = event_name or event.get("type")
    if name:
        return f"event: {name}\ndata: {data}\n\n"
    return f"data: {data}\n\n"


@dataclass(eq=False)
class Subscriber:
    queue: asyncio.Queue
    id: str = field(default_factory=lambda: uuid4().hex)
    closed: bool = False


class CacheEventBroadcaster:
    """Registry of live invalidation subscribers."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: dict[str, Subscriber] = {}
        self.events_sent = 0
        self.subscribers_dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscriber:
        subscriber = Subscriber(queue=asyncio.Queue(maxsize=self.queue_size))
        self._subscribers[subscriber.id] = subscriber
        logger.info("Cache stream subscriber added", subscriber_id=subscriber.id, total=self.subscriber_count)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.closed = True
        if self._subscribers.pop(subscriber.id, None) is not None:
            logger.info(
                "Cache stream subscriber removed",
                subscriber_id=subscriber.id,
                total=self.subscriber_count,
            )

    def broadcast(self, event: dict[str, Any]) -> int:
        """Queue ``event`` for every subscriber; returns how many received it."""
        delivered = 0
        for subscriber in list(self._subscribers.values()):
            if subscriber.closed:
                self._drop(subscriber, "closed")
                continue
            try:
                subscriber.queue.put_nowait(event)
            except asyncio.QueueFull:
                self._drop(subscriber, "queue_full")
                continue
            delivered += 1

        self.events_sent += 1
        logger.info(
            "Cache event broadcast",
            event_type=event.get("type"),
            patterns=event.get("patterns"),
            delivered=delivered,
        )
        return delivered

    def _drop(self, subscriber: Subscriber, reason: str) -> None:
        subscriber.closed = True
        self._subscribers.pop(subscriber.id, None)
        self.subscribers_dropped += 1
        logger.warning("Dropped cache stream subscriber", subscriber_id=subscriber.id, reason=reason)

    async def stream(
        self, subscriber: Subscriber, keepalive_seconds: float = 25.0
    ) -> AsyncIterator[str]:
        """Yield SSE frames for ``subscriber`` until it is closed."""
        try:
            yield ": connected\n\n"
            while not subscriber.closed:
                try:
                    event = await asyncio.wait_for(subscriber.queue.get(), timeout=keepalive_seconds)
                except TimeoutError:
                    yield ": keepalive\n\n"
                    continue

                if event is None:
                    break
                yield format_sse(event)
        finally:
            self.unsubscribe(subscriber)

    def close(self) -> None:
        """Wake every open stream so it can finish, then clear the registry."""
        for subscriber in list(self._subscribers.values()):
            subscriber.closed = True
            # A full queue still ends at the next keepalive via the closed flag
            with contextlib.suppress(asyncio.QueueFull):
                subscriber.queue.put_nowait(None)
        self._subscribers.clear()

    def stats(self) -> dict[str, int]:
        return {
            "subscribers": self.subscriber_count,
            "events_sent": self.events_sent,
            "subscribers_dropped": self.subscribers_dropped,
        }
