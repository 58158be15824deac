"""
Real-time broadcast of store events.

Stores publish an event after a successful write and never wait for
delivery. LocalBroadcaster fans events out to in-process subscribers (the
HTTP layer's websocket connections) through bounded asyncio queues; a slow
subscriber loses events rather than blocking the publisher.

Invariants:
    - publish() never raises and never blocks on a subscriber
    - Closing a subscription removes its queue
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

NOTIFICATION_RECEIVED = "notification:received"


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.name, "data": self.payload}


@runtime_checkable
class Broadcaster(Protocol):
    """Fire-and-forget event channel."""

    def publish(self, name: str, payload: dict[str, Any]) -> None:
        """Queue an event for every subscriber."""
        ...


class LocalBroadcaster:
    """In-process fan-out to asyncio queues.

    Example:
        >>> broadcaster = LocalBroadcaster()
        >>> async with broadcaster.subscribe() as events:
        ...     event = await events.get()
    """

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._queues: set[asyncio.Queue[Event]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, name: str, payload: dict[str, Any]) -> None:
        event = Event(name, payload)
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping event for slow subscriber",
                    extra={"event": name, "queue_size": self.queue_size},
                )

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue[Event]]:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self.queue_size)
        self._queues.add(queue)
        try:
            yield queue
        finally:
            self._queues.discard(queue)
