"""In-process async pub/sub for governance notifications.

The lifecycle and executor queue events that are published once their
transaction commits; the notification dispatcher (and tests) subscribe.
Delivery is fire-and-forget: a slow or absent subscriber never blocks or
fails a governance action.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

Envelope = dict[str, Any]


class EventBus:
    """Fan out ``{"type", "data", "published_at"}`` envelopes to subscriber queues.

    Usage:
        bus = EventBus()

        async with bus.subscribe("proposal.executed") as sub:
            envelope = await sub.get(timeout=1.0)

        await bus.publish("proposal.executed", {"proposal_id": "p-1"})
    """

    def __init__(self) -> None:
        # ``None`` key holds wildcard subscribers.
        self._queues: dict[str | None, list[asyncio.Queue[Envelope]]] = defaultdict(list)

    async def publish(self, event_type: str, data: dict[str, Any]) -> int:
        """Deliver to typed and wildcard subscribers. Returns how many received it."""
        envelope: Envelope = {
            "type": event_type,
            "data": data,
            "published_at": datetime.now(UTC).isoformat(),
        }
        delivered = 0
        for queue in [*self._queues.get(event_type, []), *self._queues.get(None, [])]:
            try:
                queue.put_nowait(envelope)
            except asyncio.QueueFull:
                logger.warning("event_dropped type=%s reason=subscriber_full", event_type)
                continue
            delivered += 1
        return delivered

    def subscribe(self, event_type: str | None = None, max_size: int = 100) -> Subscription:
        """Subscribe to one event type, or to everything when ``event_type`` is None.

        Use the returned Subscription as an async context manager.
        """
        return Subscription(self, asyncio.Queue(maxsize=max_size), event_type)

    def _attach(self, queue: asyncio.Queue[Envelope], event_type: str | None) -> None:
        self._queues[event_type].append(queue)

    def _detach(self, queue: asyncio.Queue[Envelope], event_type: str | None) -> None:
        with contextlib.suppress(ValueError):
            self._queues[event_type].remove(queue)

    @property
    def subscriber_count(self) -> int:
        return sum(len(queues) for queues in self._queues.values())


class Subscription:
    """A live subscription. Async context manager and async iterator."""

    def __init__(
        self,
        bus: EventBus,
        queue: asyncio.Queue[Envelope],
        event_type: str | None,
    ) -> None:
        self._bus = bus
        self._queue = queue
        self._event_type = event_type
        self._active = False

    async def __aenter__(self) -> Subscription:
        self._bus._attach(self._queue, self._event_type)
        self._active = True
        return self

    async def __aexit__(self, *args: object) -> None:
        self._active = False
        self._bus._detach(self._queue, self._event_type)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Envelope:
        if not self._active:
            raise StopAsyncIteration
        try:
            return await self._queue.get()
        except asyncio.CancelledError:
            raise StopAsyncIteration from None

    async def get(self, timeout: float | None = None) -> Envelope | None:
        """Next envelope, or None if nothing arrives within ``timeout`` seconds."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()
