"""Simple in-memory asynchronous message bus."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional, Set

from .models import EventEnvelope, EventType, Notice


@dataclass(slots=True, eq=False)
class _Subscription:
    queue: "asyncio.Queue[EventEnvelope]"
    target_filter: Optional[str]


class MessageBus:
    """Pub/sub bus for outcomes, notices and stream status, with optional target filtering."""

    def __init__(self) -> None:
        self._topics: Dict[EventType, Set[_Subscription]] = defaultdict(set)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish_nowait(self, envelope: EventEnvelope) -> None:
        """Deliver an event to every matching subscriber without suspending."""
        if self._closed:
            raise RuntimeError("MessageBus is closed")

        for subscription in list(self._topics.get(envelope.type, set())):
            if subscription.target_filter and subscription.target_filter != envelope.target_id:
                continue
            self._put(subscription.queue, envelope)

    async def publish(self, envelope: EventEnvelope) -> None:
        self.publish_nowait(envelope)

    def notify(self, notice: Notice) -> None:
        """Shortcut for publishing a user-visible notice."""
        if self._closed:
            return
        self.publish_nowait(
            EventEnvelope(
                type=EventType.NOTICE,
                target_id=notice.target_id or "*",
                payload=notice.model_dump(mode="json"),
            )
        )

    async def subscribe(
        self,
        event_type: EventType,
        *,
        target_id: Optional[str] = None,
        max_queue: int = 50,
    ) -> AsyncIterator[EventEnvelope]:
        """Subscribe to an event stream, optionally filtered by target id."""
        if self._closed:
            raise RuntimeError("MessageBus is closed")

        queue: "asyncio.Queue[EventEnvelope]" = asyncio.Queue(max_queue)
        subscription = _Subscription(queue=queue, target_filter=target_id)
        self._topics[event_type].add(subscription)

        try:
            while True:
                envelope = await queue.get()
                if envelope.payload.get("__bus_closed__"):
                    return
                yield envelope
        finally:
            self._topics[event_type].discard(subscription)

    async def close(self) -> None:
        """Stop accepting new events and unblock subscribers."""
        self._closed = True
        topics = list(self._topics.items())
        self._topics.clear()
        for event_type, subscriptions in topics:
            sentinel = EventEnvelope(
                type=event_type,
                target_id="*",
                payload={"message": "MessageBus closed", "__bus_closed__": True},
            )
            for subscription in subscriptions:
                self._put(subscription.queue, sentinel)

    @staticmethod
    def _put(queue: "asyncio.Queue[EventEnvelope]", envelope: EventEnvelope) -> None:
        try:
            queue.put_nowait(envelope)
        except asyncio.QueueFull:
            # Drop the oldest so the newest event always gets through.
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            queue.put_nowait(envelope)
