"""Per-ticket publish/subscribe hub.

Delivery is best-effort and at-most-once: every subscriber owns a bounded
queue, publishing never waits on a subscriber, and a subscriber whose queue
overflows is marked stale and removed from all of its topics. Stale
subscribers must re-fetch ticket state before subscribing again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

from helpdesk.metrics import MetricsRegistry, metrics_registry

if TYPE_CHECKING:
    from helpdesk.tickets.models import Ticket, TicketComment

logger = logging.getLogger(__name__)

BROADCAST_TOPIC = "*"


class EventKind(str, Enum):
    TICKET_CREATED = "ticket_created"
    TICKET_UPDATED = "ticket_updated"
    COMMENT_ADDED = "comment_added"


@dataclass(frozen=True, slots=True)
class TicketEvent:
    """Snapshot of a lifecycle change handed to subscribers."""

    kind: EventKind
    ticket_id: str
    ticket_number: str
    occurred_at: datetime
    ticket: Ticket | None = None
    comment: TicketComment | None = None

    @classmethod
    def created(cls, ticket: Ticket, occurred_at: datetime) -> "TicketEvent":
        return cls(EventKind.TICKET_CREATED, ticket.id, ticket.number, occurred_at, ticket=ticket)

    @classmethod
    def updated(cls, ticket: Ticket, occurred_at: datetime) -> "TicketEvent":
        return cls(EventKind.TICKET_UPDATED, ticket.id, ticket.number, occurred_at, ticket=ticket)

    @classmethod
    def comment_added(cls, ticket: Ticket, comment: TicketComment) -> "TicketEvent":
        return cls(EventKind.COMMENT_ADDED, ticket.id, ticket.number, comment.created_at, comment=comment)


class Subscriber:
    """Bounded mailbox attached to one transport connection."""

    def __init__(self, *, name: str | None = None, max_queue_size: int = 100) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be greater than zero")
        self.name = name or uuid4().hex
        self._queue: asyncio.Queue[TicketEvent | None] = asyncio.Queue(maxsize=max_queue_size)
        self._stale = False

    def __repr__(self) -> str:
        return f"Subscriber(name={self.name!r}, stale={self._stale})"

    @property
    def stale(self) -> bool:
        return self._stale

    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, event: TicketEvent) -> bool:
        if self._stale:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def mark_stale(self) -> None:
        """Discard buffered events and wake the reader with an end marker."""

        if self._stale:
            return
        self._stale = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def receive(self) -> TicketEvent | None:
        """Wait for the next event; ``None`` means the subscriber went stale."""

        if self._stale and self._queue.empty():
            return None
        return await self._queue.get()

    def receive_nowait(self) -> TicketEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None


class EventHub:
    """Topic registry keyed by ticket identifier."""

    def __init__(self, *, registry: MetricsRegistry | None = None) -> None:
        self._topics: dict[str, set[Subscriber]] = {}
        self._memberships: dict[Subscriber, set[str]] = {}
        self._metrics = registry or metrics_registry

    def subscribe(self, topic: str, subscriber: Subscriber) -> None:
        if subscriber.stale:
            raise ValueError(f"Subscriber {subscriber.name} is stale and must reconnect")
        self._topics.setdefault(topic, set()).add(subscriber)
        self._memberships.setdefault(subscriber, set()).add(topic)

    def unsubscribe(self, topic: str, subscriber: Subscriber) -> None:
        members = self._topics.get(topic)
        if members is not None:
            members.discard(subscriber)
            if not members:
                del self._topics[topic]
        topics = self._memberships.get(subscriber)
        if topics is not None:
            topics.discard(topic)
            if not topics:
                del self._memberships[subscriber]

    def unsubscribe_all(self, subscriber: Subscriber) -> None:
        for topic in tuple(self._memberships.get(subscriber, ())):
            self.unsubscribe(topic, subscriber)

    def topics_for(self, subscriber: Subscriber) -> frozenset[str]:
        return frozenset(self._memberships.get(subscriber, ()))

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def publish(self, topic: str, event: TicketEvent) -> int:
        """Hand ``event`` to every subscriber of ``topic`` without waiting.

        Returns the number of subscribers that accepted the event.
        """

        delivered = 0
        for subscriber in tuple(self._topics.get(topic, ())):
            if subscriber.offer(event):
                delivered += 1
                continue
            logger.warning(
                "Dropping subscriber %s from %d topic(s): event buffer overflow on %s",
                subscriber.name,
                len(self._memberships.get(subscriber, ())),
                topic,
            )
            self.unsubscribe_all(subscriber)
            subscriber.mark_stale()
            self._metrics.counter("event_subscribers_dropped_total").inc()

        if delivered:
            self._metrics.counter("event_deliveries_total", label_names=("kind",)).inc(delivered, labels={"kind": event.kind.value})
        return delivered
