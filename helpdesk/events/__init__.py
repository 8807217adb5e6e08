"""Real-time fan-out of ticket lifecycle events."""

from .hub import BROADCAST_TOPIC, EventHub, EventKind, Subscriber, TicketEvent

__all__ = [
    "BROADCAST_TOPIC",
    "EventHub",
    "EventKind",
    "Subscriber",
    "TicketEvent",
]
