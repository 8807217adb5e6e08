"""Route modules exposed by the API package."""

from . import events, metrics, ping, tickets

__all__ = ["events", "metrics", "ping", "tickets"]
