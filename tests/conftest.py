from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from helpdesk.events.hub import EventHub
from helpdesk.metrics import MetricsRegistry, register_default_metrics
from helpdesk.tickets.models import Actor, Role
from helpdesk.tickets.repository import InMemoryTicketRepository
from helpdesk.tickets.service import TicketService

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected into the ticket service."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def repository() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def hub(registry) -> EventHub:
    return EventHub(registry=registry)


@pytest.fixture
def service(repository, hub, clock, registry) -> TicketService:
    return TicketService(repository, hub, clock=clock, registry=registry)


@pytest.fixture
def requester() -> Actor:
    return Actor(id="requester", role=Role.REQUESTER)


@pytest.fixture
def other_requester() -> Actor:
    return Actor(id="requester-2", role=Role.REQUESTER)


@pytest.fixture
def agent() -> Actor:
    return Actor(id="agent", role=Role.AGENT)


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin", role=Role.ADMIN)
