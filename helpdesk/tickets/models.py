from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .state import TicketStatus


class TicketPriority(str, Enum):
    """Urgency levels a ticket can be filed under."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TicketCategory(str, Enum):
    """Support areas used to route tickets."""

    TECHNICAL = "technical"
    BILLING = "billing"
    GENERAL = "general"
    NETWORK = "network"
    HARDWARE = "hardware"
    SOFTWARE = "software"
    ACCOUNT = "account"


class SLAStatus(str, Enum):
    """Derived health of a ticket relative to its SLA deadline."""

    ON_TIME = "on_time"
    AT_RISK = "at_risk"
    BREACHED = "breached"


class Role(str, Enum):
    """Capabilities an actor can hold."""

    REQUESTER = "requester"
    AGENT = "agent"
    ADMIN = "admin"


STAFF_ROLES: frozenset[Role] = frozenset({Role.AGENT, Role.ADMIN})


@dataclass(frozen=True, slots=True)
class Actor:
    """Opaque identity handed over by the authentication layer."""

    id: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


@dataclass(frozen=True, slots=True)
class TicketComment:
    """Immutable comment appended to a ticket."""

    id: str
    ticket_id: str
    author: str
    text: str
    created_at: datetime


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket entry."""

    id: str
    number: str
    title: str
    description: str
    category: TicketCategory
    priority: TicketPriority
    status: TicketStatus
    created_by: str
    sla_deadline: datetime
    sla_status: SLAStatus
    created_at: datetime
    updated_at: datetime
    assigned_to: str | None = None
    resolved_at: datetime | None = None
    comments: tuple[TicketComment, ...] = ()
    tags: tuple[str, ...] = ()
    version: int = 1


@dataclass(slots=True)
class TicketFilter:
    """Criteria accepted by repository listings."""

    created_by: str | None = None
    statuses: tuple[TicketStatus, ...] = ()
    priority: TicketPriority | None = None
    category: TicketCategory | None = None
    search: str | None = None
    exclude_statuses: tuple[TicketStatus, ...] = ()
