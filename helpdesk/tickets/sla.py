"""SLA deadline policy and status derivation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .errors import InvariantViolationError
from .models import SLAStatus, Ticket, TicketPriority
from .state import TERMINAL_STATUSES, TicketStatus

logger = logging.getLogger(__name__)

CRITICAL_RESPONSE_WINDOW = timedelta(hours=2)
DEFAULT_RESPONSE_WINDOW = timedelta(hours=4)
AT_RISK_WINDOW = timedelta(hours=1)


def response_window(priority: TicketPriority) -> timedelta:
    """Return the response-time budget granted to ``priority``."""

    if priority == TicketPriority.CRITICAL:
        return CRITICAL_RESPONSE_WINDOW
    return DEFAULT_RESPONSE_WINDOW


def resolve_deadline(priority: TicketPriority, created_at: datetime) -> datetime:
    return created_at + response_window(priority)


def evaluate_sla_status(
    deadline: datetime,
    now: datetime,
    resolved_at: datetime | None,
    status: TicketStatus,
) -> SLAStatus:
    """Derive the SLA status for a ticket.

    Resolved and closed tickets are judged by when they were resolved; every
    other ticket is judged by the time left until ``deadline``. A terminal ticket
    without ``resolved_at`` is reported as an invariant violation and counted as
    breached.
    """

    if status in TERMINAL_STATUSES:
        if resolved_at is None:
            violation = InvariantViolationError(f"Ticket in status {status.value} has no resolution timestamp")
            logger.error(
                "SLA evaluation invariant violated (%s): %s",
                violation.kind,
                violation.message,
                extra={"kind": violation.kind},
            )
            return SLAStatus.BREACHED
        return SLAStatus.ON_TIME if resolved_at <= deadline else SLAStatus.BREACHED

    remaining = deadline - now
    if remaining < timedelta(0):
        return SLAStatus.BREACHED
    if remaining < AT_RISK_WINDOW:
        return SLAStatus.AT_RISK
    return SLAStatus.ON_TIME


def evaluate_ticket(ticket: Ticket, now: datetime) -> SLAStatus:
    return evaluate_sla_status(ticket.sla_deadline, now, ticket.resolved_at, ticket.status)
