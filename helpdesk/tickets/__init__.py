"""Ticket lifecycle, SLA evaluation and persistence."""

from .errors import (
    AllocationExhaustedError,
    ForbiddenError,
    InvalidTransitionError,
    InvariantViolationError,
    TicketError,
    TicketNotFoundError,
    ValidationError,
    VersionConflictError,
)
from .models import Actor, Role, SLAStatus, Ticket, TicketCategory, TicketComment, TicketPriority
from .repository import InMemoryTicketRepository, TicketRepository
from .service import TicketService
from .state import TicketStateMachine, TicketStatus
from .sweeper import SLASweeper

__all__ = [
    "Actor",
    "AllocationExhaustedError",
    "ForbiddenError",
    "InMemoryTicketRepository",
    "InvalidTransitionError",
    "InvariantViolationError",
    "Role",
    "SLAStatus",
    "SLASweeper",
    "Ticket",
    "TicketCategory",
    "TicketComment",
    "TicketError",
    "TicketNotFoundError",
    "TicketPriority",
    "TicketRepository",
    "TicketService",
    "TicketStateMachine",
    "TicketStatus",
    "ValidationError",
    "VersionConflictError",
]
