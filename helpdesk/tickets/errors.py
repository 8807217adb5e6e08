from __future__ import annotations


class TicketError(RuntimeError):
    """Base error for ticket lifecycle issues.

    Every subclass carries a stable ``kind`` so callers can tell user-correctable
    failures from permanent and transient ones without matching on messages.
    """

    kind = "ticket_error"
    transient = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TicketError):
    """Raised when a required field is missing or empty."""

    kind = "validation_error"


class TicketNotFoundError(TicketError):
    """Raised when an operation targets a non-existent ticket."""

    kind = "not_found"


class ForbiddenError(TicketError):
    """Raised when the actor lacks the capability for an operation."""

    kind = "forbidden"


class InvalidTransitionError(TicketError):
    """Raised when attempting to transition to an invalid state."""

    kind = "invalid_transition"


class VersionConflictError(TicketError):
    """Raised when a concurrent writer updated the ticket first."""

    kind = "version_conflict"
    transient = True


class DuplicateTicketNumberError(TicketError):
    """Raised by repositories when an allocated number is already taken."""

    kind = "duplicate_number"
    transient = True


class AllocationExhaustedError(TicketError):
    """Raised when no unique ticket number could be allocated."""

    kind = "allocation_exhausted"
    transient = True


class InvariantViolationError(TicketError):
    """Describes stored state that breaks a lifecycle invariant."""

    kind = "invariant_violation"
