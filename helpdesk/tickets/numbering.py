from __future__ import annotations

from typing import Protocol

from helpdesk.tickets.errors import AllocationExhaustedError

TICKET_NUMBER_PREFIX = "TKT"
TICKET_NUMBER_SEQUENCE = "ticket_number"
MAX_TICKET_SEQUENCE = 999_999


class SequenceSource(Protocol):
    async def next_sequence(self, name: str) -> int:
        ...


def format_ticket_number(sequence: int) -> str:
    """Render ``sequence`` as a ``TKT-NNNNNN`` identifier."""

    if sequence < 1:
        raise ValueError("Ticket sequence values start at 1")
    if sequence > MAX_TICKET_SEQUENCE:
        raise ValueError(f"Ticket sequence values stop at {MAX_TICKET_SEQUENCE}")
    return f"{TICKET_NUMBER_PREFIX}-{sequence:06d}"


class TicketNumberAllocator:
    """Hand out human-readable ticket numbers from an atomic counter.

    The counter lives in the store and is advanced with a single
    increment-and-fetch, so concurrent callers never observe the same value.
    Numbers are six digits wide; once the counter passes the last one every
    allocation fails instead of producing a seven-digit number.
    """

    def __init__(self, source: SequenceSource, *, sequence: str = TICKET_NUMBER_SEQUENCE) -> None:
        self._source = source
        self._sequence = sequence

    async def allocate(self) -> str:
        value = await self._source.next_sequence(self._sequence)
        if value > MAX_TICKET_SEQUENCE:
            raise AllocationExhaustedError(
                f"Ticket numbers {format_ticket_number(1)}..{format_ticket_number(MAX_TICKET_SEQUENCE)} are used up"
            )
        return format_ticket_number(value)
