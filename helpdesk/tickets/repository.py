from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Protocol, Sequence

from .errors import DuplicateTicketNumberError, VersionConflictError
from .models import Ticket, TicketComment, TicketFilter


class TicketRepository(Protocol):
    """Storage contract the lifecycle service relies on."""

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        ...

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ...

    async def list_tickets(self, criteria: TicketFilter | None = None) -> Sequence[Ticket]:
        ...

    async def update_ticket(
        self,
        ticket: Ticket,
        *,
        expected_version: int,
        new_comments: Sequence[TicketComment] = (),
    ) -> Ticket | None:
        ...

    async def delete_ticket(self, ticket_id: str) -> bool:
        ...

    async def next_sequence(self, name: str) -> int:
        ...


def matches_filter(ticket: Ticket, criteria: TicketFilter) -> bool:
    if criteria.created_by is not None and ticket.created_by != criteria.created_by:
        return False
    if criteria.statuses and ticket.status not in criteria.statuses:
        return False
    if criteria.exclude_statuses and ticket.status in criteria.exclude_statuses:
        return False
    if criteria.priority is not None and ticket.priority != criteria.priority:
        return False
    if criteria.category is not None and ticket.category != criteria.category:
        return False
    if criteria.search:
        needle = criteria.search.casefold()
        haystacks = (ticket.title, ticket.description, ticket.number)
        if not any(needle in value.casefold() for value in haystacks):
            return False
    return True


class InMemoryTicketRepository:
    """Process-local repository used for single-instance deployments and tests.

    Stored tickets are copied on the way in and out so callers can never
    mutate persisted state behind the repository's back.
    """

    def __init__(self) -> None:
        self._tickets: dict[str, Ticket] = {}
        self._numbers: dict[str, str] = {}
        self._sequences: dict[str, int] = {}
        self._lock = Lock()

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        with self._lock:
            if ticket.number in self._numbers:
                raise DuplicateTicketNumberError(f"Ticket number {ticket.number} is already in use")
            self._tickets[ticket.id] = replace(ticket)
            self._numbers[ticket.number] = ticket.id
        return replace(ticket)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        with self._lock:
            stored = self._tickets.get(ticket_id)
        return replace(stored) if stored is not None else None

    async def list_tickets(self, criteria: TicketFilter | None = None) -> Sequence[Ticket]:
        criteria = criteria or TicketFilter()
        with self._lock:
            tickets = [replace(ticket) for ticket in self._tickets.values() if matches_filter(ticket, criteria)]
        tickets.sort(key=lambda ticket: (ticket.created_at, ticket.number), reverse=True)
        return tickets

    async def update_ticket(
        self,
        ticket: Ticket,
        *,
        expected_version: int,
        new_comments: Sequence[TicketComment] = (),
    ) -> Ticket | None:
        with self._lock:
            stored = self._tickets.get(ticket.id)
            if stored is None:
                return None
            if stored.version != expected_version:
                raise VersionConflictError(
                    f"Ticket {ticket.id} was modified concurrently "
                    f"(expected version {expected_version}, found {stored.version})"
                )
            updated = replace(ticket, version=expected_version + 1)
            self._tickets[ticket.id] = updated
        return replace(updated)

    async def delete_ticket(self, ticket_id: str) -> bool:
        with self._lock:
            removed = self._tickets.pop(ticket_id, None)
        return removed is not None

    async def next_sequence(self, name: str) -> int:
        with self._lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
        return value
