from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence
from uuid import uuid4

from opentelemetry import trace

from helpdesk.events.hub import BROADCAST_TOPIC, EventHub, TicketEvent
from helpdesk.metrics import MetricsRegistry, metrics_registry

from .errors import (
    AllocationExhaustedError,
    DuplicateTicketNumberError,
    ForbiddenError,
    TicketNotFoundError,
    ValidationError,
    VersionConflictError,
)
from .locks import KeyedLock
from .models import (
    Actor,
    Role,
    SLAStatus,
    Ticket,
    TicketCategory,
    TicketComment,
    TicketFilter,
    TicketPriority,
)
from .numbering import TicketNumberAllocator
from .repository import TicketRepository
from .sla import evaluate_sla_status, evaluate_ticket, resolve_deadline
from .state import TERMINAL_STATUSES, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Clock = Callable[[], datetime]
Change = tuple[Ticket, Sequence[TicketComment]]
Mutator = Callable[[Ticket, datetime], Change | None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: str | None, field_name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required")
    return text


def _normalize_tags(tags: Iterable[str] | None) -> tuple[str, ...]:
    cleaned = {tag.strip() for tag in tags or () if tag and tag.strip()}
    return tuple(sorted(cleaned))


class TicketService:
    """High level orchestration for ticket lifecycle operations.

    Every mutation of a single ticket runs under that ticket's lock and is
    persisted with an optimistic version check, so concurrent writers in this
    process are serialized and writers in other processes are detected and
    retried. ``sla_status`` is recomputed on every write and every read.
    """

    def __init__(
        self,
        repository: TicketRepository,
        hub: EventHub,
        *,
        allocator: TicketNumberAllocator | None = None,
        clock: Clock = utcnow,
        max_attempts: int = 5,
        registry: MetricsRegistry | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._repository = repository
        self._hub = hub
        self._allocator = allocator or TicketNumberAllocator(repository)
        self._clock = clock
        self._max_attempts = max_attempts
        self._metrics = registry or metrics_registry
        self._locks = KeyedLock()

    @property
    def hub(self) -> EventHub:
        return self._hub

    async def create_ticket(
        self,
        *,
        title: str,
        description: str,
        actor: Actor,
        category: TicketCategory = TicketCategory.GENERAL,
        priority: TicketPriority = TicketPriority.MEDIUM,
        tags: Iterable[str] | None = None,
    ) -> Ticket:
        title = _require_text(title, "Title")
        description = _require_text(description, "Description")

        with tracer.start_as_current_span("tickets.create") as span:
            now = self._clock()
            deadline = resolve_deadline(priority, now)
            status = TicketStateMachine.initial_state()
            ticket_id = str(uuid4())

            for attempt in range(1, self._max_attempts + 1):
                number = await self._allocator.allocate()
                ticket = Ticket(
                    id=ticket_id,
                    number=number,
                    title=title,
                    description=description,
                    category=category,
                    priority=priority,
                    status=status,
                    created_by=actor.id,
                    sla_deadline=deadline,
                    sla_status=evaluate_sla_status(deadline, now, None, status),
                    created_at=now,
                    updated_at=now,
                    tags=_normalize_tags(tags),
                )
                try:
                    stored = await self._repository.create_ticket(ticket)
                except DuplicateTicketNumberError:
                    logger.warning("Ticket number %s already taken (attempt %d), allocating again", number, attempt)
                    continue
                break
            else:
                raise AllocationExhaustedError(
                    f"Could not allocate a unique ticket number after {self._max_attempts} attempts"
                )

            span.set_attribute("ticket.id", stored.id)
            span.set_attribute("ticket.number", stored.number)

        logger.info("Ticket %s created by %s with priority %s", stored.number, actor.id, priority.value)
        self._metrics.counter("tickets_created_total").inc()
        event = TicketEvent.created(stored, now)
        self._hub.publish(stored.id, event)
        self._hub.publish(BROADCAST_TOPIC, event)
        return stored

    async def get_ticket(self, ticket_id: str, *, actor: Actor) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        self._ensure_read_access(ticket, actor)
        return self._with_current_sla(ticket, self._clock())

    async def list_tickets(
        self,
        *,
        actor: Actor,
        status: TicketStatus | None = None,
        priority: TicketPriority | None = None,
        category: TicketCategory | None = None,
        search: str | None = None,
    ) -> list[Ticket]:
        criteria = TicketFilter(
            created_by=None if actor.is_staff else actor.id,
            statuses=(status,) if status is not None else (),
            priority=priority,
            category=category,
            search=(search or "").strip() or None,
        )
        now = self._clock()
        tickets = await self._repository.list_tickets(criteria)
        return [self._with_current_sla(ticket, now) for ticket in tickets]

    async def list_open_ticket_ids(self) -> list[str]:
        tickets = await self._repository.list_tickets(TicketFilter(exclude_statuses=tuple(TERMINAL_STATUSES)))
        return [ticket.id for ticket in tickets]

    async def update_status(self, ticket_id: str, *, new_status: TicketStatus, actor: Actor) -> Ticket:
        def apply(current: Ticket, now: datetime) -> Change | None:
            if current.status == new_status:
                return None
            self._ensure_staff(actor, "change ticket status")
            TicketStateMachine.assert_transition(current.status, new_status)
            resolved_at = current.resolved_at
            if new_status in TERMINAL_STATUSES and resolved_at is None:
                resolved_at = now
            return replace(current, status=new_status, resolved_at=resolved_at, updated_at=now), ()

        with tracer.start_as_current_span("tickets.update_status") as span:
            span.set_attribute("ticket.id", ticket_id)
            span.set_attribute("ticket.status", new_status.value)
            previous, updated = await self._mutate(ticket_id, apply, actor=actor)

        if previous.status != updated.status:
            logger.info(
                "Ticket %s moved %s -> %s by %s",
                updated.number,
                previous.status.value,
                updated.status.value,
                actor.id,
            )
            self._metrics.counter("ticket_status_transitions_total", label_names=("to_status",)).inc(
                labels={"to_status": updated.status.value}
            )
        return updated

    async def update_priority(self, ticket_id: str, *, new_priority: TicketPriority, actor: Actor) -> Ticket:
        """Change priority while keeping the deadline committed at creation."""

        def apply(current: Ticket, now: datetime) -> Change | None:
            self._ensure_staff(actor, "change ticket priority")
            if current.priority == new_priority:
                return None
            return replace(current, priority=new_priority, updated_at=now), ()

        with tracer.start_as_current_span("tickets.update_priority") as span:
            span.set_attribute("ticket.id", ticket_id)
            _, updated = await self._mutate(ticket_id, apply, actor=actor)
        return updated

    async def update_category(self, ticket_id: str, *, new_category: TicketCategory, actor: Actor) -> Ticket:
        def apply(current: Ticket, now: datetime) -> Change | None:
            self._ensure_staff(actor, "change ticket category")
            if current.category == new_category:
                return None
            return replace(current, category=new_category, updated_at=now), ()

        with tracer.start_as_current_span("tickets.update_category") as span:
            span.set_attribute("ticket.id", ticket_id)
            _, updated = await self._mutate(ticket_id, apply, actor=actor)
        return updated

    async def assign(self, ticket_id: str, *, assignee: Actor, actor: Actor) -> Ticket:
        def apply(current: Ticket, now: datetime) -> Change | None:
            self._ensure_staff(actor, "assign tickets")
            if not assignee.is_staff:
                raise ValidationError(f"Tickets can only be assigned to agents or admins, not {assignee.id}")
            if current.assigned_to == assignee.id:
                return None
            return replace(current, assigned_to=assignee.id, updated_at=now), ()

        with tracer.start_as_current_span("tickets.assign") as span:
            span.set_attribute("ticket.id", ticket_id)
            _, updated = await self._mutate(ticket_id, apply, actor=actor)
        logger.info("Ticket %s assigned to %s by %s", updated.number, assignee.id, actor.id)
        return updated

    async def add_comment(self, ticket_id: str, *, text: str, actor: Actor) -> TicketComment:
        body = _require_text(text, "Comment text")
        added: list[TicketComment] = []

        def apply(current: Ticket, now: datetime) -> Change | None:
            comment = TicketComment(id=str(uuid4()), ticket_id=current.id, author=actor.id, text=body, created_at=now)
            added[:] = [comment]
            return replace(current, comments=(*current.comments, comment), updated_at=now), (comment,)

        with tracer.start_as_current_span("tickets.add_comment") as span:
            span.set_attribute("ticket.id", ticket_id)
            await self._mutate(ticket_id, apply, actor=actor, announce=False)
        return added[0]

    async def delete_ticket(self, ticket_id: str, *, actor: Actor) -> None:
        """Administrative removal; bypasses the lifecycle and publishes nothing."""

        if actor.role != Role.ADMIN:
            raise ForbiddenError("Only admins may delete tickets")
        async with self._locks.hold(ticket_id):
            deleted = await self._repository.delete_ticket(ticket_id)
        if not deleted:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        logger.info("Ticket %s deleted by %s", ticket_id, actor.id)

    async def refresh_sla(self, ticket_id: str, *, now: datetime | None = None) -> Ticket | None:
        """Re-evaluate one ticket's SLA status; return the ticket if it changed."""

        def apply(current: Ticket, moment: datetime) -> Change | None:
            if current.status in TERMINAL_STATUSES:
                return None
            if evaluate_ticket(current, moment) == current.sla_status:
                return None
            return replace(current), ()

        try:
            previous, updated = await self._mutate(ticket_id, apply, actor=None, now=now)
        except TicketNotFoundError:
            return None
        if previous.sla_status == updated.sla_status:
            return None
        return updated

    async def _mutate(
        self,
        ticket_id: str,
        apply: Mutator,
        *,
        actor: Actor | None,
        now: datetime | None = None,
        announce: bool = True,
    ) -> tuple[Ticket, Ticket]:
        """Read, apply, evaluate, persist and publish one change to one ticket.

        ``apply`` returns ``None`` for a no-op, in which case nothing is
        persisted or published and the current ticket is returned twice.
        """

        async with self._locks.hold(ticket_id):
            for attempt in range(1, self._max_attempts + 1):
                current = await self._repository.get_ticket(ticket_id)
                if current is None:
                    raise TicketNotFoundError(f"Ticket {ticket_id} not found")
                if actor is not None:
                    self._ensure_read_access(current, actor)

                moment = now if now is not None else self._clock()
                change = apply(current, moment)
                if change is None:
                    snapshot = self._with_current_sla(current, moment)
                    return snapshot, snapshot

                candidate, new_comments = change
                candidate.sla_status = evaluate_ticket(candidate, moment)
                try:
                    stored = await self._repository.update_ticket(
                        candidate,
                        expected_version=current.version,
                        new_comments=new_comments,
                    )
                except VersionConflictError:
                    if attempt == self._max_attempts:
                        raise
                    logger.warning("Version conflict on ticket %s (attempt %d), retrying", ticket_id, attempt)
                    continue
                if stored is None:
                    raise TicketNotFoundError(f"Ticket {ticket_id} not found")

                if stored.sla_status != current.sla_status:
                    logger.info(
                        "Ticket %s SLA status %s -> %s",
                        stored.number,
                        current.sla_status.value,
                        stored.sla_status.value,
                    )
                    self._metrics.counter("sla_status_changes_total", label_names=("sla_status",)).inc(
                        labels={"sla_status": stored.sla_status.value}
                    )
                if new_comments:
                    for comment in new_comments:
                        self._hub.publish(stored.id, TicketEvent.comment_added(stored, comment))
                if announce:
                    self._hub.publish(stored.id, TicketEvent.updated(stored, moment))
                return current, stored

        raise VersionConflictError(f"Ticket {ticket_id} could not be updated")  # pragma: no cover - loop exits above

    def _with_current_sla(self, ticket: Ticket, now: datetime) -> Ticket:
        sla_status: SLAStatus = evaluate_ticket(ticket, now)
        if sla_status == ticket.sla_status:
            return ticket
        return replace(ticket, sla_status=sla_status)

    @staticmethod
    def _ensure_read_access(ticket: Ticket, actor: Actor) -> None:
        if actor.is_staff or ticket.created_by == actor.id:
            return
        raise ForbiddenError(f"Access to ticket {ticket.number} denied")

    @staticmethod
    def _ensure_staff(actor: Actor, action: str) -> None:
        if not actor.is_staff:
            raise ForbiddenError(f"Only agents and admins may {action}")
