from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import asyncpg

from .errors import DuplicateTicketNumberError, VersionConflictError
from .models import (
    SLAStatus,
    Ticket,
    TicketCategory,
    TicketComment,
    TicketFilter,
    TicketPriority,
)
from .state import TicketStatus

_TICKET_COLUMNS = (
    "id, number, title, description, category, priority, status, created_by, assigned_to, "
    "sla_deadline, sla_status, resolved_at, tags, version, created_at, updated_at"
)


class PostgresTicketRepository:
    """Data access layer for ticket records stored in PostgreSQL."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        number TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        category TEXT NOT NULL,
        priority TEXT NOT NULL,
        status TEXT NOT NULL,
        created_by TEXT NOT NULL,
        assigned_to TEXT NULL,
        sla_deadline TIMESTAMPTZ NOT NULL,
        sla_status TEXT NOT NULL,
        resolved_at TIMESTAMPTZ NULL,
        tags TEXT[] NOT NULL DEFAULT '{}',
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_COMMENTS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_comments (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        author TEXT NOT NULL,
        text TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_SEQUENCES_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_sequences (
        name TEXT PRIMARY KEY,
        value BIGINT NOT NULL
    )
    """

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets ({_TICKET_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
    RETURNING {_TICKET_COLUMNS}
    """

    _UPDATE_TICKET_SQL = f"""
    UPDATE tickets
    SET priority = $3,
        category = $4,
        status = $5,
        assigned_to = $6,
        sla_status = $7,
        resolved_at = COALESCE(resolved_at, $8),
        tags = $9,
        updated_at = $10,
        version = version + 1
    WHERE id = $1 AND version = $2
    RETURNING {_TICKET_COLUMNS}
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SELECT_VERSION_SQL = """
    SELECT version FROM tickets WHERE id = $1
    """

    _DELETE_TICKET_SQL = """
    DELETE FROM tickets WHERE id = $1 RETURNING id
    """

    _INSERT_COMMENT_SQL = """
    INSERT INTO ticket_comments (id, ticket_id, author, text, created_at)
    VALUES ($1, $2, $3, $4, $5)
    """

    _SELECT_COMMENTS_SQL = """
    SELECT id, ticket_id, author, text, created_at
    FROM ticket_comments
    WHERE ticket_id = ANY($1::text[])
    ORDER BY seq ASC
    """

    _NEXT_SEQUENCE_SQL = """
    INSERT INTO ticket_sequences (name, value)
    VALUES ($1, 1)
    ON CONFLICT (name) DO UPDATE SET value = ticket_sequences.value + 1
    RETURNING value
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_COMMENTS_SQL)
            await connection.execute(self._CREATE_SEQUENCES_SQL)

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        async with self._pool.acquire() as connection:
            try:
                row = await connection.fetchrow(
                    self._INSERT_TICKET_SQL,
                    ticket.id,
                    ticket.number,
                    ticket.title,
                    ticket.description,
                    ticket.category.value,
                    ticket.priority.value,
                    ticket.status.value,
                    ticket.created_by,
                    ticket.assigned_to,
                    ticket.sla_deadline,
                    ticket.sla_status.value,
                    ticket.resolved_at,
                    list(ticket.tags),
                    ticket.version,
                    ticket.created_at,
                    ticket.updated_at,
                )
            except asyncpg.UniqueViolationError as exc:
                raise DuplicateTicketNumberError(f"Ticket number {ticket.number} is already in use") from exc
        if row is None:
            raise RuntimeError("Failed to insert ticket")
        return self._row_to_ticket(row, ())

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
            if row is None:
                return None
            comment_rows = await connection.fetch(self._SELECT_COMMENTS_SQL, [ticket_id])
        return self._row_to_ticket(row, [self._row_to_comment(item) for item in comment_rows])

    async def list_tickets(self, criteria: TicketFilter | None = None) -> Sequence[Ticket]:
        query, params = self._build_list_query(criteria or TicketFilter())
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(query, *params)
            if not rows:
                return []
            ids = [str(row["id"]) for row in rows]
            comment_rows = await connection.fetch(self._SELECT_COMMENTS_SQL, ids)

        comments: dict[str, list[TicketComment]] = {}
        for item in comment_rows:
            comment = self._row_to_comment(item)
            comments.setdefault(comment.ticket_id, []).append(comment)
        return [self._row_to_ticket(row, comments.get(str(row["id"]), ())) for row in rows]

    async def update_ticket(
        self,
        ticket: Ticket,
        *,
        expected_version: int,
        new_comments: Sequence[TicketComment] = (),
    ) -> Ticket | None:
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                row = await connection.fetchrow(
                    self._UPDATE_TICKET_SQL,
                    ticket.id,
                    expected_version,
                    ticket.priority.value,
                    ticket.category.value,
                    ticket.status.value,
                    ticket.assigned_to,
                    ticket.sla_status.value,
                    ticket.resolved_at,
                    list(ticket.tags),
                    ticket.updated_at,
                )
                if row is None:
                    current = await connection.fetchval(self._SELECT_VERSION_SQL, ticket.id)
                    if current is None:
                        return None
                    raise VersionConflictError(
                        f"Ticket {ticket.id} was modified concurrently "
                        f"(expected version {expected_version}, found {current})"
                    )
                for comment in new_comments:
                    await connection.execute(
                        self._INSERT_COMMENT_SQL,
                        comment.id,
                        comment.ticket_id,
                        comment.author,
                        comment.text,
                        comment.created_at,
                    )
            comment_rows = await connection.fetch(self._SELECT_COMMENTS_SQL, [ticket.id])
        return self._row_to_ticket(row, [self._row_to_comment(item) for item in comment_rows])

    async def delete_ticket(self, ticket_id: str) -> bool:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._DELETE_TICKET_SQL, ticket_id)
        return row is not None

    async def next_sequence(self, name: str) -> int:
        async with self._pool.acquire() as connection:
            value = await connection.fetchval(self._NEXT_SEQUENCE_SQL, name)
        return int(value)

    @staticmethod
    def _build_list_query(criteria: TicketFilter) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if criteria.created_by is not None:
            clauses.append(f"created_by = {bind(criteria.created_by)}")
        if criteria.statuses:
            clauses.append(f"status = ANY({bind([status.value for status in criteria.statuses])}::text[])")
        if criteria.exclude_statuses:
            excluded = [status.value for status in criteria.exclude_statuses]
            clauses.append(f"NOT (status = ANY({bind(excluded)}::text[]))")
        if criteria.priority is not None:
            clauses.append(f"priority = {bind(criteria.priority.value)}")
        if criteria.category is not None:
            clauses.append(f"category = {bind(criteria.category.value)}")
        if criteria.search:
            placeholder = bind(f"%{_escape_like(criteria.search)}%")
            clauses.append(
                f"(title ILIKE {placeholder} ESCAPE '\\' "
                f"OR description ILIKE {placeholder} ESCAPE '\\' "
                f"OR number ILIKE {placeholder} ESCAPE '\\')"
            )

        query = f"SELECT {_TICKET_COLUMNS} FROM tickets"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, number DESC"
        return query, params

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any], comments: Sequence[TicketComment]) -> Ticket:
        resolved_at = row["resolved_at"]
        assigned_to = row["assigned_to"]
        return Ticket(
            id=str(row["id"]),
            number=str(row["number"]),
            title=str(row["title"]),
            description=str(row["description"]),
            category=TicketCategory(str(row["category"])),
            priority=TicketPriority(str(row["priority"])),
            status=TicketStatus(str(row["status"])),
            created_by=str(row["created_by"]),
            assigned_to=str(assigned_to) if assigned_to is not None else None,
            sla_deadline=_ensure_datetime(row["sla_deadline"]),
            sla_status=SLAStatus(str(row["sla_status"])),
            resolved_at=_ensure_datetime(resolved_at) if resolved_at is not None else None,
            comments=tuple(comments),
            tags=tuple(row["tags"] or ()),
            version=int(row["version"]),
            created_at=_ensure_datetime(row["created_at"]),
            updated_at=_ensure_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_comment(row: Mapping[str, Any]) -> TicketComment:
        return TicketComment(
            id=str(row["id"]),
            ticket_id=str(row["ticket_id"]),
            author=str(row["author"]),
            text=str(row["text"]),
            created_at=_ensure_datetime(row["created_at"]),
        )


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))


def _escape_like(value: str) -> str:
    """Make ``%``, ``_`` and ``\\`` match literally inside an ILIKE pattern."""

    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
