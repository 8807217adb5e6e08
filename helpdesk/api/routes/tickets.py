from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from helpdesk.dependencies.auth import ACTOR_DIRECTORY, CurrentActor, lookup_actor
from helpdesk.dependencies.tickets import AdminActor, StaffActor, TicketServiceDep
from helpdesk.tickets.errors import TicketError
from helpdesk.tickets.models import Role, SLAStatus, Ticket, TicketCategory, TicketComment, TicketPriority
from helpdesk.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])

ERROR_STATUS_CODES: dict[str, int] = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "version_conflict": status.HTTP_503_SERVICE_UNAVAILABLE,
    "allocation_exhausted": status.HTTP_503_SERVICE_UNAVAILABLE,
}


class TicketCreateRequest(BaseModel):
    title: str = Field(..., max_length=255)
    description: str
    category: TicketCategory = TicketCategory.GENERAL
    priority: TicketPriority = TicketPriority.MEDIUM
    tags: list[str] = Field(default_factory=list)


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus


class TicketPriorityChangeRequest(BaseModel):
    priority: TicketPriority


class TicketCategoryChangeRequest(BaseModel):
    category: TicketCategory


class TicketAssignRequest(BaseModel):
    assignee_id: str = Field(..., min_length=1)


class CommentCreateRequest(BaseModel):
    text: str = Field(..., max_length=5000)


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author: str
    text: str
    created_at: datetime


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    number: str
    title: str
    description: str
    category: TicketCategory
    priority: TicketPriority
    status: TicketStatus
    created_by: str
    assigned_to: str | None
    sla_deadline: datetime
    sla_status: SLAStatus
    resolved_at: datetime | None
    comments: list[CommentResponse]
    tags: list[str]
    created_at: datetime
    updated_at: datetime


class AgentResponse(BaseModel):
    id: str
    role: Role


def to_ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def to_comment_response(comment: TicketComment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def to_http_error(exc: TicketError) -> HTTPException:
    code = ERROR_STATUS_CODES.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail={"kind": exc.kind, "message": exc.message})


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, service: TicketServiceDep, actor: CurrentActor) -> TicketResponse:
    try:
        ticket = await service.create_ticket(
            title=payload.title,
            description=payload.description,
            category=payload.category,
            priority=payload.priority,
            tags=payload.tags,
            actor=actor,
        )
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return to_ticket_response(ticket)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    service: TicketServiceDep,
    actor: CurrentActor,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    priority: TicketPriority | None = Query(default=None),
    category: TicketCategory | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
) -> list[TicketResponse]:
    tickets = await service.list_tickets(
        actor=actor,
        status=status_filter,
        priority=priority,
        category=category,
        search=search,
    )
    return [to_ticket_response(ticket) for ticket in tickets]


@router.get("/agents", response_model=list[AgentResponse])
async def list_agents(_: StaffActor) -> list[AgentResponse]:
    return [
        AgentResponse(id=candidate.id, role=candidate.role)
        for candidate in ACTOR_DIRECTORY.values()
        if candidate.is_staff
    ]


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> TicketResponse:
    try:
        ticket = await service.get_ticket(ticket_id, actor=actor)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return to_ticket_response(ticket)


@router.post("/{ticket_id}/status", response_model=TicketResponse)
async def change_ticket_status(
    ticket_id: str,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    try:
        ticket = await service.update_status(ticket_id, new_status=payload.status, actor=actor)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return to_ticket_response(ticket)


@router.post("/{ticket_id}/priority", response_model=TicketResponse)
async def change_ticket_priority(
    ticket_id: str,
    payload: TicketPriorityChangeRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    try:
        ticket = await service.update_priority(ticket_id, new_priority=payload.priority, actor=actor)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return to_ticket_response(ticket)


@router.post("/{ticket_id}/category", response_model=TicketResponse)
async def change_ticket_category(
    ticket_id: str,
    payload: TicketCategoryChangeRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    try:
        ticket = await service.update_category(ticket_id, new_category=payload.category, actor=actor)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return to_ticket_response(ticket)


@router.post("/{ticket_id}/assignee", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: str,
    payload: TicketAssignRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    assignee = lookup_actor(payload.assignee_id)
    if assignee is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"kind": "not_found", "message": f"Actor {payload.assignee_id} not found"},
        )
    try:
        ticket = await service.assign(ticket_id, assignee=assignee, actor=actor)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return to_ticket_response(ticket)


@router.post("/{ticket_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> CommentResponse:
    try:
        comment = await service.add_comment(ticket_id, text=payload.text, actor=actor)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return to_comment_response(comment)


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(ticket_id: str, service: TicketServiceDep, actor: AdminActor) -> None:
    try:
        await service.delete_ticket(ticket_id, actor=actor)
    except TicketError as exc:
        raise to_http_error(exc) from exc
