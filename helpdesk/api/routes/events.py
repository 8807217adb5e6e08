from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect

from helpdesk.api.routes.tickets import to_comment_response, to_ticket_response
from helpdesk.core.config import get_settings
from helpdesk.dependencies.auth import resolve_actor_from_token
from helpdesk.events.hub import BROADCAST_TOPIC, EventHub, Subscriber, TicketEvent
from helpdesk.tickets.errors import TicketError
from helpdesk.tickets.models import Actor
from helpdesk.tickets.service import TicketService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


def serialize_event(event: TicketEvent) -> dict[str, Any]:
    """Render a hub event as the JSON frame sent to clients."""

    message: dict[str, Any] = {
        "event": event.kind.value,
        "ticket_id": event.ticket_id,
        "ticket_number": event.ticket_number,
        "occurred_at": event.occurred_at.isoformat(),
    }
    if event.ticket is not None:
        message["ticket"] = to_ticket_response(event.ticket).model_dump(mode="json")
    if event.comment is not None:
        message["comment"] = to_comment_response(event.comment).model_dump(mode="json")
    return message


class TicketEventSession:
    """Bridge one WebSocket connection onto an event hub subscriber.

    Clients send ``{"action": "join" | "leave", "ticket_id": ...}`` frames;
    the session answers with ``joined``/``left``/``error`` frames and forwards
    hub events as they arrive. All topic memberships end with the connection.
    """

    def __init__(
        self,
        websocket: WebSocket,
        service: TicketService,
        actor: Actor,
        *,
        max_queue_size: int = 100,
    ) -> None:
        self._websocket = websocket
        self._service = service
        self._hub: EventHub = service.hub
        self._actor = actor
        self._subscriber = Subscriber(name=f"ws:{actor.id}", max_queue_size=max_queue_size)
        self._send_lock = asyncio.Lock()

    @property
    def subscriber(self) -> Subscriber:
        return self._subscriber

    async def run(self) -> None:
        reader = asyncio.create_task(self._read_commands())
        pump = asyncio.create_task(self._forward_events())
        try:
            done, pending = await asyncio.wait({reader, pump}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                task.result()
        finally:
            self._hub.unsubscribe_all(self._subscriber)

    async def _send(self, message: dict[str, Any]) -> None:
        async with self._send_lock:
            await self._websocket.send_json(message)

    async def _read_commands(self) -> None:
        try:
            while True:
                frame = await self._websocket.receive_text()
                try:
                    command = json.loads(frame)
                except ValueError:
                    await self._send_error("validation_error", "Commands must be valid JSON")
                    continue
                await self.handle_command(command)
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug("Subscriber %s disconnected: %r", self._subscriber.name, exc)

    async def _forward_events(self) -> None:
        try:
            while True:
                event = await self._subscriber.receive()
                if event is None:
                    await self._send({"event": "stale", "message": "Event buffer overflowed; reconnect and re-fetch"})
                    await self._websocket.close(code=TRY_AGAIN_LATER)
                    return
                await self._send(serialize_event(event))
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug("Dropping events for closed connection %s: %r", self._subscriber.name, exc)

    async def handle_command(self, command: Any) -> None:
        if not isinstance(command, dict):
            await self._send_error("validation_error", "Commands must be JSON objects")
            return
        action = command.get("action")
        ticket_id = command.get("ticket_id")
        if action not in {"join", "leave"} or not isinstance(ticket_id, str) or not ticket_id:
            await self._send_error("validation_error", "Expected {'action': 'join'|'leave', 'ticket_id': str}")
            return

        if action == "leave":
            self._hub.unsubscribe(ticket_id, self._subscriber)
            await self._send({"event": "left", "ticket_id": ticket_id})
            return

        if ticket_id == BROADCAST_TOPIC:
            if not self._actor.is_staff:
                await self._send_error("forbidden", "Only agents and admins may follow all tickets", ticket_id)
                return
            self._hub.subscribe(BROADCAST_TOPIC, self._subscriber)
            await self._send({"event": "joined", "ticket_id": BROADCAST_TOPIC})
            return

        try:
            ticket = await self._service.get_ticket(ticket_id, actor=self._actor)
        except TicketError as exc:
            await self._send_error(exc.kind, exc.message, ticket_id)
            return
        self._hub.subscribe(ticket_id, self._subscriber)
        await self._send(
            {
                "event": "joined",
                "ticket_id": ticket_id,
                "ticket": to_ticket_response(ticket).model_dump(mode="json"),
            }
        )

    async def _send_error(self, kind: str, message: str, ticket_id: str | None = None) -> None:
        payload: dict[str, Any] = {"event": "error", "kind": kind, "message": message}
        if ticket_id is not None:
            payload["ticket_id"] = ticket_id
        await self._send(payload)


@router.websocket("/ws/tickets")
async def ticket_events_websocket(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    service: TicketService | None = getattr(websocket.app.state, "ticket_service", None)
    try:
        actor = resolve_actor_from_token(token)
    except HTTPException:
        await websocket.close(code=POLICY_VIOLATION)
        return
    if service is None:
        await websocket.close(code=TRY_AGAIN_LATER)
        return

    await websocket.accept()
    session = TicketEventSession(websocket, service, actor, max_queue_size=get_settings().event_queue_size)
    await session.run()
