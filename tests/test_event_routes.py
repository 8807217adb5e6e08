from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from helpdesk.api.routes import events as event_routes
from helpdesk.api.routes.events import TicketEventSession, serialize_event
from helpdesk.events.hub import BROADCAST_TOPIC, TicketEvent
from helpdesk.main import create_app
from helpdesk.tickets.models import SLAStatus, Ticket, TicketCategory, TicketPriority
from helpdesk.tickets.state import TicketStatus


class DummyWebSocket:
    def __init__(self, commands=(), *, service=None):
        self._commands: asyncio.Queue = asyncio.Queue()
        for command in commands:
            self._commands.put_nowait(command)
        self.sent: list[dict] = []
        self.accepted = False
        self.closed_code: int | None = None
        self.app = SimpleNamespace(state=SimpleNamespace(ticket_service=service))

    def disconnect(self) -> None:
        self._commands.put_nowait(None)

    async def accept(self) -> None:
        self.accepted = True

    async def receive_text(self) -> str:
        command = await self._commands.get()
        if command is None:
            raise WebSocketDisconnect(code=1000)
        return command if isinstance(command, str) else json.dumps(command)

    async def send_json(self, message) -> None:
        self.sent.append(message)

    async def close(self, code: int = 1000) -> None:
        self.closed_code = code

    def frames(self, event: str) -> list[dict]:
        return [message for message in self.sent if message["event"] == event]


async def _until(condition, attempts: int = 200) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def _open(service, actor):
    return await service.create_ticket(title="Mouse lag", description="Cursor freezes", actor=actor)


@pytest.mark.asyncio
async def test_joined_connection_receives_ticket_events(service, hub, requester, agent):
    ticket = await _open(service, requester)
    websocket = DummyWebSocket([{"action": "join", "ticket_id": ticket.id}])
    session = TicketEventSession(websocket, service, requester)

    running = asyncio.create_task(session.run())
    await _until(lambda: websocket.frames("joined"))
    await service.add_comment(ticket.id, text="Try another USB port", actor=agent)
    await service.update_status(ticket.id, new_status=TicketStatus.IN_PROGRESS, actor=agent)
    await _until(lambda: websocket.frames("ticket_updated"))
    websocket.disconnect()
    await running

    joined = websocket.frames("joined")[0]
    assert joined["ticket"]["number"] == ticket.number
    comments = websocket.frames("comment_added")
    assert len(comments) == 1
    assert comments[0]["comment"]["text"] == "Try another USB port"
    assert websocket.frames("ticket_updated")[0]["ticket"]["status"] == "in_progress"
    assert hub.topics_for(session.subscriber) == frozenset()


@pytest.mark.asyncio
async def test_leave_stops_delivery(service, hub, requester, agent):
    ticket = await _open(service, requester)
    websocket = DummyWebSocket()
    session = TicketEventSession(websocket, service, requester)

    await session.handle_command({"action": "join", "ticket_id": ticket.id})
    await session.handle_command({"action": "leave", "ticket_id": ticket.id})
    await service.add_comment(ticket.id, text="Anyone?", actor=agent)

    assert websocket.frames("left") == [{"event": "left", "ticket_id": ticket.id}]
    assert session.subscriber.pending() == 0


@pytest.mark.asyncio
async def test_join_is_rejected_without_read_access(service, hub, requester, other_requester):
    ticket = await _open(service, requester)
    websocket = DummyWebSocket()
    session = TicketEventSession(websocket, service, other_requester)

    await session.handle_command({"action": "join", "ticket_id": ticket.id})
    await session.handle_command({"action": "join", "ticket_id": "missing"})

    errors = websocket.frames("error")
    assert [frame["kind"] for frame in errors] == ["forbidden", "not_found"]
    assert hub.topics_for(session.subscriber) == frozenset()


@pytest.mark.asyncio
async def test_broadcast_feed_is_staff_only(service, hub, requester, agent):
    requester_socket = DummyWebSocket()
    agent_socket = DummyWebSocket()
    requester_session = TicketEventSession(requester_socket, service, requester)
    agent_session = TicketEventSession(agent_socket, service, agent)

    await requester_session.handle_command({"action": "join", "ticket_id": BROADCAST_TOPIC})
    await agent_session.handle_command({"action": "join", "ticket_id": BROADCAST_TOPIC})
    ticket = await service.create_ticket(
        title="Server room hot",
        description="AC failed",
        priority=TicketPriority.CRITICAL,
        actor=requester,
    )

    assert requester_socket.frames("error")[0]["kind"] == "forbidden"
    assert agent_socket.frames("joined") == [{"event": "joined", "ticket_id": BROADCAST_TOPIC}]
    event = agent_session.subscriber.receive_nowait()
    assert event.ticket_id == ticket.id
    assert requester_session.subscriber.pending() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "command",
    ["join", {"action": "subscribe", "ticket_id": "t-1"}, {"action": "join"}, {"action": "join", "ticket_id": ""}],
)
async def test_malformed_commands_get_validation_errors(service, requester, command):
    websocket = DummyWebSocket()
    session = TicketEventSession(websocket, service, requester)

    await session.handle_command(command)

    assert websocket.frames("error")[0]["kind"] == "validation_error"


@pytest.mark.asyncio
async def test_slow_connection_is_told_it_went_stale(service, hub, requester, agent):
    ticket = await _open(service, requester)
    websocket = DummyWebSocket([{"action": "join", "ticket_id": ticket.id}])
    session = TicketEventSession(websocket, service, requester, max_queue_size=1)

    running = asyncio.create_task(session.run())
    await _until(lambda: websocket.frames("joined"))
    hub.publish(ticket.id, TicketEvent.updated(ticket, ticket.created_at))
    hub.publish(ticket.id, TicketEvent.updated(ticket, ticket.created_at))
    await asyncio.wait_for(running, timeout=1)

    assert websocket.frames("stale")
    assert websocket.frames("ticket_updated") == []
    assert websocket.closed_code == event_routes.TRY_AGAIN_LATER
    assert session.subscriber.stale
    assert hub.subscriber_count(ticket.id) == 0


def test_serialize_event_includes_ticket_snapshot():
    now = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)
    ticket = Ticket(
        id="t-1",
        number="TKT-000001",
        title="Title",
        description="Body",
        category=TicketCategory.GENERAL,
        priority=TicketPriority.LOW,
        status=TicketStatus.OPEN,
        created_by="requester",
        sla_deadline=now + timedelta(hours=4),
        sla_status=SLAStatus.ON_TIME,
        created_at=now,
        updated_at=now,
    )

    message = serialize_event(TicketEvent.created(ticket, now))

    assert message["event"] == "ticket_created"
    assert message["ticket_number"] == "TKT-000001"
    assert message["occurred_at"] == now.isoformat()
    assert message["ticket"]["sla_status"] == "on_time"
    assert "comment" not in message


@pytest.mark.asyncio
async def test_websocket_rejects_invalid_token(service):
    websocket = DummyWebSocket(service=service)

    await event_routes.ticket_events_websocket(websocket, token="bogus")

    assert websocket.closed_code == event_routes.POLICY_VIOLATION
    assert websocket.accepted is False


@pytest.mark.asyncio
async def test_websocket_closes_when_service_missing():
    websocket = DummyWebSocket(service=None)

    await event_routes.ticket_events_websocket(websocket, token="agent-token")

    assert websocket.closed_code == event_routes.TRY_AGAIN_LATER


@pytest.mark.asyncio
async def test_websocket_accepts_and_runs_session(service):
    websocket = DummyWebSocket([{"action": "join", "ticket_id": BROADCAST_TOPIC}], service=service)
    websocket.disconnect()

    await event_routes.ticket_events_websocket(websocket, token="agent-token")

    assert websocket.accepted is True
    assert websocket.frames("joined") == [{"event": "joined", "ticket_id": BROADCAST_TOPIC}]
    assert service.hub.subscriber_count(BROADCAST_TOPIC) == 0


class ClosedWebSocket(DummyWebSocket):
    async def send_json(self, message) -> None:
        raise RuntimeError('Cannot call "send" once a close message has been sent.')


@pytest.mark.asyncio
async def test_malformed_frames_keep_the_session_open(service, hub, agent):
    websocket = DummyWebSocket(["not json", "[1, 2", {"action": "join", "ticket_id": BROADCAST_TOPIC}])
    session = TicketEventSession(websocket, service, agent)

    running = asyncio.create_task(session.run())
    await _until(lambda: websocket.frames("joined"))
    websocket.disconnect()
    await asyncio.wait_for(running, timeout=1)

    errors = websocket.frames("error")
    assert [frame["kind"] for frame in errors] == ["validation_error", "validation_error"]
    assert errors[0]["message"] == "Commands must be valid JSON"
    assert hub.subscriber_count(BROADCAST_TOPIC) == 0


@pytest.mark.asyncio
async def test_events_for_a_closed_connection_end_the_session_quietly(service, hub, requester, agent):
    ticket = await _open(service, requester)
    websocket = ClosedWebSocket()
    session = TicketEventSession(websocket, service, agent)
    hub.subscribe(ticket.id, session.subscriber)

    running = asyncio.create_task(session.run())
    await service.add_comment(ticket.id, text="Rebooted the router", actor=agent)
    await asyncio.wait_for(running, timeout=1)

    assert hub.topics_for(session.subscriber) == frozenset()


def test_websocket_endpoint_answers_non_json_text_with_error_frame(service):
    app = create_app()
    app.state.ticket_service = service
    client = TestClient(app)

    with client.websocket_connect("/ws/tickets?token=agent-token") as websocket:
        websocket.send_text("not json")
        error = websocket.receive_json()
        websocket.send_json({"action": "join", "ticket_id": BROADCAST_TOPIC})
        joined = websocket.receive_json()

    assert error["event"] == "error"
    assert error["kind"] == "validation_error"
    assert joined == {"event": "joined", "ticket_id": BROADCAST_TOPIC}
