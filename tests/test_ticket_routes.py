from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from helpdesk.dependencies.tickets import get_ticket_service
from helpdesk.main import create_app

REQUESTER = {"Authorization": "Bearer requester-token"}
OTHER_REQUESTER = {"Authorization": "Bearer requester2-token"}
AGENT = {"Authorization": "Bearer agent-token"}
ADMIN = {"Authorization": "Bearer admin-token"}


@pytest.fixture
def client(service):
    app = create_app()
    app.dependency_overrides[get_ticket_service] = lambda: service
    return TestClient(app)


def _create(client, headers=REQUESTER, **overrides):
    payload = {"title": "Outlook crashes", "description": "Crashes when opening attachments"}
    payload.update(overrides)
    response = client.post("/tickets", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_ping_is_public(client):
    response = client.get("/ping")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_ticket_returns_number_and_sla(client):
    body = _create(client, priority="critical", category="software", tags=["mail"])

    assert body["number"] == "TKT-000001"
    assert body["status"] == "open"
    assert body["priority"] == "critical"
    assert body["sla_status"] == "on_time"
    assert body["created_by"] == "requester"
    assert body["comments"] == []
    assert body["tags"] == ["mail"]
    assert body["resolved_at"] is None


def test_create_ticket_requires_authentication(client):
    missing = client.post("/tickets", json={"title": "x", "description": "y"})
    invalid = client.post("/tickets", json={"title": "x", "description": "y"}, headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert invalid.status_code == 401
    assert missing.json()["detail"] == {"kind": "unauthenticated", "message": "Authentication required"}
    assert invalid.json()["detail"] == {"kind": "unauthenticated", "message": "Invalid authentication credentials"}
    assert invalid.headers["www-authenticate"] == "Bearer"


def test_create_ticket_rejects_blank_title(client):
    response = client.post("/tickets", json={"title": "  ", "description": "Body"}, headers=REQUESTER)

    assert response.status_code == 400
    assert response.json()["detail"]["kind"] == "validation_error"


def test_create_ticket_rejects_unknown_priority(client):
    response = client.post(
        "/tickets",
        json={"title": "Title", "description": "Body", "priority": "urgent"},
        headers=REQUESTER,
    )

    assert response.status_code == 422


def test_requesters_only_list_their_own_tickets(client):
    mine = _create(client)
    theirs = _create(client, headers=OTHER_REQUESTER, title="Badge not working")

    as_requester = client.get("/tickets", headers=REQUESTER)
    as_agent = client.get("/tickets", headers=AGENT, params={"search": "badge"})

    assert [item["id"] for item in as_requester.json()] == [mine["id"]]
    assert [item["id"] for item in as_agent.json()] == [theirs["id"]]


def test_get_ticket_enforces_access(client):
    ticket = _create(client)

    assert client.get(f"/tickets/{ticket['id']}", headers=REQUESTER).status_code == 200
    assert client.get(f"/tickets/{ticket['id']}", headers=AGENT).status_code == 200
    forbidden = client.get(f"/tickets/{ticket['id']}", headers=OTHER_REQUESTER)
    missing = client.get("/tickets/does-not-exist", headers=AGENT)

    assert forbidden.status_code == 403
    assert forbidden.json()["detail"]["kind"] == "forbidden"
    assert missing.status_code == 404


def test_status_changes_follow_lifecycle(client):
    ticket = _create(client)
    url = f"/tickets/{ticket['id']}/status"

    assert client.post(url, json={"status": "in_progress"}, headers=REQUESTER).status_code == 403
    skipped = client.post(url, json={"status": "resolved"}, headers=AGENT)
    started = client.post(url, json={"status": "in_progress"}, headers=AGENT)
    resolved = client.post(url, json={"status": "resolved"}, headers=AGENT)
    reopened = client.post(url, json={"status": "open"}, headers=AGENT)

    assert skipped.status_code == 409
    assert skipped.json()["detail"]["kind"] == "invalid_transition"
    assert started.json()["status"] == "in_progress"
    assert resolved.json()["resolved_at"] is not None
    assert reopened.status_code == 409


def test_priority_and_category_changes_are_staff_only(client):
    ticket = _create(client)

    denied = client.post(f"/tickets/{ticket['id']}/priority", json={"priority": "high"}, headers=REQUESTER)
    priority = client.post(f"/tickets/{ticket['id']}/priority", json={"priority": "high"}, headers=AGENT)
    category = client.post(f"/tickets/{ticket['id']}/category", json={"category": "billing"}, headers=ADMIN)

    assert denied.status_code == 403
    assert priority.json()["priority"] == "high"
    assert priority.json()["sla_deadline"] == ticket["sla_deadline"]
    assert category.json()["category"] == "billing"


def test_assign_ticket(client):
    ticket = _create(client)
    url = f"/tickets/{ticket['id']}/assignee"

    unknown = client.post(url, json={"assignee_id": "ghost"}, headers=AGENT)
    to_requester = client.post(url, json={"assignee_id": "requester-2"}, headers=AGENT)
    assigned = client.post(url, json={"assignee_id": "agent-2"}, headers=ADMIN)

    assert unknown.status_code == 404
    assert to_requester.status_code == 400
    assert assigned.status_code == 200
    assert assigned.json()["assigned_to"] == "agent-2"


def test_comments(client):
    ticket = _create(client)
    url = f"/tickets/{ticket['id']}/comments"

    created = client.post(url, json={"text": "Happens on every PDF"}, headers=REQUESTER)
    reply = client.post(url, json={"text": "Can you share a sample?"}, headers=AGENT)
    denied = client.post(url, json={"text": "Same here"}, headers=OTHER_REQUESTER)

    assert created.status_code == 201
    assert created.json()["author"] == "requester"
    assert reply.status_code == 201
    assert denied.status_code == 403
    fetched = client.get(f"/tickets/{ticket['id']}", headers=REQUESTER).json()
    assert [comment["text"] for comment in fetched["comments"]] == ["Happens on every PDF", "Can you share a sample?"]


def test_list_agents_requires_staff(client):
    denied = client.get("/tickets/agents", headers=REQUESTER)
    allowed = client.get("/tickets/agents", headers=AGENT)

    assert denied.status_code == 403
    assert denied.json()["detail"] == {"kind": "forbidden", "message": "Insufficient permissions"}
    assert {item["id"] for item in allowed.json()} == {"admin", "agent", "agent-2"}


def test_delete_ticket_is_admin_only(client):
    ticket = _create(client)

    denied = client.delete(f"/tickets/{ticket['id']}", headers=AGENT)
    deleted = client.delete(f"/tickets/{ticket['id']}", headers=ADMIN)
    again = client.delete(f"/tickets/{ticket['id']}", headers=ADMIN)

    assert denied.status_code == 403
    assert denied.json()["detail"]["kind"] == "forbidden"
    assert deleted.status_code == 204
    assert again.status_code == 404


def test_service_unavailable_without_state():
    client = TestClient(create_app())

    response = client.get("/tickets", headers=AGENT)

    assert response.status_code == 503
    assert response.json()["detail"]["kind"] == "service_unavailable"


def test_metrics_endpoint_exposes_prometheus_text(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "# TYPE tickets_created_total counter" in response.text
