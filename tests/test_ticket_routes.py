from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from trustdesk.access.models import AccessDecision, AccessNotice, BlockKind
from trustdesk.core.identity import Identity, Role
from trustdesk.dependencies.auth import get_current_identity
from trustdesk.main import create_app
from trustdesk.polling import PollingContract
from trustdesk.tickets.models import (
    AuthorKind,
    MessageKind,
    SupportTicket,
    TicketAuditEntry,
    TicketCreation,
    TicketMessage,
    TicketPriority,
    TransitionOutcome,
    TransitionResult,
)
from trustdesk.tickets.service import (
    TicketClaimConflict,
    TicketClosedError,
    TicketNotFoundError,
    TicketPermissionError,
)
from trustdesk.tickets.state import TicketStatus

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

CLIENT = Identity(user_id="client-1", role=Role.CLIENT)
MODERATOR = Identity(user_id="mod-1", role=Role.MODERATOR)
ADMIN = Identity(user_id="admin-1", role=Role.ADMIN)


def _make_ticket(*, status: TicketStatus = TicketStatus.OPEN, assignee_id: str | None = None) -> SupportTicket:
    return SupportTicket(
        id="ticket-1",
        requester_id=CLIENT.user_id,
        subject="Subject",
        status=status,
        priority=TicketPriority.MEDIUM,
        assignee_id=assignee_id,
        escalation_reason=None,
        admin_intervened=False,
        admin_intervention_id=None,
        created_at=NOW,
        updated_at=NOW,
        last_activity_at=NOW,
    )


class FixedClock:
    def now(self) -> datetime:
        return NOW


@pytest.fixture
def api():
    app = create_app()
    service = AsyncMock()
    gate = MagicMock()
    gate.evaluate = AsyncMock(return_value=AccessDecision.allow())
    gate.notice = MagicMock(return_value=None)
    current = {"identity": CLIENT}

    app.state.ticket_service = service
    app.state.access_gate = gate
    app.state.clock = FixedClock()
    app.state.polling = PollingContract()
    app.dependency_overrides[get_current_identity] = lambda: current["identity"]

    client = TestClient(app)
    try:
        yield client, service, gate, current
    finally:
        app.dependency_overrides.clear()


def test_create_ticket_returns_created_then_attached(api):
    client, service, gate, _ = api
    service.create_ticket = AsyncMock(return_value=TicketCreation(ticket=_make_ticket(), attached=False))

    response = client.post("/tickets", json={"subject": "Subject", "message": "Help"})

    assert response.status_code == 201
    assert response.json()["attached"] is False
    assert response.json()["ticket"]["id"] == "ticket-1"
    service.create_ticket.assert_awaited_with(
        CLIENT, subject="Subject", message="Help", priority=TicketPriority.MEDIUM
    )
    gate.evaluate.assert_awaited_with(CLIENT.user_id, role=Role.CLIENT)

    service.create_ticket = AsyncMock(return_value=TicketCreation(ticket=_make_ticket(), attached=True))
    response = client.post("/tickets", json={"message": "Again"})
    assert response.status_code == 200
    assert response.json()["attached"] is True


def test_active_ticket_carries_polling_headers(api):
    client, service, _, _ = api
    service.get_active = AsyncMock(return_value=None)

    response = client.get("/tickets/mine")

    assert response.status_code == 200
    assert response.headers["X-Poll-Interval"] == "5"
    assert response.headers["Cache-Control"] == "no-store"
    body = response.json()
    assert body["ticket"] is None
    assert body["poll_after_seconds"] == 5.0
    assert body["server_time"].startswith("2024-05-01T12:00:00")


def test_queue_requires_staff(api):
    client, service, _, current = api
    service.moderator_queue = AsyncMock(return_value=[_make_ticket()])

    response = client.get("/tickets/queue")
    assert response.status_code == 403

    current["identity"] = MODERATOR
    response = client.get("/tickets/queue")
    assert response.status_code == 200
    assert [item["id"] for item in response.json()["items"]] == ["ticket-1"]
    service.moderator_queue.assert_awaited_with(MODERATOR)


def test_escalated_queue_requires_admin(api):
    client, service, _, current = api
    service.admin_queue = AsyncMock(return_value=[])
    current["identity"] = MODERATOR

    assert client.get("/tickets/escalated").status_code == 403

    current["identity"] = ADMIN
    assert client.get("/tickets/escalated").status_code == 200


def test_claim_conflict_returns_current_ticket(api):
    client, service, _, current = api
    current["identity"] = MODERATOR
    taken = _make_ticket(status=TicketStatus.ASSIGNED, assignee_id="mod-2")
    service.claim = AsyncMock(side_effect=TicketClaimConflict(taken))

    response = client.post("/tickets/ticket-1/claim")

    assert response.status_code == 409
    assert response.json()["detail"]["ticket"]["assignee_id"] == "mod-2"


def test_close_reports_outcome(api):
    client, service, _, _ = api
    closed = _make_ticket(status=TicketStatus.CLOSED)
    service.close = AsyncMock(return_value=TransitionResult(outcome=TransitionOutcome.NOOP, ticket=closed))

    response = client.post("/tickets/ticket-1/close")

    assert response.status_code == 200
    assert response.json()["outcome"] == "noop"
    assert response.json()["ticket"]["status"] == "closed"


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (TicketNotFoundError("missing"), 404),
        (TicketPermissionError("nope"), 403),
        (TicketClosedError("closed"), 409),
    ],
)
def test_service_errors_map_to_http(api, error, status_code):
    client, service, _, _ = api
    service.get_ticket = AsyncMock(side_effect=error)

    response = client.get("/tickets/ticket-1")

    assert response.status_code == status_code


def test_post_message(api):
    client, service, _, _ = api
    service.post_message = AsyncMock(
        return_value=TicketMessage(
            id="m-1",
            ticket_id="ticket-1",
            author_id=CLIENT.user_id,
            author_kind=AuthorKind.USER,
            kind=MessageKind.TEXT,
            body="Hello",
            created_at=NOW,
        )
    )

    response = client.post("/tickets/ticket-1/messages", json={"body": "Hello"})

    assert response.status_code == 201
    assert response.json()["author_kind"] == "user"
    service.post_message.assert_awaited_with("ticket-1", CLIENT, "Hello")
    assert client.post("/tickets/ticket-1/messages", json={"body": ""}).status_code == 422


def test_audit_endpoint_returns_entries(api):
    client, service, _, current = api
    current["identity"] = MODERATOR
    service.audit_log = AsyncMock(
        return_value=[
            TicketAuditEntry(
                id="a-1",
                ticket_id="ticket-1",
                action="created",
                actor=CLIENT.user_id,
                from_status=None,
                to_status=TicketStatus.OPEN,
                created_at=NOW,
            )
        ]
    )

    response = client.get("/tickets/ticket-1/audit")

    assert response.status_code == 200
    assert response.json()[0]["action"] == "created"


def test_blocked_identity_gets_notice(api):
    client, service, gate, _ = api
    until = datetime(2024, 5, 3, 12, 0, tzinfo=timezone.utc)
    gate.evaluate = AsyncMock(return_value=AccessDecision.block(BlockKind.TEMPORARY, until=until, reason="Spam"))
    gate.notice = MagicMock(
        return_value=AccessNotice(
            kind=BlockKind.TEMPORARY,
            title="Account temporarily suspended",
            message="Your account is temporarily suspended. Reason: Spam",
            until=until,
            countdown="2 days, 0 hours and 0 minutes",
            refresh_after_seconds=60,
        )
    )

    response = client.post("/tickets", json={"message": "Let me in"})

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["kind"] == "temporary"
    assert detail["notice"]["countdown"] == "2 days, 0 hours and 0 minutes"
    service.create_ticket.assert_not_awaited()


def test_access_route_reports_without_rejecting(api):
    client, _, gate, _ = api
    gate.evaluate = AsyncMock(return_value=AccessDecision.block(BlockKind.PERMANENT, reason="Fraud"))
    gate.notice = MagicMock(
        return_value=AccessNotice(kind=BlockKind.PERMANENT, title="Account permanently suspended", message="Fraud")
    )

    response = client.get("/access")

    assert response.status_code == 200
    assert response.json()["allowed"] is False
    assert response.json()["notice"]["kind"] == "permanent"


def test_ping_and_metrics_are_public(api):
    client, _, _, _ = api

    assert client.get("/ping").json() == {"status": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "# TYPE access_gate_decisions_total counter" in metrics.text
