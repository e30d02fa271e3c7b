from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from trustdesk.access.models import AccessDecision
from trustdesk.core.identity import Identity, Role
from trustdesk.dependencies.auth import get_current_identity
from trustdesk.main import create_app
from trustdesk.notifications.models import Notification, NotificationSnapshot, NotificationType
from trustdesk.notifications.service import NotificationNotFoundError
from trustdesk.polling import PollingContract

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
CLIENT = Identity(user_id="client-1", role=Role.CLIENT)


def _notification(notification_id: str, *, is_read: bool = False) -> Notification:
    return Notification(
        id=notification_id,
        recipient_id=CLIENT.user_id,
        type=NotificationType.MESSAGE,
        title="New message",
        message="Hello",
        is_read=is_read,
        action_url="/chat?conversation=c-1",
        ticket_id=None,
        metadata={},
        created_at=NOW,
    )


@pytest.fixture
def api():
    app = create_app()
    service = MagicMock()
    service.polling = PollingContract()
    gate = MagicMock()
    gate.evaluate = AsyncMock(return_value=AccessDecision.allow())

    app.state.notification_service = service
    app.state.access_gate = gate
    app.dependency_overrides[get_current_identity] = lambda: CLIENT

    client = TestClient(app)
    try:
        yield client, service
    finally:
        app.dependency_overrides.clear()


def test_snapshot_includes_unread_count_and_poll_headers(api):
    client, service = api
    service.snapshot = AsyncMock(
        return_value=NotificationSnapshot(
            items=[_notification("n-2"), _notification("n-1", is_read=True)],
            server_time=NOW,
            poll_after_seconds=3.0,
        )
    )

    response = client.get("/notifications")

    assert response.status_code == 200
    assert response.headers["X-Poll-Interval"] == "3"
    assert response.headers["Cache-Control"] == "no-store"
    body = response.json()
    assert [item["id"] for item in body["items"]] == ["n-2", "n-1"]
    assert body["unread_count"] == 1
    service.snapshot.assert_awaited_with(CLIENT.user_id)


def test_open_returns_rendered_snapshot(api):
    client, service = api
    service.open = AsyncMock(
        return_value=NotificationSnapshot(items=[_notification("n-1")], server_time=NOW, poll_after_seconds=3.0)
    )

    response = client.post("/notifications/open")

    assert response.status_code == 200
    assert response.json()["unread_count"] == 1
    service.open.assert_awaited_with(CLIENT.user_id)


def test_mark_read_maps_missing_to_404(api):
    client, service = api
    service.mark_read = AsyncMock(return_value=None)
    assert client.put("/notifications/n-1/read").status_code == 204

    service.mark_read = AsyncMock(side_effect=NotificationNotFoundError("missing"))
    assert client.put("/notifications/n-9/read").status_code == 404


def test_bulk_operations_report_affected_rows(api):
    client, service = api
    service.mark_all_read = AsyncMock(return_value=4)
    service.clear_all = AsyncMock(return_value=2)

    assert client.put("/notifications/read-all").json() == {"affected": 4}
    assert client.delete("/notifications").json() == {"affected": 2}
    service.mark_all_read.assert_awaited_with(CLIENT.user_id)
