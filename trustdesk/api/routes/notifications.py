from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict

from trustdesk.dependencies.auth import ActiveIdentity
from trustdesk.dependencies.services import get_notification_service
from trustdesk.notifications.models import Notification, NotificationSnapshot, NotificationType
from trustdesk.notifications.service import NotificationNotFoundError, NotificationService
from trustdesk.polling import PollChannel

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: NotificationType
    title: str
    message: str
    is_read: bool
    action_url: str | None
    ticket_id: str | None
    metadata: dict[str, Any]
    created_at: datetime


class NotificationSnapshotResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int
    server_time: datetime
    poll_after_seconds: float


class NotificationCountResponse(BaseModel):
    affected: int


NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]


def _to_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        type=notification.type,
        title=notification.title,
        message=notification.message,
        is_read=notification.is_read,
        action_url=notification.action_url,
        ticket_id=notification.ticket_id,
        metadata=dict(notification.metadata),
        created_at=notification.created_at,
    )


def _to_snapshot_response(
    snapshot: NotificationSnapshot, response: Response, service: NotificationService
) -> NotificationSnapshotResponse:
    response.headers.update(service.polling.response_headers(PollChannel.NOTIFICATIONS))
    return NotificationSnapshotResponse(
        items=[_to_response(item) for item in snapshot.items],
        unread_count=snapshot.unread_count,
        server_time=snapshot.server_time,
        poll_after_seconds=snapshot.poll_after_seconds,
    )


@router.get("", response_model=NotificationSnapshotResponse)
async def list_notifications(
    response: Response, service: NotificationServiceDep, identity: ActiveIdentity
) -> NotificationSnapshotResponse:
    snapshot = await service.snapshot(identity.user_id)
    return _to_snapshot_response(snapshot, response, service)


@router.post("/open", response_model=NotificationSnapshotResponse)
async def open_notifications(
    response: Response, service: NotificationServiceDep, identity: ActiveIdentity
) -> NotificationSnapshotResponse:
    snapshot = await service.open(identity.user_id)
    return _to_snapshot_response(snapshot, response, service)


@router.put("/read-all", response_model=NotificationCountResponse)
async def mark_all_read(service: NotificationServiceDep, identity: ActiveIdentity) -> NotificationCountResponse:
    updated = await service.mark_all_read(identity.user_id)
    return NotificationCountResponse(affected=updated)


@router.put("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_read(notification_id: str, service: NotificationServiceDep, identity: ActiveIdentity) -> None:
    try:
        await service.mark_read(notification_id, identity.user_id)
    except NotificationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.delete("", response_model=NotificationCountResponse)
async def clear_notifications(
    service: NotificationServiceDep, identity: ActiveIdentity
) -> NotificationCountResponse:
    removed = await service.clear_all(identity.user_id)
    return NotificationCountResponse(affected=removed)
