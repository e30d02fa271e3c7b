from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from trustdesk.access.broadcast import BroadcastPermissionError, BroadcastValidationError, NotificationBroadcaster
from trustdesk.access.ledger import (
    LedgerError,
    SuspensionLedger,
    SuspensionPermissionError,
    SuspensionValidationError,
    UserNotFoundError,
)
from trustdesk.access.models import (
    BroadcastAudience,
    BroadcastRequest,
    ModerationAction,
    ModerationActionKind,
    PermanentBan,
    SuspensionState,
    TemporarySuspension,
)
from trustdesk.core.identity import Role
from trustdesk.dependencies.auth import AdminIdentity, StaffIdentity
from trustdesk.dependencies.services import get_notification_broadcaster, get_suspension_ledger
from trustdesk.notifications.models import NotificationType

router = APIRouter(prefix="/moderation", tags=["moderation"])


class BanRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class SuspendRequest(BaseModel):
    days: int = Field(..., ge=1)
    reason: str = Field(..., min_length=1, max_length=1000)


class BroadcastPayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=2000)
    audience: BroadcastAudience = BroadcastAudience.ALL
    user_id: str | None = None
    role: Role | None = None
    type: NotificationType = NotificationType.SYSTEM
    action_url: str | None = Field(default=None, max_length=500)


class BroadcastResponse(BaseModel):
    recipients: int


class SuspensionStateResponse(BaseModel):
    user_id: str
    is_banned: bool
    suspended_until: datetime | None
    reason: str | None


class ModerationActionResponse(BaseModel):
    id: str
    actor_id: str
    target_id: str | None
    action: ModerationActionKind
    reason: str | None
    details: dict[str, Any]
    created_at: datetime


LedgerDep = Annotated[SuspensionLedger, Depends(get_suspension_ledger)]
BroadcasterDep = Annotated[NotificationBroadcaster, Depends(get_notification_broadcaster)]


def _to_state_response(user_id: str, state: SuspensionState) -> SuspensionStateResponse:
    return SuspensionStateResponse(
        user_id=user_id,
        is_banned=state.is_banned,
        suspended_until=state.suspended_until,
        reason=state.reason,
    )


def _to_action_response(action: ModerationAction) -> ModerationActionResponse:
    return ModerationActionResponse(
        id=action.id,
        actor_id=action.actor_id,
        target_id=action.target_id,
        action=action.action,
        reason=action.reason,
        details=dict(action.details),
        created_at=action.created_at,
    )


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, UserNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (SuspensionPermissionError, BroadcastPermissionError)):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (SuspensionValidationError, BroadcastValidationError)):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/users/{user_id}/ban", response_model=SuspensionStateResponse)
async def ban_user(
    user_id: str, payload: BanRequest, ledger: LedgerDep, identity: AdminIdentity
) -> SuspensionStateResponse:
    try:
        state = await ledger.apply(user_id, PermanentBan(reason=payload.reason), identity)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _to_state_response(user_id, state)


@router.post("/users/{user_id}/suspend", response_model=SuspensionStateResponse)
async def suspend_user(
    user_id: str, payload: SuspendRequest, ledger: LedgerDep, identity: StaffIdentity
) -> SuspensionStateResponse:
    try:
        state = await ledger.apply(
            user_id, TemporarySuspension(days=payload.days, reason=payload.reason), identity
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _to_state_response(user_id, state)


@router.post("/users/{user_id}/lift", response_model=SuspensionStateResponse)
async def lift_suspension(user_id: str, ledger: LedgerDep, identity: AdminIdentity) -> SuspensionStateResponse:
    try:
        state = await ledger.lift(user_id, identity)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _to_state_response(user_id, state)


@router.get("/users/{user_id}/actions", response_model=list[ModerationActionResponse])
async def list_moderation_actions(
    user_id: str, ledger: LedgerDep, identity: StaffIdentity
) -> list[ModerationActionResponse]:
    actions = await ledger.list_actions(user_id)
    return [_to_action_response(action) for action in actions]


@router.post("/notifications", response_model=BroadcastResponse)
async def send_notification(
    payload: BroadcastPayload, broadcaster: BroadcasterDep, identity: AdminIdentity
) -> BroadcastResponse:
    request = BroadcastRequest(
        title=payload.title,
        message=payload.message,
        audience=payload.audience,
        user_id=payload.user_id,
        role=payload.role,
        type=payload.type,
        action_url=payload.action_url,
    )
    try:
        recipients = await broadcaster.send(request, identity)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return BroadcastResponse(recipients=recipients)
