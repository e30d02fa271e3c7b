from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict, Field

from trustdesk.core.clock import Clock
from trustdesk.dependencies.auth import ActiveIdentity, AdminIdentity, StaffIdentity
from trustdesk.dependencies.services import get_clock, get_polling_contract, get_ticket_service
from trustdesk.polling import PollChannel, PollingContract
from trustdesk.tickets.models import (
    AuthorKind,
    MessageKind,
    SupportTicket,
    TicketAuditEntry,
    TicketMessage,
    TicketPriority,
    TransitionOutcome,
    TransitionResult,
)
from trustdesk.tickets.service import (
    InvalidTicketTransitionError,
    TicketClaimConflict,
    TicketClosedError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketService,
    TicketServiceError,
    TicketValidationError,
)
from trustdesk.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    subject: str | None = Field(default=None, max_length=255)
    message: str | None = Field(default=None, max_length=5000)
    priority: TicketPriority = TicketPriority.MEDIUM


class TicketEscalateRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class TicketMessageRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=5000)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    requester_id: str
    subject: str
    status: TicketStatus
    priority: TicketPriority
    assignee_id: str | None
    escalation_reason: str | None
    admin_intervened: bool
    admin_intervention_id: str | None
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime
    assigned_at: datetime | None
    escalated_at: datetime | None
    closed_at: datetime | None
    closed_by: str | None
    last_message_at: datetime | None


class TicketCreationResponse(BaseModel):
    ticket: TicketResponse
    attached: bool


class TransitionResponse(BaseModel):
    outcome: TransitionOutcome
    ticket: TicketResponse


class TicketMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author_id: str | None
    author_kind: AuthorKind
    kind: MessageKind
    body: str
    created_at: datetime


class TicketAuditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    action: str
    actor: str
    from_status: TicketStatus | None
    to_status: TicketStatus | None
    metadata: dict[str, Any]
    created_at: datetime


class ActiveTicketResponse(BaseModel):
    ticket: TicketResponse | None
    server_time: datetime
    poll_after_seconds: float


class TicketQueueResponse(BaseModel):
    items: list[TicketResponse]
    server_time: datetime
    poll_after_seconds: float


class TicketMessagesResponse(BaseModel):
    items: list[TicketMessageResponse]
    server_time: datetime
    poll_after_seconds: float


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
PollingDep = Annotated[PollingContract, Depends(get_polling_contract)]
ClockDep = Annotated[Clock, Depends(get_clock)]


def _to_response(ticket: SupportTicket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def _to_transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(outcome=result.outcome, ticket=_to_response(result.ticket))


def _to_message_response(message: TicketMessage) -> TicketMessageResponse:
    return TicketMessageResponse.model_validate(message)


def _to_audit_response(entry: TicketAuditEntry) -> TicketAuditResponse:
    return TicketAuditResponse(
        id=entry.id,
        ticket_id=entry.ticket_id,
        action=entry.action,
        actor=entry.actor,
        from_status=entry.from_status,
        to_status=entry.to_status,
        metadata=dict(entry.metadata),
        created_at=entry.created_at,
    )


def _http_error(exc: TicketServiceError) -> HTTPException:
    if isinstance(exc, TicketNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TicketPermissionError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, TicketValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, TicketClaimConflict):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "ticket": _to_response(exc.ticket).model_dump(mode="json")},
        )
    if isinstance(exc, (InvalidTicketTransitionError, TicketClosedError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _poll_headers(response: Response, polling: PollingContract) -> float:
    response.headers.update(polling.response_headers(PollChannel.TICKETS))
    return polling.interval(PollChannel.TICKETS).total_seconds()


@router.post("", response_model=TicketCreationResponse)
async def create_ticket(
    payload: TicketCreateRequest,
    response: Response,
    service: TicketServiceDep,
    identity: ActiveIdentity,
) -> TicketCreationResponse:
    try:
        creation = await service.create_ticket(
            identity, subject=payload.subject, message=payload.message, priority=payload.priority
        )
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    response.status_code = status.HTTP_200_OK if creation.attached else status.HTTP_201_CREATED
    return TicketCreationResponse(ticket=_to_response(creation.ticket), attached=creation.attached)


@router.get("/mine", response_model=ActiveTicketResponse)
async def get_my_ticket(
    response: Response,
    service: TicketServiceDep,
    polling: PollingDep,
    clock: ClockDep,
    identity: ActiveIdentity,
) -> ActiveTicketResponse:
    ticket = await service.get_active(identity)
    return ActiveTicketResponse(
        ticket=None if ticket is None else _to_response(ticket),
        server_time=clock.now(),
        poll_after_seconds=_poll_headers(response, polling),
    )


@router.get("/queue", response_model=TicketQueueResponse)
async def moderator_queue(
    response: Response,
    service: TicketServiceDep,
    polling: PollingDep,
    clock: ClockDep,
    identity: StaffIdentity,
) -> TicketQueueResponse:
    tickets = await service.moderator_queue(identity)
    return TicketQueueResponse(
        items=[_to_response(ticket) for ticket in tickets],
        server_time=clock.now(),
        poll_after_seconds=_poll_headers(response, polling),
    )


@router.get("/escalated", response_model=TicketQueueResponse)
async def admin_queue(
    response: Response,
    service: TicketServiceDep,
    polling: PollingDep,
    clock: ClockDep,
    identity: AdminIdentity,
) -> TicketQueueResponse:
    tickets = await service.admin_queue(identity)
    return TicketQueueResponse(
        items=[_to_response(ticket) for ticket in tickets],
        server_time=clock.now(),
        poll_after_seconds=_poll_headers(response, polling),
    )


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(
    ticket_id: str,
    response: Response,
    service: TicketServiceDep,
    polling: PollingDep,
    identity: ActiveIdentity,
) -> TicketResponse:
    try:
        ticket = await service.get_ticket(ticket_id, identity)
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    _poll_headers(response, polling)
    return _to_response(ticket)


@router.post("/{ticket_id}/claim", response_model=TicketResponse)
async def claim_ticket(ticket_id: str, service: TicketServiceDep, identity: StaffIdentity) -> TicketResponse:
    try:
        ticket = await service.claim(ticket_id, identity)
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    return _to_response(ticket)


@router.post("/{ticket_id}/escalate", response_model=TransitionResponse)
async def escalate_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    identity: StaffIdentity,
    payload: TicketEscalateRequest | None = None,
) -> TransitionResponse:
    try:
        result = await service.escalate(ticket_id, identity, reason=None if payload is None else payload.reason)
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    return _to_transition_response(result)


@router.post("/{ticket_id}/intervene", response_model=TransitionResponse)
async def intervene_ticket(ticket_id: str, service: TicketServiceDep, identity: AdminIdentity) -> TransitionResponse:
    try:
        result = await service.intervene(ticket_id, identity)
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    return _to_transition_response(result)


@router.post("/{ticket_id}/close", response_model=TransitionResponse)
async def close_ticket(ticket_id: str, service: TicketServiceDep, identity: ActiveIdentity) -> TransitionResponse:
    try:
        result = await service.close(ticket_id, identity)
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    return _to_transition_response(result)


@router.get("/{ticket_id}/messages", response_model=TicketMessagesResponse)
async def list_ticket_messages(
    ticket_id: str,
    response: Response,
    service: TicketServiceDep,
    polling: PollingDep,
    clock: ClockDep,
    identity: ActiveIdentity,
) -> TicketMessagesResponse:
    try:
        messages = await service.list_messages(ticket_id, identity)
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    return TicketMessagesResponse(
        items=[_to_message_response(message) for message in messages],
        server_time=clock.now(),
        poll_after_seconds=_poll_headers(response, polling),
    )


@router.post("/{ticket_id}/messages", response_model=TicketMessageResponse, status_code=status.HTTP_201_CREATED)
async def post_ticket_message(
    ticket_id: str,
    payload: TicketMessageRequest,
    service: TicketServiceDep,
    identity: ActiveIdentity,
) -> TicketMessageResponse:
    try:
        message = await service.post_message(ticket_id, identity, payload.body)
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    return _to_message_response(message)


@router.get("/{ticket_id}/audit", response_model=list[TicketAuditResponse])
async def get_ticket_audit(
    ticket_id: str, service: TicketServiceDep, identity: StaffIdentity
) -> list[TicketAuditResponse]:
    try:
        entries = await service.audit_log(ticket_id, identity)
    except TicketServiceError as exc:
        raise _http_error(exc) from exc
    return [_to_audit_response(entry) for entry in entries]
