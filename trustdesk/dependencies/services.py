from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request

from trustdesk.access.broadcast import NotificationBroadcaster
from trustdesk.access.gate import AccessGate
from trustdesk.access.ledger import SuspensionLedger
from trustdesk.core.clock import Clock
from trustdesk.notifications.service import NotificationService
from trustdesk.polling import PollingContract
from trustdesk.tickets.service import TicketService


def _from_state(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{label} is not configured")
    return service


async def get_access_gate(request: Request) -> AccessGate:
    return _from_state(request, "access_gate", "Access gate")


async def get_ticket_service(request: Request) -> TicketService:
    return _from_state(request, "ticket_service", "Ticket service")


async def get_notification_service(request: Request) -> NotificationService:
    return _from_state(request, "notification_service", "Notification service")


async def get_suspension_ledger(request: Request) -> SuspensionLedger:
    return _from_state(request, "suspension_ledger", "Suspension ledger")


async def get_polling_contract(request: Request) -> PollingContract:
    return getattr(request.app.state, "polling", None) or PollingContract()


async def get_clock(request: Request) -> Clock:
    return _from_state(request, "clock", "Clock")


async def get_notification_broadcaster(request: Request) -> NotificationBroadcaster:
    return _from_state(request, "notification_broadcaster", "Notification broadcaster")
