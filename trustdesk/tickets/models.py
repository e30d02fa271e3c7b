from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping

from .state import ACTIVE_STATUSES, TicketStatus


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuthorKind(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SYSTEM = "system"


class MessageKind(str, Enum):
    TEXT = "text"
    SYSTEM_INFO = "system_info"
    SYSTEM_WARNING = "system_warning"


@dataclass(slots=True)
class SupportTicket:
    """Aggregate representing a support request."""

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
    assigned_at: datetime | None = None
    escalated_at: datetime | None = None
    closed_at: datetime | None = None
    closed_by: str | None = None
    last_message_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def admin_visible(self) -> bool:
        return self.status is TicketStatus.ESCALATED or self.admin_intervened


@dataclass(slots=True)
class TicketMessage:
    """Entry in a ticket's conversation."""

    id: str
    ticket_id: str
    author_id: str | None
    author_kind: AuthorKind
    kind: MessageKind
    body: str
    created_at: datetime


@dataclass(slots=True)
class TicketAuditEntry:
    """History entry describing a discrete ticket action."""

    id: str
    ticket_id: str
    action: str
    actor: str
    from_status: TicketStatus | None
    to_status: TicketStatus | None
    created_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)


class TransitionOutcome(str, Enum):
    OK = "ok"
    NOOP = "noop"
    ALREADY_CLOSED = "already_closed"


@dataclass(slots=True)
class TransitionResult:
    outcome: TransitionOutcome
    ticket: SupportTicket


@dataclass(slots=True)
class TicketCreation:
    ticket: SupportTicket
    attached: bool


@dataclass(frozen=True, slots=True)
class EscalationPolicy:
    """Configurable parts of the escalation lifecycle."""

    stale_after: timedelta | None = timedelta(minutes=30)
    requester_can_close_escalated: bool = True
    moderator_can_close_escalated: bool = False

    def is_stale(self, ticket: SupportTicket, now: datetime) -> bool:
        if self.stale_after is None or ticket.status is not TicketStatus.ASSIGNED:
            return False
        return now - ticket.last_activity_at >= self.stale_after
