"""Support ticket lifecycle: open, assigned, escalated, closed."""

from .models import (
    AuthorKind,
    EscalationPolicy,
    MessageKind,
    SupportTicket,
    TicketAuditEntry,
    TicketCreation,
    TicketMessage,
    TicketPriority,
    TransitionOutcome,
    TransitionResult,
)
from .repository import TicketRepository
from .service import (
    InvalidTicketTransitionError,
    TicketClaimConflict,
    TicketClosedError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketService,
    TicketServiceError,
    TicketValidationError,
)
from .state import ACTIVE_STATUSES, TicketStateMachine, TicketStatus

__all__ = [
    "ACTIVE_STATUSES",
    "AuthorKind",
    "EscalationPolicy",
    "InvalidTicketTransitionError",
    "MessageKind",
    "SupportTicket",
    "TicketAuditEntry",
    "TicketClaimConflict",
    "TicketClosedError",
    "TicketCreation",
    "TicketMessage",
    "TicketNotFoundError",
    "TicketPermissionError",
    "TicketPriority",
    "TicketRepository",
    "TicketService",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatus",
    "TicketValidationError",
    "TransitionOutcome",
    "TransitionResult",
]
