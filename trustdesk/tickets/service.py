from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Mapping

from trustdesk.access.repository import UserRepository
from trustdesk.core.clock import Clock
from trustdesk.core.identity import SYSTEM_ACTOR, Identity, Role
from trustdesk.metrics import counter
from trustdesk.metrics.definitions import TICKET_CLAIM_CONFLICTS, TICKET_TRANSITIONS
from trustdesk.notifications.fanout import NotificationFanOut, Recipient, record_emitted
from trustdesk.notifications.models import NotificationDraft

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
from .state import ACTIVE_STATUSES, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Support request"
WAITING_NOTICE = "You are in the queue. A moderator will join this chat shortly."
JOINED_NOTICE = "A moderator joined the chat."
ESCALATED_NOTICE = "This conversation has been escalated to an administrator."
CLOSED_NOTICE = "This support chat has been closed."


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket could not be located."""


class TicketPermissionError(TicketServiceError):
    """Raised when the caller may not act on the ticket."""


class InvalidTicketTransitionError(TicketServiceError):
    """Raised when attempting to transition to an invalid state."""

    def __init__(self, message: str, ticket: SupportTicket | None = None) -> None:
        super().__init__(message)
        self.ticket = ticket


class TicketClaimConflict(TicketServiceError):
    """Raised to the losing side of a concurrent claim."""

    def __init__(self, ticket: SupportTicket) -> None:
        super().__init__(f"Ticket {ticket.id} is no longer open for claiming")
        self.ticket = ticket


class TicketClosedError(TicketServiceError):
    """Raised when writing to a closed ticket."""


class TicketValidationError(TicketServiceError):
    """Raised when a request payload is unusable."""


class TicketService:
    """High level orchestration for the support ticket lifecycle.

    Every mutating operation reads the ticket, decides, then commits through a
    conditional update on the observed status. Losing that race never
    overwrites the winner; the caller gets the re-read ticket instead.
    """

    def __init__(
        self,
        repository: TicketRepository,
        users: UserRepository,
        fanout: NotificationFanOut,
        clock: Clock,
        *,
        policy: EscalationPolicy | None = None,
    ) -> None:
        self.repository = repository
        self._users = users
        self._fanout = fanout
        self._clock = clock
        self.policy = policy or EscalationPolicy()

    # Creation

    async def create_ticket(
        self,
        requester: Identity,
        *,
        subject: str | None = None,
        message: str | None = None,
        priority: TicketPriority = TicketPriority.MEDIUM,
    ) -> TicketCreation:
        if requester.is_staff:
            raise TicketPermissionError("Staff accounts cannot open support requests")
        body = (message or "").strip()

        existing = await self.repository.get_active_for_requester(requester.user_id)
        if existing is not None:
            return await self._attach(existing, requester, body)

        now = self._clock.now()
        ticket = SupportTicket(
            id=str(uuid.uuid4()),
            requester_id=requester.user_id,
            subject=(subject or "").strip() or DEFAULT_SUBJECT,
            status=TicketStateMachine.initial_state(),
            priority=priority,
            assignee_id=None,
            escalation_reason=None,
            admin_intervened=False,
            admin_intervention_id=None,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
            last_message_at=now if body else None,
        )
        messages = [self._system_message(ticket.id, WAITING_NOTICE, now)]
        if body:
            # Just after the queue notice so the conversation reads in order.
            messages.append(
                self._message(ticket.id, requester.user_id, AuthorKind.USER, body, now + timedelta(microseconds=1))
            )
        moderators = await self._users.list_by_role(Role.MODERATOR)
        drafts = self._fanout.ticket_opened(
            ticket.id, ticket.subject, [Recipient(user.id, user.role) for user in moderators]
        )
        created = await self.repository.create_ticket(
            ticket,
            messages=messages,
            audit=self._audit(ticket.id, "created", requester.user_id, None, ticket.status, now),
            notifications=drafts,
        )
        if not created:
            existing = await self.repository.get_active_for_requester(requester.user_id)
            if existing is None:
                raise TicketServiceError(f"Could not open a support request for {requester.user_id}")
            logger.info("Concurrent create for %s attached to ticket %s", requester.user_id, existing.id)
            return await self._attach(existing, requester, body)

        record_emitted(drafts)
        self._record("create", TransitionOutcome.OK)
        logger.info("Ticket %s opened by %s", ticket.id, requester.user_id)
        return TicketCreation(ticket=ticket, attached=False)

    async def _attach(self, ticket: SupportTicket, requester: Identity, body: str) -> TicketCreation:
        if body:
            await self.post_message(ticket.id, requester, body)
        current = await self._load(ticket.id)
        return TicketCreation(ticket=current, attached=True)

    # Transitions

    async def claim(self, ticket_id: str, moderator: Identity) -> SupportTicket:
        if not moderator.is_staff:
            raise TicketPermissionError("Only moderators and administrators can claim tickets")
        ticket = await self._load(ticket_id)
        if ticket.assignee_id == moderator.user_id and ticket.status is not TicketStatus.CLOSED:
            self._record("claim", TransitionOutcome.NOOP)
            return ticket

        now = self._clock.now()
        requester = await self._recipient(ticket.requester_id)
        drafts = self._fanout.ticket_claimed(ticket.id, ticket.subject, requester)
        updated = await self.repository.transition(
            ticket.id,
            expected_status=TicketStatus.OPEN,
            unassigned_only=True,
            values={
                "status": TicketStatus.ASSIGNED,
                "assignee_id": moderator.user_id,
                "assigned_at": now,
                "last_activity_at": now,
                "updated_at": now,
            },
            audit=self._audit(ticket.id, "claimed", moderator.user_id, TicketStatus.OPEN, TicketStatus.ASSIGNED, now),
            messages=[self._system_message(ticket.id, JOINED_NOTICE, now)],
            notifications=drafts,
        )
        if updated is None:
            current = await self._require(ticket.id)
            counter(TICKET_CLAIM_CONFLICTS).inc()
            self._record("claim", "conflict")
            logger.warning(
                "Claim of ticket %s by %s lost; ticket is %s (assignee %s)",
                ticket.id,
                moderator.user_id,
                current.status.value,
                current.assignee_id,
            )
            raise TicketClaimConflict(current)

        record_emitted(drafts)
        self._record("claim", TransitionOutcome.OK)
        logger.info("Ticket %s claimed by %s", ticket.id, moderator.user_id)
        return updated

    async def escalate(self, ticket_id: str, actor: Identity, reason: str | None = None) -> TransitionResult:
        if not actor.is_staff:
            raise TicketPermissionError("Only moderators and administrators can escalate tickets")
        ticket = await self._load(ticket_id)
        if ticket.status is TicketStatus.OPEN:
            if not actor.has_role(Role.ADMIN):
                raise InvalidTicketTransitionError("Claim the ticket before escalating it", ticket)
            ticket = await self._self_assign(ticket, actor)

        if ticket.status is TicketStatus.CLOSED:
            return self._result("escalate", TransitionOutcome.ALREADY_CLOSED, ticket)
        if ticket.status is TicketStatus.ESCALATED:
            return self._result("escalate", TransitionOutcome.NOOP, ticket)
        if not actor.has_role(Role.ADMIN) and ticket.assignee_id != actor.user_id:
            raise TicketPermissionError("Only the assigned moderator or an administrator can escalate")

        reason = (reason or "").strip() or "Escalated by staff"
        return await self._escalate(ticket, actor_id=actor.user_id, reason=reason)

    async def intervene(self, ticket_id: str, admin: Identity) -> TransitionResult:
        if not admin.has_role(Role.ADMIN):
            raise TicketPermissionError("Only administrators can intervene")
        ticket = await self._load(ticket_id)
        if ticket.status is TicketStatus.OPEN:
            ticket = await self._self_assign(ticket, admin)
        if ticket.status is TicketStatus.CLOSED:
            return self._result("intervene", TransitionOutcome.ALREADY_CLOSED, ticket)

        intervention = {"admin_intervened": True, "admin_intervention_id": admin.user_id}
        if ticket.status is TicketStatus.ASSIGNED:
            result = await self._escalate(
                ticket,
                actor_id=admin.user_id,
                reason="Administrator intervention",
                extra_values=intervention,
            )
            if result.outcome is not TransitionOutcome.NOOP:
                return result
            ticket = result.ticket

        if ticket.admin_intervened:
            return self._result("intervene", TransitionOutcome.NOOP, ticket)

        now = self._clock.now()
        updated = await self.repository.transition(
            ticket.id,
            expected_status=TicketStatus.ESCALATED,
            values={**intervention, "updated_at": now},
            audit=self._audit(
                ticket.id, "intervened", admin.user_id, TicketStatus.ESCALATED, TicketStatus.ESCALATED, now
            ),
        )
        if updated is None:
            return await self._lost_race("intervene", ticket.id)
        logger.info("Administrator %s intervened on ticket %s", admin.user_id, ticket.id)
        return self._result("intervene", TransitionOutcome.OK, updated)

    async def close(self, ticket_id: str, actor: Identity) -> TransitionResult:
        ticket = await self._load(ticket_id)
        if ticket.status is TicketStatus.CLOSED:
            return self._result("close", TransitionOutcome.NOOP, ticket)
        self._ensure_can_close(ticket, actor)

        now = self._clock.now()
        drafts: list[NotificationDraft] = []
        if actor.user_id != ticket.requester_id:
            requester = await self._recipient(ticket.requester_id)
            drafts = self._fanout.ticket_closed(ticket.id, ticket.subject, requester)
        updated = await self.repository.transition(
            ticket.id,
            expected_status=ticket.status,
            values={
                "status": TicketStatus.CLOSED,
                "closed_at": now,
                "closed_by": actor.user_id,
                "updated_at": now,
            },
            audit=self._audit(ticket.id, "closed", actor.user_id, ticket.status, TicketStatus.CLOSED, now),
            messages=[self._system_message(ticket.id, CLOSED_NOTICE, now)],
            notifications=drafts,
            clear_alerts_except=ticket.requester_id,
        )
        if updated is None:
            return await self._lost_race("close", ticket.id)

        record_emitted(drafts)
        logger.info("Ticket %s closed by %s", ticket.id, actor.user_id)
        return self._result("close", TransitionOutcome.OK, updated)

    # Conversation

    async def post_message(self, ticket_id: str, author: Identity, body: str) -> TicketMessage:
        body = (body or "").strip()
        if not body:
            raise TicketValidationError("Message body cannot be empty")
        ticket = await self._load(ticket_id)
        if ticket.status is TicketStatus.CLOSED:
            raise TicketClosedError(f"Ticket {ticket.id} is closed")

        kind = self._author_kind(ticket, author)
        now = self._clock.now()
        values: dict[str, Any] = {"last_message_at": now, "updated_at": now}
        if kind is not AuthorKind.USER:
            values["last_activity_at"] = now

        counterpart_id = ticket.assignee_id if kind is AuthorKind.USER else ticket.requester_id
        drafts: list[NotificationDraft] = []
        if counterpart_id is not None and counterpart_id != author.user_id:
            recipient = await self._recipient(counterpart_id)
            label = "Support" if kind is not AuthorKind.USER else "Requester"
            drafts = self._fanout.ticket_message(ticket.id, recipient=recipient, author_label=label, body=body)

        message = self._message(ticket.id, author.user_id, kind, body, now)
        stored = await self.repository.add_message(message, values=values, notifications=drafts)
        if stored is None:
            await self._require(ticket.id)
            raise TicketClosedError(f"Ticket {ticket.id} is closed")
        record_emitted(drafts)
        return stored

    async def list_messages(self, ticket_id: str, viewer: Identity) -> list[TicketMessage]:
        ticket = await self.get_ticket(ticket_id, viewer)
        return await self.repository.list_messages(ticket.id)

    # Reads

    async def get_ticket(self, ticket_id: str, viewer: Identity) -> SupportTicket:
        ticket = await self._load(ticket_id)
        if not viewer.is_staff and viewer.user_id != ticket.requester_id:
            raise TicketPermissionError("You do not have access to this ticket")
        return ticket

    async def get_active(self, requester: Identity) -> SupportTicket | None:
        ticket = await self.repository.get_active_for_requester(requester.user_id)
        if ticket is None:
            return None
        return await self._refresh_if_stale(ticket)

    async def moderator_queue(self, viewer: Identity) -> list[SupportTicket]:
        if not viewer.is_staff:
            raise TicketPermissionError("Only moderators and administrators can view the queue")
        await self.escalate_stale()
        return await self.repository.list_tickets(statuses=ACTIVE_STATUSES)

    async def admin_queue(self, viewer: Identity) -> list[SupportTicket]:
        if not viewer.has_role(Role.ADMIN):
            raise TicketPermissionError("Only administrators can view escalated tickets")
        await self.escalate_stale()
        return await self.repository.list_tickets(statuses=ACTIVE_STATUSES, admin_visible_only=True)

    async def audit_log(self, ticket_id: str, viewer: Identity) -> list[TicketAuditEntry]:
        if not viewer.is_staff:
            raise TicketPermissionError("Only moderators and administrators can read the audit log")
        ticket = await self._require(ticket_id)
        return await self.repository.get_audit_log(ticket.id)

    # Staleness

    async def escalate_stale(self) -> int:
        """Escalate every assigned ticket whose assignee went quiet. Returns the count."""

        stale_after = self.policy.stale_after
        if stale_after is None:
            return 0
        escalated = 0
        for ticket in await self.repository.list_stale(self._clock.now() - stale_after):
            result = await self._escalate_as_system(ticket)
            if result.outcome is TransitionOutcome.OK:
                escalated += 1
        return escalated

    async def _refresh_if_stale(self, ticket: SupportTicket) -> SupportTicket:
        if not self.policy.is_stale(ticket, self._clock.now()):
            return ticket
        return (await self._escalate_as_system(ticket)).ticket

    async def _escalate_as_system(self, ticket: SupportTicket) -> TransitionResult:
        stale_after = self.policy.stale_after or timedelta(0)
        minutes = int(stale_after.total_seconds() // 60)
        result = await self._escalate(
            ticket,
            actor_id=SYSTEM_ACTOR,
            reason=f"No moderator activity for {minutes} minutes",
        )
        if result.outcome is TransitionOutcome.OK:
            logger.warning("Ticket %s escalated after %s minutes without activity", ticket.id, minutes)
        return result

    # Internals

    async def _escalate(
        self,
        ticket: SupportTicket,
        *,
        actor_id: str,
        reason: str,
        extra_values: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        now = self._clock.now()
        requester = await self._recipient(ticket.requester_id)
        admins = await self._users.list_by_role(Role.ADMIN)
        drafts = self._fanout.ticket_escalated(
            ticket.id,
            ticket.subject,
            requester=requester,
            admins=[Recipient(user.id, user.role) for user in admins],
            reason=reason,
        )
        updated = await self.repository.transition(
            ticket.id,
            expected_status=TicketStatus.ASSIGNED,
            values={
                "status": TicketStatus.ESCALATED,
                "escalation_reason": reason,
                "escalated_at": now,
                "updated_at": now,
                **(extra_values or {}),
            },
            audit=self._audit(
                ticket.id,
                "escalated",
                actor_id,
                TicketStatus.ASSIGNED,
                TicketStatus.ESCALATED,
                now,
                metadata={"reason": reason},
            ),
            messages=[self._system_message(ticket.id, ESCALATED_NOTICE, now, kind=MessageKind.SYSTEM_WARNING)],
            notifications=drafts,
        )
        if updated is None:
            return await self._lost_race("escalate", ticket.id)
        record_emitted(drafts)
        logger.info("Ticket %s escalated by %s: %s", ticket.id, actor_id, reason)
        return self._result("escalate", TransitionOutcome.OK, updated)

    async def _self_assign(self, ticket: SupportTicket, admin: Identity) -> SupportTicket:
        try:
            return await self.claim(ticket.id, admin)
        except TicketClaimConflict as conflict:
            return conflict.ticket

    async def _lost_race(self, action: str, ticket_id: str) -> TransitionResult:
        current = await self._require(ticket_id)
        if current.status is TicketStatus.CLOSED:
            outcome = TransitionOutcome.NOOP if action == "close" else TransitionOutcome.ALREADY_CLOSED
            return self._result(action, outcome, current)
        if action == "escalate" and current.status is TicketStatus.ESCALATED:
            return self._result(action, TransitionOutcome.NOOP, current)
        self._record(action, "conflict")
        raise InvalidTicketTransitionError(
            f"Ticket {ticket_id} changed to {current.status.value} concurrently", current
        )

    def _ensure_can_close(self, ticket: SupportTicket, actor: Identity) -> None:
        if actor.has_role(Role.ADMIN):
            return
        if actor.user_id == ticket.requester_id:
            if ticket.status is TicketStatus.ESCALATED and not self.policy.requester_can_close_escalated:
                raise TicketPermissionError("Escalated tickets are closed by an administrator")
            return
        if actor.has_role(Role.MODERATOR) and ticket.assignee_id == actor.user_id:
            if ticket.status is TicketStatus.ESCALATED and not self.policy.moderator_can_close_escalated:
                raise TicketPermissionError("Escalated tickets are closed by an administrator")
            return
        raise TicketPermissionError("Only the requester, the assigned moderator or an administrator can close")

    @staticmethod
    def _author_kind(ticket: SupportTicket, author: Identity) -> AuthorKind:
        if author.user_id == ticket.requester_id:
            return AuthorKind.USER
        if ticket.assignee_id == author.user_id:
            return AuthorKind.ADMIN if author.has_role(Role.ADMIN) else AuthorKind.MODERATOR
        if author.has_role(Role.ADMIN) and ticket.admin_visible:
            return AuthorKind.ADMIN
        raise TicketPermissionError("You are not a participant in this ticket")

    async def _load(self, ticket_id: str) -> SupportTicket:
        return await self._refresh_if_stale(await self._require(ticket_id))

    async def _require(self, ticket_id: str) -> SupportTicket:
        ticket = await self.repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def _recipient(self, user_id: str) -> Recipient:
        account = await self._users.get_user(user_id)
        if account is None:
            raise TicketServiceError(f"User {user_id} not found")
        return Recipient(account.id, account.role)

    def _result(self, action: str, outcome: TransitionOutcome, ticket: SupportTicket) -> TransitionResult:
        self._record(action, outcome)
        return TransitionResult(outcome=outcome, ticket=ticket)

    @staticmethod
    def _record(action: str, outcome: TransitionOutcome | str) -> None:
        label = outcome.value if isinstance(outcome, TransitionOutcome) else outcome
        counter(TICKET_TRANSITIONS).inc(labels={"action": action, "outcome": label})

    @staticmethod
    def _audit(
        ticket_id: str,
        action: str,
        actor: str,
        from_status: TicketStatus | None,
        to_status: TicketStatus | None,
        created_at: datetime,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> TicketAuditEntry:
        return TicketAuditEntry(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            action=action,
            actor=actor,
            from_status=from_status,
            to_status=to_status,
            created_at=created_at,
            metadata=dict(metadata or {}),
        )

    @staticmethod
    def _message(
        ticket_id: str, author_id: str | None, author_kind: AuthorKind, body: str, created_at: datetime
    ) -> TicketMessage:
        return TicketMessage(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            author_id=author_id,
            author_kind=author_kind,
            kind=MessageKind.TEXT,
            body=body,
            created_at=created_at,
        )

    @staticmethod
    def _system_message(
        ticket_id: str, body: str, created_at: datetime, *, kind: MessageKind = MessageKind.SYSTEM_INFO
    ) -> TicketMessage:
        return TicketMessage(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            author_id=None,
            author_kind=AuthorKind.SYSTEM,
            kind=kind,
            body=body,
            created_at=created_at,
        )

