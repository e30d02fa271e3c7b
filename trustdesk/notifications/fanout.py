"""Turn ticket and moderation events into notification records.

Builders here are pure: they return drafts that the caller writes inside
the same transaction as the mutation that triggered them, so a mutation
never commits without its notifications. ``emit`` is the standalone append
for events that have no other write attached.

Action URLs are resolved from the recipient's role when the draft is built.
Clients route on ``(role, type)`` and never rewrite a stored URL.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from trustdesk.core.clock import Clock
from trustdesk.core.identity import Role
from trustdesk.metrics import counter
from trustdesk.metrics.definitions import NOTIFICATIONS_EMITTED

from .models import NotificationDraft, NotificationType
from .repository import NotificationRepository

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50


@dataclass(frozen=True, slots=True)
class Recipient:
    user_id: str
    role: Role


def message_action_url(role: Role, conversation_id: str) -> str:
    """Deep link for a marketplace conversation, resolved per recipient role."""

    if role is Role.PROFESSIONAL:
        return f"/dashboard?tab=chat&conversation={conversation_id}"
    return f"/chat?conversation={conversation_id}"


def support_ticket_url(role: Role, ticket_id: str) -> str:
    """Requester-side link to a support chat."""

    if role is Role.PROFESSIONAL:
        return f"/dashboard?tab=support&ticket={ticket_id}"
    return f"/chat-support?ticket={ticket_id}"


def staff_ticket_url(role: Role, ticket_id: str) -> str:
    if role is Role.ADMIN:
        return f"/admin/supervision?ticket={ticket_id}"
    return f"/moderator/dashboard?ticket={ticket_id}"


def preview(text: str, length: int = PREVIEW_LENGTH) -> str:
    text = " ".join(text.split())
    if len(text) <= length:
        return text
    return text[:length] + "..."


def record_emitted(drafts: Iterable[NotificationDraft]) -> None:
    emitted = counter(NOTIFICATIONS_EMITTED)
    for draft in drafts:
        emitted.inc(labels={"type": draft.type.value})


class NotificationFanOut:
    """Builds notification drafts for every party affected by an event."""

    def __init__(self, repository: NotificationRepository, clock: Clock) -> None:
        self._repository = repository
        self._clock = clock

    async def emit(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        message: str,
        action_url: str | None = None,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        draft = NotificationDraft(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            action_url=action_url,
            metadata=dict(metadata or {}),
        )
        notification = await self._repository.create(draft, created_at=self._clock.now())
        record_emitted([draft])
        logger.debug("Emitted %s notification %s to %s", type.value, notification.id, recipient_id)
        return notification.id

    async def direct_message(
        self, *, sender_name: str, recipient: Recipient, conversation_id: str, body: str
    ) -> str:
        """Notify the other side of a client/professional conversation."""

        return await self.emit(
            recipient.user_id,
            NotificationType.MESSAGE,
            "New message",
            f'{sender_name} sent you a message: "{preview(body)}"',
            message_action_url(recipient.role, conversation_id),
            metadata={"conversation_id": conversation_id},
        )

    # Support ticket events

    def ticket_opened(self, ticket_id: str, subject: str, moderators: Sequence[Recipient]) -> list[NotificationDraft]:
        return [
            NotificationDraft(
                recipient_id=moderator.user_id,
                type=NotificationType.SYSTEM,
                title="New support request",
                message=f"A user is waiting for an agent: {subject}",
                action_url=staff_ticket_url(moderator.role, ticket_id),
                ticket_id=ticket_id,
                metadata={"event": "ticket_opened"},
            )
            for moderator in moderators
        ]

    def ticket_claimed(self, ticket_id: str, subject: str, requester: Recipient) -> list[NotificationDraft]:
        return [
            NotificationDraft(
                recipient_id=requester.user_id,
                type=NotificationType.MESSAGE,
                title="An agent joined your support chat",
                message=f"A moderator is now handling your request: {subject}",
                action_url=support_ticket_url(requester.role, ticket_id),
                ticket_id=ticket_id,
                metadata={"event": "ticket_claimed"},
            )
        ]

    def ticket_escalated(
        self,
        ticket_id: str,
        subject: str,
        *,
        requester: Recipient,
        admins: Sequence[Recipient],
        reason: str,
    ) -> list[NotificationDraft]:
        drafts = [
            NotificationDraft(
                recipient_id=admin.user_id,
                type=NotificationType.SYSTEM,
                title="Support request escalated",
                message=f"{subject}: {reason}",
                action_url=staff_ticket_url(admin.role, ticket_id),
                ticket_id=ticket_id,
                metadata={"event": "ticket_escalated", "reason": reason},
            )
            for admin in admins
        ]
        drafts.append(
            NotificationDraft(
                recipient_id=requester.user_id,
                type=NotificationType.MESSAGE,
                title="Your request has been escalated",
                message="An administrator will review your support request.",
                action_url=support_ticket_url(requester.role, ticket_id),
                ticket_id=ticket_id,
                metadata={"event": "ticket_escalated"},
            )
        )
        return drafts

    def ticket_closed(self, ticket_id: str, subject: str, requester: Recipient) -> list[NotificationDraft]:
        return [
            NotificationDraft(
                recipient_id=requester.user_id,
                type=NotificationType.SYSTEM,
                title="Support request closed",
                message=f"Your support request was closed: {subject}",
                action_url=support_ticket_url(requester.role, ticket_id),
                ticket_id=ticket_id,
                metadata={"event": "ticket_closed"},
            )
        ]

    def ticket_message(
        self, ticket_id: str, *, recipient: Recipient, author_label: str, body: str
    ) -> list[NotificationDraft]:
        if recipient.role.is_staff:
            url = staff_ticket_url(recipient.role, ticket_id)
        else:
            url = support_ticket_url(recipient.role, ticket_id)
        return [
            NotificationDraft(
                recipient_id=recipient.user_id,
                type=NotificationType.MESSAGE,
                title="New support message",
                message=f'{author_label}: "{preview(body)}"',
                action_url=url,
                ticket_id=ticket_id,
                metadata={"event": "ticket_message"},
            )
        ]

    # Suspension ledger events

    def suspension_applied(
        self, user_id: str, *, reason: str, until: datetime | None, days: int | None
    ) -> list[NotificationDraft]:
        if until is None:
            title = "Account permanently suspended"
            message = f"Your account has been permanently suspended. Reason: {reason}"
            metadata: dict[str, Any] = {"suspension_type": "permanent", "reason": reason}
        else:
            title = "Account temporarily suspended"
            message = (
                f"Your account has been suspended for {days} days. Reason: {reason}. "
                f"Access will be restored on {until.date().isoformat()}."
            )
            metadata = {
                "suspension_type": "temporary",
                "days": days,
                "suspended_until": until.isoformat(),
                "reason": reason,
            }
        return [
            NotificationDraft(
                recipient_id=user_id,
                type=NotificationType.SYSTEM,
                title=title,
                message=message,
                metadata=metadata,
            )
        ]

    def suspension_lifted(self, user_id: str) -> list[NotificationDraft]:
        return [
            NotificationDraft(
                recipient_id=user_id,
                type=NotificationType.SYSTEM,
                title="Account access restored",
                message="An administrator lifted the restrictions on your account.",
                metadata={"suspension_type": "lifted"},
            )
        ]

    # Administrator announcements

    def announcement(
        self,
        recipients: Sequence[Recipient],
        *,
        title: str,
        message: str,
        type: NotificationType = NotificationType.SYSTEM,
        action_url: str | None = None,
    ) -> list[NotificationDraft]:
        return [
            NotificationDraft(
                recipient_id=recipient.user_id,
                type=type,
                title=title,
                message=message,
                action_url=action_url,
                metadata={"event": "announcement"},
            )
            for recipient in recipients
        ]
