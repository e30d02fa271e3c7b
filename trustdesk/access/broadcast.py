"""Administrator announcements delivered through the notification store."""

from __future__ import annotations

import logging

from trustdesk.core.clock import Clock
from trustdesk.core.identity import Identity, Role
from trustdesk.notifications.fanout import NotificationFanOut, Recipient, record_emitted

from .ledger import LedgerError, UserNotFoundError
from .models import BroadcastAudience, BroadcastRequest, UserAccount
from .repository import UserRepository

logger = logging.getLogger(__name__)


class BroadcastValidationError(LedgerError):
    """Raised when an announcement is missing its text or its audience."""


class BroadcastPermissionError(LedgerError):
    """Raised when a non-administrator tries to send an announcement."""


class NotificationBroadcaster:
    """Sends one announcement to a single account, one role or everyone.

    Each send is logged as a ``send_notification`` moderation action in the
    same transaction as the notifications it writes.
    """

    def __init__(self, users: UserRepository, fanout: NotificationFanOut, clock: Clock) -> None:
        self._users = users
        self._fanout = fanout
        self._clock = clock

    async def send(self, request: BroadcastRequest, actor: Identity) -> int:
        if not actor.has_role(Role.ADMIN):
            raise BroadcastPermissionError("Only administrators can send notifications")
        title = (request.title or "").strip()
        message = (request.message or "").strip()
        if not title or not message:
            raise BroadcastValidationError("A title and a message are required")

        accounts = await self._resolve(request)
        drafts = self._fanout.announcement(
            [Recipient(user_id=account.id, role=account.role) for account in accounts],
            title=title,
            message=message,
            type=request.type,
            action_url=request.action_url,
        )
        scope = _describe_scope(request)
        await self._users.record_broadcast(
            actor_id=actor.user_id,
            target_id=request.user_id if request.audience is BroadcastAudience.USER else None,
            reason=f"Notification sent to {scope}: {title}",
            details={"audience": request.audience.value, "scope": scope, "user_count": len(drafts)},
            notifications=drafts,
            now=self._clock.now(),
        )
        record_emitted(drafts)
        logger.info("%s sent notification %r to %s (%d recipients)", actor.user_id, title, scope, len(drafts))
        return len(drafts)

    async def _resolve(self, request: BroadcastRequest) -> list[UserAccount]:
        if request.audience is BroadcastAudience.USER:
            if not request.user_id:
                raise BroadcastValidationError("A recipient is required for a single-user notification")
            account = await self._users.get_user(request.user_id)
            if account is None:
                raise UserNotFoundError(f"User {request.user_id} not found")
            return [account]
        if request.audience is BroadcastAudience.ROLE:
            if request.role is None:
                raise BroadcastValidationError("A role is required for a role notification")
            return await self._users.list_by_role(request.role)
        return await self._users.list_by_role()


def _describe_scope(request: BroadcastRequest) -> str:
    if request.audience is BroadcastAudience.USER:
        return f"user {request.user_id}"
    if request.audience is BroadcastAudience.ROLE and request.role is not None:
        return f"role {request.role.value}"
    return "all users"
