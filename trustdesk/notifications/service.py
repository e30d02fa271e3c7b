from __future__ import annotations

import logging
from dataclasses import dataclass, field

from trustdesk.core.clock import Clock
from trustdesk.polling import PollChannel, PollingContract

from .models import Notification, NotificationSnapshot
from .repository import NotificationRepository

logger = logging.getLogger(__name__)


class NotificationServiceError(RuntimeError):
    """Base error for notification store issues."""


class NotificationNotFoundError(NotificationServiceError):
    """Raised when the recipient owns no notification with the given id."""


@dataclass(slots=True)
class NotificationService:
    """Recipient-facing operations on the notification store.

    Every mutation here is safe to repeat: a poll tick can race a user's
    click, so mark-read and mark-all-read converge instead of failing.
    """

    repository: NotificationRepository
    clock: Clock
    polling: PollingContract = field(default_factory=PollingContract)

    async def list_notifications(self, recipient_id: str, *, unread_only: bool = False) -> list[Notification]:
        return await self.repository.list_for_recipient(recipient_id, unread_only=unread_only)

    async def snapshot(self, recipient_id: str) -> NotificationSnapshot:
        items = await self.repository.list_for_recipient(recipient_id)
        return NotificationSnapshot(
            items=items,
            server_time=self.clock.now(),
            poll_after_seconds=self.polling.interval(PollChannel.NOTIFICATIONS).total_seconds(),
        )

    async def open(self, recipient_id: str) -> NotificationSnapshot:
        """Return the list as rendered, then mark exactly what was rendered as read.

        Anything that arrives after the read stays unread for the next poll.
        """

        snapshot = await self.snapshot(recipient_id)
        marked = await self.repository.mark_many_read(recipient_id, snapshot.unread_ids)
        logger.debug("Opened notifications for %s, marked %d read", recipient_id, marked)
        return snapshot

    async def mark_read(self, notification_id: str, recipient_id: str) -> None:
        found = await self.repository.mark_read(notification_id, recipient_id)
        if not found:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")

    async def mark_all_read(self, recipient_id: str) -> int:
        return await self.repository.mark_all_read(recipient_id)

    async def clear_all(self, recipient_id: str) -> int:
        removed = await self.repository.clear_all(recipient_id)
        logger.info("Cleared %d notifications for %s", removed, recipient_id)
        return removed

    async def unread_count(self, recipient_id: str) -> int:
        return await self.repository.unread_count(recipient_id)
