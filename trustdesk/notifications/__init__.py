"""Notification store, fan-out and recipient operations."""

from .fanout import NotificationFanOut, Recipient, message_action_url, staff_ticket_url, support_ticket_url
from .models import Notification, NotificationDraft, NotificationSnapshot, NotificationType
from .repository import NotificationRepository
from .service import NotificationNotFoundError, NotificationService

__all__ = [
    "Notification",
    "NotificationDraft",
    "NotificationFanOut",
    "NotificationNotFoundError",
    "NotificationRepository",
    "NotificationService",
    "NotificationSnapshot",
    "NotificationType",
    "Recipient",
    "message_action_url",
    "staff_ticket_url",
    "support_ticket_url",
]
