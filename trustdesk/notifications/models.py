from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence


class NotificationType(str, Enum):
    """Kinds of events a recipient can be notified about."""

    SERVICE_REQUEST = "service_request"
    REVIEW = "review"
    MESSAGE = "message"
    SYSTEM = "system"


@dataclass(slots=True)
class Notification:
    """Stored notification as seen by its recipient."""

    id: str
    recipient_id: str
    type: NotificationType
    title: str
    message: str
    is_read: bool
    action_url: str | None
    ticket_id: str | None
    metadata: Mapping[str, Any]
    created_at: datetime


@dataclass(frozen=True, slots=True)
class NotificationDraft:
    """A notification that fan-out wants written alongside a mutation."""

    recipient_id: str
    type: NotificationType
    title: str
    message: str
    action_url: str | None = None
    ticket_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NotificationSnapshot:
    """A single consistent read of a recipient's notifications."""

    items: Sequence[Notification]
    server_time: datetime
    poll_after_seconds: float

    @property
    def unread_count(self) -> int:
        return sum(1 for item in self.items if not item.is_read)

    @property
    def unread_ids(self) -> list[str]:
        return [item.id for item in self.items if not item.is_read]
