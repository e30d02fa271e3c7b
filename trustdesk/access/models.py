from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from trustdesk.core.identity import Role
from trustdesk.notifications.models import NotificationType


@dataclass(frozen=True, slots=True)
class SuspensionState:
    """Suspension record embedded in a user account.

    ``is_banned`` and ``suspended_until`` are independent; a ban always wins.
    """

    is_banned: bool = False
    suspended_until: datetime | None = None
    reason: str | None = None


@dataclass(slots=True)
class UserAccount:
    id: str
    display_name: str
    role: Role
    suspension: SuspensionState
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class PermanentBan:
    reason: str


@dataclass(frozen=True, slots=True)
class TemporarySuspension:
    days: int
    reason: str


SuspensionRequest = PermanentBan | TemporarySuspension


class ModerationActionKind(str, Enum):
    BAN = "ban_user"
    SUSPEND = "suspend_user"
    LIFT = "lift_suspension"
    SEND_NOTIFICATION = "send_notification"


@dataclass(slots=True)
class ModerationAction:
    id: str
    actor_id: str
    target_id: str | None
    action: ModerationActionKind
    reason: str | None
    details: Mapping[str, Any]
    created_at: datetime


class BlockKind(str, Enum):
    PERMANENT = "permanent"
    TEMPORARY = "temporary"
    # Suspension state could not be determined; access is denied.
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class AccessDecision:
    """Outcome of an access gate evaluation."""

    allowed: bool
    kind: BlockKind | None = None
    until: datetime | None = None
    reason: str | None = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def block(
        cls, kind: BlockKind, *, until: datetime | None = None, reason: str | None = None
    ) -> "AccessDecision":
        return cls(allowed=False, kind=kind, until=until, reason=reason)

    @property
    def blocked(self) -> bool:
        return not self.allowed


@dataclass(frozen=True, slots=True)
class AccessNotice:
    """Full-screen, non-dismissable notice shown to a blocked user.

    Advisory only: the countdown is rendered from the authoritative expiry on
    every refresh and never decides access.
    """

    kind: BlockKind
    title: str
    message: str
    until: datetime | None = None
    countdown: str | None = None
    refresh_after_seconds: int | None = None
    dismissable: bool = field(default=False)


class BroadcastAudience(str, Enum):
    USER = "user"
    ROLE = "role"
    ALL = "all"


@dataclass(frozen=True, slots=True)
class BroadcastRequest:
    """An administrator announcement and who should receive it."""

    title: str
    message: str
    audience: BroadcastAudience = BroadcastAudience.ALL
    user_id: str | None = None
    role: Role | None = None
    type: NotificationType = NotificationType.SYSTEM
    action_url: str | None = None
