"""Suspension ledger, access gate and administrator announcements."""

from .broadcast import BroadcastPermissionError, BroadcastValidationError, NotificationBroadcaster
from .gate import AccessGate, describe_remaining, evaluate_state
from .ledger import (
    LedgerError,
    SuspensionLedger,
    SuspensionPermissionError,
    SuspensionValidationError,
    UserNotFoundError,
)
from .models import (
    AccessDecision,
    AccessNotice,
    BlockKind,
    BroadcastAudience,
    BroadcastRequest,
    ModerationAction,
    ModerationActionKind,
    PermanentBan,
    SuspensionState,
    TemporarySuspension,
    UserAccount,
)
from .repository import UserRepository

__all__ = [
    "AccessDecision",
    "AccessGate",
    "AccessNotice",
    "BlockKind",
    "BroadcastAudience",
    "BroadcastPermissionError",
    "BroadcastRequest",
    "BroadcastValidationError",
    "LedgerError",
    "ModerationAction",
    "ModerationActionKind",
    "NotificationBroadcaster",
    "PermanentBan",
    "SuspensionLedger",
    "SuspensionPermissionError",
    "SuspensionState",
    "SuspensionValidationError",
    "TemporarySuspension",
    "UserAccount",
    "UserNotFoundError",
    "UserRepository",
    "describe_remaining",
    "evaluate_state",
]
