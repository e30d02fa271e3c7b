from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from trustdesk.core.clock import Clock
from trustdesk.core.identity import Identity, Role
from trustdesk.metrics import counter
from trustdesk.metrics.definitions import SUSPENSIONS_APPLIED
from trustdesk.notifications.fanout import NotificationFanOut, record_emitted

from .models import (
    ModerationAction,
    ModerationActionKind,
    PermanentBan,
    SuspensionRequest,
    SuspensionState,
    TemporarySuspension,
)
from .repository import UserRepository

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """Base error for suspension ledger issues."""


class SuspensionValidationError(LedgerError):
    """Raised before any mutation when a request is incomplete or out of range."""


class SuspensionPermissionError(LedgerError):
    """Raised when the actor may not apply the requested action."""


class UserNotFoundError(LedgerError):
    """Raised when the target account does not exist."""


class SuspensionLedger:
    """Owns per-user ban and suspension state.

    Expired suspensions are never cleared here; the access gate compares the
    stored expiry with the clock on every request.
    """

    def __init__(
        self,
        users: UserRepository,
        fanout: NotificationFanOut,
        clock: Clock,
        *,
        max_days: int = 365,
    ) -> None:
        self._users = users
        self._fanout = fanout
        self._clock = clock
        self._max_days = max_days

    async def get_state(self, user_id: str) -> SuspensionState:
        account = await self._users.get_user(user_id)
        if account is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return account.suspension

    async def apply(self, user_id: str, request: SuspensionRequest, actor: Identity) -> SuspensionState:
        reason = self._validate(user_id, request, actor)
        now = self._clock.now()

        values: dict[str, Any]
        details: dict[str, Any]
        if isinstance(request, PermanentBan):
            action = ModerationActionKind.BAN
            # suspended_until is left as is; the ban dominates it.
            values = {"is_banned": True, "suspension_reason": reason}
            details = {"suspension_type": "permanent"}
            drafts = self._fanout.suspension_applied(user_id, reason=reason, until=None, days=None)
        else:
            action = ModerationActionKind.SUSPEND
            until = now + timedelta(days=request.days)
            values = {"suspended_until": until, "suspension_reason": reason}
            details = {"suspension_type": "temporary", "days": request.days, "suspended_until": until.isoformat()}
            drafts = self._fanout.suspension_applied(user_id, reason=reason, until=until, days=request.days)

        state = await self._users.update_suspension(
            user_id,
            values=values,
            action=action,
            actor_id=actor.user_id,
            reason=reason,
            details=details,
            notifications=drafts,
            now=now,
        )
        if state is None:
            await self._raise_ineligible(user_id)
        record_emitted(drafts)
        counter(SUSPENSIONS_APPLIED).inc(labels={"kind": details["suspension_type"]})
        logger.info("%s applied %s to %s: %s", actor.user_id, action.value, user_id, reason)
        return state

    async def lift(self, user_id: str, actor: Identity) -> SuspensionState:
        if not actor.has_role(Role.ADMIN):
            raise SuspensionPermissionError("Only administrators can lift suspensions")
        now = self._clock.now()
        drafts = self._fanout.suspension_lifted(user_id)
        state = await self._users.update_suspension(
            user_id,
            values={"is_banned": False, "suspended_until": None, "suspension_reason": None},
            action=ModerationActionKind.LIFT,
            actor_id=actor.user_id,
            reason=None,
            details={},
            notifications=drafts,
            now=now,
        )
        if state is None:
            await self._raise_ineligible(user_id)
        record_emitted(drafts)
        counter(SUSPENSIONS_APPLIED).inc(labels={"kind": "lifted"})
        logger.info("%s lifted restrictions on %s", actor.user_id, user_id)
        return state

    async def list_actions(self, user_id: str) -> list[ModerationAction]:
        return await self._users.list_actions(user_id)

    def _validate(self, user_id: str, request: SuspensionRequest, actor: Identity) -> str:
        if not actor.is_staff:
            raise SuspensionPermissionError("Only moderators and administrators can suspend accounts")
        if actor.user_id == user_id:
            raise SuspensionPermissionError("Staff cannot suspend their own account")
        reason = (request.reason or "").strip()
        if not reason:
            raise SuspensionValidationError("A suspension reason is required")
        if isinstance(request, PermanentBan):
            if not actor.has_role(Role.ADMIN):
                raise SuspensionPermissionError("Only administrators can ban permanently")
        elif isinstance(request, TemporarySuspension):
            if not 1 <= request.days <= self._max_days:
                raise SuspensionValidationError(
                    f"Suspension length must be between 1 and {self._max_days} days"
                )
        else:
            raise SuspensionValidationError(f"Unsupported suspension request: {request!r}")
        return reason

    async def _raise_ineligible(self, user_id: str) -> None:
        account = await self._users.get_user(user_id)
        if account is None:
            raise UserNotFoundError(f"User {user_id} not found")
        raise SuspensionPermissionError("Staff accounts cannot be suspended")
