"""Authoritative access check run on every privileged request.

There is no job that clears expired suspensions: each evaluation compares
the stored expiry with the clock, so a suspension that just elapsed is
``Allowed`` on the very next request.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from trustdesk.core.clock import Clock
from trustdesk.core.identity import Role
from trustdesk.core.logging import get_tracer
from trustdesk.metrics import counter, distribution, track_duration
from trustdesk.metrics.definitions import GATE_DECISIONS, GATE_LATENCY

from .models import AccessDecision, AccessNotice, BlockKind, SuspensionState
from .repository import UserRepository

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


def evaluate_state(state: SuspensionState, now: datetime) -> AccessDecision:
    if state.is_banned:
        return AccessDecision.block(BlockKind.PERMANENT, reason=state.reason)
    if state.suspended_until is not None and state.suspended_until > now:
        return AccessDecision.block(BlockKind.TEMPORARY, until=state.suspended_until, reason=state.reason)
    return AccessDecision.allow()


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}" if value == 1 else f"{value} {unit}s"


def describe_remaining(until: datetime, now: datetime) -> str:
    remaining = until - now
    if remaining.total_seconds() <= 0:
        return "Suspension expired, reload to continue"

    minutes_total = int(remaining.total_seconds() // 60)
    days, rest = divmod(minutes_total, 24 * 60)
    hours, minutes = divmod(rest, 60)
    if days > 0:
        return f"{_plural(days, 'day')}, {_plural(hours, 'hour')} and {_plural(minutes, 'minute')}"
    if hours > 0:
        return f"{_plural(hours, 'hour')} and {_plural(minutes, 'minute')}"
    return _plural(minutes, "minute")


class AccessGate:
    """Evaluate whether an identity is currently blocked. Fails closed."""

    def __init__(self, users: UserRepository, clock: Clock, *, notice_refresh_seconds: int = 60) -> None:
        self._users = users
        self._clock = clock
        self._notice_refresh_seconds = notice_refresh_seconds

    async def evaluate(self, user_id: str, *, role: Role | None = None) -> AccessDecision:
        """Decide access for ``user_id``.

        When the session provider supplied a ``role`` the account is
        provisioned first, so a first-time identity is evaluated like any
        other. Without one, an unknown account is denied.
        """

        with tracer.start_as_current_span("access_gate.evaluate") as span, track_duration(
            distribution(GATE_LATENCY)
        ):
            decision = await self._evaluate(user_id, role)
            outcome = "allowed" if decision.allowed else decision.kind.value
            span.set_attribute("access.outcome", outcome)
        counter(GATE_DECISIONS).inc(labels={"outcome": outcome})
        if decision.blocked:
            logger.info("Access blocked for %s (%s)", user_id, outcome)
        return decision

    async def _evaluate(self, user_id: str, role: Role | None) -> AccessDecision:
        now = self._clock.now()
        try:
            if role is None:
                account = await self._users.get_user(user_id)
            else:
                account = await self._users.ensure_user(user_id, role, now)
        except (SQLAlchemyError, OSError):
            logger.exception("Suspension state unavailable for %s; denying access", user_id)
            return AccessDecision.block(BlockKind.UNAVAILABLE, reason="Account status could not be verified")
        if account is None:
            logger.warning("No account record for %s; denying access", user_id)
            return AccessDecision.block(BlockKind.UNAVAILABLE, reason="Unknown account")
        return evaluate_state(account.suspension, now)

    def notice(self, decision: AccessDecision) -> AccessNotice | None:
        if decision.allowed:
            return None
        if decision.kind is BlockKind.PERMANENT:
            return AccessNotice(
                kind=BlockKind.PERMANENT,
                title="Account permanently suspended",
                message=_with_reason(
                    "Your account has been permanently suspended for violating the terms of service.",
                    decision.reason,
                ),
            )
        if decision.kind is BlockKind.TEMPORARY and decision.until is not None:
            return AccessNotice(
                kind=BlockKind.TEMPORARY,
                title="Account temporarily suspended",
                message=_with_reason("Your account is temporarily suspended.", decision.reason),
                until=decision.until,
                countdown=describe_remaining(decision.until, self._clock.now()),
                refresh_after_seconds=self._notice_refresh_seconds,
            )
        return AccessNotice(
            kind=BlockKind.UNAVAILABLE,
            title="Account status unavailable",
            message="We could not verify your account status. Please try again shortly.",
            refresh_after_seconds=self._notice_refresh_seconds,
        )


def _with_reason(message: str, reason: str | None) -> str:
    return f"{message} Reason: {reason}" if reason else message
