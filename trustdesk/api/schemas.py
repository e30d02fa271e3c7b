"""Response models shared between routes and dependencies."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from trustdesk.access.models import AccessDecision, AccessNotice, BlockKind


class AccessNoticeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: BlockKind
    title: str
    message: str
    until: datetime | None = None
    countdown: str | None = None
    refresh_after_seconds: int | None = None
    dismissable: bool = False


class AccessDecisionResponse(BaseModel):
    allowed: bool
    kind: BlockKind | None = None
    until: datetime | None = None
    reason: str | None = None
    notice: AccessNoticeResponse | None = None

    @classmethod
    def build(cls, decision: AccessDecision, notice: AccessNotice | None) -> "AccessDecisionResponse":
        return cls(
            allowed=decision.allowed,
            kind=decision.kind,
            until=decision.until,
            reason=decision.reason,
            notice=None if notice is None else AccessNoticeResponse.model_validate(notice),
        )
