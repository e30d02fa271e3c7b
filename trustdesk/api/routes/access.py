from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from trustdesk.access.gate import AccessGate
from trustdesk.api.schemas import AccessDecisionResponse
from trustdesk.dependencies.auth import CurrentIdentity
from trustdesk.dependencies.services import get_access_gate

router = APIRouter(tags=["access"])


@router.get("/access", response_model=AccessDecisionResponse)
async def get_access(
    identity: CurrentIdentity, gate: Annotated[AccessGate, Depends(get_access_gate)]
) -> AccessDecisionResponse:
    """Gate decision for the caller; blocked users poll this to refresh their notice."""

    decision = await gate.evaluate(identity.user_id, role=identity.role)
    return AccessDecisionResponse.build(decision, gate.notice(decision))
