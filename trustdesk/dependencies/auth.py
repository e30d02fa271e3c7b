from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from trustdesk.access.gate import AccessGate
from trustdesk.api.schemas import AccessDecisionResponse
from trustdesk.core.config import Settings, get_settings
from trustdesk.core.identity import Identity, Role
from trustdesk.dependencies.services import get_access_gate

bearer_scheme = HTTPBearer(auto_error=False)


def resolve_identity(token: str, settings: Settings) -> Identity | None:
    """Map a bearer token to the identity asserted for it by the session provider."""

    claim = settings.identity_tokens.get(token)
    if claim is None:
        return None
    try:
        role = Role(claim.role)
    except ValueError:
        return None
    return Identity(user_id=claim.user_id, role=role)


async def get_current_identity(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Identity:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    identity = resolve_identity(credentials.credentials, settings)
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return identity


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]


async def get_active_identity(
    identity: CurrentIdentity,
    gate: Annotated[AccessGate, Depends(get_access_gate)],
) -> Identity:
    """Run the access gate; blocked users get a 403 carrying the block notice."""

    decision = await gate.evaluate(identity.user_id, role=identity.role)
    if decision.blocked:
        payload = AccessDecisionResponse.build(decision, gate.notice(decision))
        raise HTTPException(status_code=403, detail=payload.model_dump(mode="json"))
    return identity


ActiveIdentity = Annotated[Identity, Depends(get_active_identity)]


def role_required(*roles: Role) -> Callable[[Identity], Identity]:
    """Dependency factory ensuring the active identity holds one of ``roles``."""

    async def dependency(identity: ActiveIdentity) -> Identity:
        if not identity.has_role(*roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return identity

    return dependency


require_staff = role_required(Role.MODERATOR, Role.ADMIN)
require_admin = role_required(Role.ADMIN)

StaffIdentity = Annotated[Identity, Depends(require_staff)]
AdminIdentity = Annotated[Identity, Depends(require_admin)]
