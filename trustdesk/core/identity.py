from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Marketplace roles."""

    CLIENT = "client"
    PROFESSIONAL = "professional"
    MODERATOR = "moderator"
    ADMIN = "admin"

    @property
    def is_staff(self) -> bool:
        return self in (Role.MODERATOR, Role.ADMIN)


@dataclass(frozen=True, slots=True)
class Identity:
    """Request-scoped identity supplied by the session provider."""

    user_id: str
    role: Role

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff


SYSTEM_ACTOR = "system"
