"""
Role-based capability checks for the indicator lifecycle.

Roles form a closed set.  Stored role strings are parsed case-insensitively,
so "SuperAdmin", "superadmin" and "SUPERADMIN" all map to the top authority.

Usage:
    from app.services.permission import Actor, Capability, require_capability

    require_capability(actor, Capability.REVIEW)       # raises AuthorizationError

    if has_capability(actor, Capability.EDIT_SEALED):
        ...
"""

import logging
from dataclasses import dataclass
from enum import Enum

from app.core.exceptions import AuthorizationError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"
    TOP_AUTHORITY = "superadmin"

    @classmethod
    def parse(cls, value) -> "Role":
        """Map a stored role string onto the enumeration.

        Unknown strings fall back to MEMBER (least privilege).
        """
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower().replace("_", "").replace("-", "")
        for role in cls:
            if role.value == normalized:
                return role
        if normalized:
            logger.warning("Unknown role %r treated as member", value)
        return cls.MEMBER


class Capability(str, Enum):
    CREATE_INDICATOR = "create_indicator"
    DELETE_INDICATOR = "delete_indicator"
    EDIT_INDICATOR = "edit_indicator"
    EDIT_SEALED = "edit_sealed"
    REVIEW = "review"
    RATIFY = "ratify"
    GRADE = "grade"
    LIST_ALL = "list_all"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.MEMBER: frozenset(),
    Role.ADMIN: frozenset({
        Capability.EDIT_INDICATOR,
        Capability.REVIEW,
        Capability.GRADE,
        Capability.LIST_ALL,
    }),
    Role.TOP_AUTHORITY: frozenset(Capability),
}


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf a lifecycle operation runs."""

    user_id: int
    role: Role

    @classmethod
    def from_user(cls, user) -> "Actor":
        return cls(user_id=user.id, role=Role.parse(user.role))


def has_capability(actor: Actor | None, capability: Capability) -> bool:
    if actor is None:
        return False
    return capability in ROLE_CAPABILITIES.get(actor.role, frozenset())


def require_capability(actor: Actor | None, capability: Capability) -> None:
    """Raise AuthorizationError unless *actor*'s role grants *capability*."""
    if not has_capability(actor, capability):
        role = actor.role.value if actor else "anonymous"
        raise AuthorizationError(
            f"Role '{role}' is not permitted to {capability.value.replace('_', ' ')}",
            details={"capability": capability.value, "role": role},
        )
