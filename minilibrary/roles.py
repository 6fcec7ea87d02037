"""Role hierarchy and the single authorization check used by every operation."""

from enum import Enum
from typing import Optional

from minilibrary.errors import ForbiddenError


class Role(str, Enum):
    """User roles, totally ordered MEMBER < LIBRARIAN < ADMIN"""
    MEMBER = "MEMBER"
    LIBRARIAN = "LIBRARIAN"
    ADMIN = "ADMIN"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Strict parse; raises ValueError for anything outside the three roles."""
        return cls(value)


ROLE_RANK = {
    Role.MEMBER: 1,
    Role.LIBRARIAN: 2,
    Role.ADMIN: 3,
}

STAFF = Role.LIBRARIAN


def has_min_role(actual: Role, required: Role) -> bool:
    return ROLE_RANK[Role(actual)] >= ROLE_RANK[Role(required)]


def authorize(actor, *, min_role: Optional[Role] = None, owner_id: Optional[int] = None) -> None:
    """Raise ForbiddenError unless `actor` satisfies the requirement.

    With only `min_role`, the actor needs at least that role. With `owner_id`
    as well, the actor passes either by being that user or by holding
    `min_role`.
    """
    if owner_id is not None and actor.id == owner_id:
        return
    if min_role is not None and has_min_role(actor.role, min_role):
        return
    if min_role is None and owner_id is None:
        return
    raise ForbiddenError("Forbidden")
