"""
Role ladder - a total order over roles plus the tier predicates.

Pure functions, no state. Accepts Role members or raw strings so callers can
pass whatever they read from storage or a token.
"""
from typing import Optional, Union

from app.models.enums import Role, RoleTier

RoleLike = Union[Role, str, None]

# Lowest to highest
ROLE_LEVELS = {
    Role.STUDENT: 1,
    Role.CLUB_STUDENT: 2,
    Role.CLUB_MEMBER: 3,
    Role.CLUB_DEPUTY: 4,
    Role.CLUB_LEADER: 5,
    Role.ADMIN: 6,
    Role.SUPER_ADMIN: 7,
}

ADMIN_TIER = frozenset({Role.SUPER_ADMIN, Role.ADMIN, Role.CLUB_LEADER})
OFFICER_TIER = frozenset({Role.CLUB_DEPUTY, Role.CLUB_MEMBER})
STUDENT_TIER = frozenset({Role.CLUB_STUDENT, Role.STUDENT})


def coerce_role(role: RoleLike) -> Optional[Role]:
    """Return the Role for ``role``, or None when it is not on the ladder."""
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def level(role: RoleLike) -> int:
    """Position on the ladder; unknown roles are level 0."""
    return ROLE_LEVELS.get(coerce_role(role), 0)


def at_least(role: RoleLike, required: RoleLike) -> bool:
    return level(role) >= level(required)


def is_admin_tier(role: RoleLike) -> bool:
    return coerce_role(role) in ADMIN_TIER


def is_officer_tier(role: RoleLike) -> bool:
    return coerce_role(role) in OFFICER_TIER


def is_student_tier(role: RoleLike) -> bool:
    return coerce_role(role) in STUDENT_TIER


def tier_of(role: RoleLike) -> Optional[RoleTier]:
    """
    Bucket a role for occupancy statistics.

    CLUB_STUDENT and STUDENT share the student tier on the ladder but are
    counted separately here.
    """
    known = coerce_role(role)
    if known is None:
        return None
    if known in ADMIN_TIER:
        return RoleTier.ADMIN
    if known in OFFICER_TIER:
        return RoleTier.OFFICER
    if known == Role.CLUB_STUDENT:
        return RoleTier.CLUB_STUDENT
    return RoleTier.STUDENT
