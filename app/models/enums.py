"""Enums for the membership system - these define the valid values for roles and statuses."""
from enum import Enum


class Role(str, Enum):
    """Assigned roles, lowest to highest. The ladder ordering lives in services.roles."""
    STUDENT = "STUDENT"
    CLUB_STUDENT = "CLUB_STUDENT"
    CLUB_MEMBER = "CLUB_MEMBER"
    CLUB_DEPUTY = "CLUB_DEPUTY"
    CLUB_LEADER = "CLUB_LEADER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class RoleTier(str, Enum):
    """Coarse buckets used for occupancy statistics."""
    ADMIN = "admin"
    OFFICER = "officer"
    CLUB_STUDENT = "club_student"
    STUDENT = "student"


class MembershipStatus(str, Enum):
    """The five statuses a MembershipRecord can be in. No other statuses are allowed."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    INACTIVE = "INACTIVE"
    REMOVED = "REMOVED"
