"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from app.models.domain import ActorSnapshot
from app.models.enums import MembershipStatus, Role


# Membership schemas
class MembershipApply(BaseModel):
    motivation: Optional[str] = None
    experience: Optional[str] = None
    expectations: Optional[str] = None
    commitment: Optional[str] = None
    reapplication_reason: Optional[str] = None


class StatusChange(BaseModel):
    # Plain string so an unknown value reaches the state machine and is
    # reported with the offending field name
    status: str
    reason: Optional[str] = None


class ReasonBody(BaseModel):
    reason: Optional[str] = None


class RemovalCycleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    removed_at: datetime
    removed_by: ActorSnapshot
    removal_reason: Optional[str]
    restored_at: Optional[datetime]
    restored_by: Optional[ActorSnapshot]
    restoration_reason: Optional[str]


class MembershipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_id: str
    status: MembershipStatus
    joined_at: datetime
    approved_at: Optional[datetime]
    approved_by: Optional[str]
    rejected_at: Optional[datetime]
    rejected_by: Optional[str]
    rejection_reason: Optional[str]
    removed_at: Optional[datetime]
    removed_by: Optional[ActorSnapshot]
    removal_reason_current: Optional[str]
    restored_at: Optional[datetime]
    restored_by: Optional[ActorSnapshot]
    restoration_reason: Optional[str]
    is_reapplication: bool
    reapplication_at: Optional[datetime]
    reapplication_reason: Optional[str]
    motivation: Optional[str]
    experience: Optional[str]
    expectations: Optional[str]
    commitment: Optional[str]
    removal_history: List[RemovalCycleResponse] = []
    created_at: datetime
    updated_at: datetime


class MembershipLookup(BaseModel):
    has_membership: bool
    membership: Optional[MembershipResponse] = None


class RemovalStatus(BaseModel):
    removed_at: Optional[datetime]
    removal_reason: Optional[str]
    removed_by: Optional[ActorSnapshot]


class RemovalStatusResponse(BaseModel):
    removal_info: Optional[RemovalStatus] = None


class WithdrawResponse(BaseModel):
    deleted: bool


# Person schemas
class RoleChange(BaseModel):
    role: str


class PersonResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
    external_code: Optional[str]
    email: Optional[str]
    assigned_role: Role
    credential_present: bool
    soft_deleted: bool
    deleted_at: Optional[datetime]
    deleted_by: Optional[ActorSnapshot]
    deletion_reason: Optional[str]
    created_at: datetime


class AuthorizationResponse(BaseModel):
    person_id: str
    assigned_role: Role
    effective_role: Role
    membership_status: Optional[MembershipStatus]
    should_redirect: bool
    redirect_target: Optional[str]


# Presence schemas
class PresenceCountsResponse(BaseModel):
    admin: int
    officer: int
    club_student: int
    student: int


# Error response
class ErrorResponse(BaseModel):
    """Response when an action is refused."""
    kind: str
    message: str
    field: Optional[str] = None
    current_status: Optional[str] = None
    hours_remaining: Optional[int] = None

