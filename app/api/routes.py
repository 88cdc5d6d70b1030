"""API routes for the membership lifecycle, authorization and presence."""
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.domain import Person
from app.models.enums import MembershipStatus, Role
from app.services import membership_store as store
from app.services.authorization import AuthorizationService, EffectiveAuthorization
from app.services.errors import Unauthorized, ValidationError
from app.services.identity import IdentityStore
from app.services.presence import PresenceTracker
from app.services.state_machine import StateMachine
from app.api.schemas import (
    AuthorizationResponse,
    ErrorResponse,
    MembershipApply,
    MembershipLookup,
    MembershipResponse,
    PersonResponse,
    PresenceCountsResponse,
    ReasonBody,
    RemovalStatus,
    RemovalStatusResponse,
    RoleChange,
    StatusChange,
    WithdrawResponse,
)

router = APIRouter()

REFUSALS = {
    401: {"model": ErrorResponse, "description": "No or unknown caller identity"},
    403: {"model": ErrorResponse, "description": "Caller lacks the required role"},
    404: {"model": ErrorResponse, "description": "Record or person not found"},
    409: {"model": ErrorResponse, "description": "Invalid transition, conflict or cooldown"},
    422: {"model": ErrorResponse, "description": "Missing or oversized input"},
}


class Caller:
    """The authenticated person plus their effective authorization for this request."""

    def __init__(self, person: Person, auth: EffectiveAuthorization):
        self.person = person
        self.auth = auth

    @property
    def id(self) -> str:
        return self.person.id

    def require(self, minimum: Role) -> None:
        self.auth.require(minimum)

    def require_self_or(self, person_id: str, minimum: Role) -> None:
        if person_id != self.person.id:
            self.require(minimum)


def get_caller(
    x_person_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Caller:
    """
    Resolve the caller from the X-Person-Id header.

    The header is set by the upstream gateway after credential checks.
    Effective authorization is recomputed on every request so a removal
    takes effect immediately.
    """
    if not x_person_id:
        raise Unauthorized("Missing caller identity")
    person = db.get(Person, x_person_id)
    if person is None or person.soft_deleted:
        raise Unauthorized("Unknown caller identity")
    auth = AuthorizationService(db).get_effective_authorization(person.id)
    return Caller(person, auth)


def _status_filter(value: Optional[str]) -> Optional[MembershipStatus]:
    if not value or value == "ALL":
        return None
    try:
        return MembershipStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown membership status: {value!r}", field="status")


# Membership endpoints
@router.post("/memberships", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def apply_for_membership(body: MembershipApply, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """
    Apply for membership as the calling person.

    WILL REFUSE if:
    - The caller already holds an active membership
    - The caller already has a pending application
    - The caller was removed less than the cooldown period ago
    """
    sm = StateMachine(db)
    return sm.apply(
        caller.id,
        form_fields=body.model_dump(exclude={"reapplication_reason"}),
        reapplication_reason=body.reapplication_reason,
    )


@router.get("/memberships", response_model=List[MembershipResponse], responses=REFUSALS)
def list_memberships(
    status_filter: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """List memberships. REMOVED ones are hidden unless status_filter=REMOVED."""
    caller.require(Role.CLUB_MEMBER)
    return store.list_records(db, _status_filter(status_filter))


@router.get("/memberships/stats", response_model=Dict[str, int], responses=REFUSALS)
def membership_stats(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Count memberships per status."""
    caller.require(Role.CLUB_MEMBER)
    return store.status_counts(db)


@router.delete("/memberships/{membership_id}", response_model=WithdrawResponse, responses=REFUSALS)
def withdraw_application(membership_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Withdraw the caller's own pending application."""
    sm = StateMachine(db)
    sm.withdraw(membership_id, caller.id)
    return WithdrawResponse(deleted=True)


@router.patch("/memberships/{membership_id}/status", response_model=MembershipResponse, responses=REFUSALS)
def set_membership_status(
    membership_id: int,
    body: StatusChange,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """
    Approve, reject or pause a membership.
    A reason is required when rejecting.
    """
    caller.require(Role.CLUB_MEMBER)
    sm = StateMachine(db)
    return sm.set_status(membership_id, caller.id, body.status, reason=body.reason)


@router.post("/memberships/{membership_id}/remove", response_model=MembershipResponse, responses=REFUSALS)
def remove_member(membership_id: int, body: ReasonBody, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Remove a member. Opens a new removal cycle; a reason is required."""
    caller.require(Role.CLUB_MEMBER)
    sm = StateMachine(db)
    return sm.remove(membership_id, caller.id, body.reason)


@router.post("/memberships/{membership_id}/restore", response_model=MembershipResponse, responses=REFUSALS)
def restore_member(membership_id: int, body: ReasonBody, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Restore a removed member, closing the latest removal cycle."""
    caller.require(Role.CLUB_LEADER)
    sm = StateMachine(db)
    return sm.restore(membership_id, caller.id, body.reason)


@router.post("/memberships/{membership_id}/reset-cooldown", response_model=MembershipResponse, responses=REFUSALS)
def reset_cooldown(membership_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Allow a removed person to reapply immediately."""
    caller.require(Role.CLUB_LEADER)
    sm = StateMachine(db)
    return sm.reset_cooldown(membership_id, caller.id)


# Person-scoped reads
@router.get("/persons/{person_id}/membership", response_model=MembershipLookup, responses=REFUSALS)
def get_membership_for_person(person_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """The person's current membership: the most recently created record."""
    caller.require_self_or(person_id, Role.CLUB_MEMBER)
    record = store.latest_for_person(db, person_id)
    return MembershipLookup(
        has_membership=record is not None,
        membership=MembershipResponse.model_validate(record) if record is not None else None,
    )


@router.get("/persons/{person_id}/membership-history", response_model=List[MembershipResponse], responses=REFUSALS)
def get_membership_history(person_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Every membership record of the person, newest first, with removal history."""
    caller.require_self_or(person_id, Role.CLUB_MEMBER)
    return store.records_for_person(db, person_id)


@router.get("/persons/{person_id}/removal-status", response_model=RemovalStatusResponse, responses=REFUSALS)
def get_removal_status(person_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Details of the person's removal, if their current membership is REMOVED."""
    caller.require_self_or(person_id, Role.CLUB_MEMBER)
    record = store.latest_for_person(db, person_id)
    if record is None or record.status != MembershipStatus.REMOVED:
        return RemovalStatusResponse()
    return RemovalStatusResponse(removal_info=RemovalStatus(
        removed_at=record.removed_at,
        removal_reason=record.removal_reason_current,
        removed_by=record.removed_by,
    ))


@router.get("/persons/{person_id}/authorization", response_model=AuthorizationResponse, responses=REFUSALS)
def get_effective_authorization(person_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Effective role and landing area, recomputed from live membership status."""
    caller.require_self_or(person_id, Role.CLUB_MEMBER)
    person = IdentityStore(db).get_person(person_id)
    auth = AuthorizationService(db).get_effective_authorization(person.id)
    return AuthorizationResponse(
        person_id=person.id,
        assigned_role=person.assigned_role,
        effective_role=auth.effective_role,
        membership_status=auth.membership_status,
        should_redirect=auth.should_redirect,
        redirect_target=auth.redirect_target,
    )


# Identity administration
@router.get("/persons", response_model=List[PersonResponse], responses=REFUSALS)
def list_persons(role: List[str] = Query(...), caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Persons holding any of the given roles. Repeat ?role= for several."""
    caller.require(Role.CLUB_MEMBER)
    return IdentityStore(db).list_persons_by_role(role)


@router.get("/persons/deleted", response_model=List[PersonResponse], responses=REFUSALS)
def list_deleted_persons(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Soft-deleted persons, most recently deleted first."""
    caller.require(Role.CLUB_LEADER)
    return IdentityStore(db).list_deleted()


@router.patch("/persons/{person_id}/role", response_model=PersonResponse, responses=REFUSALS)
def change_person_role(person_id: str, body: RoleChange, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """
    Change a person's assigned role.

    WILL REFUSE if:
    - The caller targets their own account
    - The change would demote the last ADMIN or SUPER_ADMIN
    """
    caller.require(Role.ADMIN)
    return IdentityStore(db).change_role(person_id, body.role, caller.id)


@router.post("/persons/{person_id}/delete", response_model=PersonResponse, responses=REFUSALS)
def delete_person(person_id: str, body: ReasonBody, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Soft-delete a person and remove all of their memberships."""
    caller.require(Role.CLUB_LEADER)
    return IdentityStore(db).mark_deleted(person_id, caller.id, body.reason)


@router.post("/persons/{person_id}/restore", response_model=PersonResponse, responses=REFUSALS)
def restore_person(person_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Undo a soft deletion. Memberships stay REMOVED."""
    caller.require(Role.CLUB_LEADER)
    return IdentityStore(db).restore_person(person_id, caller.id)


# Presence endpoints
@router.post("/presence/heartbeat", status_code=status.HTTP_204_NO_CONTENT, responses=REFUSALS)
def heartbeat(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Mark the caller as active now."""
    PresenceTracker(db).heartbeat(caller.id, caller.auth.effective_role)


@router.delete("/presence", status_code=status.HTTP_204_NO_CONTENT, responses=REFUSALS)
def sign_off(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Drop the caller's presence entry (logout / tab close)."""
    PresenceTracker(db).sign_off(caller.id)


@router.get("/presence/counts", response_model=PresenceCountsResponse)
def get_presence_counts(db: Session = Depends(get_db)):
    """People active in the last couple of minutes, per role tier."""
    return PresenceTracker(db).get_presence_counts().as_dict()
