"""
Effective authorization - what a person may actually do right now.

The assigned role on the Person is static. The membership record is live:
a REMOVED member loses every privilege immediately, whatever their assigned
role says. Nothing is cached; every check reloads both inputs.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.models.domain import MembershipRecord, Person
from app.models.enums import MembershipStatus, Role
from app.services import membership_store as store
from app.services.errors import Forbidden, NotFound, ValidationError
from app.services.roles import at_least, coerce_role, is_officer_tier

STUDENT_AREA = "/student/dashboard"
OFFICER_AREA = "/officer/dashboard"


@dataclass(frozen=True)
class EffectiveAuthorization:
    effective_role: Role
    should_redirect: bool = False
    redirect_target: Optional[str] = None
    membership_status: Optional[MembershipStatus] = None

    def require(self, minimum: Role) -> None:
        """Raise Forbidden unless the effective role reaches ``minimum``."""
        if not at_least(self.effective_role, minimum):
            raise Forbidden(
                f"Requires {minimum.value} or higher; effective role is {self.effective_role.value}",
                required_role=minimum.value,
                effective_role=self.effective_role.value,
            )


def resolve(assigned_role, membership: Optional[MembershipRecord]) -> EffectiveAuthorization:
    """
    Combine the assigned role with the latest membership record.

    Rules, first match wins:
    - no record: assigned role, no redirect
    - REMOVED: forced down to STUDENT, sent to the student area
    - ACTIVE officer: assigned role, sent to the officer area
    - ACTIVE club student: assigned role, sent to the student area
    - anything else: assigned role, no redirect

    An assigned role that is not on the ladder is a ValidationError.
    """
    role = coerce_role(assigned_role)
    if role is None:
        raise ValidationError(f"Unknown assigned role: {assigned_role!r}", field="assigned_role")

    if membership is None:
        return EffectiveAuthorization(effective_role=role)

    status = membership.status
    if status == MembershipStatus.REMOVED:
        return EffectiveAuthorization(
            effective_role=Role.STUDENT,
            should_redirect=True,
            redirect_target=STUDENT_AREA,
            membership_status=status,
        )
    if status == MembershipStatus.ACTIVE and is_officer_tier(role):
        return EffectiveAuthorization(
            effective_role=role,
            should_redirect=True,
            redirect_target=OFFICER_AREA,
            membership_status=status,
        )
    if status == MembershipStatus.ACTIVE and role == Role.CLUB_STUDENT:
        return EffectiveAuthorization(
            effective_role=role,
            should_redirect=True,
            redirect_target=STUDENT_AREA,
            membership_status=status,
        )
    return EffectiveAuthorization(effective_role=role, membership_status=status)


class AuthorizationService:
    """Loads the inputs for ``resolve`` fresh on every call."""

    def __init__(self, db: Session):
        self.db = db

    def get_effective_authorization(self, person_id: str) -> EffectiveAuthorization:
        person = self.db.get(Person, person_id, populate_existing=True)
        if person is None or person.soft_deleted:
            raise NotFound(f"Person {person_id} not found", entity="Person")
        return resolve(person.assigned_role, store.latest_for_person(self.db, person.id))

    def require(self, person_id: str, minimum: Role) -> EffectiveAuthorization:
        """Load the person's effective authorization and check it against ``minimum``."""
        auth = self.get_effective_authorization(person_id)
        auth.require(minimum)
        return auth
