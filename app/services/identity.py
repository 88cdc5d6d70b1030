"""
Identity store - person records, their assigned roles and soft deletion.

Credential material is opaque here; only whether it is present is tracked.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from app.models.audit import AuditEventType, write_audit
from app.models.domain import ActorSnapshot, Person
from app.models.enums import Role
from app.services.errors import Conflict, Forbidden, NotFound, ValidationError
from app.services.presence import PresenceTracker
from app.services.roles import coerce_role
from app.services.state_machine import StateMachine

logger = logging.getLogger(__name__)

DEFAULT_DELETION_REASON = "No reason given"


class IdentityStore:
    """Reads and administrative mutations of Person records."""

    def __init__(self, db: Session):
        self.db = db

    def get_person(self, person_id: str, include_deleted: bool = False) -> Person:
        person = self.db.get(Person, person_id)
        if person is None or (person.soft_deleted and not include_deleted):
            raise NotFound(f"Person {person_id} not found", entity="Person")
        return person

    def list_persons_by_role(self, roles: Iterable, include_deleted: bool = False) -> List[Person]:
        wanted = [self._role(r) for r in roles]
        query = self.db.query(Person).filter(Person.assigned_role.in_(wanted))
        if not include_deleted:
            query = query.filter(Person.soft_deleted.is_(False))
        return query.order_by(Person.display_name).all()

    def list_deleted(self) -> List[Person]:
        return self.db.query(Person).filter(
            Person.soft_deleted.is_(True)
        ).order_by(Person.deleted_at.desc()).all()

    def register_person(
        self,
        display_name: str,
        external_code: Optional[str] = None,
        email: Optional[str] = None,
        assigned_role=Role.STUDENT,
        credential_present: bool = False,
        person_id: Optional[str] = None,
    ) -> Person:
        name = (display_name or "").strip()
        if len(name) < 2 or len(name) > 100:
            raise ValidationError("display_name must be 2-100 characters", field="display_name")

        person = Person(
            display_name=name,
            external_code=external_code,
            email=email.strip().lower() if email else None,
            assigned_role=self._role(assigned_role),
            credential_present=credential_present,
        )
        if person_id is not None:
            person.id = person_id
        self.db.add(person)
        self.db.commit()
        self.db.refresh(person)
        logger.info("Registered person %s as %s", person.id, person.assigned_role.value)
        return person

    def change_role(self, person_id: str, new_role, actor_id: str) -> Person:
        person = self.get_person(person_id)
        actor = self.get_person(actor_id)
        if person.id == actor.id:
            raise Forbidden("You cannot change your own role")
        role = self._role(new_role)
        if person.assigned_role == role:
            return person

        self._guard_last_of_role(person, "demote")
        previous = person.assigned_role
        person.assigned_role = role
        write_audit(
            self.db,
            AuditEventType.PERSON_ROLE_CHANGED,
            "Person",
            person.id,
            user_id=actor.id,
            payload={"from_role": previous.value, "to_role": role.value},
        )
        self.db.commit()
        self.db.refresh(person)
        logger.info("Person %s role %s -> %s by %s", person.id, previous.value, role.value, actor.id)
        return person

    def mark_deleted(self, person_id: str, actor_id: str, reason: Optional[str] = None) -> Person:
        """
        Soft-delete a person and remove every membership they own.

        The membership side is idempotent: calling this again after a partial
        failure skips records that are already REMOVED and finishes the rest.

        Refusal invariants:
        - Nobody can delete their own account
        - The last ADMIN and the last SUPER_ADMIN cannot be deleted
        """
        person = self.get_person(person_id, include_deleted=True)
        actor = self.get_person(actor_id)
        if person.id == actor.id:
            raise Forbidden("You cannot delete your own account")

        cleaned = (reason or "").strip() or DEFAULT_DELETION_REASON
        if len(cleaned) > 500:
            raise ValidationError("reason must be at most 500 characters", field="reason")

        if not person.soft_deleted:
            self._guard_last_of_role(person, "delete")
            person.soft_deleted = True
            person.deleted_at = datetime.utcnow()
            person.deleted_by = ActorSnapshot.of(actor).as_json()
            person.deletion_reason = cleaned
            write_audit(
                self.db,
                AuditEventType.PERSON_DELETED,
                "Person",
                person.id,
                user_id=actor.id,
                payload={"reason": cleaned},
            )
            self.db.commit()
            logger.info("Person %s soft-deleted by %s", person.id, actor.id)

        removed = StateMachine(self.db).remove_all_for_person(person.id, actor.id, cleaned)
        if removed:
            logger.info("Removed %d membership record(s) of deleted person %s", removed, person.id)

        PresenceTracker(self.db).sign_off(person.id)
        self.db.refresh(person)
        return person

    def restore_person(self, person_id: str, actor_id: Optional[str] = None) -> Person:
        """
        Undo a soft deletion. Memberships stay REMOVED; restoring them is a
        separate, audited decision.
        """
        person = self.get_person(person_id, include_deleted=True)
        if not person.soft_deleted:
            raise Conflict(f"Person {person_id} is not deleted")

        person.soft_deleted = False
        person.deleted_at = None
        person.deleted_by = None
        person.deletion_reason = None
        write_audit(
            self.db,
            AuditEventType.PERSON_RESTORED,
            "Person",
            person.id,
            user_id=actor_id,
        )
        self.db.commit()
        self.db.refresh(person)
        logger.info("Person %s restored by %s", person.id, actor_id)
        return person

    def _guard_last_of_role(self, person: Person, action: str) -> None:
        if person.assigned_role not in (Role.ADMIN, Role.SUPER_ADMIN):
            return
        remaining = self.db.query(Person).filter(
            Person.assigned_role == person.assigned_role,
            Person.soft_deleted.is_(False),
        ).count()
        if remaining <= 1:
            raise Conflict(f"Cannot {action} the last {person.assigned_role.value} user")

    @staticmethod
    def _role(value) -> Role:
        role = coerce_role(value)
        if role is None:
            raise ValidationError(f"Unknown role: {value!r}", field="role")
        return role
