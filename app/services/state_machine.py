"""
State machine that enforces the membership lifecycle invariants.

This is the core enforcement mechanism - every status change of a
MembershipRecord MUST go through here.

Each transition re-reads the record, validates its current status, mutates it
and commits. The commit is a compare-and-set: MembershipRecord carries a
version counter, so the UPDATE only matches if nobody else changed the row
since it was read. Losing that race raises Conflict; nothing is retried.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import Settings, settings as default_settings
from app.models.audit import AuditEventType, write_audit
from app.models.domain import ActorSnapshot, MembershipRecord, Person, RemovalCycle
from app.models.enums import MembershipStatus
from app.services import membership_store as store
from app.services.errors import (
    AlreadyActive,
    AlreadyRemoved,
    ApplicationPending,
    Conflict,
    CooldownNotElapsed,
    DuplicateActiveMembership,
    Forbidden,
    InvalidTransition,
    MembershipError,
    NotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

FORM_FIELDS = ("motivation", "experience", "expectations", "commitment")
DEFAULT_REAPPLICATION_REASON = "Reapplied after addressing the removal"
DEFAULT_PAUSE_REASON = "Moved from REMOVED to INACTIVE by an administrator"


class StateMachine:
    """Enforces membership transitions and writes their audit trail."""

    def __init__(self, db: Session, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings

    @property
    def cooldown(self) -> timedelta:
        return timedelta(hours=self.config.cooldown_hours)

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply(
        self,
        person_id: str,
        form_fields: Optional[Dict[str, Optional[str]]] = None,
        reapplication_reason: Optional[str] = None,
    ) -> MembershipRecord:
        """
        Submit an application for ``person_id``.

        Refusal invariants:
        - A person holding an ACTIVE record cannot apply (AlreadyActive)
        - A person with a PENDING application cannot apply again (ApplicationPending)
        - A person whose latest record is REMOVED must wait out the cooldown
          measured from removed_at (CooldownNotElapsed)

        A fresh PENDING record is created in every case. When the latest
        record is REMOVED the new one is flagged as a reapplication; the
        removed record keeps its status and its removal history.
        """
        person = self._person(person_id)
        fields = self._clean_form(form_fields or {})

        if store.find_with_status(self.db, person.id, MembershipStatus.ACTIVE):
            self._refuse_application(
                person.id,
                AlreadyActive("Person already holds an active membership")
            )
        if store.find_with_status(self.db, person.id, MembershipStatus.PENDING):
            self._refuse_application(
                person.id,
                ApplicationPending("Person already has a pending membership application")
            )

        latest = store.latest_for_person(self.db, person.id)
        now = datetime.utcnow()

        removed = None
        if latest is not None and latest.status == MembershipStatus.REMOVED:
            remaining = self.cooldown_remaining(latest, now)
            if remaining > timedelta(0):
                hours = math.ceil(remaining.total_seconds() / 3600)
                self._refuse_application(
                    person.id,
                    CooldownNotElapsed(
                        f"Removed members must wait {self.config.cooldown_hours} hours before "
                        f"reapplying. {hours} hour(s) remaining.",
                        hours_remaining=hours,
                        membership_id=latest.id,
                    )
                )
            removed = latest

        record = MembershipRecord(
            person_id=person.id,
            status=MembershipStatus.PENDING,
            joined_at=now,
            is_reapplication=removed is not None,
            **fields
        )
        if removed is not None:
            record.reapplication_at = now
            record.reapplication_reason = self._clean_reapplication_reason(reapplication_reason)
        self.db.add(record)
        self.db.flush()

        if removed is None:
            write_audit(
                self.db,
                AuditEventType.MEMBERSHIP_APPLIED,
                "MembershipRecord",
                record.id,
                user_id=person.id,
                payload={"person_id": person.id},
            )
        else:
            write_audit(
                self.db,
                AuditEventType.MEMBERSHIP_REAPPLIED,
                "MembershipRecord",
                record.id,
                user_id=person.id,
                payload={
                    "person_id": person.id,
                    "removed_membership_id": removed.id,
                    "reapplication_reason": record.reapplication_reason,
                },
            )
        self._commit(record)
        if removed is None:
            logger.info("Membership %s: person %s applied", record.id, person.id)
        else:
            logger.info("Membership %s: person %s reapplied after removal of %s", record.id, person.id, removed.id)
        return record

    def cooldown_remaining(self, record: MembershipRecord, now: Optional[datetime] = None) -> timedelta:
        """Time left before a REMOVED record's owner may apply again. Never negative."""
        if record.removed_at is None:
            return timedelta(0)
        now = now or datetime.utcnow()
        remaining = record.removed_at + self.cooldown - now
        return max(remaining, timedelta(0))

    def withdraw(self, record_id: int, person_id: str) -> None:
        """
        Let an applicant take back their own PENDING application.

        The record is deleted. For a reapplication the earlier REMOVED
        record is untouched, so the removal history survives.
        """
        record = store.get_record(self.db, record_id)
        if record.person_id != person_id:
            raise Forbidden("You can only withdraw your own membership application")
        if record.status != MembershipStatus.PENDING:
            self._refuse(
                record,
                "withdraw",
                person_id,
                InvalidTransition(
                    f"Only PENDING applications can be withdrawn; this one is {record.status.value}",
                    current_status=record.status.value,
                )
            )

        write_audit(
            self.db,
            AuditEventType.MEMBERSHIP_WITHDRAWN,
            "MembershipRecord",
            record.id,
            user_id=person_id,
            payload={"reapplication": record.is_reapplication},
        )
        self.db.delete(record)
        self._commit()
        logger.info("Membership %s: application withdrawn and deleted", record_id)

    # ------------------------------------------------------------------
    # Administrative transitions
    # ------------------------------------------------------------------

    def approve(self, record_id: int, actor_id: str) -> MembershipRecord:
        """
        PENDING (or INACTIVE, as reinstatement) -> ACTIVE.

        Invariants:
        - approved_at / approved_by are stamped; rejection fields are cleared
        - Refused if the person already holds a different ACTIVE record
        """
        actor = self._actor(actor_id)
        record = store.get_record(self.db, record_id)
        if record.status not in (MembershipStatus.PENDING, MembershipStatus.INACTIVE):
            self._refuse(
                record,
                "approve",
                actor.id,
                InvalidTransition(
                    f"Only PENDING or INACTIVE memberships can be approved; this one is {record.status.value}",
                    current_status=record.status.value,
                )
            )
        self._ensure_no_other_active(record, "approve", actor.id)

        from_status = record.status
        record.status = MembershipStatus.ACTIVE
        record.approved_at = datetime.utcnow()
        record.approved_by = actor.id
        self._clear_rejection(record)

        self._audit_transition(record, AuditEventType.MEMBERSHIP_APPROVED, actor, from_status)
        self._commit(record)
        logger.info("Membership %s approved by %s", record.id, actor.id)
        return record

    def reject(self, record_id: int, actor_id: str, reason: str) -> MembershipRecord:
        """
        PENDING -> REJECTED.

        Invariants:
        - A non-empty reason of at most 500 characters is required
        - rejected_at / rejected_by / rejection_reason are stamped; approval fields are cleared
        """
        reason = self._clean_reason(reason)
        actor = self._actor(actor_id)
        record = store.get_record(self.db, record_id)
        if record.status != MembershipStatus.PENDING:
            self._refuse(
                record,
                "reject",
                actor.id,
                InvalidTransition(
                    f"Only PENDING memberships can be rejected; this one is {record.status.value}",
                    current_status=record.status.value,
                )
            )

        from_status = record.status
        record.status = MembershipStatus.REJECTED
        record.rejected_at = datetime.utcnow()
        record.rejected_by = actor.id
        record.rejection_reason = reason
        self._clear_approval(record)

        self._audit_transition(record, AuditEventType.MEMBERSHIP_REJECTED, actor, from_status, reason=reason)
        self._commit(record)
        logger.info("Membership %s rejected by %s", record.id, actor.id)
        return record

    def set_inactive(self, record_id: int, actor_id: str, reason: Optional[str] = None) -> MembershipRecord:
        """
        Administrative pause from any status.

        No cycle is ever added to or dropped from removal_history. Pausing a
        REMOVED record does end its removal, so the latest cycle and the
        top-level restoration fields are stamped the way restore does it,
        with ``reason`` or a default text. An approve from INACTIVE then
        never yields an ACTIVE record with an open removal cycle.
        """
        actor = self._actor(actor_id)
        if reason is not None and reason.strip():
            reason = self._clean_reason(reason)
        else:
            reason = None
        record = store.get_record(self.db, record_id)

        from_status = record.status
        if from_status == MembershipStatus.REMOVED:
            self._close_removal(record, actor, reason or DEFAULT_PAUSE_REASON, datetime.utcnow())
        record.status = MembershipStatus.INACTIVE
        self._clear_approval(record)
        self._clear_rejection(record)

        self._audit_transition(record, AuditEventType.MEMBERSHIP_INACTIVATED, actor, from_status, reason=reason)
        self._commit(record)
        logger.info("Membership %s set INACTIVE by %s (was %s)", record.id, actor.id, from_status.value)
        return record

    def set_status(
        self,
        record_id: int,
        actor_id: str,
        status,
        reason: Optional[str] = None,
    ) -> MembershipRecord:
        """
        Generic status change used by the officer console.

        Only ACTIVE, REJECTED and INACTIVE can be set this way. Removal and
        restoration have their own operations because they need a reason and
        touch the removal history.
        """
        try:
            target = MembershipStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown membership status: {status!r}", field="status")

        if target == MembershipStatus.ACTIVE:
            return self.approve(record_id, actor_id)
        if target == MembershipStatus.REJECTED:
            return self.reject(record_id, actor_id, reason)
        if target == MembershipStatus.INACTIVE:
            return self.set_inactive(record_id, actor_id, reason)
        raise ValidationError(
            f"Status {target.value} cannot be set directly; use the dedicated operation",
            field="status",
        )

    def remove(self, record_id: int, actor_id: str, reason: str) -> MembershipRecord:
        """
        Force a member out, opening a new removal cycle.

        Invariants:
        - A non-empty reason is required
        - Refused with AlreadyRemoved if the record is already REMOVED
        - A RemovalCycle is appended to removal_history
        - removed_at / removed_by / removal_reason_current describe the new cycle;
          restoration fields from the previous cycle are cleared
        """
        reason = self._clean_reason(reason)
        actor = self._actor(actor_id)
        record = store.get_record(self.db, record_id)
        if record.status == MembershipStatus.REMOVED:
            self._refuse(
                record,
                "remove",
                actor.id,
                AlreadyRemoved(
                    "Membership is already REMOVED",
                    current_status=record.status.value,
                )
            )

        now = datetime.utcnow()
        snapshot = ActorSnapshot.of(actor).as_json()
        from_status = record.status

        record.removal_history.append(RemovalCycle(
            position=len(record.removal_history),
            removed_at=now,
            removed_by=snapshot,
            removal_reason=reason,
        ))
        record.status = MembershipStatus.REMOVED
        record.removed_at = now
        record.removed_by = snapshot
        record.removal_reason_current = reason
        self._clear_restoration(record)

        self._audit_transition(record, AuditEventType.MEMBERSHIP_REMOVED, actor, from_status, reason=reason)
        self._commit(record)
        logger.info("Membership %s removed by %s", record.id, actor.id)
        return record

    def restore(self, record_id: int, actor_id: str, reason: str) -> MembershipRecord:
        """
        REMOVED -> ACTIVE, closing the latest removal cycle.

        Invariants:
        - A non-empty reason is required
        - Refused with DuplicateActiveMembership if the person already holds another ACTIVE record
        - The latest RemovalCycle receives restored_at / restored_by / restoration_reason
          exactly once; earlier cycles are never touched
        - removal_reason_current is preserved
        """
        reason = self._clean_reason(reason)
        actor = self._actor(actor_id)
        record = store.get_record(self.db, record_id)
        if record.status != MembershipStatus.REMOVED:
            self._refuse(
                record,
                "restore",
                actor.id,
                InvalidTransition(
                    f"Only REMOVED memberships can be restored; this one is {record.status.value}",
                    current_status=record.status.value,
                )
            )
        self._ensure_no_other_active(record, "restore", actor.id)

        now = datetime.utcnow()
        self._close_removal(record, actor, reason, now)
        record.status = MembershipStatus.ACTIVE
        if record.approved_at is None:
            record.approved_at = now
            record.approved_by = actor.id
        self._clear_rejection(record)

        self._audit_transition(
            record, AuditEventType.MEMBERSHIP_RESTORED, actor, MembershipStatus.REMOVED, reason=reason
        )
        self._commit(record)
        logger.info("Membership %s restored by %s", record.id, actor.id)
        return record

    def reset_cooldown(self, record_id: int, actor_id: str) -> MembershipRecord:
        """
        Let a removed person reapply immediately.

        Back-dates removed_at to twice the cooldown ago. Status and removal
        history are left alone.
        """
        actor = self._actor(actor_id)
        record = store.get_record(self.db, record_id)
        if record.status != MembershipStatus.REMOVED:
            self._refuse(
                record,
                "reset_cooldown",
                actor.id,
                InvalidTransition(
                    f"Cooldown can only be reset on REMOVED memberships; this one is {record.status.value}",
                    current_status=record.status.value,
                )
            )

        previous = record.removed_at
        record.removed_at = datetime.utcnow() - 2 * self.cooldown

        write_audit(
            self.db,
            AuditEventType.COOLDOWN_RESET,
            "MembershipRecord",
            record.id,
            user_id=actor.id,
            payload={
                "previous_removed_at": previous.isoformat() if previous else None,
                "new_removed_at": record.removed_at.isoformat(),
            },
        )
        self._commit(record)
        logger.info("Membership %s: cooldown reset by %s", record.id, actor.id)
        return record

    def remove_all_for_person(self, person_id: str, actor_id: str, reason: str) -> int:
        """
        Remove every record of ``person_id`` that is not already REMOVED.

        Safe to call again after a partial failure: records removed on an
        earlier attempt are skipped. Returns how many records were removed now.
        """
        removed = 0
        for record in store.records_for_person(self.db, person_id):
            if record.status == MembershipStatus.REMOVED:
                continue
            try:
                self.remove(record.id, actor_id, reason)
            except AlreadyRemoved:
                continue
            removed += 1
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _person(self, person_id: str) -> Person:
        person = self.db.get(Person, person_id)
        if person is None or person.soft_deleted:
            raise NotFound(f"Person {person_id} not found", entity="Person")
        return person

    def _actor(self, actor_id: str) -> Person:
        actor = self.db.get(Person, actor_id)
        if actor is None:
            raise NotFound(f"Acting person {actor_id} not found", entity="Person")
        if actor.soft_deleted:
            raise Forbidden(f"Acting person {actor_id} has been deleted")
        return actor

    def _clean_reason(self, reason: Optional[str], field: str = "reason") -> str:
        cleaned = (reason or "").strip()
        if not cleaned:
            raise ValidationError(f"{field} is required", field=field)
        if len(cleaned) > self.config.reason_max_length:
            raise ValidationError(
                f"{field} must be at most {self.config.reason_max_length} characters",
                field=field,
            )
        return cleaned

    def _clean_reapplication_reason(self, reason: Optional[str]) -> str:
        cleaned = (reason or "").strip() or DEFAULT_REAPPLICATION_REASON
        if len(cleaned) > self.config.reason_max_length:
            raise ValidationError(
                f"reapplication_reason must be at most {self.config.reason_max_length} characters",
                field="reapplication_reason",
            )
        return cleaned

    def _clean_form(self, form_fields: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        cleaned = {}
        for name in FORM_FIELDS:
            value = form_fields.get(name)
            if value is not None:
                value = value.strip()
                if len(value) > self.config.form_field_max_length:
                    raise ValidationError(
                        f"{name} must be at most {self.config.form_field_max_length} characters",
                        field=name,
                    )
            cleaned[name] = value
        return cleaned

    def _ensure_no_other_active(self, record: MembershipRecord, operation: str, actor_id: str) -> None:
        other = store.find_with_status(
            self.db, record.person_id, MembershipStatus.ACTIVE, exclude_id=record.id
        )
        if other is not None:
            self._refuse(
                record,
                operation,
                actor_id,
                DuplicateActiveMembership(
                    "Person already holds another active membership",
                    active_membership_id=other.id,
                )
            )

    @staticmethod
    def _close_removal(record: MembershipRecord, actor: Person, reason: str, now: datetime) -> None:
        """Stamp restoration on the latest cycle (once) and on the record itself."""
        snapshot = ActorSnapshot.of(actor).as_json()
        cycle = record.latest_cycle
        # Records removed before per-cycle history existed have no cycle to close
        if cycle is not None and not cycle.is_restored:
            cycle.restored_at = now
            cycle.restored_by = snapshot
            cycle.restoration_reason = reason
        record.restored_at = now
        record.restored_by = snapshot
        record.restoration_reason = reason

    @staticmethod
    def _clear_approval(record: MembershipRecord) -> None:
        record.approved_at = None
        record.approved_by = None

    @staticmethod
    def _clear_rejection(record: MembershipRecord) -> None:
        record.rejected_at = None
        record.rejected_by = None
        record.rejection_reason = None

    @staticmethod
    def _clear_restoration(record: MembershipRecord) -> None:
        record.restored_at = None
        record.restored_by = None
        record.restoration_reason = None

    def _audit_transition(
        self,
        record: MembershipRecord,
        event_type: str,
        actor: Person,
        from_status: MembershipStatus,
        reason: Optional[str] = None,
    ) -> None:
        payload = {
            "person_id": record.person_id,
            "from_status": from_status.value,
            "to_status": record.status.value,
        }
        if reason is not None:
            payload["reason"] = reason
        write_audit(self.db, event_type, "MembershipRecord", record.id, user_id=actor.id, payload=payload)

    def _refuse(self, record: MembershipRecord, operation: str, actor_id: str, error: MembershipError) -> None:
        """Log the refusal immutably, then raise it."""
        record_id = record.id
        self.db.rollback()
        write_audit(
            self.db,
            AuditEventType.TRANSITION_REFUSED,
            "MembershipRecord",
            record_id,
            user_id=actor_id,
            payload={"operation": operation, "kind": error.kind, "message": error.message},
        )
        self.db.commit()
        logger.warning("Membership %s: %s refused (%s)", record_id, operation, error.kind)
        raise error

    def _refuse_application(self, person_id: str, error: MembershipError) -> None:
        self.db.rollback()
        write_audit(
            self.db,
            AuditEventType.APPLICATION_REFUSED,
            "Person",
            person_id,
            user_id=person_id,
            payload={"kind": error.kind, "message": error.message},
        )
        self.db.commit()
        logger.warning("Application by %s refused (%s)", person_id, error.kind)
        raise error

    def _commit(self, record: Optional[MembershipRecord] = None) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise Conflict("Membership was modified concurrently; reload and try again")
        except IntegrityError:
            self.db.rollback()
            raise DuplicateActiveMembership("Person already holds another active membership")
        if record is not None:
            self.db.refresh(record)
