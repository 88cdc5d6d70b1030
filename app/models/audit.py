"""
Internal audit logging model - NOT a user-facing domain object.

This model exists to provide immutable, append-only audit trails
for membership transitions, identity mutations and refusals.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON
from sqlalchemy.orm import Session
from app.database import Base


class AuditEvent(Base):
    """
    Immutable audit event for reconstructing who did what, and when.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - Records all transitions and refusals
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)  # e.g., "membership_removed"
    entity_type = Column(String, nullable=False)  # e.g., "MembershipRecord", "Person"
    entity_id = Column(String, nullable=False, index=True)  # ID of the entity being acted upon
    user_id = Column(String, nullable=True)  # Nullable for system events
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    payload_json = Column(JSON, nullable=True)  # Minimal contextual data


class AuditEventType:
    """Enumeration of audit event types."""
    # Membership lifecycle
    MEMBERSHIP_APPLIED = "membership_applied"
    MEMBERSHIP_REAPPLIED = "membership_reapplied"
    MEMBERSHIP_APPROVED = "membership_approved"
    MEMBERSHIP_REJECTED = "membership_rejected"
    MEMBERSHIP_INACTIVATED = "membership_inactivated"
    MEMBERSHIP_REMOVED = "membership_removed"
    MEMBERSHIP_RESTORED = "membership_restored"
    MEMBERSHIP_WITHDRAWN = "membership_withdrawn"
    COOLDOWN_RESET = "membership_cooldown_reset"

    # Refusal events
    TRANSITION_REFUSED = "membership_transition_refused"
    APPLICATION_REFUSED = "membership_application_refused"

    # Identity store
    PERSON_DELETED = "person_deleted"
    PERSON_RESTORED = "person_restored"
    PERSON_ROLE_CHANGED = "person_role_changed"


def write_audit(
    db: Session,
    event_type: str,
    entity_type: str,
    entity_id,
    user_id=None,
    payload=None,
) -> AuditEvent:
    """Stage an audit event on the session. The caller's commit persists it."""
    event = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        user_id=user_id,
        payload_json=payload,
    )
    db.add(event)
    return event
