"""Domain models - persons, their membership records, removal cycles and presence entries."""
from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    text,
)
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.enums import MembershipStatus, Role


class ActorSnapshot(BaseModel):
    """
    Denormalized copy of whoever performed an audited action.

    Stored as an embedded JSON value, never as a foreign key, so that history
    stays truthful after the actor's own account is deleted.
    """
    id: str
    display_name: str
    external_code: Optional[str] = None

    @classmethod
    def of(cls, person: "Person") -> "ActorSnapshot":
        return cls(id=person.id, display_name=person.display_name, external_code=person.external_code)

    def as_json(self) -> dict:
        return self.model_dump()


def _new_person_id() -> str:
    return uuid4().hex


class Person(Base):
    """
    A registered individual. Owned by the identity store.

    Invariants:
    - Never hard-deleted; soft_deleted marks removal by an administrator
    - deleted_at / deleted_by / deletion_reason are set iff soft_deleted
    """
    __tablename__ = "persons"

    id = Column(String(64), primary_key=True, default=_new_person_id)
    display_name = Column(String(100), nullable=False)
    external_code = Column(String(32), nullable=True, unique=True)  # e.g. student number
    email = Column(String(255), nullable=True, unique=True)
    assigned_role = Column(SQLEnum(Role), nullable=False, default=Role.STUDENT, index=True)
    credential_present = Column(Boolean, nullable=False, default=False)  # Credential material is held elsewhere

    soft_deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(JSON, nullable=True)  # ActorSnapshot
    deletion_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    memberships = relationship("MembershipRecord", back_populates="person")


class MembershipRecord(Base):
    """
    One person's standing in the club, evolving over time.

    Invariants:
    - REMOVED implies removed_at, removed_by and removal_reason_current are set
      and the top-level restoration fields are cleared
    - ACTIVE implies approval is stamped and rejection fields are cleared
    - REJECTED implies rejection is stamped and approval fields are cleared
    - At most one ACTIVE record per person (partial unique index below)
    - removal_history only grows; see RemovalCycle

    removal_reason_current belongs to the latest removal cycle only. It is
    replaced when a new cycle starts and survives restoration.
    """
    __tablename__ = "membership_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    person_id = Column(String(64), ForeignKey("persons.id"), nullable=False, index=True)
    status = Column(SQLEnum(MembershipStatus), nullable=False, default=MembershipStatus.PENDING, index=True)

    joined_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String(64), nullable=True)

    rejected_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(64), nullable=True)
    rejection_reason = Column(String(500), nullable=True)

    removed_at = Column(DateTime, nullable=True)
    removed_by = Column(JSON, nullable=True)  # ActorSnapshot
    removal_reason_current = Column(String(500), nullable=True)

    restored_at = Column(DateTime, nullable=True)
    restored_by = Column(JSON, nullable=True)  # ActorSnapshot
    restoration_reason = Column(String(500), nullable=True)

    is_reapplication = Column(Boolean, nullable=False, default=False)
    reapplication_at = Column(DateTime, nullable=True)
    reapplication_reason = Column(String(500), nullable=True)

    # Application form, opaque to the lifecycle
    motivation = Column(String(1000), nullable=True)
    experience = Column(String(1000), nullable=True)
    expectations = Column(String(1000), nullable=True)
    commitment = Column(String(1000), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic lock: every UPDATE is guarded by "WHERE version = <loaded>"
    version = Column(Integer, nullable=False)

    person = relationship("Person", back_populates="memberships")
    removal_history = relationship(
        "RemovalCycle",
        back_populates="membership",
        order_by="RemovalCycle.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_membership_one_active_per_person",
            "person_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_membership_person_created", "person_id", "created_at"),
    )

    @property
    def latest_cycle(self) -> Optional["RemovalCycle"]:
        return self.removal_history[-1] if self.removal_history else None


class RemovalCycle(Base):
    """
    One remove -> (optional) restore pair.

    Invariants:
    - Append-only: rows are never deleted or reordered
    - Only the latest cycle may receive restored_at / restored_by /
      restoration_reason, and only once
    - removal_reason may be NULL on records written before reasons were
      tracked per cycle; readers must not assume it is populated
    """
    __tablename__ = "removal_cycles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    membership_id = Column(Integer, ForeignKey("membership_records.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)  # 0-based order within the record

    removed_at = Column(DateTime, nullable=False)
    removed_by = Column(JSON, nullable=False)  # ActorSnapshot
    removal_reason = Column(String(500), nullable=True)

    restored_at = Column(DateTime, nullable=True)
    restored_by = Column(JSON, nullable=True)  # ActorSnapshot
    restoration_reason = Column(String(500), nullable=True)

    membership = relationship("MembershipRecord", back_populates="removal_history")

    __table_args__ = (
        Index("uq_removal_cycle_position", "membership_id", "position", unique=True),
    )

    @property
    def is_restored(self) -> bool:
        return self.restored_at is not None


class PresenceEntry(Base):
    """
    Liveness marker for one person. Upserted on every heartbeat, last write wins.
    """
    __tablename__ = "presence_entries"

    person_id = Column(String(64), primary_key=True)
    role = Column(String(32), nullable=False)  # Role at time of heartbeat
    last_active_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
