"""
Read-side queries over membership records.

A person may physically own several records (legacy rows, re-applications).
Whenever a single "current" record is needed it is chosen explicitly as the
most recent by created_at, ties broken by id. Nothing here relies on the
natural order of the underlying table.
"""
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.domain import MembershipRecord
from app.models.enums import MembershipStatus
from app.services.errors import NotFound


def _newest_first(query):
    return query.order_by(MembershipRecord.created_at.desc(), MembershipRecord.id.desc())


def get_record(db: Session, record_id: int) -> MembershipRecord:
    """
    Load a record fresh from the store.

    populate_existing discards any copy already held by the session, so
    status checks never run against a stale in-memory object.
    """
    record = db.get(MembershipRecord, record_id, populate_existing=True)
    if record is None:
        raise NotFound(f"Membership record {record_id} not found", entity="MembershipRecord")
    return record


def latest_for_person(db: Session, person_id: str) -> Optional[MembershipRecord]:
    return _newest_first(
        db.query(MembershipRecord).filter(MembershipRecord.person_id == person_id)
    ).first()


def records_for_person(db: Session, person_id: str) -> List[MembershipRecord]:
    return _newest_first(
        db.query(MembershipRecord).filter(MembershipRecord.person_id == person_id)
    ).all()


def find_with_status(
    db: Session,
    person_id: str,
    status: MembershipStatus,
    exclude_id: Optional[int] = None,
) -> Optional[MembershipRecord]:
    """Most recent record of ``person_id`` in ``status``, optionally skipping one record."""
    query = db.query(MembershipRecord).filter(
        MembershipRecord.person_id == person_id,
        MembershipRecord.status == status,
    )
    if exclude_id is not None:
        query = query.filter(MembershipRecord.id != exclude_id)
    return _newest_first(query).first()


def list_records(db: Session, status: Optional[MembershipStatus] = None) -> List[MembershipRecord]:
    """All records, newest first. REMOVED records are hidden unless asked for by status."""
    query = db.query(MembershipRecord)
    if status is None:
        query = query.filter(MembershipRecord.status != MembershipStatus.REMOVED)
    else:
        query = query.filter(MembershipRecord.status == status)
    return _newest_first(query).all()


def status_counts(db: Session) -> Dict[str, int]:
    """Number of records per status, plus a total."""
    rows = db.query(
        MembershipRecord.status,
        func.count(MembershipRecord.id)
    ).group_by(MembershipRecord.status).all()

    counts = {status.value: 0 for status in MembershipStatus}
    for status, count in rows:
        counts[status.value] = count
    counts["total"] = sum(counts.values())
    return counts
