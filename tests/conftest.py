"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models.audit import AuditEvent
from app.models.domain import Person, MembershipRecord, RemovalCycle, PresenceEntry
from app.models.enums import Role
from app.services.identity import IdentityStore
from app.services.state_machine import StateMachine


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    # StaticPool keeps one connection so the API test client's threads see the same data
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def make_person(db_session):
    """Factory for registered persons."""
    counter = {"n": 0}

    def _make(role=Role.STUDENT, name=None):
        counter["n"] += 1
        n = counter["n"]
        return IdentityStore(db_session).register_person(
            display_name=name or f"Person {n}",
            external_code=f"21248020{n:05d}",
            assigned_role=role,
            credential_present=True,
        )

    return _make


@pytest.fixture
def student(make_person):
    return make_person(Role.STUDENT, "Nguyen Van An")


@pytest.fixture
def officer(make_person):
    return make_person(Role.CLUB_MEMBER, "Tran Thi Binh")


@pytest.fixture
def leader(make_person):
    return make_person(Role.CLUB_LEADER, "Le Van Cuong")


@pytest.fixture
def sm(db_session):
    return StateMachine(db_session)


@pytest.fixture
def pending_record(sm, student):
    """A fresh PENDING application by the student."""
    return sm.apply(student.id, {"motivation": "I want to volunteer"})


@pytest.fixture
def active_record(sm, pending_record, officer):
    return sm.approve(pending_record.id, officer.id)


@pytest.fixture
def backdate_removal(db_session):
    """Move a record's removed_at into the past, as if time had passed."""
    def _backdate(record, hours):
        record.removed_at = datetime.utcnow() - timedelta(hours=hours)
        db_session.commit()
        db_session.refresh(record)
        return record

    return _backdate
