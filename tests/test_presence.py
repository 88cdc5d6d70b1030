"""Tests for the presence tracker."""
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from app.models.domain import PresenceEntry
from app.models.enums import Role
from app.services.presence import PresenceCounts, PresenceTracker


def seen_minutes_ago(db_session, person_id, role, minutes):
    db_session.merge(PresenceEntry(
        person_id=person_id,
        role=role.value,
        last_active_at=datetime.utcnow() - timedelta(minutes=minutes),
    ))
    db_session.commit()


class TestCounting:

    def test_stale_entry_excluded_then_evicted(self, db_session):
        """
        SCENARIO F: three fresh student heartbeats plus one ten minutes old.
        Only the fresh ones count, and eviction drops the old one.
        """
        tracker = PresenceTracker(db_session)
        for person_id in ("s1", "s2", "s3"):
            tracker.heartbeat(person_id, Role.STUDENT)
        seen_minutes_ago(db_session, "s4", Role.STUDENT, 10)

        counts = tracker.count_active_by_role_tier()
        assert counts.student == 3

        assert tracker.evict_stale() == 1
        assert db_session.get(PresenceEntry, "s4") is None
        assert db_session.query(PresenceEntry).count() == 3

    def test_counts_by_tier(self, db_session):
        tracker = PresenceTracker(db_session)
        tracker.heartbeat("a1", Role.SUPER_ADMIN)
        tracker.heartbeat("a2", Role.CLUB_LEADER)
        tracker.heartbeat("o1", Role.CLUB_DEPUTY)
        tracker.heartbeat("c1", Role.CLUB_STUDENT)
        tracker.heartbeat("s1", "STUDENT")
        tracker.heartbeat("x1", "OFFICER")

        assert tracker.count_active_by_role_tier() == PresenceCounts(
            admin=2, officer=1, club_student=1, student=1
        )

    def test_heartbeat_is_last_write_wins(self, db_session):
        tracker = PresenceTracker(db_session)
        tracker.heartbeat("p1", Role.CLUB_MEMBER)
        tracker.heartbeat("p1", Role.STUDENT)

        assert db_session.query(PresenceEntry).count() == 1
        counts = tracker.count_active_by_role_tier()
        assert counts.officer == 0
        assert counts.student == 1

    def test_entry_between_windows_is_kept_but_not_counted(self, db_session):
        tracker = PresenceTracker(db_session)
        seen_minutes_ago(db_session, "p1", Role.STUDENT, 3)

        assert tracker.count_active_by_role_tier().student == 0
        assert tracker.evict_stale() == 0

    def test_sign_off_removes_entry(self, db_session):
        tracker = PresenceTracker(db_session)
        tracker.heartbeat("p1", Role.STUDENT)
        tracker.sign_off("p1")

        assert tracker.count_active_by_role_tier().student == 0


class TestOpportunisticEviction:

    def test_evicts_when_chance_hits(self, db_session):
        seen_minutes_ago(db_session, "old", Role.STUDENT, 10)
        tracker = PresenceTracker(db_session, chance=lambda: 0.0)

        tracker.get_presence_counts()

        assert db_session.get(PresenceEntry, "old") is None

    def test_skips_when_chance_misses(self, db_session):
        seen_minutes_ago(db_session, "old", Role.STUDENT, 10)
        tracker = PresenceTracker(db_session, chance=lambda: 0.99)

        tracker.get_presence_counts()

        assert db_session.get(PresenceEntry, "old") is not None


class BrokenSession:
    """Stands in for a session whose database has gone away."""

    def __getattr__(self, name):
        if name == "rollback":
            return lambda: None

        def fail(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        return fail


class TestFailuresAreSwallowed:

    def test_tracker_never_raises(self, caplog):
        tracker = PresenceTracker(BrokenSession(), chance=lambda: 0.0)

        tracker.heartbeat("p1", Role.STUDENT)
        tracker.sign_off("p1")
        assert tracker.evict_stale() == 0
        assert tracker.get_presence_counts() == PresenceCounts()

        assert "Heartbeat for p1 not recorded" in caplog.text
