"""
Presence tracker - short-lived liveness signals for occupancy statistics.

Presence is telemetry, not business state: no operation here ever raises
into the caller. Store failures are logged and swallowed.

Stale rows are evicted opportunistically on the read path (with a
configurable probability) instead of by a background scheduler. Counting
only ever looks at the active window, so delayed eviction never skews
the numbers.
"""
import logging
import random
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.models.domain import PresenceEntry
from app.models.enums import RoleTier
from app.services.roles import tier_of

logger = logging.getLogger(__name__)


@dataclass
class PresenceCounts:
    """Distinct people active within the window, per role tier."""
    admin: int = 0
    officer: int = 0
    club_student: int = 0
    student: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class PresenceTracker:

    def __init__(
        self,
        db: Session,
        config: Optional[Settings] = None,
        chance: Callable[[], float] = random.random,
    ):
        self.db = db
        self.config = config or default_settings
        self._chance = chance

    @property
    def active_window(self) -> timedelta:
        return timedelta(seconds=self.config.presence_active_window_seconds)

    @property
    def retention(self) -> timedelta:
        return timedelta(seconds=self.config.presence_retention_seconds)

    def heartbeat(self, person_id: str, role) -> None:
        """Upsert the person's entry with last_active_at = now. Last write wins."""
        role_value = getattr(role, "value", role)
        try:
            entry = self.db.get(PresenceEntry, person_id)
            if entry is None:
                entry = PresenceEntry(person_id=person_id)
                self.db.add(entry)
            entry.role = role_value
            entry.last_active_at = datetime.utcnow()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Heartbeat for %s not recorded: %s", person_id, exc)

    def sign_off(self, person_id: str) -> None:
        try:
            self.db.query(PresenceEntry).filter(
                PresenceEntry.person_id == person_id
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Sign-off for %s not recorded: %s", person_id, exc)

    def count_active_by_role_tier(self, now: Optional[datetime] = None) -> PresenceCounts:
        """
        Count people seen within the active window, bucketed by role tier.

        Each person is counted at most once. Unknown roles are ignored.
        """
        cutoff = (now or datetime.utcnow()) - self.active_window
        try:
            rows = self.db.query(PresenceEntry.person_id, PresenceEntry.role).filter(
                PresenceEntry.last_active_at >= cutoff
            ).all()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Presence counts unavailable: %s", exc)
            return PresenceCounts()

        seen: Dict[RoleTier, Set[str]] = {tier: set() for tier in RoleTier}
        for person_id, role in rows:
            tier = tier_of(role)
            if tier is not None:
                seen[tier].add(person_id)

        return PresenceCounts(
            admin=len(seen[RoleTier.ADMIN]),
            officer=len(seen[RoleTier.OFFICER]),
            club_student=len(seen[RoleTier.CLUB_STUDENT]),
            student=len(seen[RoleTier.STUDENT]),
        )

    def evict_stale(self, now: Optional[datetime] = None) -> int:
        """Delete entries older than the retention window. Returns how many went."""
        cutoff = (now or datetime.utcnow()) - self.retention
        try:
            deleted = self.db.query(PresenceEntry).filter(
                PresenceEntry.last_active_at < cutoff
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Presence eviction failed: %s", exc)
            return 0
        if deleted:
            logger.debug("Evicted %d stale presence entries", deleted)
        return deleted

    def maybe_evict_stale(self) -> int:
        """Run evict_stale with the configured probability."""
        if self._chance() < self.config.presence_eviction_probability:
            return self.evict_stale()
        return 0

    def get_presence_counts(self) -> PresenceCounts:
        self.maybe_evict_stale()
        return self.count_active_by_role_tier()
