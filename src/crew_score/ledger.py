"""Achievement ledger: the single record of which badges a user has earned."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone

from crew_score.db import Database
from crew_score.errors import PersistenceFailure

logger = logging.getLogger(__name__)


@dataclass
class Achievement:
    user_id: str
    badge_id: str
    earned_at: datetime
    notified: bool

    @classmethod
    def from_row(cls, row: dict) -> Achievement:
        return cls(
            user_id=row["user_id"],
            badge_id=row["badge_id"],
            earned_at=datetime.fromisoformat(row["earned_at"]),
            notified=bool(row["notified"]),
        )


@dataclass
class AwardResult:
    badge_id: str
    was_new: bool


class AchievementLedger:
    """Idempotent (user, badge) records.

    award() is the only place a badge becomes earned; the row's existence is
    the idempotency guard, so repeated evaluation can never double-award.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def award(self, user_id: str, badge_id: str, earned_at: datetime | None = None) -> AwardResult:
        moment = earned_at or datetime.now(timezone.utc)
        try:
            was_new = self.db.insert_achievement(user_id, badge_id, moment.isoformat())
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not award {badge_id} to {user_id}: {exc}") from exc
        if was_new:
            logger.info("Badge %s awarded to %s", badge_id, user_id)
        return AwardResult(badge_id=badge_id, was_new=was_new)

    def has(self, user_id: str, badge_id: str) -> bool:
        return self.db.get_achievement(user_id, badge_id) is not None

    def get(self, user_id: str, badge_id: str) -> Achievement | None:
        row = self.db.get_achievement(user_id, badge_id)
        return Achievement.from_row(row) if row else None

    def all_for_user(self, user_id: str) -> list[Achievement]:
        return [Achievement.from_row(row) for row in self.db.get_achievements(user_id)]

    def earned_ids(self, user_id: str) -> set[str]:
        return {row["badge_id"] for row in self.db.get_achievements(user_id)}

    def unnotified(self, user_id: str) -> list[Achievement]:
        """Earned badges whose unlock has not been handed to the notification queue yet."""
        return [a for a in self.all_for_user(user_id) if not a.notified]

    def mark_notified(self, user_id: str, badge_id: str) -> None:
        try:
            self.db.mark_achievement_notified(user_id, badge_id)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not mark {badge_id} notified for {user_id}: {exc}") from exc

    def mark_all_notified(self, user_id: str, badge_ids: list[str]) -> None:
        """Mark several badges announced in one transaction: all or none."""
        try:
            with self.db.transaction():
                for badge_id in badge_ids:
                    self.db.mark_achievement_notified(user_id, badge_id)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not mark badges notified for {user_id}: {exc}") from exc

    def revoke(self, user_id: str, badge_id: str) -> bool:
        """Administrative removal of one badge. Bonus score already granted is kept."""
        removed = self.db.delete_achievement(user_id, badge_id)
        if removed:
            logger.warning("Badge %s revoked from %s", badge_id, user_id)
        return removed

    def reset(self, user_id: str) -> int:
        """Administrative reset: delete every achievement row for the user."""
        count = self.db.delete_achievements(user_id)
        logger.warning("Reset %d achievement(s) for %s", count, user_id)
        return count
