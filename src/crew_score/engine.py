"""The engagement pipeline: event -> score -> level -> badges -> notifications.

One call to EngagementEngine.process() is one unit of work for one user. Work
for the same user is serialized by a per-user lock; different users run
concurrently and only meet inside SQLite.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from crew_score.badges import BADGES, STATUS_FLAGS, BadgeDefinition, get_badge
from crew_score.config import EngineSettings
from crew_score.db import Database
from crew_score.errors import InvalidEvent, PersistenceFailure
from crew_score.evaluator import badge_progress, closest_badges, evaluate
from crew_score.events import ActivityEvent
from crew_score.ledger import AchievementLedger
from crew_score.levels import (
    LEVEL_TIERS,
    LevelTier,
    check_level_up,
    next_tier,
    progress_to_next_level,
    resolve,
    score_to_next_level,
)
from crew_score.notifications import (
    BadgeUnlocked,
    LevelUp,
    NotificationEvent,
    NotificationQueue,
    ScoreDelta,
    Toast,
)
from crew_score.scoring import DEFAULT_NEW_USER_DAYS, ScoreResult, calculate
from crew_score.stats import UserStatistics
from crew_score.store import ApplyResult, StatsStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

T = TypeVar("T")


@dataclass
class ProcessResult:
    """Outcome of one processed event."""

    user_id: str
    applied: bool  # False for a dedupe replay
    old_score: int
    new_score: int
    score_delta: int = 0
    level_up: tuple[LevelTier, LevelTier] | None = None
    badges: list[BadgeDefinition] = field(default_factory=list)
    notifications: list[NotificationEvent] = field(default_factory=list)


class EngagementEngine:
    """Owns no global state: everything it touches is handed in."""

    def __init__(
        self,
        store: StatsStore,
        ledger: AchievementLedger,
        queue: NotificationQueue,
        catalog: list[BadgeDefinition] | None = None,
        tiers: list[LevelTier] | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        new_user_days: int = DEFAULT_NEW_USER_DAYS,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.queue = queue
        self.catalog = catalog if catalog is not None else BADGES
        self.tiers = tiers if tiers is not None else LEVEL_TIERS
        self.max_retries = max(0, max_retries)
        self.new_user_days = new_user_days
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: EngineSettings, db: Database | None = None) -> EngagementEngine:
        db = db or Database(db_path=settings.db_path)
        return cls(
            store=StatsStore(db),
            ledger=AchievementLedger(db),
            queue=NotificationQueue(
                max_size=settings.queue_max_size,
                max_delivery_attempts=settings.max_delivery_attempts,
            ),
            tiers=settings.levels,
            max_retries=settings.max_retries,
            new_user_days=settings.new_user_days,
        )

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
        with lock:
            yield

    # -- pipeline --------------------------------------------------------------

    def process(self, event: ActivityEvent) -> ProcessResult:
        """Run one event through the whole pipeline.

        Raises InvalidEvent or InvariantViolation before anything is written.
        PersistenceFailure is retried up to max_retries; once the delta is
        committed, later failures are retried from the level step only.
        Notifications are queued under the user's lock but pushed to the sink
        after it is released, so a sink may safely call back into the engine.
        """
        try:
            with self._user_lock(event.user_id):
                before, result, outcome = self._with_retries(
                    event.user_id, "apply", lambda: self._apply(event)
                )
                return self._with_retries(
                    event.user_id,
                    "settle",
                    lambda: self._settle(event.user_id, before.score, result, outcome, event.dedupe_key),
                )
        finally:
            self.queue.flush(event.user_id)

    def ingest(self, raw: dict[str, Any]) -> ProcessResult | None:
        """Parse and process a raw event dict. Invalid events are logged and dropped."""
        try:
            event = ActivityEvent.from_dict(raw)
            return self.process(event)
        except InvalidEvent as exc:
            logger.warning("Dropped invalid event: %s", exc)
            return None

    def _with_retries(self, user_id: str, stage: str, step: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return step()
            except PersistenceFailure as exc:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error("Giving up on %s for %s after %d retries: %s", stage, user_id, self.max_retries, exc)
                    raise
                logger.warning("Retrying %s for %s (%d/%d): %s", stage, user_id, attempt, self.max_retries, exc)

    def _apply(self, event: ActivityEvent) -> tuple[UserStatistics, ScoreResult, ApplyResult]:
        before = self.store.read(event.user_id)
        try:
            result = calculate(event, before, self.new_user_days)
        except InvalidEvent as exc:
            logger.warning("Rejected %s event for %s: %s", event.kind.value, event.user_id, exc)
            raise
        outcome = self.store.apply(event.user_id, result.delta, dedupe_key=event.dedupe_key)
        if not outcome.applied:
            logger.debug("Event %s for %s already applied", event.dedupe_key, event.user_id)
        return before, result, outcome

    def _settle(
        self,
        user_id: str,
        old_score: int,
        result: ScoreResult | None,
        outcome: ApplyResult | None,
        dedupe_key: str | None = None,
    ) -> ProcessResult:
        """Level and badge stage, safe to repeat.

        Badges are awarded through the ledger, their bonuses credited once per
        badge, and every earned-but-unannounced badge is announced. A replayed
        event whose ScoreDelta or LevelUp never reached the queue gets them
        now. Nothing is enqueued until all writes have committed.
        """
        stats = self.store.read(user_id)

        for badge in evaluate(stats, self.ledger.earned_ids(user_id), self.catalog):
            self.ledger.award(user_id, badge.id)

        unlocked: list[BadgeDefinition] = []
        pending = {a.badge_id for a in self.ledger.unnotified(user_id)}
        for badge in self.catalog:
            if badge.id not in pending:
                continue
            pending.discard(badge.id)
            if badge.score_bonus > 0:
                stats = self.store.credit_bonus(user_id, badge.id, badge.score_bonus).stats
            unlocked.append(badge)
        for badge_id in sorted(pending):
            logger.warning("Achievement %s for %s is not in the catalog; not announced", badge_id, user_id)

        notifications: list[NotificationEvent] = []
        score_delta = 0
        announce_event = result is not None and outcome is not None and not outcome.announced
        if announce_event:
            score_delta = outcome.score_delta
            if score_delta > 0:
                notifications.append(ScoreDelta(score_delta, outcome.score_after, result.reason))
            if result.message:
                notifications.append(Toast(result.message, score_delta))
        level_up = check_level_up(min(stats.announced_score, old_score), stats.score, self.tiers)
        if level_up is not None:
            logger.info("%s reached %s", user_id, level_up[1].name)
            notifications.append(LevelUp(*level_up))
        notifications.extend(BadgeUnlocked(badge, badge.score_bonus) for badge in unlocked)

        try:
            with self.store.db.transaction():
                self.ledger.mark_all_notified(user_id, [badge.id for badge in unlocked])
                self.store.mark_announced(user_id, stats.score, dedupe_key if announce_event else None)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not record announcements for {user_id}: {exc}") from exc
        self.queue.enqueue_all(user_id, notifications, push=False)
        return ProcessResult(
            user_id=user_id,
            applied=outcome.applied if outcome is not None else False,
            old_score=old_score,
            new_score=stats.score,
            score_delta=score_delta,
            level_up=level_up,
            badges=unlocked,
            notifications=notifications,
        )

    # -- administration --------------------------------------------------------

    def grant(self, user_id: str, badge_id: str) -> ProcessResult:
        """Award a badge by hand (founder and campaign badges). Returns what was announced."""
        badge = get_badge(badge_id, self.catalog)
        if badge is None:
            raise ValueError(f"unknown badge: {badge_id}")
        try:
            with self._user_lock(user_id):
                old_score = self.store.read(user_id).score
                self.ledger.award(user_id, badge.id)
                if badge.id in STATUS_FLAGS:
                    self.store.set_flags(user_id, **{STATUS_FLAGS[badge.id]: True})
                return self._with_retries(
                    user_id, "grant", lambda: self._settle(user_id, old_score, None, None)
                )
        finally:
            self.queue.flush(user_id)

    def correct_score(self, user_id: str, amount: int, reason: str) -> UserStatistics:
        """Administrative correction. Never announced, may lower the level."""
        with self._user_lock(user_id):
            stats = self.store.correct_score(user_id, amount, reason)
            self.store.mark_announced(user_id, stats.score)
            return stats

    def revoke(self, user_id: str, badge_id: str) -> bool:
        """Remove one badge. A founder badge also loses its score multiplier."""
        with self._user_lock(user_id):
            removed = self.ledger.revoke(user_id, badge_id)
            if removed and badge_id in STATUS_FLAGS:
                self.store.set_flags(user_id, **{STATUS_FLAGS[badge_id]: False})
            return removed

    def reset_achievements(self, user_id: str) -> int:
        with self._user_lock(user_id):
            count = self.ledger.reset(user_id)
            self.store.set_flags(user_id, **{flag: False for flag in STATUS_FLAGS.values()})
            return count

    def sign_out(self, user_id: str) -> int:
        """Discard the user's undelivered notifications."""
        return self.queue.drop(user_id)

    # -- read side -------------------------------------------------------------

    def level_of(self, user_id: str) -> LevelTier:
        return resolve(self.store.read(user_id).score, self.tiers)

    def profile(self, user_id: str) -> dict[str, Any]:
        """Score, level, progress and earned badges in plain-dict form."""
        stats = self.store.read(user_id)
        tier = resolve(stats.score, self.tiers)
        upcoming = next_tier(tier, self.tiers)
        earned = self.ledger.earned_ids(user_id)
        statuses = badge_progress(stats, earned, self.catalog)
        return {
            "user_id": user_id,
            "score": stats.score,
            "level": tier.id,
            "level_name": tier.name,
            "level_color": tier.color,
            "next_level": upcoming.id if upcoming else None,
            "score_to_next_level": score_to_next_level(stats.score, self.tiers),
            "progress_to_next_level": round(progress_to_next_level(stats.score, self.tiers), 1),
            "current_streak": stats.current_streak,
            "longest_streak": stats.longest_streak,
            "badges_earned": len(earned),
            "badges_total": len(self.catalog),
            "badges": [s.definition.id for s in statuses if s.earned],
            "closest_badges": [
                {"id": s.definition.id, "name": s.definition.name, "progress": round(s.progress, 2)}
                for s in closest_badges(statuses)
            ],
            "corrections": self.store.corrections(user_id),
            "stats": stats.to_dict(),
        }

    def badges(self, user_id: str) -> list[dict[str, Any]]:
        """Every catalog badge with the user's progress."""
        stats = self.store.read(user_id)
        earned = {a.badge_id: a for a in self.ledger.all_for_user(user_id)}
        rows = []
        for status in badge_progress(stats, earned, self.catalog):
            badge = status.definition
            achievement = earned.get(badge.id)
            rows.append({
                "id": badge.id,
                "name": badge.name,
                "description": badge.description,
                "rarity": badge.rarity.value,
                "category": badge.category.value,
                "score_bonus": badge.score_bonus,
                "automated": badge.automated,
                "requirement": badge.requirement,
                "progress": round(status.progress, 4),
                "earned": status.earned,
                "earned_at": achievement.earned_at.isoformat() if achievement else None,
            })
        return rows

    def levels(self) -> list[dict[str, Any]]:
        return [
            {
                "id": tier.id,
                "name": tier.name,
                "min_score": tier.min_score,
                "description": tier.description,
                "benefits": list(tier.benefits),
                "color": tier.color,
            }
            for tier in self.tiers
        ]

    def close(self) -> None:
        self.store.db.close()
