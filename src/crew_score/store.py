"""Stats Store: the only writer of per-user statistics."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from crew_score.db import Database
from crew_score.errors import InvariantViolation, PersistenceFailure
from crew_score.stats import (
    AGGREGATES,
    KEYED_COUNTERS,
    SCALAR_COUNTERS,
    StatisticsDelta,
    UserStatistics,
)

logger = logging.getLogger(__name__)

_DATETIME_AGGREGATES = frozenset({"last_check_in_at"})


@dataclass
class ApplyResult:
    stats: UserStatistics
    applied: bool  # False when the dedupe key had already been recorded
    score_delta: int = 0
    score_after: int = 0
    announced: bool = False  # the queue already has this event's ScoreDelta


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _encode_aggregate(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return json.dumps(value.isoformat())
    return json.dumps(value)


def _decode_aggregate(name: str, raw: str | None) -> Any:
    if raw is None:
        return None
    value = json.loads(raw)
    if name in _DATETIME_AGGREGATES and value is not None:
        return datetime.fromisoformat(value)
    return value


def _check_names(delta: StatisticsDelta) -> None:
    for name in delta.increments:
        if name not in SCALAR_COUNTERS:
            raise ValueError(f"unknown counter: {name}")
    for name in delta.keyed_increments:
        if name not in KEYED_COUNTERS:
            raise ValueError(f"unknown keyed counter: {name}")
    for name in delta.sets:
        if name not in AGGREGATES:
            raise ValueError(f"unknown aggregate: {name}")


class StatsStore:
    """Reads and atomically updates UserStatistics in SQLite.

    Every update uses per-field increments inside one transaction, so two
    concurrent deltas for the same user can never lose an increment.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def read(self, user_id: str) -> UserStatistics:
        """Return the user's statistics, creating all-zero defaults on first use."""
        try:
            self.db.ensure_user(user_id, _utcnow().isoformat())
            return self._load(user_id)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not read statistics for {user_id}: {exc}") from exc

    def apply(
        self,
        user_id: str,
        delta: StatisticsDelta,
        dedupe_key: str | None = None,
        allow_score_decrease: bool = False,
    ) -> ApplyResult:
        """Apply delta atomically and return the statistics after the update.

        A dedupe_key already recorded for this user makes the call a no-op.
        Raises InvariantViolation (nothing written) if a counter or the score
        would end up negative, PersistenceFailure on storage errors.
        """
        now = _utcnow().isoformat()
        try:
            with self.db.transaction():
                self.db.ensure_user(user_id, now)
                if dedupe_key is not None and not self.db.record_dedupe_key(user_id, dedupe_key, now):
                    logger.debug("Replay of %s for %s ignored", dedupe_key, user_id)
                    row = self.db.get_applied_event(user_id, dedupe_key)
                    return ApplyResult(
                        stats=self._load(user_id),
                        applied=False,
                        score_delta=row["score_delta"],
                        score_after=row["score_after"],
                        announced=bool(row["announced"]),
                    )
                self._write(user_id, delta, now, allow_score_decrease)
                stats = self._load(user_id)
                if dedupe_key is not None:
                    self.db.set_event_outcome(user_id, dedupe_key, delta.score, stats.score)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not apply delta for {user_id}: {exc}") from exc
        return ApplyResult(stats=stats, applied=True, score_delta=delta.score, score_after=stats.score)

    def apply_delta(
        self, user_id: str, delta: StatisticsDelta, dedupe_key: str | None = None
    ) -> UserStatistics:
        return self.apply(user_id, delta, dedupe_key).stats

    def credit_bonus(self, user_id: str, badge_id: str, amount: int) -> ApplyResult:
        """Add a badge's score bonus at most once per (user, badge), even across revokes."""
        now = _utcnow().isoformat()
        try:
            with self.db.transaction():
                self.db.ensure_user(user_id, now)
                if not self.db.record_bonus_credit(user_id, badge_id, now):
                    return ApplyResult(stats=self._load(user_id), applied=False)
                self._write(user_id, StatisticsDelta(score=amount), now, allow_score_decrease=False)
                stats = self._load(user_id)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not credit {badge_id} bonus to {user_id}: {exc}") from exc
        logger.info("Credited %d for %s to %s", amount, badge_id, user_id)
        return ApplyResult(stats=stats, applied=True, score_delta=amount, score_after=stats.score)

    def mark_announced(self, user_id: str, score: int, dedupe_key: str | None = None) -> None:
        """Record that level-ups up to score, and the keyed event's ScoreDelta, are queued."""
        try:
            with self.db.transaction():
                self.db.set_aggregate(user_id, "announced_score", _encode_aggregate(score))
                if dedupe_key is not None:
                    self.db.mark_event_announced(user_id, dedupe_key)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not record announcements for {user_id}: {exc}") from exc

    def set_flags(self, user_id: str, **flags: bool) -> UserStatistics:
        """Set status flags such as is_founding_crew."""
        delta = StatisticsDelta()
        for name, value in flags.items():
            delta.set(name, value)
        return self.apply(user_id, delta).stats

    def corrections(self, user_id: str) -> list[dict]:
        """Audit trail of administrative score corrections, oldest first."""
        try:
            return self.db.get_corrections(user_id)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not read corrections for {user_id}: {exc}") from exc

    def correct_score(self, user_id: str, amount: int, reason: str) -> UserStatistics:
        """Administrative score correction. May decrease the score, never below zero."""
        current = self.read(user_id).score
        if current + amount < 0:
            amount = -current
        delta = StatisticsDelta(score=amount)
        result = self.apply(user_id, delta, allow_score_decrease=True)
        try:
            self.db.record_correction(user_id, amount, reason, _utcnow().isoformat())
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not record correction for {user_id}: {exc}") from exc
        logger.warning("Score for %s corrected by %+d: %s", user_id, amount, reason)
        return result.stats

    def _write(self, user_id: str, delta: StatisticsDelta, now: str, allow_score_decrease: bool) -> None:
        _check_names(delta)
        if delta.score < 0 and not allow_score_decrease:
            raise InvariantViolation(f"score delta must be non-negative, got {delta.score}")

        for name, amount in delta.increments.items():
            if self.db.increment_counter(user_id, name, amount) < 0:
                raise InvariantViolation(f"{name} would become negative")
        for name, bucket in delta.keyed_increments.items():
            for key, amount in bucket.items():
                if self.db.increment_counter(user_id, name, amount, key=key) < 0:
                    raise InvariantViolation(f"{name}[{key}] would become negative")
        for name, value in delta.sets.items():
            self.db.set_aggregate(user_id, name, _encode_aggregate(value))
        if delta.score:
            self.db.add_score(user_id, delta.score, now)
            if self.db.get_score(user_id) < 0:
                raise InvariantViolation("score would become negative")

    def _load(self, user_id: str) -> UserStatistics:
        user = self.db.get_user(user_id)
        stats = UserStatistics(user_id=user_id)
        if user is None:
            return stats
        stats.score = user["score"]
        stats.created_at = datetime.fromisoformat(user["created_at"])
        for row in self.db.get_counters(user_id):
            name, key, value = row["name"], row["key"], row["value"]
            if name in SCALAR_COUNTERS and key == "":
                setattr(stats, name, value)
            elif name in KEYED_COUNTERS:
                getattr(stats, name)[key] = value
            else:
                logger.debug("Ignoring unknown counter %s for %s", name, user_id)
        for name, raw in self.db.get_aggregates(user_id).items():
            value = _decode_aggregate(name, raw)
            if name in AGGREGATES and value is not None:
                setattr(stats, name, value)
        return stats
