"""Per-user statistics document and the deltas that mutate it."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any

from crew_score.errors import InvariantViolation

SCALAR_COUNTERS: tuple[str, ...] = (
    "total_check_ins",
    "cities_visited",
    "spots_reviewed",
    "reviews_over_100_words",
    "first_reviews_of_spot",
    "review_upvotes",
    "photos_added",
    "plans_created",
    "plans_hosted",
    "plans_with_attendees",
    "plans_with_5_plus",
    "plans_with_10_plus",
    "plans_attended",
    "plans_attended_verified",
    "night_plans",
    "morning_plans",
    "weekend_plans",
    "messages_sent",
    "connections_count",
    "crew_welcomed",
    "successful_referrals",
)

KEYED_COUNTERS: tuple[str, ...] = (
    "city_check_ins",
    "continent_check_ins",
    "spot_type_check_ins",
)

# Rolling values written with set semantics rather than increments.
AGGREGATES: tuple[str, ...] = (
    "current_streak",
    "longest_streak",
    "last_check_in_at",
    "announced_score",
    "is_founding_crew",
    "is_beta_pioneer",
)


@dataclass
class UserStatistics:
    """Cumulative counters, rolling aggregates and the score for one user."""

    user_id: str
    score: int = 0
    created_at: datetime | None = None

    total_check_ins: int = 0
    cities_visited: int = 0
    spots_reviewed: int = 0
    reviews_over_100_words: int = 0
    first_reviews_of_spot: int = 0
    review_upvotes: int = 0
    photos_added: int = 0
    plans_created: int = 0
    plans_hosted: int = 0
    plans_with_attendees: int = 0
    plans_with_5_plus: int = 0
    plans_with_10_plus: int = 0
    plans_attended: int = 0
    plans_attended_verified: int = 0
    night_plans: int = 0
    morning_plans: int = 0
    weekend_plans: int = 0
    messages_sent: int = 0
    connections_count: int = 0
    crew_welcomed: int = 0
    successful_referrals: int = 0

    city_check_ins: dict[str, int] = field(default_factory=dict)
    continent_check_ins: dict[str, int] = field(default_factory=dict)
    spot_type_check_ins: dict[str, int] = field(default_factory=dict)

    current_streak: int = 0
    longest_streak: int = 0
    last_check_in_at: datetime | None = None

    # Score up to which level-ups have been handed to the notification queue.
    announced_score: int = 0
    is_founding_crew: bool = False
    is_beta_pioneer: bool = False

    @property
    def attendance_rate(self) -> float:
        """Share of attended plans the user actually showed up to (0.0-1.0)."""
        if self.plans_attended <= 0:
            return 0.0
        return min(self.plans_attended_verified / self.plans_attended, 1.0)

    def keyed(self, name: str, key: str) -> int:
        return getattr(self, name).get(key, 0)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view (datetimes as ISO strings)."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, dict):
                value = dict(value)
            result[f.name] = value
        result["attendance_rate"] = round(self.attendance_rate, 4)
        return result


@dataclass
class StatisticsDelta:
    """Changes to apply atomically to one user's statistics.

    increments: scalar counter -> amount
    keyed_increments: keyed counter -> key -> amount
    sets: aggregate -> new value
    score: amount added to the score
    """

    increments: dict[str, int] = field(default_factory=dict)
    keyed_increments: dict[str, dict[str, int]] = field(default_factory=dict)
    sets: dict[str, Any] = field(default_factory=dict)
    score: int = 0

    def increment(self, name: str, amount: int = 1) -> None:
        self.increments[name] = self.increments.get(name, 0) + amount

    def increment_key(self, name: str, key: str, amount: int = 1) -> None:
        bucket = self.keyed_increments.setdefault(name, {})
        bucket[key] = bucket.get(key, 0) + amount

    def set(self, name: str, value: Any) -> None:
        self.sets[name] = value

    def is_empty(self) -> bool:
        return not (self.increments or self.keyed_increments or self.sets or self.score)


def check_delta(stats: UserStatistics, delta: StatisticsDelta, allow_score_decrease: bool = False) -> None:
    """Raise InvariantViolation if applying delta to stats breaks an invariant.

    Unknown counter names are programming errors and raise ValueError.
    """
    for name, amount in delta.increments.items():
        if name not in SCALAR_COUNTERS:
            raise ValueError(f"unknown counter: {name}")
        if getattr(stats, name) + amount < 0:
            raise InvariantViolation(f"{name} would become negative ({getattr(stats, name)} + {amount})")
    for name, bucket in delta.keyed_increments.items():
        if name not in KEYED_COUNTERS:
            raise ValueError(f"unknown keyed counter: {name}")
        for key, amount in bucket.items():
            if stats.keyed(name, key) + amount < 0:
                raise InvariantViolation(f"{name}[{key}] would become negative")
    for name, value in delta.sets.items():
        if name not in AGGREGATES:
            raise ValueError(f"unknown aggregate: {name}")
        if isinstance(value, int) and value < 0:
            raise InvariantViolation(f"{name} cannot be set to {value}")
    if delta.score < 0 and not allow_score_decrease:
        raise InvariantViolation(f"score delta must be non-negative, got {delta.score}")
    if stats.score + delta.score < 0:
        raise InvariantViolation("score would become negative")
