"""Score (CMS) calculation for crew-score.

Pure functions that turn one activity event plus the user's current
statistics into a statistics delta and a non-negative score delta.
Totals are round(base * multipliers + bonuses), rounding halves up.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from crew_score.errors import InvalidEvent
from crew_score.events import ActivityEvent, EventKind
from crew_score.stats import StatisticsDelta, UserStatistics, check_delta
from crew_score.streaks import lapse, register_check_in

# Base points
POINTS_LAYOVER_CHECK_IN = 10
POINTS_SPOT_CHECK_IN = 5
POINTS_PLAN_HOSTED = 25
POINTS_PLAN_ATTENDED = 10
POINTS_PLAN_MESSAGE = 2
POINTS_REVIEW_WRITTEN = 15
POINTS_REVIEW_UPVOTE = 3
POINTS_PHOTO_ADDED = 5
POINTS_CONNECTION = 5
POINTS_WELCOME_NEW_CREW = 20
POINTS_WEEKLY_STREAK = 50

# Multipliers
NEW_USER_MULTIPLIER = 1.5
FOUNDING_CREW_MULTIPLIER = 1.1
BETA_PIONEER_MULTIPLIER = 1.05
FIRST_CITY_MULTIPLIER = 1.5
FIRST_CONTINENT_MULTIPLIER = 2.0
DEFAULT_NEW_USER_DAYS = 30

# Bonuses
BONUS_PLAN_5_PLUS = 50
BONUS_PLAN_10_PLUS = 100
BONUS_REVIEW_100_WORDS = 10
BONUS_REVIEW_WITH_PHOTO = 10
BONUS_FIRST_REVIEW_OF_SPOT = 25
BONUS_INTERNATIONAL = 15
BONUS_MILESTONE_CITY = 50

LONG_REVIEW_WORDS = 100
MILESTONE_CITIES: frozenset[int] = frozenset({10, 25, 50, 100})


@dataclass
class ScoreResult:
    """What one event is worth."""

    delta: StatisticsDelta
    score_delta: int
    reason: str
    message: str | None = None
    breakdown: dict[str, float] = field(default_factory=dict)


@dataclass
class _Context:
    event: ActivityEvent
    stats: UserStatistics
    is_new_user: bool


def calculate_cms(
    base_points: int,
    multipliers: dict[str, float] | None = None,
    bonuses: dict[str, int] | None = None,
) -> int:
    """Apply multipliers (multiplicative) then bonuses (additive); round halves up."""
    total_multiplier = 1.0
    for value in (multipliers or {}).values():
        total_multiplier *= value
    total = base_points * total_multiplier + sum((bonuses or {}).values())
    return max(0, math.floor(total + 0.5))


def is_new_user(stats: UserStatistics, at: datetime, new_user_days: int = DEFAULT_NEW_USER_DAYS) -> bool:
    """True during the first new_user_days after the statistics document was created."""
    if stats.created_at is None:
        return False
    return timedelta(0) <= at - stats.created_at < timedelta(days=new_user_days)


def _text(payload: dict[str, Any], key: str, required: bool = True) -> str | None:
    value = payload.get(key)
    if value is None and not required:
        return None
    if not isinstance(value, str) or not value.strip():
        raise InvalidEvent(f"payload.{key} must be a non-empty string")
    return value.strip()


def _count(payload: dict[str, Any], key: str, default: int = 0) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidEvent(f"payload.{key} must be an integer")
    if value < 0:
        raise InvalidEvent(f"payload.{key} must not be negative")
    return value


def _flag(payload: dict[str, Any], key: str) -> bool:
    value = payload.get(key, False)
    if not isinstance(value, bool):
        raise InvalidEvent(f"payload.{key} must be a boolean")
    return value


def _status_multipliers(ctx: _Context) -> dict[str, float]:
    """New-user and founder multipliers, applied to check-ins, hosted plans and reviews."""
    multipliers: dict[str, float] = {}
    if ctx.is_new_user:
        multipliers["new_user"] = NEW_USER_MULTIPLIER
    if ctx.stats.is_founding_crew:
        multipliers["founding_crew"] = FOUNDING_CREW_MULTIPLIER
    if ctx.stats.is_beta_pioneer:
        multipliers["beta_pioneer"] = BETA_PIONEER_MULTIPLIER
    return multipliers


def _score_check_in(ctx: _Context) -> ScoreResult:
    payload, stats = ctx.event.payload, ctx.stats
    city = _text(payload, "city")
    continent = _text(payload, "continent", required=False)
    international = _flag(payload, "international")

    delta = StatisticsDelta()
    delta.increment("total_check_ins")
    delta.increment_key("city_check_ins", city)

    multipliers = _status_multipliers(ctx)
    bonuses: dict[str, int] = {}

    if stats.keyed("city_check_ins", city) == 0:
        delta.increment("cities_visited")
        multipliers["first_city"] = FIRST_CITY_MULTIPLIER
        if stats.cities_visited + 1 in MILESTONE_CITIES:
            bonuses["milestone_city"] = BONUS_MILESTONE_CITY
    if continent:
        delta.increment_key("continent_check_ins", continent)
        if stats.keyed("continent_check_ins", continent) == 0:
            multipliers["first_continent"] = FIRST_CONTINENT_MULTIPLIER
    if international:
        bonuses["international"] = BONUS_INTERNATIONAL

    streak = register_check_in(
        stats.current_streak, stats.longest_streak, stats.last_check_in_at, ctx.event.occurred_at
    )
    delta.set("current_streak", streak.current_streak)
    delta.set("longest_streak", streak.longest_streak)
    delta.set("last_check_in_at", streak.last_check_in_at)
    if streak.reached_weekly:
        bonuses["weekly_streak"] = POINTS_WEEKLY_STREAK

    return _result(ctx, delta, POINTS_LAYOVER_CHECK_IN, multipliers, bonuses, "Layover check-in")


def _score_spot_check_in(ctx: _Context) -> ScoreResult:
    spot_type = _text(ctx.event.payload, "spot_type").lower()
    delta = StatisticsDelta()
    delta.increment_key("spot_type_check_ins", spot_type)
    return _result(ctx, delta, POINTS_SPOT_CHECK_IN, {}, {}, f"{spot_type} check-in")


def _score_review(ctx: _Context) -> ScoreResult:
    payload = ctx.event.payload
    if "word_count" in payload:
        word_count = _count(payload, "word_count")
    else:
        text = payload.get("text")
        if text is not None and not isinstance(text, str):
            raise InvalidEvent("payload.text must be a string")
        word_count = len((text or "").split())
    has_photo = _flag(payload, "has_photo")
    first_of_spot = _flag(payload, "first_review_of_spot")

    delta = StatisticsDelta()
    delta.increment("spots_reviewed")
    bonuses: dict[str, int] = {}
    if word_count >= LONG_REVIEW_WORDS:
        delta.increment("reviews_over_100_words")
        bonuses["long_review"] = BONUS_REVIEW_100_WORDS
    if has_photo:
        bonuses["with_photo"] = BONUS_REVIEW_WITH_PHOTO
    if first_of_spot:
        delta.increment("first_reviews_of_spot")
        bonuses["first_review_of_spot"] = BONUS_FIRST_REVIEW_OF_SPOT
    return _result(ctx, delta, POINTS_REVIEW_WRITTEN, _status_multipliers(ctx), bonuses, "Review written")


def _score_plan_hosted(ctx: _Context) -> ScoreResult:
    attendees = _count(ctx.event.payload, "attendee_count", default=1)
    delta = StatisticsDelta()
    delta.increment("plans_hosted")
    bonuses: dict[str, int] = {}
    if attendees >= 2:
        delta.increment("plans_with_attendees")
    if attendees >= 5:
        delta.increment("plans_with_5_plus")
    if attendees >= 10:
        delta.increment("plans_with_10_plus")
        bonuses["ten_plus"] = BONUS_PLAN_10_PLUS
    elif attendees >= 5:
        bonuses["five_plus"] = BONUS_PLAN_5_PLUS
    return _result(ctx, delta, POINTS_PLAN_HOSTED, _status_multipliers(ctx), bonuses, "Plan hosted")


def _plan_start(ctx: _Context) -> datetime:
    raw = ctx.event.payload.get("starts_at")
    if raw is None:
        return ctx.event.occurred_at
    if isinstance(raw, datetime):
        return raw
    try:
        # Wall-clock time of the plan; only hour and weekday are used.
        return datetime.fromisoformat(str(raw))
    except ValueError:
        raise InvalidEvent(f"payload.starts_at is not a timestamp: {raw!r}") from None


def _score_plan_attended(ctx: _Context) -> ScoreResult:
    starts_at = _plan_start(ctx)
    delta = StatisticsDelta()
    delta.increment("plans_attended")
    if _flag(ctx.event.payload, "verified"):
        delta.increment("plans_attended_verified")
    if starts_at.hour >= 22 or starts_at.hour < 5:
        delta.increment("night_plans")
    elif 5 <= starts_at.hour < 9:
        delta.increment("morning_plans")
    if starts_at.weekday() >= 5:
        delta.increment("weekend_plans")
    return _result(ctx, delta, POINTS_PLAN_ATTENDED, {}, {}, "Plan joined")


def _score_streak_tick(ctx: _Context) -> ScoreResult:
    stats = ctx.stats
    streak = lapse(stats.current_streak, stats.longest_streak, stats.last_check_in_at, ctx.event.occurred_at)
    delta = StatisticsDelta()
    if streak.current_streak != stats.current_streak:
        delta.set("current_streak", streak.current_streak)
    return _result(ctx, delta, 0, {}, {}, "Streak check")


def _simple(counter: str | None, points: int, reason: str) -> Callable[[_Context], ScoreResult]:
    def rule(ctx: _Context) -> ScoreResult:
        delta = StatisticsDelta()
        if counter:
            delta.increment(counter)
        return _result(ctx, delta, points, {}, {}, reason)

    return rule


def _result(
    ctx: _Context,
    delta: StatisticsDelta,
    base: int,
    multipliers: dict[str, float],
    bonuses: dict[str, int],
    reason: str,
) -> ScoreResult:
    score = calculate_cms(base, multipliers, bonuses) if base or bonuses else 0
    delta.score = score
    message = ctx.event.payload.get("message")
    breakdown: dict[str, float] = {"base": base, **multipliers, **bonuses}
    return ScoreResult(
        delta=delta,
        score_delta=score,
        reason=reason,
        message=message if isinstance(message, str) and message.strip() else None,
        breakdown=breakdown,
    )


RULES: dict[EventKind, Callable[[_Context], ScoreResult]] = {
    EventKind.CHECK_IN: _score_check_in,
    EventKind.SPOT_CHECK_IN: _score_spot_check_in,
    EventKind.REVIEW_SUBMITTED: _score_review,
    EventKind.REVIEW_UPVOTED: _simple("review_upvotes", POINTS_REVIEW_UPVOTE, "Review upvoted"),
    EventKind.PHOTO_ADDED: _simple("photos_added", POINTS_PHOTO_ADDED, "Photo uploaded"),
    EventKind.PLAN_CREATED: _simple("plans_created", 0, "Plan created"),
    EventKind.PLAN_HOSTED: _score_plan_hosted,
    EventKind.PLAN_ATTENDED: _score_plan_attended,
    EventKind.PLAN_MESSAGE: _simple("messages_sent", POINTS_PLAN_MESSAGE, "Plan message"),
    EventKind.CONNECTION_MADE: _simple("connections_count", POINTS_CONNECTION, "Connection made"),
    EventKind.CREW_WELCOMED: _simple("crew_welcomed", POINTS_WELCOME_NEW_CREW, "Welcomed new crew"),
    EventKind.REFERRAL_COMPLETED: _simple("successful_referrals", 0, "Referral completed"),
    EventKind.STREAK_TICK: _score_streak_tick,
}


def calculate(
    event: ActivityEvent,
    stats: UserStatistics,
    new_user_days: int = DEFAULT_NEW_USER_DAYS,
) -> ScoreResult:
    """Map one event to a statistics delta and score delta.

    Raises InvalidEvent for an unknown kind or malformed payload and
    InvariantViolation if the delta would make a counter negative.
    """
    rule = RULES.get(event.kind)
    if rule is None:
        raise InvalidEvent(f"no scoring rule for {event.kind!r}")
    ctx = _Context(
        event=event,
        stats=stats,
        is_new_user=is_new_user(stats, event.occurred_at, new_user_days),
    )
    result = rule(ctx)
    check_delta(stats, result.delta)
    return result
