"""Check-in streak tracking for crew-score."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

STREAK_WINDOW = timedelta(hours=48)
WEEKLY_STREAK_DAYS = 7


@dataclass
class StreakInfo:
    current_streak: int
    longest_streak: int
    last_check_in_at: datetime | None
    reached_weekly: bool = False  # this update took the streak to exactly 7


def register_check_in(
    current_streak: int,
    longest_streak: int,
    last_check_in_at: datetime | None,
    occurred_at: datetime,
) -> StreakInfo:
    """Advance the streak for a check-in at occurred_at.

    Rules:
    - First check-in starts a streak of 1
    - Another check-in on the same calendar day keeps the streak as is
    - A check-in on a later day within 48h of the previous one extends it
    - Anything later restarts at 1
    - Out-of-order (older) check-ins never move the streak
    """
    if last_check_in_at is None:
        streak = 1
        last = occurred_at
    elif occurred_at <= last_check_in_at:
        streak = max(current_streak, 1)
        last = last_check_in_at
    elif occurred_at.date() == last_check_in_at.date():
        streak = max(current_streak, 1)
        last = occurred_at
    elif occurred_at - last_check_in_at <= STREAK_WINDOW:
        streak = current_streak + 1
        last = occurred_at
    else:
        streak = 1
        last = occurred_at

    return StreakInfo(
        current_streak=streak,
        longest_streak=max(longest_streak, streak),
        last_check_in_at=last,
        reached_weekly=streak == WEEKLY_STREAK_DAYS and current_streak < WEEKLY_STREAK_DAYS,
    )


def lapse(
    current_streak: int,
    longest_streak: int,
    last_check_in_at: datetime | None,
    now: datetime,
) -> StreakInfo:
    """Reset the current streak to 0 once the 48h window has passed."""
    if last_check_in_at is None or now - last_check_in_at > STREAK_WINDOW:
        current = 0
    else:
        current = current_streak
    return StreakInfo(
        current_streak=current,
        longest_streak=longest_streak,
        last_check_in_at=last_check_in_at,
    )
