"""Badge evaluation against a statistics snapshot."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from crew_score.badges import BADGES, BadgeDefinition
from crew_score.stats import UserStatistics


@dataclass
class BadgeStatus:
    definition: BadgeDefinition
    progress: float  # 0.0 to 1.0
    earned: bool
    satisfied: bool


def evaluate(
    stats: UserStatistics,
    already_earned_ids: Iterable[str],
    catalog: list[BadgeDefinition] | None = None,
) -> list[BadgeDefinition]:
    """Return badges newly satisfied by stats, in catalog order.

    Earned badges and badges that are not automated are skipped. Every other
    badge is re-checked on each call, so a badge backed by a counter that can
    reset (current streak) simply stops matching.
    """
    earned = set(already_earned_ids)
    return [
        badge
        for badge in (catalog if catalog is not None else BADGES)
        if badge.automated and badge.id not in earned and badge.predicate(stats)
    ]


def badge_progress(
    stats: UserStatistics,
    already_earned_ids: Iterable[str],
    catalog: list[BadgeDefinition] | None = None,
) -> list[BadgeStatus]:
    """Progress for every badge. Earned badges report 1.0; progress never affects awards."""
    earned = set(already_earned_ids)
    results: list[BadgeStatus] = []
    for badge in catalog if catalog is not None else BADGES:
        satisfied = badge.automated and badge.predicate(stats)
        if badge.id in earned:
            progress = 1.0
        elif badge.progress is not None:
            progress = max(0.0, min(badge.progress(stats), 1.0))
        else:
            progress = 1.0 if satisfied else 0.0
        results.append(
            BadgeStatus(
                definition=badge,
                progress=progress,
                earned=badge.id in earned,
                satisfied=satisfied,
            )
        )
    return results


def closest_badges(statuses: list[BadgeStatus], n: int = 3) -> list[BadgeStatus]:
    """Return the N unearned automated badges closest to completion."""
    in_progress = [s for s in statuses if not s.earned and s.definition.automated]
    in_progress.sort(key=lambda s: s.progress, reverse=True)
    return in_progress[:n]
