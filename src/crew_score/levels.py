"""Level tier table and resolution. Pure functions, no side effects."""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field


@dataclass(frozen=True)
class LevelTier:
    id: str
    min_score: int
    name: str
    description: str = ""
    benefits: tuple[str, ...] = field(default_factory=tuple)
    color: str = "grey"


LEVEL_TIERS: list[LevelTier] = [
    LevelTier(
        id="rookie",
        min_score=0,
        name="Rookie Crew",
        description="Just getting started on your CrewMate journey",
        benefits=(
            "Access to all basic features",
            "Create and join plans",
            "Connect with other crew",
            "Check into layovers",
        ),
        color="grey",
    ),
    LevelTier(
        id="junior",
        min_score=100,
        name="Junior Crew",
        description="Building your crew network",
        benefits=(
            "All Rookie benefits",
            "Priority plan visibility",
            "Early access to new features",
            "CrewMate supporter badge",
        ),
        color="green",
    ),
    LevelTier(
        id="seasoned",
        min_score=250,
        name="Seasoned Crew",
        description="An active community member",
        benefits=(
            "All Junior benefits",
            "Verified checkmark on profile",
            'Featured in "Active Crew" section',
            "Boost plan visibility",
        ),
        color="blue",
    ),
    LevelTier(
        id="veteran",
        min_score=500,
        name="Veteran Crew",
        description="A trusted member of the community",
        benefits=(
            "All Seasoned benefits",
            "Create premium plans (larger groups)",
            "Priority customer support",
            "Early beta access to features",
        ),
        color="purple",
    ),
    LevelTier(
        id="elite",
        min_score=1000,
        name="Elite Crew",
        description="A pillar of the CrewMate community",
        benefits=(
            "All Veteran benefits",
            "Exclusive Elite Crew badge",
            "Access to private Elite lounge",
            "Voting power on new features",
            "Premium profile customization",
        ),
        color="magenta",
    ),
    LevelTier(
        id="master",
        min_score=2500,
        name="Master Crew",
        description="A leader and innovator",
        benefits=(
            "All Elite benefits",
            "Direct input on product roadmap",
            "Beta test coordinator",
            "Lifetime premium features",
            "Special Master Crew badge",
        ),
        color="orange",
    ),
    LevelTier(
        id="legend",
        min_score=5000,
        name="Legend Crew",
        description="An icon of the community",
        benefits=(
            "All Master benefits",
            "Permanent premium status",
            "Exclusive Legend events",
            "CrewMate ambassador",
            'Profile badge: "Legend"',
        ),
        color="red",
    ),
    LevelTier(
        id="icon",
        min_score=10000,
        name="Icon Crew",
        description="The ultimate CrewMate achievement",
        benefits=(
            "All Legend benefits",
            "Hall of Fame recognition",
            "Lifetime VIP status",
            "Special Icon Crew badge (animated)",
            "Exclusive Icon-only features",
            "Direct line to founders",
        ),
        color="gold",
    ),
]


def validate_tiers(tiers: list[LevelTier]) -> list[LevelTier]:
    """Check that tiers partition [0, inf): first at 0, strictly ascending, unique ids.

    Returns the list unchanged so it can wrap a table definition.
    """
    if not tiers:
        raise ValueError("level table is empty")
    if tiers[0].min_score != 0:
        raise ValueError(f"first tier must start at 0, got {tiers[0].min_score}")
    seen: set[str] = set()
    for prev, curr in zip(tiers, tiers[1:]):
        if curr.min_score <= prev.min_score:
            raise ValueError(f"tier {curr.id!r} does not ascend past {prev.id!r}")
    for tier in tiers:
        if tier.id in seen:
            raise ValueError(f"duplicate tier id {tier.id!r}")
        seen.add(tier.id)
    return tiers


def tiers_from_config(raw: list[dict]) -> list[LevelTier]:
    """Build and validate a level table from config dicts."""
    tiers = [
        LevelTier(
            id=str(item["id"]),
            min_score=int(item["min_score"]),
            name=str(item.get("name", item["id"])),
            description=str(item.get("description", "")),
            benefits=tuple(item.get("benefits", ())),
            color=str(item.get("color", "grey")),
        )
        for item in raw
    ]
    return validate_tiers(sorted(tiers, key=lambda t: t.min_score))


def resolve(score: int, tiers: list[LevelTier] | None = None) -> LevelTier:
    """Return the highest tier whose min_score <= score. Negative scores map to the first tier."""
    table = tiers if tiers is not None else LEVEL_TIERS
    thresholds = [t.min_score for t in table]
    index = bisect.bisect_right(thresholds, score) - 1
    return table[max(index, 0)]


def get_tier(tier_id: str, tiers: list[LevelTier] | None = None) -> LevelTier | None:
    table = tiers if tiers is not None else LEVEL_TIERS
    return next((t for t in table if t.id == tier_id), None)


def next_tier(current: LevelTier, tiers: list[LevelTier] | None = None) -> LevelTier | None:
    """Tier after current, or None at the top."""
    table = tiers if tiers is not None else LEVEL_TIERS
    for i, tier in enumerate(table):
        if tier.id == current.id:
            return table[i + 1] if i + 1 < len(table) else None
    return None


def check_level_up(
    old_score: int, new_score: int, tiers: list[LevelTier] | None = None
) -> tuple[LevelTier, LevelTier] | None:
    """Return (old_tier, new_tier) when the tier changed upward, else None.

    Crossing several boundaries still yields one pair: previous tier -> highest tier.
    """
    old_tier = resolve(old_score, tiers)
    new_tier = resolve(new_score, tiers)
    if old_tier.id == new_tier.id or new_tier.min_score < old_tier.min_score:
        return None
    return (old_tier, new_tier)


def score_to_next_level(score: int, tiers: list[LevelTier] | None = None) -> int | None:
    """Score still needed for the next tier, or None at max level."""
    upcoming = next_tier(resolve(score, tiers), tiers)
    if upcoming is None:
        return None
    return upcoming.min_score - score


def progress_to_next_level(score: int, tiers: list[LevelTier] | None = None) -> float:
    """Percent progress through the current tier (0-100). Max level is 100."""
    current = resolve(score, tiers)
    upcoming = next_tier(current, tiers)
    if upcoming is None:
        return 100.0
    span = upcoming.min_score - current.min_score
    return min(100.0, max(0.0, (score - current.min_score) / span * 100))
