"""Badge catalog for crew-score.

Badges are declared in evaluation order. Predicates and progress functions
read UserStatistics only, never the clock, so evaluation is replayable.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from crew_score.stats import UserStatistics

CATALOG_VERSION = 3


class Rarity(str, Enum):
    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"
    EXCLUSIVE = "exclusive"


class Category(str, Enum):
    FOUNDER = "founder"
    TRAVEL = "travel"
    COMMUNITY = "community"
    EXPERIENCE = "experience"


Predicate = Callable[[UserStatistics], bool]
Progress = Callable[[UserStatistics], float]


@dataclass(frozen=True)
class BadgeDefinition:
    id: str
    name: str
    description: str
    rarity: Rarity
    category: Category
    predicate: Predicate
    score_bonus: int = 0
    progress: Progress | None = None
    automated: bool = True  # False: granted by an administrator only
    requirement: str = ""


def _never(stats: UserStatistics) -> bool:
    return False


def _ratio(current: float, target: float) -> float:
    if target <= 0:
        return 0.0
    return max(0.0, min(current / target, 1.0))


def counter_badge(
    id: str,
    name: str,
    description: str,
    rarity: Rarity,
    category: Category,
    field: str,
    target: int,
    score_bonus: int = 0,
    requirement: str = "",
) -> BadgeDefinition:
    """Badge unlocked once a scalar counter reaches target."""
    return BadgeDefinition(
        id=id,
        name=name,
        description=description,
        rarity=rarity,
        category=category,
        predicate=lambda s: getattr(s, field) >= target,
        progress=lambda s: _ratio(getattr(s, field), target),
        score_bonus=score_bonus,
        requirement=requirement or description,
    )


def keyed_sum_badge(
    id: str,
    name: str,
    description: str,
    rarity: Rarity,
    category: Category,
    field: str,
    keys: tuple[str, ...],
    target: int,
    score_bonus: int = 0,
) -> BadgeDefinition:
    """Badge unlocked once the sum of some keyed-counter buckets reaches target."""

    def total(s: UserStatistics) -> int:
        return sum(s.keyed(field, k) for k in keys)

    return BadgeDefinition(
        id=id,
        name=name,
        description=description,
        rarity=rarity,
        category=category,
        predicate=lambda s: total(s) >= target,
        progress=lambda s: _ratio(total(s), target),
        score_bonus=score_bonus,
        requirement=description,
    )


def _busiest_city(stats: UserStatistics) -> int:
    return max(stats.city_check_ins.values(), default=0)


FOUNDER_BADGES: list[BadgeDefinition] = [
    BadgeDefinition(
        id="founding_crew",
        name="Founding Crew",
        description="One of the original alpha testers who helped shape CrewMate",
        rarity=Rarity.EXCLUSIVE,
        category=Category.FOUNDER,
        predicate=_never,
        score_bonus=500,
        automated=False,
        requirement="Be part of the alpha testing group",
    ),
    BadgeDefinition(
        id="beta_pioneer",
        name="Beta Pioneer",
        description="Joined during the beta period and helped test features",
        rarity=Rarity.LEGENDARY,
        category=Category.FOUNDER,
        predicate=_never,
        score_bonus=250,
        automated=False,
        requirement="Join CrewMate during the beta period",
    ),
]

# Founder badges double as account status: holding one turns on a score multiplier.
STATUS_FLAGS: dict[str, str] = {
    "founding_crew": "is_founding_crew",
    "beta_pioneer": "is_beta_pioneer",
}

TRAVEL_BADGES: list[BadgeDefinition] = [
    counter_badge("globe_trotter_10", "Globe Trotter I", "Checked into 10 unique cities",
                  Rarity.COMMON, Category.TRAVEL, "cities_visited", 10, score_bonus=50),
    counter_badge("globe_trotter_25", "Globe Trotter II", "Checked into 25 unique cities",
                  Rarity.UNCOMMON, Category.TRAVEL, "cities_visited", 25, score_bonus=100),
    counter_badge("globe_trotter_50", "Globe Trotter III", "Checked into 50 unique cities",
                  Rarity.RARE, Category.TRAVEL, "cities_visited", 50, score_bonus=200),
    counter_badge("globe_trotter_100", "Globe Trotter IV", "Checked into 100 unique cities",
                  Rarity.EPIC, Category.TRAVEL, "cities_visited", 100, score_bonus=500),
    counter_badge("globe_trotter_250", "Globe Trotter V",
                  "Checked into 250 unique cities - true world traveler",
                  Rarity.LEGENDARY, Category.TRAVEL, "cities_visited", 250, score_bonus=1000),
    keyed_sum_badge("north_america_explorer", "North America Explorer",
                    "Explored 10+ cities in North America", Rarity.UNCOMMON, Category.TRAVEL,
                    "continent_check_ins", ("North America",), 10),
    keyed_sum_badge("south_america_explorer", "South America Explorer",
                    "Explored 10+ cities in South America", Rarity.RARE, Category.TRAVEL,
                    "continent_check_ins", ("South America",), 10),
    keyed_sum_badge("europe_explorer", "Europe Explorer",
                    "Explored 10+ cities in Europe", Rarity.UNCOMMON, Category.TRAVEL,
                    "continent_check_ins", ("Europe",), 10),
    keyed_sum_badge("asia_explorer", "Asia Explorer",
                    "Explored 10+ cities in Asia", Rarity.RARE, Category.TRAVEL,
                    "continent_check_ins", ("Asia",), 10),
    keyed_sum_badge("africa_explorer", "Africa Explorer",
                    "Explored 10+ cities in Africa", Rarity.EPIC, Category.TRAVEL,
                    "continent_check_ins", ("Africa",), 10),
    keyed_sum_badge("oceania_explorer", "Oceania Explorer",
                    "Explored 10+ cities in Oceania", Rarity.EPIC, Category.TRAVEL,
                    "continent_check_ins", ("Oceania",), 10),
    keyed_sum_badge("antarctica_explorer", "Antarctica Explorer",
                    "Checked in from Antarctica", Rarity.LEGENDARY, Category.TRAVEL,
                    "continent_check_ins", ("Antarctica",), 1),
    BadgeDefinition(
        id="city_expert",
        name="City Expert",
        description="Checked into the same city 5+ times",
        rarity=Rarity.UNCOMMON,
        category=Category.TRAVEL,
        predicate=lambda s: _busiest_city(s) >= 5,
        progress=lambda s: _ratio(_busiest_city(s), 5),
        requirement="Check into any city 5 times",
    ),
]

COMMUNITY_BADGES: list[BadgeDefinition] = [
    counter_badge("social_butterfly_10", "Social Butterfly I", "Made 10 crew connections",
                  Rarity.COMMON, Category.COMMUNITY, "connections_count", 10),
    counter_badge("social_butterfly_50", "Social Butterfly II", "Made 50 crew connections",
                  Rarity.RARE, Category.COMMUNITY, "connections_count", 50, score_bonus=100),
    counter_badge("social_butterfly_100", "Social Butterfly III", "Made 100 crew connections",
                  Rarity.EPIC, Category.COMMUNITY, "connections_count", 100, score_bonus=250),
    counter_badge("plan_master_5", "Plan Master I", "Hosted 5 successful plans",
                  Rarity.COMMON, Category.COMMUNITY, "plans_with_attendees", 5,
                  requirement="Host 5 plans with at least 2 attendees"),
    counter_badge("plan_master_25", "Plan Master II", "Hosted 25 successful plans",
                  Rarity.RARE, Category.COMMUNITY, "plans_with_attendees", 25, score_bonus=150,
                  requirement="Host 25 plans with at least 2 attendees"),
    counter_badge("plan_master_100", "Plan Master III", "Hosted 100 successful plans",
                  Rarity.LEGENDARY, Category.COMMUNITY, "plans_with_attendees", 100, score_bonus=500,
                  requirement="Host 100 plans with at least 2 attendees"),
    counter_badge("review_guru_10", "Review Guru I", "Written 10 helpful reviews",
                  Rarity.COMMON, Category.COMMUNITY, "spots_reviewed", 10),
    counter_badge("review_guru_50", "Review Guru II", "Written 50 helpful reviews",
                  Rarity.RARE, Category.COMMUNITY, "spots_reviewed", 50, score_bonus=100),
    counter_badge("review_guru_100", "Review Guru III", "Written 100 helpful reviews",
                  Rarity.EPIC, Category.COMMUNITY, "spots_reviewed", 100, score_bonus=300),
    counter_badge("welcomer", "The Welcomer",
                  "First crew member to connect with and message 10 new users",
                  Rarity.RARE, Category.COMMUNITY, "crew_welcomed", 10, score_bonus=200),
    counter_badge("party_planner", "Party Planner", "Hosted a plan with 10+ attendees",
                  Rarity.RARE, Category.COMMUNITY, "plans_with_10_plus", 1, score_bonus=100),
    BadgeDefinition(
        id="trend_setter",
        name="Trend Setter",
        description="Created a plan that was copied by 5+ other crew",
        rarity=Rarity.EPIC,
        category=Category.COMMUNITY,
        predicate=_never,
        score_bonus=150,
        automated=False,
        requirement="Host a plan that 5+ crew use as template",
    ),
    counter_badge("conversation_starter", "Conversation Starter", "Sent 100 messages in plan chats",
                  Rarity.UNCOMMON, Category.COMMUNITY, "messages_sent", 100),
    counter_badge("photographer", "Photographer", "Uploaded 50 photos to reviews",
                  Rarity.RARE, Category.COMMUNITY, "photos_added", 50, score_bonus=100),
    counter_badge("recruiter_1", "Recruiter I", "Referred your first crew member",
                  Rarity.COMMON, Category.COMMUNITY, "successful_referrals", 1),
    counter_badge("recruiter_5", "Recruiter II", "Referred 5 crew members",
                  Rarity.UNCOMMON, Category.COMMUNITY, "successful_referrals", 5),
    counter_badge("recruiter_15", "Recruiter III", "Referred 15 crew members",
                  Rarity.RARE, Category.COMMUNITY, "successful_referrals", 15),
    counter_badge("recruiter_25", "Recruiter IV", "Referred 25 crew members",
                  Rarity.EPIC, Category.COMMUNITY, "successful_referrals", 25),
]

EXPERIENCE_BADGES: list[BadgeDefinition] = [
    # current_streak can reset, so these may stop matching before they are earned.
    counter_badge("streak_master_7", "Streak Master I", "Maintained a 7-day check-in streak",
                  Rarity.UNCOMMON, Category.EXPERIENCE, "current_streak", 7),
    counter_badge("streak_master_30", "Streak Master II", "Maintained a 30-day check-in streak",
                  Rarity.RARE, Category.EXPERIENCE, "current_streak", 30, score_bonus=150),
    counter_badge("streak_master_100", "Streak Master III", "Maintained a 100-day check-in streak",
                  Rarity.LEGENDARY, Category.EXPERIENCE, "current_streak", 100, score_bonus=500),
    counter_badge("night_owl", "Night Owl", "Attended 10 plans after 10pm",
                  Rarity.UNCOMMON, Category.EXPERIENCE, "night_plans", 10),
    counter_badge("early_bird", "Early Bird", "Attended 10 plans before 9am",
                  Rarity.UNCOMMON, Category.EXPERIENCE, "morning_plans", 10),
    counter_badge("weekend_warrior", "Weekend Warrior", "Attended 25 plans on weekends",
                  Rarity.RARE, Category.EXPERIENCE, "weekend_plans", 25),
    keyed_sum_badge("foodie", "Foodie", "Checked into 25 restaurants",
                    Rarity.UNCOMMON, Category.EXPERIENCE, "spot_type_check_ins",
                    ("restaurant", "food", "breakfast", "lunch", "dinner"), 25),
    keyed_sum_badge("coffee_connoisseur", "Coffee Connoisseur", "Checked into 15 coffee shops",
                    Rarity.UNCOMMON, Category.EXPERIENCE, "spot_type_check_ins", ("coffee", "cafe"), 15),
    keyed_sum_badge("bar_hopper", "Bar Hopper", "Checked into 20 bars",
                    Rarity.UNCOMMON, Category.EXPERIENCE, "spot_type_check_ins", ("bar", "nightlife"), 20),
    keyed_sum_badge("museum_buff", "Museum Buff", "Checked into 10 museums",
                    Rarity.RARE, Category.EXPERIENCE, "spot_type_check_ins", ("museum", "culture"), 10),
    keyed_sum_badge("outdoor_explorer", "Outdoor Explorer", "Checked into 15 parks or outdoor spots",
                    Rarity.UNCOMMON, Category.EXPERIENCE, "spot_type_check_ins", ("park", "outdoor"), 15),
    keyed_sum_badge("gym_rat", "Gym Rat", "Checked into 10 gyms",
                    Rarity.UNCOMMON, Category.EXPERIENCE, "spot_type_check_ins", ("gym", "fitness"), 10),
    counter_badge("first_layover", "First Layover", "Your very first check-in on CrewMate",
                  Rarity.COMMON, Category.EXPERIENCE, "total_check_ins", 1),
    counter_badge("century_club", "Century Club", "Completed 100 layover check-ins",
                  Rarity.EPIC, Category.EXPERIENCE, "total_check_ins", 100, score_bonus=300),
    counter_badge("veteran_traveler", "Veteran Traveler", "Completed 500 layover check-ins",
                  Rarity.LEGENDARY, Category.EXPERIENCE, "total_check_ins", 500, score_bonus=1000),
    counter_badge("helpful_reviewer", "Helpful Reviewer",
                  "Your reviews have been marked helpful 50+ times",
                  Rarity.RARE, Category.EXPERIENCE, "review_upvotes", 50, score_bonus=100),
]

BADGES: list[BadgeDefinition] = FOUNDER_BADGES + TRAVEL_BADGES + COMMUNITY_BADGES + EXPERIENCE_BADGES


def validate_catalog(catalog: list[BadgeDefinition]) -> list[BadgeDefinition]:
    """Reject duplicate ids and negative bonuses."""
    seen: set[str] = set()
    for badge in catalog:
        if badge.id in seen:
            raise ValueError(f"duplicate badge id {badge.id!r}")
        if badge.score_bonus < 0:
            raise ValueError(f"badge {badge.id!r} has a negative score bonus")
        seen.add(badge.id)
    return catalog


validate_catalog(BADGES)


def get_badge(badge_id: str, catalog: list[BadgeDefinition] | None = None) -> BadgeDefinition | None:
    return next((b for b in (catalog or BADGES) if b.id == badge_id), None)


def badges_by_category(category: Category, catalog: list[BadgeDefinition] | None = None) -> list[BadgeDefinition]:
    return [b for b in (catalog or BADGES) if b.category == category]


def badges_by_rarity(rarity: Rarity, catalog: list[BadgeDefinition] | None = None) -> list[BadgeDefinition]:
    return [b for b in (catalog or BADGES) if b.rarity == rarity]


def automated_badges(catalog: list[BadgeDefinition] | None = None) -> list[BadgeDefinition]:
    return [b for b in (catalog or BADGES) if b.automated]
