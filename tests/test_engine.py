"""Tests for the engagement pipeline."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from crew_score.badges import BadgeDefinition, Category, Rarity, get_badge
from crew_score.config import EngineSettings
from crew_score.db import Database
from crew_score.engine import EngagementEngine
from crew_score.errors import InvalidEvent, PersistenceFailure
from crew_score.events import ActivityEvent
from crew_score.ledger import AchievementLedger
from crew_score.levels import LevelTier
from crew_score.notifications import BadgeUnlocked, LevelUp, NotificationQueue, ScoreDelta, Toast
from crew_score.store import StatsStore

SMALL_TABLE = [
    LevelTier(id="rookie", min_score=0, name="Rookie"),
    LevelTier(id="junior", min_score=100, name="Junior"),
    LevelTier(id="veteran", min_score=500, name="Veteran"),
]


def _host_badge(badge_id, bonus=0):
    return BadgeDefinition(
        id=badge_id, name=badge_id.title(), description="", rarity=Rarity.COMMON,
        category=Category.COMMUNITY, predicate=lambda s: s.plans_hosted >= 1, score_bonus=bonus,
    )


def _photo_badge(badge_id, bonus=0):
    return BadgeDefinition(
        id=badge_id, name=badge_id.title(), description="", rarity=Rarity.COMMON,
        category=Category.COMMUNITY, predicate=lambda s: s.photos_added >= 1, score_bonus=bonus,
    )


@pytest.fixture
def db(tmp_path):
    """Create a temporary database for testing."""
    database = Database(db_path=tmp_path / "test.db")
    yield database
    database.close()


def _engine(db, **kwargs):
    kwargs.setdefault("new_user_days", 0)
    return EngagementEngine(StatsStore(db), AchievementLedger(db), NotificationQueue(), **kwargs)


@pytest.fixture
def engine(db):
    return _engine(db)


def check_in(city="Lisbon", key=None, **payload):
    return ActivityEvent(user_id="u1", kind="check_in", payload={"city": city, **payload}, dedupe_key=key)


def photo(key=None, **payload):
    return ActivityEvent(user_id="u1", kind="photo_added", payload=payload, dedupe_key=key)


class TestProcess:
    def test_first_check_in(self, engine):
        result = engine.process(check_in())
        assert result.applied is True
        assert result.old_score == 0
        assert result.new_score == 15
        assert [b.id for b in result.badges] == ["first_layover"]
        assert result.notifications == [
            ScoreDelta(15, 15, "Layover check-in"),
            BadgeUnlocked(get_badge("first_layover"), 0),
        ]

    def test_notifications_reach_queue(self, engine):
        result = engine.process(check_in())
        assert engine.queue.drain("u1") == result.notifications

    def test_first_layover_awarded_once(self, engine):
        engine.process(check_in())
        second = engine.process(check_in("Porto"))
        assert second.badges == []
        assert engine.ledger.earned_ids("u1") == {"first_layover"}
        unlocks = [e for e in engine.queue.drain("u1") if isinstance(e, BadgeUnlocked)]
        assert len(unlocks) == 1

    def test_score_is_monotonic(self, engine):
        scores = [0]
        for event in [check_in(), photo(), check_in("Porto"), photo(), check_in()]:
            scores.append(engine.process(event).new_score)
        assert scores == sorted(scores)

    def test_toast_follows_score_delta(self, db):
        engine = _engine(db, catalog=[])
        result = engine.process(photo(message="Great shot of the harbour"))
        assert result.notifications == [
            ScoreDelta(5, 5, "Photo uploaded"),
            Toast("Great shot of the harbour", 5),
        ]

    def test_zero_point_event_emits_nothing(self, db):
        engine = _engine(db, catalog=[])
        result = engine.process(ActivityEvent(user_id="u1", kind="plan_created"))
        assert result.notifications == []
        assert engine.store.read("u1").plans_created == 1


class TestOrdering:
    def test_score_then_level_then_badges_in_catalog_order(self, db):
        engine = _engine(db, catalog=[_host_badge("alpha"), _host_badge("beta")], tiers=SMALL_TABLE)
        result = engine.process(ActivityEvent(user_id="u1", kind="plan_hosted", payload={"attendee_count": 10}))
        kinds = [type(e) for e in result.notifications]
        assert kinds == [ScoreDelta, LevelUp, BadgeUnlocked, BadgeUnlocked]
        assert [e.badge.id for e in result.notifications[2:]] == ["alpha", "beta"]
        level_up = result.notifications[1]
        assert (level_up.old.id, level_up.new.id) == ("rookie", "junior")

    def test_badge_bonus_counts_toward_level(self, db):
        engine = _engine(db, catalog=[_host_badge("alpha", bonus=400)], tiers=SMALL_TABLE)
        result = engine.process(ActivityEvent(user_id="u1", kind="plan_hosted", payload={"attendee_count": 10}))
        assert result.new_score == 525
        assert result.notifications[0] == ScoreDelta(125, 125, "Plan hosted")
        level_ups = [e for e in result.notifications if isinstance(e, LevelUp)]
        assert len(level_ups) == 1
        assert (level_ups[0].old.id, level_ups[0].new.id) == ("rookie", "veteran")
        assert result.notifications[-1] == BadgeUnlocked(engine.catalog[0], 400)


class TestIdempotency:
    def test_replay_changes_nothing(self, engine):
        engine.process(check_in(key="evt-1"))
        engine.queue.drain("u1")
        replay = engine.process(check_in(key="evt-1"))
        assert replay.applied is False
        assert replay.new_score == 15
        assert replay.notifications == []
        assert engine.store.read("u1").total_check_ins == 1

    def test_replay_announces_pending_unlocks(self, engine):
        engine.process(photo(key="p1"))
        engine.ledger.award("u1", "first_layover")
        replay = engine.process(photo(key="p1"))
        assert replay.notifications == [BadgeUnlocked(get_badge("first_layover"), 0)]

    def test_bonus_granted_once_after_revoke(self, db):
        engine = _engine(db, catalog=[_photo_badge("snap", bonus=50)])
        assert engine.process(photo()).new_score == 55
        engine.revoke("u1", "snap")
        result = engine.process(photo())
        assert [b.id for b in result.badges] == ["snap"]
        assert result.new_score == 60


class TestErrors:
    def test_invalid_event_writes_nothing(self, engine):
        with pytest.raises(InvalidEvent):
            engine.process(ActivityEvent(user_id="u1", kind="check_in", payload={}, dedupe_key="k"))
        assert engine.store.read("u1").score == 0
        assert engine.process(check_in(key="k")).applied is True

    def test_ingest_drops_invalid(self, engine, caplog):
        assert engine.ingest({"userId": "u1", "kind": "moonwalk"}) is None
        assert "Dropped invalid event" in caplog.text

    def test_ingest_valid(self, engine):
        result = engine.ingest({"userId": "u1", "kind": "check_in", "payload": {"city": "Rome"}})
        assert result.new_score == 15

    def test_persistence_failure_is_retried(self, engine):
        real_apply = engine.store.apply
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise PersistenceFailure("database is locked")
            return real_apply(*args, **kwargs)

        with patch.object(engine.store, "apply", side_effect=flaky):
            result = engine.process(check_in(key="evt-1"))
        assert result.applied is True
        assert engine.store.read("u1").score == 15

    def test_gives_up_after_max_retries(self, db):
        engine = _engine(db, max_retries=2)
        with patch.object(engine.store, "apply", side_effect=PersistenceFailure("disk full")) as mock_apply:
            with pytest.raises(PersistenceFailure):
                engine.process(check_in())
        assert mock_apply.call_count == 3
        assert engine.store.read("u1").score == 0

    def test_failure_after_commit_does_not_reapply(self, engine):
        real_mark = engine.ledger.mark_all_notified
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise PersistenceFailure("database is locked")
            return real_mark(*args, **kwargs)

        with patch.object(engine.ledger, "mark_all_notified", side_effect=flaky):
            result = engine.process(check_in())
        assert result.new_score == 15
        assert engine.store.read("u1").total_check_ins == 1
        events = engine.queue.drain("u1")
        assert sum(isinstance(e, ScoreDelta) for e in events) == 1
        assert sum(isinstance(e, BadgeUnlocked) for e in events) == 1


class TestAdministration:
    def test_grant_manual_badge(self, engine):
        result = engine.grant("u1", "founding_crew")
        assert result.new_score == 500
        assert [type(e) for e in result.notifications] == [LevelUp, BadgeUnlocked]
        assert result.notifications[0].new.id == "veteran"

    def test_grant_twice_announces_once(self, engine):
        engine.grant("u1", "founding_crew")
        again = engine.grant("u1", "founding_crew")
        assert again.notifications == []
        assert engine.store.read("u1").score == 500

    def test_grant_unknown_badge(self, engine):
        with pytest.raises(ValueError):
            engine.grant("u1", "nope")

    def test_correction_is_silent(self, engine):
        engine.process(check_in())
        engine.queue.drain("u1")
        stats = engine.correct_score("u1", -10, "duplicate import")
        assert stats.score == 5
        assert engine.queue.pending("u1") == 0

    def test_level_reached_by_correction_stays_silent(self, db):
        engine = _engine(db, catalog=[])
        engine.correct_score("u1", 150, "migrated points")
        result = engine.process(photo())
        assert result.new_score == 155
        assert result.level_up is None
        assert engine.queue.drain("u1") == [ScoreDelta(5, 155, "Photo uploaded")]

    def test_reset_achievements(self, engine):
        engine.process(check_in())
        assert engine.reset_achievements("u1") == 1
        assert engine.ledger.earned_ids("u1") == set()

    def test_sign_out_drops_queue(self, engine):
        engine.process(check_in())
        assert engine.sign_out("u1") == 2
        assert engine.queue.pending("u1") == 0

    def test_founding_crew_multiplier_follows_badge(self, engine):
        hosted = ActivityEvent(user_id="u1", kind="plan_hosted", payload={"attendee_count": 1})
        engine.grant("u1", "founding_crew")
        assert engine.store.read("u1").is_founding_crew is True
        assert engine.process(hosted).score_delta == 28
        engine.revoke("u1", "founding_crew")
        assert engine.process(hosted).score_delta == 25

    def test_reset_clears_founder_flags(self, engine):
        engine.grant("u1", "beta_pioneer")
        engine.reset_achievements("u1")
        stats = engine.store.read("u1")
        assert (stats.is_founding_crew, stats.is_beta_pioneer) == (False, False)


class TestRetriedEvents:
    def test_caller_key_cannot_cancel_badge_bonus(self, engine):
        engine.process(photo(key="badge:founding_crew"))
        assert engine.grant("u1", "founding_crew").new_score == 505

    def test_badge_bonus_cannot_swallow_caller_event(self, engine):
        engine.grant("u1", "founding_crew")
        result = engine.process(photo(key="badge:founding_crew"))
        assert result.applied is True
        assert engine.store.read("u1").photos_added == 1

    def test_replay_after_failed_settle_announces_everything(self, db):
        engine = _engine(db, max_retries=0)
        event = ActivityEvent(
            user_id="u1", kind="plan_hosted", payload={"attendee_count": 10}, dedupe_key="h1"
        )
        with patch.object(engine.ledger, "mark_all_notified", side_effect=PersistenceFailure("disk I/O error")):
            with pytest.raises(PersistenceFailure):
                engine.process(event)
        assert engine.queue.pending("u1") == 0

        retry = engine.process(event)
        assert retry.applied is False
        assert retry.notifications[0] == ScoreDelta(125, 125, "Plan hosted")
        level_up = retry.notifications[1]
        assert isinstance(level_up, LevelUp)
        assert (level_up.old.id, level_up.new.id) == ("rookie", "junior")
        assert retry.notifications[2:]
        assert all(isinstance(e, BadgeUnlocked) for e in retry.notifications[2:])

        assert engine.process(event).notifications == []
        assert engine.store.read("u1").plans_hosted == 1


class RecordingSink:
    def __init__(self):
        self.events = []

    def on_event(self, user_id, event):
        self.events.append(event)


class FollowUpSink(RecordingSink):
    """Reacts to the first notification by recording another event for the same user."""

    def __init__(self, engine):
        super().__init__()
        self.engine = engine
        self.followed_up = False

    def on_event(self, user_id, event):
        super().on_event(user_id, event)
        if not self.followed_up:
            self.followed_up = True
            self.engine.process(ActivityEvent(user_id=user_id, kind="photo_added"))


class TestSinkDelivery:
    def test_attached_sink_receives_events(self, db):
        engine = _engine(db, catalog=[])
        sink = RecordingSink()
        engine.queue.attach("u1", sink)
        engine.process(photo())
        assert sink.events == [ScoreDelta(5, 5, "Photo uploaded")]
        assert engine.queue.pending("u1") == 0

    def test_sink_may_call_back_into_engine(self, db):
        engine = _engine(db, catalog=[])
        sink = FollowUpSink(engine)
        engine.queue.attach("u1", sink)
        worker = threading.Thread(target=engine.process, args=(photo(),))
        worker.start()
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert sink.events == [
            ScoreDelta(5, 5, "Photo uploaded"),
            ScoreDelta(5, 10, "Photo uploaded"),
        ]
        assert engine.store.read("u1").photos_added == 2


class TestStreakBadges:
    START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def _check_in_on(self, engine, day):
        return engine.process(ActivityEvent(
            user_id="u1", kind="check_in", payload={"city": "Lisbon"},
            occurred_at=self.START + timedelta(days=day),
        ))

    def test_lapsed_streak_is_not_rewarded(self, engine):
        for day in range(6):
            self._check_in_on(engine, day)
        assert engine.store.read("u1").current_streak == 6

        engine.process(ActivityEvent(
            user_id="u1", kind="streak_tick", occurred_at=self.START + timedelta(days=8)
        ))
        assert engine.store.read("u1").current_streak == 0
        assert "streak_master_7" not in engine.ledger.earned_ids("u1")

        unlocked = []
        for day in range(10, 18):
            unlocked += [b.id for b in self._check_in_on(engine, day).badges]
        assert unlocked.count("streak_master_7") == 1
        assert engine.store.read("u1").current_streak == 8


class TestConcurrency:
    def test_parallel_events_for_one_user(self, db):
        engine = _engine(db, catalog=[])

        def worker():
            for _ in range(10):
                engine.process(photo())

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        stats = engine.store.read("u1")
        assert stats.photos_added == 40
        assert stats.score == 200


class TestReadSide:
    def test_profile(self, engine):
        engine.process(check_in())
        profile = engine.profile("u1")
        assert profile["score"] == 15
        assert profile["level"] == "rookie"
        assert profile["score_to_next_level"] == 85
        assert profile["badges"] == ["first_layover"]
        assert profile["current_streak"] == 1

    def test_profile_lists_corrections(self, engine):
        engine.process(check_in())
        engine.correct_score("u1", -5, "duplicate import")
        corrections = engine.profile("u1")["corrections"]
        assert [(c["amount"], c["reason"]) for c in corrections] == [(-5, "duplicate import")]

    def test_badges_report_earned_at(self, db):
        engine = _engine(db, catalog=[_photo_badge("snap")])
        engine.process(photo())
        row = engine.badges("u1")[0]
        assert row["earned"] is True
        assert row["earned_at"]

    def test_levels(self, engine):
        levels = engine.levels()
        assert levels[0]["id"] == "rookie"
        assert levels[-1]["min_score"] == 10000

    def test_from_settings(self, tmp_path):
        settings = EngineSettings(db_path=tmp_path / "x.db", queue_max_size=5, levels=SMALL_TABLE)
        engine = EngagementEngine.from_settings(settings)
        assert engine.queue.max_size == 5
        assert engine.tiers == SMALL_TABLE
        engine.close()
