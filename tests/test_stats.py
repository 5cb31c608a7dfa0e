"""Tests for the statistics document and delta validation."""

import pytest

from crew_score.errors import InvariantViolation
from crew_score.stats import SCALAR_COUNTERS, StatisticsDelta, UserStatistics, check_delta


class TestUserStatistics:
    def test_all_zero_defaults(self):
        stats = UserStatistics(user_id="u1")
        assert stats.score == 0
        assert all(getattr(stats, name) == 0 for name in SCALAR_COUNTERS)
        assert stats.city_check_ins == {}
        assert stats.last_check_in_at is None

    def test_keyed_missing_is_zero(self):
        stats = UserStatistics(user_id="u1", city_check_ins={"Rome": 2})
        assert stats.keyed("city_check_ins", "Rome") == 2
        assert stats.keyed("city_check_ins", "Paris") == 0

    def test_attendance_rate(self):
        stats = UserStatistics(user_id="u1", plans_attended=4, plans_attended_verified=3)
        assert stats.attendance_rate == 0.75

    def test_attendance_rate_no_plans(self):
        assert UserStatistics(user_id="u1").attendance_rate == 0.0

    def test_to_dict_is_plain(self):
        data = UserStatistics(user_id="u1", photos_added=2).to_dict()
        assert data["photos_added"] == 2
        assert data["attendance_rate"] == 0.0
        assert data["last_check_in_at"] is None


class TestStatisticsDelta:
    def test_increment_accumulates(self):
        delta = StatisticsDelta()
        delta.increment("photos_added")
        delta.increment("photos_added", 2)
        assert delta.increments == {"photos_added": 3}

    def test_increment_key(self):
        delta = StatisticsDelta()
        delta.increment_key("city_check_ins", "Rome")
        delta.increment_key("city_check_ins", "Rome")
        assert delta.keyed_increments == {"city_check_ins": {"Rome": 2}}

    def test_is_empty(self):
        assert StatisticsDelta().is_empty()
        assert not StatisticsDelta(score=1).is_empty()


class TestCheckDelta:
    def test_valid_delta(self):
        delta = StatisticsDelta(increments={"photos_added": 1}, score=5)
        check_delta(UserStatistics(user_id="u1"), delta)

    def test_negative_counter(self):
        with pytest.raises(InvariantViolation):
            check_delta(UserStatistics(user_id="u1"), StatisticsDelta(increments={"photos_added": -1}))

    def test_negative_keyed_counter(self):
        delta = StatisticsDelta(keyed_increments={"city_check_ins": {"Rome": -1}})
        with pytest.raises(InvariantViolation):
            check_delta(UserStatistics(user_id="u1"), delta)

    def test_negative_score_delta(self):
        with pytest.raises(InvariantViolation):
            check_delta(UserStatistics(user_id="u1", score=10), StatisticsDelta(score=-1))

    def test_score_decrease_allowed_for_corrections(self):
        check_delta(UserStatistics(user_id="u1", score=10), StatisticsDelta(score=-10), allow_score_decrease=True)

    def test_score_never_below_zero(self):
        with pytest.raises(InvariantViolation):
            check_delta(UserStatistics(user_id="u1", score=5), StatisticsDelta(score=-6), allow_score_decrease=True)

    def test_unknown_counter(self):
        with pytest.raises(ValueError):
            check_delta(UserStatistics(user_id="u1"), StatisticsDelta(increments={"nope": 1}))

    def test_unknown_aggregate(self):
        with pytest.raises(ValueError):
            check_delta(UserStatistics(user_id="u1"), StatisticsDelta(sets={"nope": 1}))
