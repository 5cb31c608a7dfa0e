"""Tests for CLI commands and display helpers."""

from __future__ import annotations

import json

import pytest
from rich.console import Console

from crew_score.cli import build_parser, do_badges, do_grant, do_levels, do_profile, do_record, do_replay
from crew_score.db import Database
from crew_score.display import ConsoleSink, format_notification, format_number
from crew_score.engine import EngagementEngine
from crew_score.ledger import AchievementLedger
from crew_score.notifications import NotificationQueue, ScoreDelta, Toast
from crew_score.store import StatsStore


@pytest.fixture
def db(tmp_path):
    """Create a temporary database for testing."""
    db_path = tmp_path / "test.db"
    database = Database(db_path=db_path)
    yield database
    database.close()


@pytest.fixture
def engine(db):
    return EngagementEngine(StatsStore(db), AchievementLedger(db), NotificationQueue(), new_user_days=0)


class RecordingSink:
    def __init__(self):
        self.events = []

    def on_event(self, user_id, event):
        self.events.append(event)


# ── Argument Parsing ──────────────────────────────────────────────────────────


class TestArgumentParsing:
    def test_no_args_defaults_to_none_command(self):
        args = build_parser().parse_args([])
        assert args.command is None

    def test_record_command(self):
        args = build_parser().parse_args(
            ["record", "check_in", "--user", "u1", "--payload", '{"city": "Rome"}', "-k", "evt-1"]
        )
        assert args.command == "record"
        assert args.kind == "check_in"
        assert args.user == "u1"
        assert args.dedupe_key == "evt-1"

    def test_record_rejects_unknown_kind(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["record", "moonwalk", "--user", "u1"])

    def test_record_requires_user(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["record", "check_in"])

    def test_replay_command(self):
        args = build_parser().parse_args(["replay", "events.jsonl"])
        assert str(args.file) == "events.jsonl"

    def test_global_options(self):
        args = build_parser().parse_args(["--db", "x.db", "levels"])
        assert str(args.db) == "x.db"
        assert args.user is None

    def test_grant_command(self):
        args = build_parser().parse_args(["grant", "founding_crew", "-u", "u1"])
        assert args.badge == "founding_crew"


# ── format_number ─────────────────────────────────────────────────────────────


class TestFormatNumber:
    def test_small_number(self):
        assert format_number(42) == "42"

    def test_number_with_commas(self):
        assert format_number(1200) == "1,200"

    def test_ten_thousand(self):
        assert format_number(10_000) == "10.0K"

    def test_million(self):
        assert format_number(1_234_567) == "1.2M"

    def test_large_million(self):
        assert format_number(123_456_789) == "123M"


class TestFormatNotification:
    def test_score_delta(self):
        text = format_notification(ScoreDelta(15, 115, "Layover check-in"))
        assert "+15 CMS" in text
        assert "Layover check-in" in text

    def test_toast(self):
        assert "Nice" in format_notification(Toast("Nice"))

    def test_console_sink_prints(self):
        out = Console(record=True, width=120)
        ConsoleSink(out).on_event("u1", Toast("Welcome aboard"))
        assert "Welcome aboard" in out.export_text()


# ── Commands ──────────────────────────────────────────────────────────────────


class TestDoRecord:
    def test_records_event(self, engine):
        sink = RecordingSink()
        result = do_record(engine, "u1", "check_in", payload='{"city": "Rome"}', sink=sink)
        assert result["score"] == 15
        assert result["level"] == "rookie"
        assert result["processed"] == 1
        assert [type(e).__name__ for e in sink.events] == ["ScoreDelta", "BadgeUnlocked"]

    def test_replayed_key(self, engine):
        do_record(engine, "u1", "photo_added", dedupe_key="p1")
        result = do_record(engine, "u1", "photo_added", dedupe_key="p1")
        assert result["replayed"] == 1
        assert result["score"] == 5

    def test_bad_json_payload(self, engine):
        assert "error" in do_record(engine, "u1", "check_in", payload="{city")

    def test_invalid_event(self, engine):
        result = do_record(engine, "u1", "check_in", payload="{}")
        assert "city" in result["error"]
        assert engine.store.read("u1").score == 0

    def test_explicit_time(self, engine):
        do_record(engine, "u1", "check_in", payload={"city": "Rome"}, occurred_at="2026-03-01T10:00:00Z")
        assert engine.store.read("u1").last_check_in_at.isoformat() == "2026-03-01T10:00:00+00:00"


class TestDoReplay:
    def test_processes_file(self, engine, tmp_path):
        path = tmp_path / "events.jsonl"
        lines = [
            {"userId": "u1", "kind": "check_in", "payload": {"city": "Rome"}, "dedupeKey": "e1"},
            {"userId": "u1", "kind": "photo_added", "dedupeKey": "e2"},
            {"userId": "u1", "kind": "photo_added", "dedupeKey": "e2"},
        ]
        path.write_text("\n".join(json.dumps(line) for line in lines) + "\n\n", encoding="utf-8")
        result = do_replay(engine, path)
        assert result["processed"] == 3
        assert result["replayed"] == 1
        assert result["rejected"] == 0
        assert result["score"] == 20

    def test_skips_bad_lines(self, engine, tmp_path, caplog):
        path = tmp_path / "events.jsonl"
        path.write_text(
            "not json\n"
            '{"userId": "u1", "kind": "moonwalk"}\n'
            '{"userId": "u1", "kind": "check_in", "payload": {}}\n'
            '{"userId": "u1", "kind": "connection_made"}\n',
            encoding="utf-8",
        )
        result = do_replay(engine, path)
        assert result["processed"] == 1
        assert result["rejected"] == 3
        assert result["score"] == 5
        assert "skipped" in caplog.text

    def test_empty_file(self, engine, tmp_path):
        path = tmp_path / "events.jsonl"
        path.write_text("", encoding="utf-8")
        assert do_replay(engine, path)["processed"] == 0


class TestReadCommands:
    def test_profile(self, engine):
        do_record(engine, "u1", "check_in", payload={"city": "Rome"})
        profile = do_profile(engine, "u1")
        assert profile["score"] == 15
        assert profile["level_name"] == "Rookie Crew"

    def test_badges(self, engine):
        do_record(engine, "u1", "check_in", payload={"city": "Rome"})
        earned = [b["id"] for b in do_badges(engine, "u1") if b["earned"]]
        assert earned == ["first_layover"]

    def test_levels_highlight(self, engine):
        data = do_levels(engine, "u1")
        assert data["current"] == "rookie"
        assert len(data["levels"]) == 8

    def test_levels_without_user(self, engine):
        assert do_levels(engine)["current"] is None


class TestDoGrant:
    def test_grant(self, engine):
        result = do_grant(engine, "u1", "beta_pioneer")
        assert result["granted"] == 1
        assert result["score"] == 250

    def test_unknown_badge(self, engine):
        assert "error" in do_grant(engine, "u1", "nope")
