"""CLI commands for crew-score."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from crew_score.config import configure_logging, load_settings
from crew_score.display import (
    ConsoleSink,
    print_badges,
    print_error,
    print_levels,
    print_profile,
    print_record_result,
)
from crew_score.engine import EngagementEngine
from crew_score.errors import EngagementError, InvalidEvent
from crew_score.events import ActivityEvent, EventKind
from crew_score.notifications import NotificationSink

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="crew-score",
        description="Points, levels and badges for crew activity",
    )
    parser.add_argument("--config", "-c", type=Path, default=None, help="Path to config.json")
    parser.add_argument("--db", type=Path, default=None, help="Override database path")
    subparsers = parser.add_subparsers(dest="command")

    record_p = subparsers.add_parser("record", help="Record one activity event")
    record_p.add_argument("kind", choices=[k.value for k in EventKind], help="Event kind")
    record_p.add_argument("--user", "-u", required=True, help="User id")
    record_p.add_argument("--payload", "-p", default="{}", help="Event payload as JSON")
    record_p.add_argument("--at", default=None, help="When it happened (ISO 8601, default now)")
    record_p.add_argument("--dedupe-key", "-k", default=None, help="Idempotency key")

    replay_p = subparsers.add_parser("replay", help="Process events from a JSON Lines file")
    replay_p.add_argument("file", type=Path, help="One event object per line")

    profile_p = subparsers.add_parser("profile", help="Show score, level and progress")
    profile_p.add_argument("--user", "-u", required=True, help="User id")

    badges_p = subparsers.add_parser("badges", help="List badges with progress")
    badges_p.add_argument("--user", "-u", required=True, help="User id")

    levels_p = subparsers.add_parser("levels", help="Show the level table")
    levels_p.add_argument("--user", "-u", default=None, help="Highlight this user's level")

    grant_p = subparsers.add_parser("grant", help="Award a badge by hand")
    grant_p.add_argument("badge", help="Badge id")
    grant_p.add_argument("--user", "-u", required=True, help="User id")
    return parser


def main() -> None:
    """Entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    settings = load_settings(args.config)
    if args.db is not None:
        settings.db_path = args.db
    configure_logging(settings.log_level)

    engine = EngagementEngine.from_settings(settings)
    sink = ConsoleSink()

    try:
        if args.command == "record":
            result = do_record(
                engine, args.user, args.kind, payload=args.payload,
                occurred_at=args.at, dedupe_key=args.dedupe_key, sink=sink,
            )
            if "error" in result:
                print_error(result["error"])
            else:
                print_record_result(result)
        elif args.command == "replay":
            print_record_result(do_replay(engine, args.file, sink=sink))
        elif args.command == "profile":
            print_profile(do_profile(engine, args.user))
        elif args.command == "badges":
            print_badges(do_badges(engine, args.user))
        elif args.command == "levels":
            data = do_levels(engine, args.user)
            print_levels(data["levels"], current=data["current"])
        elif args.command == "grant":
            result = do_grant(engine, args.user, args.badge, sink=sink)
            if "error" in result:
                print_error(result["error"])
    except EngagementError as exc:
        print_error(str(exc))
        raise SystemExit(1) from exc
    finally:
        engine.close()


def _summary(engine: EngagementEngine, user_id: str, **counts: int) -> dict:
    tier = engine.level_of(user_id)
    return {
        **counts,
        "user_id": user_id,
        "score": engine.store.read(user_id).score,
        "level": tier.id,
        "level_name": tier.name,
    }


def do_record(
    engine: EngagementEngine,
    user_id: str,
    kind: str,
    payload: str | dict = "{}",
    occurred_at: str | None = None,
    dedupe_key: str | None = None,
    sink: NotificationSink | None = None,
) -> dict:
    """Record one event. Returns a summary dict, or {"error": ...} for an invalid event."""
    try:
        data = json.loads(payload) if isinstance(payload, str) else payload
    except json.JSONDecodeError as exc:
        return {"error": f"payload is not valid JSON: {exc}"}
    raw = {"userId": user_id, "kind": kind, "payload": data, "dedupeKey": dedupe_key}
    if occurred_at:
        raw["occurredAt"] = occurred_at
    if sink is not None:
        engine.queue.attach(user_id, sink)
    try:
        result = engine.process(ActivityEvent.from_dict(raw))
    except InvalidEvent as exc:
        return {"error": str(exc)}
    return _summary(
        engine, user_id,
        processed=1,
        replayed=0 if result.applied else 1,
        rejected=0,
        notifications=len(result.notifications),
    )


def do_replay(engine: EngagementEngine, path: Path, sink: NotificationSink | None = None) -> dict:
    """Process a JSON Lines file of events in order. Bad lines are logged and skipped."""
    processed = replayed = rejected = 0
    last_user = None
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                event = ActivityEvent.from_dict(json.loads(line))
            except (json.JSONDecodeError, InvalidEvent) as exc:
                logger.warning("%s:%d skipped: %s", path, lineno, exc)
                rejected += 1
                continue
            if sink is not None:
                engine.queue.attach(event.user_id, sink)
            try:
                result = engine.process(event)
            except InvalidEvent as exc:
                logger.warning("%s:%d rejected: %s", path, lineno, exc)
                rejected += 1
                continue
            processed += 1
            if not result.applied:
                replayed += 1
            last_user = event.user_id
    if last_user is None:
        return {"processed": processed, "replayed": replayed, "rejected": rejected, "score": 0}
    return _summary(engine, last_user, processed=processed, replayed=replayed, rejected=rejected)


def do_profile(engine: EngagementEngine, user_id: str) -> dict:
    return engine.profile(user_id)


def do_badges(engine: EngagementEngine, user_id: str) -> list[dict]:
    return engine.badges(user_id)


def do_levels(engine: EngagementEngine, user_id: str | None = None) -> dict:
    current = engine.level_of(user_id).id if user_id else None
    return {"levels": engine.levels(), "current": current}


def do_grant(
    engine: EngagementEngine, user_id: str, badge_id: str, sink: NotificationSink | None = None
) -> dict:
    if sink is not None:
        engine.queue.attach(user_id, sink)
    try:
        result = engine.grant(user_id, badge_id)
    except ValueError as exc:
        return {"error": str(exc)}
    return _summary(engine, user_id, granted=len(result.badges))
