"""MCP server for crew-score.

Exposes profiles, badges and the level table as MCP tools, plus a tool for
recording activity. Run via: python3 -m crew_score.mcp_server
"""
from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from crew_score.errors import InvalidEvent

mcp = FastMCP(name="crew-score")


def _get_engine():
    from crew_score.config import load_settings
    from crew_score.engine import EngagementEngine
    return EngagementEngine.from_settings(load_settings())


@mcp.tool()
def get_profile(user_id: str) -> dict[str, Any]:
    """Get a user's score, level, progress to next level, streak and closest badges."""
    engine = _get_engine()
    try:
        profile = engine.profile(user_id)
        profile.pop("stats", None)
        return profile
    finally:
        engine.close()


@mcp.tool()
def get_badges(user_id: str, earned_only: bool = False) -> dict[str, Any]:
    """Get badges with progress for a user. Set earned_only to list only unlocked ones."""
    engine = _get_engine()
    try:
        badges = engine.badges(user_id)
    finally:
        engine.close()
    if earned_only:
        badges = [b for b in badges if b["earned"]]
    return {
        "badges": badges,
        "earned_count": sum(1 for b in badges if b["earned"]),
        "total_count": len(badges),
    }


@mcp.tool()
def get_levels() -> dict[str, Any]:
    """Get the level table: tier ids, names, score thresholds and benefits."""
    engine = _get_engine()
    try:
        return {"levels": engine.levels()}
    finally:
        engine.close()


@mcp.tool()
def record_event(
    user_id: str,
    kind: str,
    payload: dict[str, Any] | None = None,
    occurred_at: str | None = None,
    dedupe_key: str | None = None,
) -> dict[str, Any]:
    """Record an activity event (e.g. check_in, review_submitted) and return what it earned."""
    from crew_score.events import ActivityEvent
    from crew_score.notifications import describe

    raw: dict[str, Any] = {"userId": user_id, "kind": kind, "payload": payload or {}, "dedupeKey": dedupe_key}
    if occurred_at:
        raw["occurredAt"] = occurred_at
    engine = _get_engine()
    try:
        result = engine.process(ActivityEvent.from_dict(raw))
    except InvalidEvent as exc:
        return {"error": str(exc)}
    finally:
        engine.close()
    return {
        "applied": result.applied,
        "score": result.new_score,
        "score_delta": result.score_delta,
        "level_up": result.level_up[1].id if result.level_up else None,
        "badges": [badge.id for badge in result.badges],
        "notifications": [describe(event) for event in result.notifications],
    }


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
