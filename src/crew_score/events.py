"""Activity events: the sole input to the scoring pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from crew_score.errors import InvalidEvent


class EventKind(str, Enum):
    CHECK_IN = "check_in"
    SPOT_CHECK_IN = "spot_check_in"
    REVIEW_SUBMITTED = "review_submitted"
    REVIEW_UPVOTED = "review_upvoted"
    PHOTO_ADDED = "photo_added"
    PLAN_CREATED = "plan_created"
    PLAN_HOSTED = "plan_hosted"
    PLAN_ATTENDED = "plan_attended"
    PLAN_MESSAGE = "plan_message"
    CONNECTION_MADE = "connection_made"
    CREW_WELCOMED = "crew_welcomed"
    REFERRAL_COMPLETED = "referral_completed"
    STREAK_TICK = "streak_tick"

    @classmethod
    def parse(cls, value: str | EventKind) -> EventKind:
        """Accept enum members, values, and hyphenated spellings ("check-in")."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidEvent(f"event kind must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().lower().replace("-", "_"))
        except ValueError:
            raise InvalidEvent(f"unknown event kind: {value!r}") from None


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return _as_utc(raw)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    if isinstance(raw, str):
        try:
            return _as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError:
            raise InvalidEvent(f"bad occurredAt timestamp: {raw!r}") from None
    raise InvalidEvent(f"bad occurredAt timestamp: {raw!r}")


@dataclass(frozen=True)
class ActivityEvent:
    """One discrete thing a user did.

    ``dedupe_key`` is optional; when set, re-applying an event with the same
    key for the same user is a no-op.
    """

    user_id: str
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dedupe_key: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.user_id, str) or not self.user_id.strip():
            raise InvalidEvent("user_id must be a non-empty string")
        object.__setattr__(self, "kind", EventKind.parse(self.kind))
        if not isinstance(self.payload, dict):
            raise InvalidEvent(f"payload must be a mapping, got {type(self.payload).__name__}")
        object.__setattr__(self, "occurred_at", _parse_timestamp(self.occurred_at))
        if self.dedupe_key is not None and (
            not isinstance(self.dedupe_key, str) or not self.dedupe_key
        ):
            raise InvalidEvent("dedupe_key must be a non-empty string when given")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActivityEvent:
        """Build an event from the ingestion contract.

        Accepts both camelCase (``userId``, ``occurredAt``, ``dedupeKey``) and
        snake_case keys. Missing ``occurredAt`` means "now".
        """
        if not isinstance(data, dict):
            raise InvalidEvent("event must be a mapping")
        user_id = data.get("userId", data.get("user_id"))
        kind = data.get("kind")
        if user_id is None or kind is None:
            raise InvalidEvent("event requires userId and kind")
        occurred_at = data.get("occurredAt", data.get("occurred_at"))
        return cls(
            user_id=user_id,
            kind=kind,
            payload=data.get("payload") or {},
            occurred_at=occurred_at if occurred_at is not None else datetime.now(timezone.utc),
            dedupe_key=data.get("dedupeKey", data.get("dedupe_key")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "kind": self.kind.value,
            "payload": dict(self.payload),
            "occurredAt": self.occurred_at.isoformat(),
            "dedupeKey": self.dedupe_key,
        }
