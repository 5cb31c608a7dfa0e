"""Error types raised by the crew-score engine."""

from __future__ import annotations


class EngagementError(Exception):
    """Base class for engine errors."""


class InvalidEvent(EngagementError):
    """Unknown event kind or malformed payload. Raised before any mutation."""


class InvariantViolation(EngagementError):
    """A delta would drive a counter (or the score) below zero."""


class PersistenceFailure(EngagementError):
    """The statistics store could not durably apply a delta."""


class NotificationDeliveryFailure(EngagementError):
    """A notification sink raised while handling an event."""

    def __init__(self, user_id: str, event: object, cause: BaseException | None = None) -> None:
        super().__init__(f"delivery to {user_id} failed for {type(event).__name__}: {cause}")
        self.user_id = user_id
        self.event = event
        self.cause = cause
