"""Notification events and the per-user delivery queue.

The engine only guarantees order. Pacing, animation and dismissal belong to
whatever sink consumes the queue.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Protocol, Union

from crew_score.badges import BadgeDefinition
from crew_score.errors import NotificationDeliveryFailure
from crew_score.levels import LevelTier

logger = logging.getLogger(__name__)

DEFAULT_MAX_DELIVERY_ATTEMPTS = 3


@dataclass(frozen=True)
class ScoreDelta:
    amount: int
    score: int  # score after the event
    reason: str = ""


@dataclass(frozen=True)
class Toast:
    message: str
    amount: int = 0


@dataclass(frozen=True)
class LevelUp:
    old: LevelTier
    new: LevelTier


@dataclass(frozen=True)
class BadgeUnlocked:
    badge: BadgeDefinition
    score_bonus: int = 0


NotificationEvent = Union[ScoreDelta, Toast, LevelUp, BadgeUnlocked]


class NotificationSink(Protocol):
    def on_event(self, user_id: str, event: NotificationEvent) -> None: ...


def describe(event: NotificationEvent) -> dict:
    """Plain-dict form of an event for logs and JSON surfaces."""
    if isinstance(event, ScoreDelta):
        return {"type": "score_delta", "amount": event.amount, "score": event.score, "reason": event.reason}
    if isinstance(event, Toast):
        return {"type": "toast", "message": event.message, "amount": event.amount}
    if isinstance(event, LevelUp):
        return {"type": "level_up", "old": event.old.id, "new": event.new.id, "name": event.new.name}
    if isinstance(event, BadgeUnlocked):
        return {
            "type": "badge_unlocked",
            "badge": event.badge.id,
            "name": event.badge.name,
            "rarity": event.badge.rarity.value,
            "score_bonus": event.score_bonus,
        }
    raise TypeError(f"not a notification event: {event!r}")


class _UserChannel:
    def __init__(self) -> None:
        self.pending: deque[NotificationEvent] = deque()
        self.sink: NotificationSink | None = None
        self.failures = 0
        self.flushing = False


class NotificationQueue:
    """Per-user FIFO queues with optional push delivery.

    enqueue() never blocks. With max_size set, a full queue drops its oldest
    event and logs a warning. A sink that raises keeps its event at the head
    of the queue; after max_delivery_attempts consecutive failures the event
    is dropped with a warning.
    """

    def __init__(
        self,
        max_size: int | None = None,
        max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS,
    ) -> None:
        if max_size is not None and max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.max_delivery_attempts = max(1, max_delivery_attempts)
        self._channels: dict[str, _UserChannel] = {}
        self._lock = threading.Lock()

    def _channel(self, user_id: str) -> _UserChannel:
        channel = self._channels.get(user_id)
        if channel is None:
            channel = self._channels[user_id] = _UserChannel()
        return channel

    def enqueue(self, user_id: str, event: NotificationEvent) -> None:
        self.enqueue_all(user_id, [event])

    def enqueue_all(self, user_id: str, events: list[NotificationEvent], push: bool = True) -> None:
        """Append events in order, then push to the attached sink if any.

        With push=False the events only buffer; the caller flushes later,
        typically after releasing its own locks.
        """
        with self._lock:
            channel = self._channel(user_id)
            for event in events:
                if self.max_size is not None and len(channel.pending) >= self.max_size:
                    dropped = channel.pending.popleft()
                    logger.warning(
                        "Notification queue for %s full (%d); dropped oldest %s",
                        user_id, self.max_size, describe(dropped)["type"],
                    )
                channel.pending.append(event)
        if push:
            self.flush(user_id)

    def pending(self, user_id: str) -> int:
        with self._lock:
            channel = self._channels.get(user_id)
            return len(channel.pending) if channel else 0

    def peek(self, user_id: str) -> list[NotificationEvent]:
        with self._lock:
            channel = self._channels.get(user_id)
            return list(channel.pending) if channel else []

    def drain(self, user_id: str) -> list[NotificationEvent]:
        """Remove and return every pending event for the user, oldest first."""
        with self._lock:
            channel = self._channels.get(user_id)
            if channel is None:
                return []
            events = list(channel.pending)
            channel.pending.clear()
            return events

    def attach(self, user_id: str, sink: NotificationSink) -> None:
        """Register a push sink and deliver any backlog."""
        with self._lock:
            channel = self._channel(user_id)
            channel.sink = sink
            channel.failures = 0
        self.flush(user_id)

    def detach(self, user_id: str) -> None:
        """Stop pushing; events keep buffering until the next attach or drain."""
        with self._lock:
            channel = self._channels.get(user_id)
            if channel is not None:
                channel.sink = None

    def drop(self, user_id: str) -> int:
        """Discard the user's queue (sign-out). Returns the number of events lost."""
        with self._lock:
            channel = self._channels.pop(user_id, None)
        lost = len(channel.pending) if channel else 0
        if lost:
            logger.warning("Dropped %d undelivered notification(s) for %s", lost, user_id)
        return lost

    def flush(self, user_id: str) -> int:
        """Push pending events to the attached sink in order. Returns how many were delivered.

        Only one thread flushes a given user at a time; others return at once and
        the active flusher picks up whatever they appended.
        """
        with self._lock:
            channel = self._channels.get(user_id)
            if channel is None or channel.flushing:
                return 0
            channel.flushing = True
        delivered = 0
        try:
            while True:
                with self._lock:
                    if channel.sink is None or not channel.pending:
                        channel.flushing = False
                        return delivered
                    sink = channel.sink
                    event = channel.pending.popleft()
                try:
                    self._deliver(sink, user_id, event)
                except NotificationDeliveryFailure as failure:
                    if self._requeue(channel, user_id, event, failure):
                        with self._lock:
                            channel.flushing = False
                        return delivered
                    continue
                with self._lock:
                    channel.failures = 0
                delivered += 1
        except BaseException:
            with self._lock:
                channel.flushing = False
            raise

    def _deliver(self, sink: NotificationSink, user_id: str, event: NotificationEvent) -> None:
        try:
            sink.on_event(user_id, event)
        except Exception as exc:
            raise NotificationDeliveryFailure(user_id, event, exc) from exc

    def _requeue(
        self,
        channel: _UserChannel,
        user_id: str,
        event: NotificationEvent,
        failure: NotificationDeliveryFailure,
    ) -> bool:
        """Put a failed event back at the head. Returns True to stop flushing for now."""
        with self._lock:
            channel.failures += 1
            if channel.failures >= self.max_delivery_attempts:
                channel.failures = 0
                logger.warning(
                    "Giving up on %s for %s after %d attempts: %s",
                    describe(event)["type"], user_id, self.max_delivery_attempts, failure.cause,
                )
                return False
            channel.pending.appendleft(event)
        logger.warning("Delivery failed for %s, will retry: %s", user_id, failure.cause)
        return True
