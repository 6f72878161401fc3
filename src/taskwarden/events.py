from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

EventKind = Literal[
    "task_started",
    "task_progress",
    "task_completed",
    "task_failed",
    "session_created",
    "session_update",
    "error_detected",
    "quality_alert",
    "system_status",
]
EVENT_KINDS: tuple[str, ...] = (
    "task_started",
    "task_progress",
    "task_completed",
    "task_failed",
    "session_created",
    "session_update",
    "error_detected",
    "quality_alert",
    "system_status",
)
PROGRESS_EVENTS = frozenset({"task_started", "task_progress", "session_created", "session_update"})
COMPLETION_EVENTS = frozenset({"task_completed"})
ERROR_EVENTS = frozenset({"task_failed", "error_detected", "quality_alert"})

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Event:
    kind: EventKind
    timestamp: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "timestamp": self.timestamp, "payload": self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


Subscriber = Callable[[Event], None]


@dataclass(slots=True)
class NotificationPolicy:
    enabled: bool = True
    on_progress: bool = True
    on_completion: bool = True
    on_error: bool = True

    def allows(self, kind: str) -> bool:
        if kind in PROGRESS_EVENTS:
            return self.on_progress
        if kind in COMPLETION_EVENTS:
            return self.on_completion
        if kind in ERROR_EVENTS:
            return self.on_error
        return True


class LocalSink:
    """Fallback destination used while no subscriber is registered."""

    def __init__(self, *, history_size: int = 500, echo: bool = True) -> None:
        self.events: deque[Event] = deque(maxlen=history_size)
        self.echo = echo

    def __call__(self, event: Event) -> None:
        self.events.append(event)
        if self.echo:
            logger.info("[%s] %s", event.kind, json.dumps(event.payload, default=str))

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]


class EventBroadcaster:
    def __init__(
        self,
        *,
        policy: NotificationPolicy | None = None,
        sink: LocalSink | None = None,
    ) -> None:
        self.policy = policy or NotificationPolicy()
        self.sink = sink or LocalSink(echo=self.policy.enabled)
        self._subscribers: list[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        try:
            self._subscribers.remove(subscriber)
        except ValueError:
            pass

    def publish(self, event: Event) -> bool:
        """Deliver an event to every subscriber; returns False if it was filtered."""
        if not self.policy.allows(event.kind):
            return False
        if not self._subscribers:
            self.sink(event)
            return True
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber failed while handling %s", event.kind)
        return True
