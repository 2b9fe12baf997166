"""
Loop lifecycle events.

The controller emits; observers such as the JSONL audit log subscribe,
either to everything or to a set of event types. Delivery is synchronous
and in subscription order.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, NamedTuple

from loguru import logger
from pydantic import BaseModel, Field

RUN_STARTED = "run_started"
ITERATION_STARTED = "iteration_started"
ITERATION_SKIPPED = "iteration_skipped"
ITERATION_COMPLETED = "iteration_completed"
RUN_FINISHED = "run_finished"

EVENT_TYPES = (RUN_STARTED, ITERATION_STARTED, ITERATION_SKIPPED, ITERATION_COMPLETED, RUN_FINISHED)


class LoopEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    iteration: int
    payload: dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[LoopEvent], None]


class _Subscription(NamedTuple):
    callback: Subscriber
    event_types: frozenset[str] | None

    def wants(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def subscribe(self, callback: Subscriber, event_types: Iterable[str] | None = None) -> None:
        """Deliver every event to callback, or only those whose type is in event_types."""
        types = frozenset(event_types) if event_types is not None else None
        unknown = (types or frozenset()) - set(EVENT_TYPES)
        if unknown:
            raise ValueError(f"Unknown event type(s): {sorted(unknown)}")
        self._subscriptions.append(_Subscription(callback, types))

    def emit(self, event_type: str, iteration: int, payload: dict[str, Any] | None = None) -> LoopEvent:
        event = LoopEvent(event_type=event_type, iteration=iteration, payload=payload or {})

        for sub in self._subscriptions:
            if not sub.wants(event_type):
                continue
            try:
                sub.callback(event)
            except Exception as e:
                # An observer failing must not stop the loop
                logger.warning(f"[EVENTS] Subscriber {sub.callback!r} failed on {event_type}: {e}")
        return event
