"""
Cycle event bus: fan-out of "aggregation cycle complete" to independent consumers.

The aggregation engine publishes one AggregationResult per cycle; the alert
monitor and reward-trigger agent subscribe independently. A failing subscriber
is logged and skipped; the others still receive the event and the publisher
never sees the error.
"""

from __future__ import annotations

import threading
from typing import Any, Callable

from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[Any], None]


class CycleEventBus:
    """Synchronous, in-process publish/subscribe with per-subscriber isolation."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[str, Subscriber]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber, name: str | None = None) -> None:
        label = name or getattr(callback, "__qualname__", repr(callback))
        with self._lock:
            if any(cb == callback for _, cb in self._subscribers):
                return
            self._subscribers.append((label, callback))
        logger.info("event_subscriber_registered", subscriber=label)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers = [(n, cb) for n, cb in self._subscribers if cb != callback]

    def publish(self, event: Any) -> int:
        """Deliver event to every subscriber in registration order. Returns failure count."""
        with self._lock:
            subscribers = list(self._subscribers)
        failures = 0
        for label, callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                failures += 1
                logger.exception("event_subscriber_failed", subscriber=label, error=str(e))
        logger.debug("event_published", subscribers=len(subscribers), failures=failures)
        return failures

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
