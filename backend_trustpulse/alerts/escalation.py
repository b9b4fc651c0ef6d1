"""
Broadcast escalation: hand pending alerts to an external sink exactly once.

The dispatched set is marked before the sink is called so a concurrent
dispatch cannot send the same alert twice. If the sink raises, the batch is
unmarked and re-offered on the next cycle. Completion is recorded separately
via AlertMonitor.acknowledge_broadcast().
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from backend_trustpulse.alerts.models import Alert, AlertSeverity
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

BROADCAST_ID_PREFIX = "trust_alert_"


class BroadcastSink(Protocol):
    """External federation/notification channel."""

    def send(self, payload: dict) -> None:
        ...


class LoggingBroadcastSink:
    """Default sink: writes the broadcast payload to the structured log."""

    def send(self, payload: dict) -> None:
        logger.warning(
            "federation_broadcast",
            broadcast_id=payload["broadcast_id"],
            alert_count=payload["alert_count"],
            critical_alerts=payload["critical_alerts"],
            alert_ids=payload["alert_ids"],
        )


def build_broadcast_payload(alerts: list[Alert], now_ts: float) -> dict:
    return {
        "broadcast_id": f"{BROADCAST_ID_PREFIX}{int(now_ts * 1000)}",
        "timestamp": now_ts,
        "alert_count": len(alerts),
        "critical_alerts": sum(1 for a in alerts if a.severity == AlertSeverity.CRITICAL),
        "alert_ids": [a.alert_id for a in alerts],
        "alerts": [a.to_dict() for a in alerts],
    }


class BroadcastEscalator:
    """Tracks which alerts were handed to the sink in this process."""

    def __init__(self, sink: BroadcastSink | None = None, clock: Callable[[], float] = time.time) -> None:
        self.sink = sink or LoggingBroadcastSink()
        self._clock = clock
        self._dispatched: set[str] = set()
        self._lock = threading.Lock()

    def dispatch(self, pending: list[Alert]) -> list[str]:
        """
        Send every not-yet-dispatched alert in one batch.

        Returns the ids handed to the sink; empty when nothing new or the sink failed.
        """
        with self._lock:
            batch = [a for a in pending if a.alert_id not in self._dispatched]
            for alert in batch:
                self._dispatched.add(alert.alert_id)
        if not batch:
            return []
        ids = [a.alert_id for a in batch]
        try:
            self.sink.send(build_broadcast_payload(batch, self._clock()))
        except Exception as e:
            with self._lock:
                self._dispatched.difference_update(ids)
            logger.exception("broadcast_dispatch_failed", alert_count=len(batch), error=str(e))
            return []
        logger.info("broadcast_dispatched", alert_count=len(batch), alert_ids=ids)
        return ids

    def was_dispatched(self, alert_id: str) -> bool:
        with self._lock:
            return alert_id in self._dispatched
