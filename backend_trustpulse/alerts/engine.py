"""
Alert monitor: spike severity classification, system degradation alerts,
broadcast escalation and the alert log.

Subscribed to the cycle event bus. For each AggregationResult:
- each volatility spike with change >= critical threshold raises a critical
  critical_volatility alert; change >= moderate threshold raises a medium
  moderate_volatility alert; below that, nothing;
- broadcast is required when change >= broadcast threshold;
- critical/concerning system health raises one system_degradation alert per
  rolling dedup window (critical: severity critical + broadcast; concerning:
  severity high, no broadcast);
- pending broadcasts are dispatched to the sink.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable

from backend_trustpulse.aggregation.models import AggregationResult, SystemHealth, VolatilitySpike
from backend_trustpulse.alerts.escalation import BroadcastEscalator, BroadcastSink
from backend_trustpulse.alerts.models import Alert, AlertSeverity, AlertState, AlertType
from backend_trustpulse.core.hashing import content_cid
from backend_trustpulse.database.database import KEY_ALERTS, StateBackend
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

DEFAULT_CRITICAL_THRESHOLD = 0.30
DEFAULT_MODERATE_THRESHOLD = 0.15
DEFAULT_BROADCAST_THRESHOLD = 0.25
DEFAULT_DEGRADATION_DEDUP_SEC = 60 * 60
DEFAULT_QUERY_WINDOW_HOURS = 24.0
ALERT_ID_PREFIX = "alert_"


@dataclass
class AlertConfig:
    """Severity thresholds and dedup for the alert monitor."""

    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
    """change >= this is a critical_volatility alert."""
    moderate_threshold: float = DEFAULT_MODERATE_THRESHOLD
    """change >= this (and below critical) is a moderate_volatility alert."""
    broadcast_threshold: float = DEFAULT_BROADCAST_THRESHOLD
    """change >= this requires federation broadcast."""
    degradation_dedup_sec: float = DEFAULT_DEGRADATION_DEDUP_SEC
    """At most one system_degradation alert within this rolling window."""


@dataclass
class MonitoringMetrics:
    total_cycles: int = 0
    volatility_events: int = 0
    system_degradations: int = 0
    broadcasts_dispatched: int = 0
    average_cycle_ms: float = 0.0
    last_cycle_at: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def classify_spike(change: float, config: AlertConfig) -> tuple[AlertType, AlertSeverity] | None:
    """Map a relative change to (alert_type, severity); None when below the moderate threshold."""
    if change >= config.critical_threshold:
        return AlertType.CRITICAL_VOLATILITY, AlertSeverity.CRITICAL
    if change >= config.moderate_threshold:
        return AlertType.MODERATE_VOLATILITY, AlertSeverity.MEDIUM
    return None


class AlertMonitor:
    def __init__(
        self,
        storage: StateBackend,
        config: AlertConfig | None = None,
        sink: BroadcastSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or AlertConfig()
        self._storage = storage
        self._clock = clock
        self.escalator = BroadcastEscalator(sink, clock=clock)
        self._alerts: list[Alert] = []
        self._metrics = MonitoringMetrics()
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()

    def load(self) -> None:
        raw = self._storage.load(KEY_ALERTS, default=[]) or []
        with self._lock:
            self._alerts = [Alert.from_dict(a) for a in raw]
        logger.info("alert_log_loaded", alerts=len(self._alerts))

    def _persist(self) -> None:
        with self._persist_lock:
            with self._lock:
                payload = [a.to_dict() for a in self._alerts]
            self._storage.save(KEY_ALERTS, payload)

    # ------------------------------------------------------------------
    # Cycle handling
    # ------------------------------------------------------------------

    def on_cycle(self, result: AggregationResult) -> list[Alert]:
        """Event-bus handler: raise alerts for one cycle, then dispatch broadcasts."""
        started = time.perf_counter()
        now = self._clock()
        raised: list[Alert] = []
        for spike in result.spikes:
            alert = self._alert_for_spike(spike, now)
            if alert is not None:
                raised.append(alert)
        degradation = self._degradation_alert(result, now)
        if degradation is not None:
            raised.append(degradation)

        with self._lock:
            for alert in raised:
                self._settle(alert)
                self._alerts.append(alert)
            self._metrics.volatility_events += sum(
                1 for a in raised if a.alert_type != AlertType.SYSTEM_DEGRADATION
            )
            if degradation is not None:
                self._metrics.system_degradations += 1
        if raised:
            self._persist()

        self.dispatch_pending()

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        with self._lock:
            m = self._metrics
            m.total_cycles += 1
            m.average_cycle_ms += (elapsed_ms - m.average_cycle_ms) / m.total_cycles
            m.last_cycle_at = now
        return raised

    def _alert_for_spike(self, spike: VolatilitySpike, now: float) -> Alert | None:
        classification = classify_spike(spike.change_percent, self.config)
        if classification is None:
            return None
        alert_type, severity = classification
        metrics = {
            "previous_sentiment": spike.previous_sentiment,
            "current_sentiment": spike.current_sentiment,
            "change_percent": spike.change_percent,
            "spike_id": spike.spike_id,
            "spike_cid": spike.cid,
        }
        alert = self._new_alert(
            alert_type=alert_type,
            severity=severity,
            target_id=spike.target_id,
            description=(
                f"{alert_type.value.replace('_', ' ')} on {spike.target_id}: "
                f"{spike.change_percent * 100:.1f}% change"
            ),
            broadcast_required=spike.change_percent >= self.config.broadcast_threshold,
            metrics=metrics,
            now=now,
        )
        logger.warning(
            "volatility_alert_raised",
            alert_id=alert.alert_id,
            target_id=spike.target_id,
            severity=severity.value,
            change_percent=round(spike.change_percent, 4),
            broadcast_required=alert.broadcast_required,
        )
        return alert

    def _degradation_alert(self, result: AggregationResult, now: float) -> Alert | None:
        health = result.system_health
        if health not in (SystemHealth.CRITICAL, SystemHealth.CONCERNING):
            return None
        cutoff = now - self.config.degradation_dedup_sec
        with self._lock:
            recent = any(
                a.alert_type == AlertType.SYSTEM_DEGRADATION and a.created_at > cutoff
                for a in self._alerts
            )
        if recent:
            logger.debug("system_degradation_deduplicated", system_health=health.value)
            return None
        critical = health == SystemHealth.CRITICAL
        alert = self._new_alert(
            alert_type=AlertType.SYSTEM_DEGRADATION,
            severity=AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH,
            target_id=None,
            description=(
                f"system health {health.value}: {len(result.volatile_targets)} volatile targets, "
                f"overall sentiment {result.overall_sentiment:.2f}"
            ),
            broadcast_required=critical,
            metrics={
                "system_health": health.value,
                "volatile_targets": list(result.volatile_targets),
                "overall_sentiment": result.overall_sentiment,
                "active_targets": result.active_targets,
                "cycle_id": result.cycle_id,
            },
            now=now,
        )
        logger.warning(
            "system_degradation_alert_raised",
            alert_id=alert.alert_id,
            system_health=health.value,
            volatile_targets=len(result.volatile_targets),
        )
        return alert

    def _new_alert(
        self,
        *,
        alert_type: AlertType,
        severity: AlertSeverity,
        target_id: str | None,
        description: str,
        broadcast_required: bool,
        metrics: dict,
        now: float,
    ) -> Alert:
        cid = content_cid({
            "alert_type": alert_type.value,
            "target_id": target_id,
            "metrics": metrics,
            "created_at": now,
        })
        return Alert(
            alert_id=f"{ALERT_ID_PREFIX}{uuid.uuid4().hex[:16]}",
            alert_type=alert_type,
            severity=severity,
            target_id=target_id,
            description=description,
            cid=cid,
            broadcast_required=broadcast_required,
            created_at=now,
            metrics=metrics,
        )

    @staticmethod
    def _settle(alert: Alert) -> None:
        if alert.broadcast_required:
            alert.transition(AlertState.PENDING_BROADCAST)
        else:
            alert.transition(AlertState.RESOLVED)

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    def dispatch_pending(self) -> list[str]:
        """Offer every pending_broadcast alert to the sink; each is sent at most once per process."""
        with self._lock:
            pending = [a for a in self._alerts if a.state == AlertState.PENDING_BROADCAST]
        if not pending:
            return []
        sent = self.escalator.dispatch(pending)
        if sent:
            with self._lock:
                self._metrics.broadcasts_dispatched += len(sent)
        return sent

    def acknowledge_broadcast(self, alert_id: str) -> bool:
        """
        Mark a pending alert broadcast_complete. True on the transition,
        False when unknown or already complete (idempotent).
        """
        with self._lock:
            alert = self._find(alert_id)
            if alert is None or not alert.transition(AlertState.BROADCAST_COMPLETE):
                return False
            alert.broadcast_completed_at = self._clock()
        self._persist()
        logger.info("broadcast_acknowledged", alert_id=alert_id)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _find(self, alert_id: str) -> Alert | None:
        for alert in self._alerts:
            if alert.alert_id == alert_id:
                return alert
        return None

    def get_alert(self, alert_id: str) -> Alert | None:
        with self._lock:
            alert = self._find(alert_id)
            return Alert.from_dict(alert.to_dict()) if alert else None

    def get_alerts(
        self,
        severity: AlertSeverity | str | None = None,
        since_hours: float = DEFAULT_QUERY_WINDOW_HOURS,
    ) -> list[Alert]:
        """Alerts created within since_hours, optionally one severity, newest first."""
        cutoff = self._clock() - since_hours * 3600.0
        wanted = AlertSeverity(severity) if severity is not None else None
        with self._lock:
            matches = [
                Alert.from_dict(a.to_dict())
                for a in self._alerts
                if a.created_at >= cutoff and (wanted is None or a.severity == wanted)
            ]
        matches.sort(key=lambda a: a.created_at, reverse=True)
        return matches

    def metrics(self) -> dict:
        with self._lock:
            data = self._metrics.to_dict()
            data["total_alerts"] = len(self._alerts)
            data["pending_broadcast"] = sum(1 for a in self._alerts if a.state == AlertState.PENDING_BROADCAST)
        return data
