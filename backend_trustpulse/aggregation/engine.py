"""
Aggregation engine: periodic recompute of per-target sentiment.

Each cycle reads copies of all deltas and the feedback log, then per target:
- net_sentiment = net_support - net_dissent;
- average intensity and per-tier submission breakdown from the log;
- volatility against the immediately preceding snapshot:
  change = |cur - prev| / max(|prev|, 1), volatile when change >= threshold;
  a target's first reading has no baseline and is never volatile;
- trend over the last 3 readings (including this one).

System health is derived from the volatile count and the mean sentiment over
active targets. The engine is the only appender of snapshot history (bounded
to 100 per target) and publishes the AggregationResult on the event bus.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from backend_trustpulse.aggregation.models import (
    AggregationResult,
    SentimentSnapshot,
    SystemHealth,
    TargetMetrics,
    TierBreakdown,
    Trend,
    VolatilitySpike,
)
from backend_trustpulse.core.hashing import content_cid
from backend_trustpulse.database.database import KEY_SNAPSHOTS, KEY_SPIKES, StateBackend
from backend_trustpulse.database.models import FeedbackLogEntry, FeedbackType, Tier, TrustDelta
from backend_trustpulse.events.bus import CycleEventBus
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

DEFAULT_PERIOD_SEC = 3 * 60
DEFAULT_VOLATILITY_THRESHOLD = 0.15
DEFAULT_HISTORY_LIMIT = 100
DEFAULT_SPIKE_RETENTION = 1000
TREND_WINDOW = 3
TREND_EPSILON = 0.1

# Health thresholds
CRITICAL_VOLATILE_COUNT = 3
CONCERNING_VOLATILE_COUNT = 1
CONCERNING_MEAN_ABS = 50.0
GOOD_MEAN_ABS = 20.0


@dataclass
class AggregationConfig:
    period_sec: float = DEFAULT_PERIOD_SEC
    """Cycle period for the periodic task."""
    volatility_threshold: float = DEFAULT_VOLATILITY_THRESHOLD
    """Flag a target when its relative change reaches this."""
    history_limit: int = DEFAULT_HISTORY_LIMIT
    """Snapshots retained per target."""
    spike_retention: int = DEFAULT_SPIKE_RETENTION
    """Spikes retained in total (oldest dropped first)."""


class DeltaSource(Protocol):
    """Read side of the delta store used by the engine."""

    def snapshot(self) -> tuple[list[TrustDelta], list[FeedbackLogEntry]]:
        """Deltas and log read together, so totals agree with per-entry breakdowns."""
        ...


def compute_change_percent(previous: float, current: float) -> float:
    """Relative change against the previous reading, denominator floored at 1."""
    return abs(current - previous) / max(abs(previous), 1.0)


def classify_trend(readings: list[float]) -> Trend:
    """Trend of the last three readings; fewer than three is stable."""
    if len(readings) < TREND_WINDOW:
        return Trend.STABLE
    recent = readings[-TREND_WINDOW:]
    movement = recent[-1] - recent[0]
    if abs(movement) < TREND_EPSILON:
        return Trend.STABLE
    return Trend.RISING if movement > 0 else Trend.FALLING


def calculate_system_health(mean_sentiment: float, volatile_count: int) -> SystemHealth:
    if volatile_count > CRITICAL_VOLATILE_COUNT:
        return SystemHealth.CRITICAL
    if volatile_count > CONCERNING_VOLATILE_COUNT or abs(mean_sentiment) > CONCERNING_MEAN_ABS:
        return SystemHealth.CONCERNING
    if abs(mean_sentiment) > GOOD_MEAN_ABS:
        return SystemHealth.GOOD
    return SystemHealth.EXCELLENT


def build_target_metrics(delta: TrustDelta, entries: Iterable[FeedbackLogEntry]) -> TargetMetrics:
    breakdown = {t.value: TierBreakdown() for t in Tier}
    intensity_total = 0
    count = 0
    for entry in entries:
        sub = entry.submission
        bucket = breakdown[sub.submitter_tier.value]
        bucket.count += 1
        if sub.feedback_type == FeedbackType.SUPPORT:
            bucket.support += 1
        else:
            bucket.dissent += 1
        intensity_total += sub.intensity
        count += 1
    return TargetMetrics(
        target_id=delta.target_id,
        group_id=delta.group_id,
        net_sentiment=delta.net_sentiment,
        total_submissions=delta.total_submissions,
        average_intensity=(intensity_total / count) if count else 0.0,
        tier_breakdown=breakdown,
    )


class AggregationEngine:
    """run_cycle() -> AggregationResult; snapshot history and spike log owner."""

    def __init__(
        self,
        source: DeltaSource,
        storage: StateBackend,
        bus: CycleEventBus | None = None,
        config: AggregationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or AggregationConfig()
        self._source = source
        self._storage = storage
        self._bus = bus
        self._clock = clock
        self._history: dict[str, list[SentimentSnapshot]] = {}
        self._spikes: list[VolatilitySpike] = []
        self._latest: AggregationResult | None = None
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._cycle_count = 0

    def load(self) -> None:
        snapshots_raw = self._storage.load(KEY_SNAPSHOTS, default={}) or {}
        spikes_raw = self._storage.load(KEY_SPIKES, default=[]) or []
        with self._lock:
            self._history = {
                tid: [SentimentSnapshot.from_dict(s) for s in items]
                for tid, items in snapshots_raw.items()
            }
            self._spikes = [VolatilitySpike.from_dict(s) for s in spikes_raw]
        logger.info("aggregation_state_loaded", targets=len(self._history), spikes=len(self._spikes))

    def _persist(self) -> None:
        with self._persist_lock:
            with self._lock:
                snapshots = {tid: [s.to_dict() for s in items] for tid, items in self._history.items()}
                spikes = [s.to_dict() for s in self._spikes]
            self._storage.save(KEY_SNAPSHOTS, snapshots)
            self._storage.save(KEY_SPIKES, spikes)

    def run_cycle(self) -> AggregationResult:
        """
        Recompute every target, append one snapshot each, emit spikes and publish.

        Cycles are serialized; a concurrent caller waits for the running one.
        """
        with self._cycle_lock:
            result = self._compute_cycle()
        self._persist()
        if self._bus is not None:
            self._bus.publish(result)
        return result

    def _compute_cycle(self) -> AggregationResult:
        started = time.perf_counter()
        now = self._clock()
        cycle_id = f"cycle_{uuid.uuid4().hex[:16]}"
        threshold = self.config.volatility_threshold
        deltas, log = self._source.snapshot()
        entries_by_target: dict[str, list[FeedbackLogEntry]] = {}
        for entry in log:
            entries_by_target.setdefault(entry.target_id, []).append(entry)

        snapshots: dict[str, SentimentSnapshot] = {}
        metrics: dict[str, TargetMetrics] = {}
        spikes: list[VolatilitySpike] = []
        volatile_targets: list[str] = []
        active_sum = 0.0
        active_count = 0

        # Group (deck) order keeps related targets together in logs and results
        for delta in sorted(deltas, key=lambda d: (d.group_id, d.target_id)):
            target_metrics = build_target_metrics(delta, entries_by_target.get(delta.target_id, []))
            current = target_metrics.net_sentiment
            with self._lock:
                history = list(self._history.get(delta.target_id, []))

            change: float | None = None
            volatile = False
            if history:
                previous = history[-1].net_sentiment
                change = compute_change_percent(previous, current)
                volatile = change >= threshold
            trend = classify_trend([s.net_sentiment for s in history] + [current])

            snapshot = SentimentSnapshot(
                target_id=delta.target_id,
                net_sentiment=current,
                trend=trend,
                volatile=volatile,
                change_percent=change,
                cycle_timestamp=now,
            )
            target_metrics.trend = trend
            target_metrics.volatile = volatile
            snapshots[delta.target_id] = snapshot
            metrics[delta.target_id] = target_metrics

            if volatile:
                volatile_targets.append(delta.target_id)
                spike_body = {
                    "target_id": delta.target_id,
                    "previous_sentiment": history[-1].net_sentiment,
                    "current_sentiment": current,
                    "change_percent": change,
                    "trigger_threshold": threshold,
                    "cycle_timestamp": now,
                }
                spikes.append(
                    VolatilitySpike(
                        spike_id=f"spike_{uuid.uuid4().hex[:16]}",
                        cid=content_cid({**spike_body, "submissions": delta.total_submissions}),
                        **spike_body,
                    )
                )
            if delta.total_submissions > 0:
                active_sum += current
                active_count += 1

        mean = active_sum / active_count if active_count else 0.0
        health = calculate_system_health(mean, len(volatile_targets))

        with self._lock:
            limit = self.config.history_limit
            for target_id, snapshot in snapshots.items():
                items = self._history.setdefault(target_id, [])
                items.append(snapshot)
                if len(items) > limit:
                    del items[: len(items) - limit]
            self._spikes.extend(spikes)
            overflow = len(self._spikes) - self.config.spike_retention
            if overflow > 0:
                del self._spikes[:overflow]
            self._cycle_count += 1

        duration_ms = (time.perf_counter() - started) * 1000.0
        result = AggregationResult(
            cycle_id=cycle_id,
            cycle_timestamp=now,
            overall_sentiment=mean,
            total_targets=len(snapshots),
            active_targets=active_count,
            volatile_targets=volatile_targets,
            system_health=health,
            snapshots=snapshots,
            metrics=metrics,
            spikes=spikes,
            duration_ms=duration_ms,
        )
        with self._lock:
            self._latest = result
        for spike in spikes:
            logger.warning(
                "volatility_spike_detected",
                target_id=spike.target_id,
                previous_sentiment=spike.previous_sentiment,
                current_sentiment=spike.current_sentiment,
                change_percent=round(spike.change_percent, 4),
                cid=spike.cid,
            )
        logger.info(
            "aggregation_cycle_done",
            cycle_id=cycle_id,
            total_targets=result.total_targets,
            active_targets=active_count,
            volatile_targets=len(volatile_targets),
            overall_sentiment=round(mean, 3),
            system_health=health.value,
            duration_ms=round(duration_ms, 3),
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def latest(self) -> AggregationResult | None:
        with self._lock:
            return self._latest

    @property
    def cycle_count(self) -> int:
        with self._lock:
            return self._cycle_count

    def get_snapshot(self, target_id: str) -> SentimentSnapshot | None:
        with self._lock:
            items = self._history.get(target_id)
            return items[-1] if items else None

    def get_history(self, target_id: str, limit: int | None = None) -> list[SentimentSnapshot]:
        with self._lock:
            items = list(self._history.get(target_id, []))
        return items[-limit:] if limit else items

    def recent_snapshots(self) -> list[SentimentSnapshot]:
        """Latest snapshot of every target."""
        with self._lock:
            return [items[-1] for items in self._history.values() if items]

    def get_spikes(self, target_id: str | None = None, since_ts: float | None = None) -> list[VolatilitySpike]:
        with self._lock:
            spikes = list(self._spikes)
        if target_id is not None:
            spikes = [s for s in spikes if s.target_id == target_id]
        if since_ts is not None:
            spikes = [s for s in spikes if s.cycle_timestamp >= since_ts]
        return spikes
