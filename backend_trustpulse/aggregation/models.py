"""
Aggregation output records: per-target snapshots and metrics, volatility
spikes and the cycle result published to subscribers.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Trend(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class SystemHealth(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    CONCERNING = "concerning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SentimentSnapshot:
    target_id: str
    net_sentiment: float
    trend: Trend
    volatile: bool
    change_percent: float | None
    cycle_timestamp: float

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["trend"] = self.trend.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SentimentSnapshot:
        return cls(
            target_id=data["target_id"],
            net_sentiment=float(data["net_sentiment"]),
            trend=Trend(data.get("trend", "stable")),
            volatile=bool(data.get("volatile", False)),
            change_percent=data.get("change_percent"),
            cycle_timestamp=float(data["cycle_timestamp"]),
        )


@dataclass
class TierBreakdown:
    support: int = 0
    dissent: int = 0
    count: int = 0


@dataclass
class TargetMetrics:
    """Per-target cycle metrics (submission counts per tier, average intensity)."""

    target_id: str
    group_id: str
    net_sentiment: float
    total_submissions: int
    average_intensity: float
    tier_breakdown: dict[str, TierBreakdown]
    trend: Trend = Trend.STABLE
    volatile: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "group_id": self.group_id,
            "net_sentiment": self.net_sentiment,
            "total_submissions": self.total_submissions,
            "average_intensity": self.average_intensity,
            "tier_breakdown": {t: asdict(b) for t, b in self.tier_breakdown.items()},
            "trend": self.trend.value,
            "volatile": self.volatile,
        }


@dataclass(frozen=True)
class VolatilitySpike:
    spike_id: str
    target_id: str
    previous_sentiment: float
    current_sentiment: float
    change_percent: float
    trigger_threshold: float
    cycle_timestamp: float
    cid: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VolatilitySpike:
        return cls(
            spike_id=data["spike_id"],
            target_id=data["target_id"],
            previous_sentiment=float(data["previous_sentiment"]),
            current_sentiment=float(data["current_sentiment"]),
            change_percent=float(data["change_percent"]),
            trigger_threshold=float(data["trigger_threshold"]),
            cycle_timestamp=float(data["cycle_timestamp"]),
            cid=data["cid"],
        )


@dataclass
class AggregationResult:
    """Payload of the "cycle complete" event."""

    cycle_id: str
    cycle_timestamp: float
    overall_sentiment: float
    total_targets: int
    active_targets: int
    volatile_targets: list[str]
    system_health: SystemHealth
    snapshots: dict[str, SentimentSnapshot] = field(default_factory=dict)
    metrics: dict[str, TargetMetrics] = field(default_factory=dict)
    spikes: list[VolatilitySpike] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "cycle_timestamp": self.cycle_timestamp,
            "overall_sentiment": self.overall_sentiment,
            "total_targets": self.total_targets,
            "active_targets": self.active_targets,
            "volatile_targets": list(self.volatile_targets),
            "system_health": self.system_health.value,
            "snapshots": {tid: s.to_dict() for tid, s in self.snapshots.items()},
            "metrics": {tid: m.to_dict() for tid, m in self.metrics.items()},
            "spikes": [s.to_dict() for s in self.spikes],
            "duration_ms": self.duration_ms,
        }
