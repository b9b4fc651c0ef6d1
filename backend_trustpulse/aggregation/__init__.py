"""
Aggregation: periodic per-target sentiment snapshots, trend, volatility
detection and system health. Publishes one AggregationResult per cycle.
"""

from backend_trustpulse.aggregation.engine import (
    AggregationConfig,
    AggregationEngine,
    calculate_system_health,
    classify_trend,
    compute_change_percent,
)
from backend_trustpulse.aggregation.models import (
    AggregationResult,
    SentimentSnapshot,
    SystemHealth,
    TargetMetrics,
    Trend,
    VolatilitySpike,
)

__all__ = [
    "AggregationConfig",
    "AggregationEngine",
    "AggregationResult",
    "SentimentSnapshot",
    "SystemHealth",
    "TargetMetrics",
    "Trend",
    "VolatilitySpike",
    "calculate_system_health",
    "classify_trend",
    "compute_change_percent",
]
