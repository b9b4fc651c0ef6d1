"""
Alert monitor: volatility severity classification, system degradation alerts
with rolling dedup, and one-shot broadcast escalation.
"""

from backend_trustpulse.alerts.engine import AlertConfig, AlertMonitor, classify_spike
from backend_trustpulse.alerts.escalation import BroadcastSink, LoggingBroadcastSink
from backend_trustpulse.alerts.models import Alert, AlertSeverity, AlertState, AlertType

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertMonitor",
    "AlertSeverity",
    "AlertState",
    "AlertType",
    "BroadcastSink",
    "LoggingBroadcastSink",
    "classify_spike",
]
