"""
Alert records and their one-way state machine.

raised -> pending_broadcast -> broadcast_complete   (broadcast_required)
raised -> resolved                                  (no broadcast)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AlertType(str, Enum):
    MODERATE_VOLATILITY = "moderate_volatility"
    CRITICAL_VOLATILITY = "critical_volatility"
    SYSTEM_DEGRADATION = "system_degradation"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertState(str, Enum):
    RAISED = "raised"
    PENDING_BROADCAST = "pending_broadcast"
    BROADCAST_COMPLETE = "broadcast_complete"
    RESOLVED = "resolved"


# Allowed transitions; anything else is refused
ALERT_TRANSITIONS: dict[AlertState, tuple[AlertState, ...]] = {
    AlertState.RAISED: (AlertState.PENDING_BROADCAST, AlertState.RESOLVED),
    AlertState.PENDING_BROADCAST: (AlertState.BROADCAST_COMPLETE,),
    AlertState.BROADCAST_COMPLETE: (),
    AlertState.RESOLVED: (),
}


@dataclass
class Alert:
    alert_id: str
    alert_type: AlertType
    severity: AlertSeverity
    target_id: str | None
    description: str
    cid: str
    broadcast_required: bool
    created_at: float
    metrics: dict[str, Any] = field(default_factory=dict)
    state: AlertState = AlertState.RAISED
    broadcast_completed_at: float | None = None

    def can_transition(self, to_state: AlertState) -> bool:
        return to_state in ALERT_TRANSITIONS[self.state]

    def transition(self, to_state: AlertState) -> bool:
        """Move to to_state if allowed; returns False (no change) otherwise."""
        if not self.can_transition(to_state):
            return False
        self.state = to_state
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "target_id": self.target_id,
            "description": self.description,
            "cid": self.cid,
            "broadcast_required": self.broadcast_required,
            "created_at": self.created_at,
            "metrics": dict(self.metrics),
            "state": self.state.value,
            "broadcast_completed_at": self.broadcast_completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        return cls(
            alert_id=data["alert_id"],
            alert_type=AlertType(data["alert_type"]),
            severity=AlertSeverity(data["severity"]),
            target_id=data.get("target_id"),
            description=data.get("description", ""),
            cid=data.get("cid", ""),
            broadcast_required=bool(data.get("broadcast_required", False)),
            created_at=float(data["created_at"]),
            metrics=dict(data.get("metrics") or {}),
            state=AlertState(data.get("state", AlertState.RAISED.value)),
            broadcast_completed_at=data.get("broadcast_completed_at"),
        )
