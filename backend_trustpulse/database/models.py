"""
Domain models for persisted pipeline entities.

Submissions, targets, trust deltas, feedback log entries and submitter throttle
state. Used by the gateway, delta store and storage layer; no ORM coupling so
backends stay swappable. Timestamps are Unix seconds (float).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from backend_trustpulse.core.hashing import canonical_json, sha256_hex

TARGET_ID_SEPARATOR = "::"
INTENSITY_MIN = 1
INTENSITY_MAX = 5
SUBMISSION_ID_PREFIX = "sub_"
SUBMISSION_ID_HEX_LEN = 32


class Tier(str, Enum):
    """Submitter trust classification; weights submissions and reward thresholds."""

    T1 = "T1"
    T2 = "T2"
    T3 = "T3"


class FeedbackType(str, Enum):
    SUPPORT = "support"
    DISSENT = "dissent"


@dataclass(frozen=True)
class Target:
    """Composite key (group/deck, optional module, optional component)."""

    group_id: str
    sub_id: str | None = None
    item_id: str | None = None

    def __post_init__(self) -> None:
        if not self.group_id or not self.group_id.strip():
            raise ValueError("target group_id must be non-empty")
        if self.item_id and not self.sub_id:
            raise ValueError("target item_id requires sub_id")

    @property
    def target_id(self) -> str:
        parts = [self.group_id]
        if self.sub_id:
            parts.append(self.sub_id)
        if self.item_id:
            parts.append(self.item_id)
        return TARGET_ID_SEPARATOR.join(parts)

    @classmethod
    def from_target_id(cls, target_id: str) -> Target:
        parts = target_id.split(TARGET_ID_SEPARATOR)
        return cls(
            group_id=parts[0],
            sub_id=parts[1] if len(parts) > 1 else None,
            item_id=parts[2] if len(parts) > 2 else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"group_id": self.group_id, "sub_id": self.sub_id, "item_id": self.item_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Target:
        return cls(
            group_id=data["group_id"],
            sub_id=data.get("sub_id"),
            item_id=data.get("item_id"),
        )


@dataclass(frozen=True)
class Submission:
    """
    One anonymous sentiment submission. Immutable once accepted.

    submission_id defaults to a digest of every other field, so a re-delivered
    submission keeps the same identity and the delta store can drop it.
    """

    target: Target
    feedback_type: FeedbackType
    intensity: int
    submitter_id: str
    submitter_tier: Tier
    integrity_proof: str
    submitted_at: float
    explanation: str | None = None
    submission_id: str = ""

    def __post_init__(self) -> None:
        # Coerce plain strings from JSON/API callers into enums
        if not isinstance(self.feedback_type, FeedbackType):
            object.__setattr__(self, "feedback_type", FeedbackType(self.feedback_type))
        if not isinstance(self.submitter_tier, Tier):
            object.__setattr__(self, "submitter_tier", Tier(self.submitter_tier))
        if isinstance(self.intensity, bool) or not isinstance(self.intensity, int):
            raise ValueError(f"intensity must be an integer, got {self.intensity!r}")
        if not INTENSITY_MIN <= self.intensity <= INTENSITY_MAX:
            raise ValueError(
                f"intensity must be in [{INTENSITY_MIN}..{INTENSITY_MAX}], got {self.intensity}"
            )
        if not self.submitter_id or not self.submitter_id.strip():
            raise ValueError("submitter_id must be non-empty")
        if not self.submission_id:
            object.__setattr__(self, "submission_id", self._derive_id())

    def _derive_id(self) -> str:
        content = canonical_json({
            "target": self.target.target_id,
            "feedback": self.feedback_type.value,
            "intensity": self.intensity,
            "submitter": self.submitter_id,
            "tier": self.submitter_tier.value,
            "submitted_at": self.submitted_at,
            "proof": self.integrity_proof,
        })
        return SUBMISSION_ID_PREFIX + sha256_hex(content)[:SUBMISSION_ID_HEX_LEN]

    @property
    def target_id(self) -> str:
        return self.target.target_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "target": self.target.to_dict(),
            "feedback_type": self.feedback_type.value,
            "intensity": self.intensity,
            "submitter_id": self.submitter_id,
            "submitter_tier": self.submitter_tier.value,
            "integrity_proof": self.integrity_proof,
            "submitted_at": self.submitted_at,
            "explanation": self.explanation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Submission:
        return cls(
            target=Target.from_dict(data["target"]),
            feedback_type=FeedbackType(data["feedback_type"]),
            intensity=int(data["intensity"]),
            submitter_id=data["submitter_id"],
            submitter_tier=Tier(data["submitter_tier"]),
            integrity_proof=data["integrity_proof"],
            submitted_at=float(data["submitted_at"]),
            explanation=data.get("explanation"),
            submission_id=data.get("submission_id") or "",
        )


@dataclass
class TrustDelta:
    """Cumulative tier-weighted support/dissent for one target."""

    target_id: str
    group_id: str
    net_support: float = 0.0
    net_dissent: float = 0.0
    total_submissions: int = 0
    last_updated: float | None = None
    integrity_digest: str = ""

    @property
    def net_sentiment(self) -> float:
        return self.net_support - self.net_dissent

    def copy(self) -> TrustDelta:
        return TrustDelta(**asdict(self))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrustDelta:
        return cls(
            target_id=data["target_id"],
            group_id=data["group_id"],
            net_support=float(data.get("net_support", 0.0)),
            net_dissent=float(data.get("net_dissent", 0.0)),
            total_submissions=int(data.get("total_submissions", 0)),
            last_updated=data.get("last_updated"),
            integrity_digest=data.get("integrity_digest", ""),
        )


@dataclass(frozen=True)
class FeedbackLogEntry:
    """Append-only record of an admitted (sanitized) submission."""

    entry_id: str
    submission: Submission
    processed_at: float
    tier_weight: float
    weighted_value: float

    @property
    def target_id(self) -> str:
        return self.submission.target_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "submission": self.submission.to_dict(),
            "processed_at": self.processed_at,
            "tier_weight": self.tier_weight,
            "weighted_value": self.weighted_value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedbackLogEntry:
        return cls(
            entry_id=data["entry_id"],
            submission=Submission.from_dict(data["submission"]),
            processed_at=float(data["processed_at"]),
            tier_weight=float(data["tier_weight"]),
            weighted_value=float(data["weighted_value"]),
        )


@dataclass
class SubmitterThrottleState:
    """Fixed-window admission counter for one submitter."""

    submitter_id: str
    window_start: float
    submission_count_in_window: int = 0
    last_submission_at: float | None = None

    def is_expired(self, now_ts: float, window_sec: float) -> bool:
        return now_ts - self.window_start > window_sec

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubmitterThrottleState:
        return cls(
            submitter_id=data["submitter_id"],
            window_start=float(data["window_start"]),
            submission_count_in_window=int(data.get("submission_count_in_window", 0)),
            last_submission_at=data.get("last_submission_at"),
        )

