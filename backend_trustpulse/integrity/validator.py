"""
Integrity validator: proof-artifact verification and timestamp freshness.

Stateless and side-effect-free. A submission passes when
- |now - submitted_at| <= max_drift_sec (symmetric: rejects future and stale), and
- its integrity_proof verifies against (target, feedback_type, submitter_tier, submitted_at)
  under the configured ProofScheme.

The proof mechanism is pluggable. The default FingerprintProofScheme is a
lightweight anti-replay fingerprint (sha256 over the canonical key, or
HMAC-SHA256 when a secret is configured), not a zero-knowledge proof.
"""

from __future__ import annotations

import hashlib
import hmac
import math
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from backend_trustpulse.core.exceptions import IntegrityViolation, TimestampDrift
from backend_trustpulse.core.hashing import canonical_json, sha256_hex
from backend_trustpulse.database.models import FeedbackType, Submission, Target, Tier
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_DRIFT_SEC = 5 * 60
PROOF_PREFIX = "zkp_"
PROOF_HEX_LEN = 64


@dataclass
class IntegrityConfig:
    """Drift bound and proof settings for the validator."""

    max_drift_sec: float = DEFAULT_MAX_DRIFT_SEC
    """Reject when |now - submitted_at| exceeds this many seconds."""
    enforce_proof: bool = True
    """When False only the timestamp check runs (local development)."""
    proof_secret: str | None = None
    """Optional shared secret; switches the fingerprint to HMAC-SHA256."""


class ProofScheme(Protocol):
    """Deterministic, tamper-evident proof contract."""

    def issue(self, target: Target, feedback_type: FeedbackType, tier: Tier, submitted_at: float) -> str:
        ...

    def verify(self, proof: str, target: Target, feedback_type: FeedbackType, tier: Tier, submitted_at: float) -> bool:
        ...


def _proof_key(target: Target, feedback_type: FeedbackType, tier: Tier, submitted_at: float) -> str:
    return canonical_json({
        "target": target.target_id,
        "feedback": FeedbackType(feedback_type).value,
        "tier": Tier(tier).value,
        "submitted_at": float(submitted_at),
    })


class FingerprintProofScheme:
    """sha256 (or HMAC-SHA256 with a secret) fingerprint of the proof key."""

    def __init__(self, secret: str | None = None) -> None:
        self._secret = secret.encode("utf-8") if secret else None

    def issue(self, target: Target, feedback_type: FeedbackType, tier: Tier, submitted_at: float) -> str:
        key = _proof_key(target, feedback_type, tier, submitted_at)
        if self._secret is not None:
            digest = hmac.new(self._secret, key.encode("utf-8"), hashlib.sha256).hexdigest()
        else:
            digest = sha256_hex(key)
        return PROOF_PREFIX + digest[:PROOF_HEX_LEN]

    def verify(self, proof: str, target: Target, feedback_type: FeedbackType, tier: Tier, submitted_at: float) -> bool:
        if not proof or not proof.startswith(PROOF_PREFIX):
            return False
        expected = self.issue(target, feedback_type, tier, submitted_at)
        return hmac.compare_digest(proof, expected)


class IntegrityValidator:
    """Verify(submission) -> bool; raises TimestampDrift / IntegrityViolation on failure."""

    def __init__(
        self,
        config: IntegrityConfig | None = None,
        scheme: ProofScheme | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or IntegrityConfig()
        self.scheme = scheme or FingerprintProofScheme(self.config.proof_secret)
        self._clock = clock

    def verify(self, submission: Submission, now_ts: float | None = None) -> bool:
        """
        Validate timestamp freshness, then the proof artifact.

        Returns True when valid. Raises TimestampDrift when submitted_at is outside
        the drift bound and IntegrityViolation when the proof does not verify.
        """
        now = now_ts if now_ts is not None else self._clock()
        if not math.isfinite(submission.submitted_at):
            raise TimestampDrift(f"submitted_at {submission.submitted_at!r} is not a finite timestamp")
        drift = now - submission.submitted_at
        if abs(drift) > self.config.max_drift_sec:
            raise TimestampDrift(
                f"submitted_at drift {drift:.1f}s exceeds {self.config.max_drift_sec:.0f}s bound"
            )
        if self.config.enforce_proof and not self.scheme.verify(
            submission.integrity_proof,
            submission.target,
            submission.feedback_type,
            submission.submitter_tier,
            submission.submitted_at,
        ):
            raise IntegrityViolation("integrity proof failed verification")
        return True

    def is_valid(self, submission: Submission, now_ts: float | None = None) -> bool:
        """Boolean form of verify(); never raises for rejections."""
        try:
            return self.verify(submission, now_ts=now_ts)
        except (TimestampDrift, IntegrityViolation) as e:
            logger.debug("integrity_check_failed", target_id=submission.target_id, reason=e.code)
            return False

    def issue_proof(self, target: Target, feedback_type: FeedbackType, tier: Tier, submitted_at: float) -> str:
        """Mint the proof a well-behaved client would attach."""
        return self.scheme.issue(target, feedback_type, tier, submitted_at)
