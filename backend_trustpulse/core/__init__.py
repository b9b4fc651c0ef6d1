"""
Core utilities: error taxonomy and shared helpers.

Provides the pipeline exception hierarchy and deterministic hashing helpers
used across gateway, delta store, aggregation, alerts and rewards.
"""

from backend_trustpulse.core.exceptions import (
    IntegrityViolation,
    PeriodicTaskOverrun,
    RateLimited,
    RejectionReason,
    TimestampDrift,
    TrustPulseError,
    WriteConsistencyFailure,
)
from backend_trustpulse.core.hashing import canonical_json, content_cid, sha256_hex

__all__ = [
    "IntegrityViolation",
    "PeriodicTaskOverrun",
    "RateLimited",
    "RejectionReason",
    "TimestampDrift",
    "TrustPulseError",
    "WriteConsistencyFailure",
    "canonical_json",
    "content_cid",
    "sha256_hex",
]
