"""
Application-level exceptions.

- Submission rejections (IntegrityViolation, TimestampDrift, RateLimited) carry a
  RejectionReason so the gateway and API can map them to a Rejected result and
  HTTP status without string matching.
- A delta store failure during admission is reported as a Rejected result with
  reason StorageFailure; no quota is consumed and the submitter may retry.
- Internal failures (WriteConsistencyFailure, PeriodicTaskOverrun) are logged and
  counted; they never fail the process or reach the submitter.
"""

from __future__ import annotations

from enum import Enum


class RejectionReason(str, Enum):
    RATE_LIMITED = "RateLimited"
    INTEGRITY_VIOLATION = "IntegrityViolation"
    TIMESTAMP_DRIFT = "TimestampDrift"
    STORAGE_FAILURE = "StorageFailure"


class TrustPulseError(Exception):
    """Base class for pipeline errors. `code` is a stable machine-readable key."""

    code = "trustpulse_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class SubmissionRejected(TrustPulseError):
    """A submission was refused; `reason` says why."""

    code = "submission_rejected"
    reason: RejectionReason


class IntegrityViolation(SubmissionRejected):
    """Proof artifact failed verification. Caller must resubmit with a new proof."""

    code = "integrity_violation"
    reason = RejectionReason.INTEGRITY_VIOLATION


class TimestampDrift(SubmissionRejected):
    """submitted_at is outside the allowed drift bound. Permanent for that submission."""

    code = "timestamp_drift"
    reason = RejectionReason.TIMESTAMP_DRIFT


class RateLimited(SubmissionRejected):
    """Submitter exhausted its window quota; retry after reset_time."""

    code = "rate_limited"
    reason = RejectionReason.RATE_LIMITED

    def __init__(self, message: str = "", *, reset_time: float, remaining_submissions: int = 0) -> None:
        super().__init__(message)
        self.reset_time = reset_time
        self.remaining_submissions = remaining_submissions


class WriteConsistencyFailure(TrustPulseError):
    """Post-write verification of a delta failed. Internal: logged and counted only."""

    code = "write_consistency_failure"

    def __init__(self, message: str = "", *, target_id: str = "", submission_id: str = "") -> None:
        super().__init__(message)
        self.target_id = target_id
        self.submission_id = submission_id


class PeriodicTaskOverrun(TrustPulseError):
    """A periodic cycle was still running (or ran past its period); next tick skipped."""

    code = "periodic_task_overrun"

    def __init__(self, message: str = "", *, task_name: str = "", elapsed_sec: float = 0.0) -> None:
        super().__init__(message)
        self.task_name = task_name
        self.elapsed_sec = elapsed_sec
