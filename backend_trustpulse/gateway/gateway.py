"""
Submission gateway: validate, rate-limit, apply, commit.

Admission order for one submission:
  1. IntegrityValidator.verify (drift + proof). Failures never consume quota.
  2. RateLimiter.check (no mutation).
  3. DeltaStore.apply.
  4. RateLimiter.commit, only after the store succeeded.
  5. Write-consistency check against the persisted delta and applied id
     (internal; logged and counted).

A per-submitter lock serializes steps 1-4 for the same submitter so two
concurrent submissions cannot both pass check(); different submitters run
in parallel.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable

from backend_trustpulse.core.exceptions import (
    IntegrityViolation,
    RateLimited,
    RejectionReason,
    SubmissionRejected,
    TimestampDrift,
    WriteConsistencyFailure,
)
from backend_trustpulse.core.locks import KeyedLocks
from backend_trustpulse.database.models import Submission, TrustDelta
from backend_trustpulse.delta_store.store import DeltaStore, compute_integrity_digest
from backend_trustpulse.gateway.rate_limiter import RateLimiter
from backend_trustpulse.integrity.validator import IntegrityValidator
from backend_trustpulse.trustpulse_logging import bind_submitter, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Accepted:
    delta_id: str
    proof_digest: str
    processing_time_ms: float
    reset_time: float | None
    remaining_submissions: int
    submission_id: str = ""
    duplicate: bool = False

    accepted = True

    def to_dict(self) -> dict:
        return {"status": "accepted", **asdict(self)}


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    message: str
    reset_time: float | None = None
    remaining_submissions: int | None = None

    accepted = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["reason"] = self.reason.value
        return {"status": "rejected", **data}


AdmissionResult = Accepted | Rejected


@dataclass
class OrchestrationMetrics:
    total_processed: int = 0
    rate_limit_violations: int = 0
    integrity_failures: int = 0
    timestamp_drift_rejections: int = 0
    storage_failures: int = 0
    write_inconsistencies: int = 0
    duplicates: int = 0
    average_processing_ms: float = 0.0
    last_processed_at: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class SubmissionGateway:
    """Admit(submission) -> Accepted | Rejected."""

    def __init__(
        self,
        validator: IntegrityValidator,
        rate_limiter: RateLimiter,
        store: DeltaStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.validator = validator
        self.rate_limiter = rate_limiter
        self.store = store
        self._clock = clock
        self._metrics = OrchestrationMetrics()
        self._metrics_lock = threading.Lock()
        self._submitter_locks = KeyedLocks()

    def admit(self, submission: Submission) -> AdmissionResult:
        """Run one submission through validation, throttling and the delta store."""
        started = time.perf_counter()
        log = bind_submitter(submission.submitter_id)
        now = self._clock()

        with self._submitter_locks.hold(submission.submitter_id):
            if self.store.contains(submission.submission_id):
                # Retry of an already-applied submission: no quota, same delta
                delta = self.store.get_delta(submission.target_id)
                status = self.rate_limiter.throttle_status(submission.submitter_id, now_ts=now)
                self._count("duplicates")
                log.info("submission_duplicate", target_id=submission.target_id, submission_id=submission.submission_id)
                return Accepted(
                    delta_id=submission.target_id,
                    proof_digest=delta.integrity_digest if delta else "",
                    processing_time_ms=_elapsed_ms(started),
                    reset_time=status["reset_time"],
                    remaining_submissions=status["remaining_submissions"],
                    submission_id=submission.submission_id,
                    duplicate=True,
                )

            try:
                self.validator.verify(submission, now_ts=now)
                decision = self.rate_limiter.check(submission.submitter_id, now_ts=now)
            except SubmissionRejected as e:
                return self._reject(e, submission, log)

            try:
                delta = self.store.apply(submission)
            except Exception as e:
                self._count("storage_failures")
                log.exception("submission_store_failed", target_id=submission.target_id, error=str(e))
                return Rejected(
                    reason=RejectionReason.STORAGE_FAILURE,
                    message="delta store unavailable; retry later",
                )

            self.rate_limiter.commit(decision, now_ts=now)

        try:
            self._verify_write(submission, delta)
        except WriteConsistencyFailure as e:
            self._count("write_inconsistencies")
            log.error(
                "write_consistency_failure",
                target_id=e.target_id,
                submission_id=e.submission_id,
                error=e.message,
            )

        elapsed_ms = _elapsed_ms(started)
        self._record_processed(elapsed_ms, now)
        log.info(
            "submission_accepted",
            target_id=submission.target_id,
            feedback_type=submission.feedback_type.value,
            intensity=submission.intensity,
            tier=submission.submitter_tier.value,
            processing_time_ms=round(elapsed_ms, 3),
        )
        return Accepted(
            delta_id=delta.target_id,
            proof_digest=delta.integrity_digest,
            processing_time_ms=elapsed_ms,
            reset_time=decision.reset_time,
            remaining_submissions=decision.remaining_submissions,
            submission_id=submission.submission_id,
        )

    def _reject(self, error: SubmissionRejected, submission: Submission, log) -> Rejected:
        if isinstance(error, RateLimited):
            self._count("rate_limit_violations")
            log.warning("submission_rate_limited", target_id=submission.target_id, reset_time=error.reset_time)
            return Rejected(
                reason=error.reason,
                message=error.message,
                reset_time=error.reset_time,
                remaining_submissions=error.remaining_submissions,
            )
        if isinstance(error, TimestampDrift):
            self._count("timestamp_drift_rejections")
        elif isinstance(error, IntegrityViolation):
            self._count("integrity_failures")
        log.warning("submission_rejected", target_id=submission.target_id, reason=error.reason.value, error=error.message)
        return Rejected(reason=error.reason, message=error.message)

    def _verify_write(self, submission: Submission, applied: TrustDelta) -> None:
        """
        Read the persisted delta and applied id back from storage.

        A later apply on the same target may have advanced the stored record;
        digests are only compared when the stored count equals the applied one.
        """
        try:
            stored = self.store.stored_delta(submission.target_id)
            durable = self.store.is_durably_applied(submission.submission_id)
        except Exception as e:
            raise WriteConsistencyFailure(
                f"read-back failed: {e}",
                target_id=submission.target_id,
                submission_id=submission.submission_id,
            ) from e
        problems = []
        if stored is None:
            problems.append("delta missing from storage after apply")
        elif stored.total_submissions < applied.total_submissions:
            problems.append("stored total_submissions went backwards")
        elif stored.total_submissions == applied.total_submissions:
            if stored.integrity_digest != applied.integrity_digest:
                problems.append("stored integrity digest differs from applied")
            elif stored.integrity_digest != compute_integrity_digest(stored, submission.integrity_proof):
                problems.append("stored values do not match their digest")
        if not durable:
            problems.append("submission id not persisted")
        if problems:
            raise WriteConsistencyFailure(
                "; ".join(problems),
                target_id=submission.target_id,
                submission_id=submission.submission_id,
            )

    def _count(self, name: str) -> None:
        with self._metrics_lock:
            setattr(self._metrics, name, getattr(self._metrics, name) + 1)

    def _record_processed(self, elapsed_ms: float, now: float) -> None:
        with self._metrics_lock:
            m = self._metrics
            m.total_processed += 1
            m.average_processing_ms += (elapsed_ms - m.average_processing_ms) / m.total_processed
            m.last_processed_at = now

    def throttle_status(self, submitter_id: str) -> dict:
        return self.rate_limiter.throttle_status(submitter_id)

    def metrics(self) -> dict:
        with self._metrics_lock:
            data = self._metrics.to_dict()
        data["active_submitters"] = self.rate_limiter.active_count()
        return data


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
