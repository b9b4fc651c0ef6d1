"""
Pytest tests for the submission gateway: admission order, rate limiting,
quota on failure paths, duplicates and concurrent submitters.
"""

from __future__ import annotations

import threading
import time

import pytest

from backend_trustpulse.core.exceptions import RejectionReason
from backend_trustpulse.database.database import (
    KEY_APPLIED_IDS_PREFIX,
    KEY_DELTA_PREFIX,
    KEY_THROTTLE_PREFIX,
    MemoryBackend,
)
from backend_trustpulse.gateway.gateway import Accepted, Rejected
from backend_trustpulse.gateway.rate_limiter import RateLimiter
from backend_trustpulse.pipeline import build_pipeline

WINDOW = 2 * 60 * 60


def test_accepts_valid_submission(pipeline, make_submission, clock):
    result = pipeline.submit(make_submission("deck1::mod1", "support", 4, "alice", "T2"))
    assert isinstance(result, Accepted)
    assert result.accepted is True
    assert result.delta_id == "deck1::mod1"
    assert len(result.proof_digest) == 32
    assert result.reset_time == clock() + WINDOW
    assert result.remaining_submissions == 0
    assert result.duplicate is False
    assert pipeline.get_delta("deck1::mod1").net_support == 8.0


def test_second_submission_in_window_rate_limited(pipeline, make_submission, clock):
    """Two submissions within 2h: one Accepted, one RateLimited with reset time."""
    first = pipeline.submit(make_submission("deck1", "support", 2, "alice", "T1"))
    clock.advance(60)
    second = pipeline.submit(make_submission("deck1", "dissent", 2, "alice", "T1"))
    assert isinstance(first, Accepted)
    assert isinstance(second, Rejected)
    assert second.reason == RejectionReason.RATE_LIMITED
    assert second.reset_time == first.reset_time
    assert second.remaining_submissions == 0
    # Rejected submission did not touch the delta
    assert pipeline.get_delta("deck1").total_submissions == 1


def test_window_expiry_readmits(pipeline, make_submission, clock):
    pipeline.submit(make_submission("deck1", "support", 2, "alice", "T1"))
    clock.advance(WINDOW)
    limited = pipeline.submit(make_submission("deck1", "support", 2, "alice", "T1"))
    assert isinstance(limited, Rejected)
    clock.advance(1)
    again = pipeline.submit(make_submission("deck1", "support", 2, "alice", "T1"))
    assert isinstance(again, Accepted)
    assert pipeline.get_delta("deck1").total_submissions == 2


def test_invalid_proof_does_not_consume_quota(pipeline, make_submission):
    """An integrity failure is rejected before throttle accounting."""
    bad = pipeline.submit(make_submission("deck1", "support", 3, "alice", "T3", proof="zkp_forged"))
    assert isinstance(bad, Rejected)
    assert bad.reason == RejectionReason.INTEGRITY_VIOLATION
    assert pipeline.throttle_status("alice")["is_throttled"] is False
    good = pipeline.submit(make_submission("deck1", "support", 3, "alice", "T3"))
    assert isinstance(good, Accepted)


def test_timestamp_drift_rejected(pipeline, make_submission, clock):
    stale = pipeline.submit(make_submission("deck1", "support", 3, "alice", "T1", submitted_at=clock() - 301))
    future = pipeline.submit(make_submission("deck1", "support", 3, "bob", "T1", submitted_at=clock() + 301))
    assert stale.reason == RejectionReason.TIMESTAMP_DRIFT
    assert future.reason == RejectionReason.TIMESTAMP_DRIFT
    assert pipeline.get_delta("deck1") is None
    assert pipeline.throttle_status("alice")["remaining_submissions"] == 1


def test_duplicate_submission_returns_same_delta(pipeline, make_submission):
    """A retried submission is acknowledged without consuming quota or re-applying."""
    submission = make_submission("deck1", "support", 5, "alice", "T1")
    first = pipeline.submit(submission)
    retry = pipeline.submit(submission)
    assert isinstance(retry, Accepted)
    assert retry.duplicate is True
    assert retry.submission_id == first.submission_id
    assert retry.proof_digest == first.proof_digest
    assert pipeline.get_delta("deck1").total_submissions == 1
    assert pipeline.gateway.metrics()["duplicates"] == 1


def test_storage_failure_does_not_consume_quota(pipeline, make_submission, monkeypatch):
    """When the delta store raises, the submission is rejected and the quota is untouched."""

    def broken_apply(submission):
        raise OSError("disk full")

    monkeypatch.setattr(pipeline.store, "apply", broken_apply)
    result = pipeline.submit(make_submission("deck1", "support", 1, "alice", "T1"))
    assert isinstance(result, Rejected)
    assert result.reason == RejectionReason.STORAGE_FAILURE
    assert pipeline.throttle_status("alice")["is_throttled"] is False
    assert pipeline.gateway.metrics()["storage_failures"] == 1

    monkeypatch.undo()
    assert isinstance(pipeline.submit(make_submission("deck1", "support", 1, "alice", "T1")), Accepted)


def test_concurrent_same_submitter_admits_once(pipeline, make_submission):
    """Concurrent submissions from one submitter: exactly one passes the window check."""
    submissions = [
        make_submission(f"deck1::m{i}", "support", 1, "alice", "T1") for i in range(10)
    ]
    results = []
    lock = threading.Lock()

    def submit(s):
        r = pipeline.submit(s)
        with lock:
            results.append(r)

    threads = [threading.Thread(target=submit, args=(s,)) for s in submissions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    accepted = [r for r in results if isinstance(r, Accepted)]
    limited = [r for r in results if isinstance(r, Rejected)]
    assert len(accepted) == 1
    assert len(limited) == 9
    assert all(r.reason == RejectionReason.RATE_LIMITED for r in limited)


def test_concurrent_distinct_submitters_all_admitted(pipeline, make_submission):
    submissions = [make_submission("deck1::shared", "dissent", 2, f"s{i}", "T2") for i in range(25)]
    threads = [threading.Thread(target=pipeline.submit, args=(s,)) for s in submissions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    delta = pipeline.get_delta("deck1::shared")
    assert delta.total_submissions == 25
    assert delta.net_dissent == 25 * 4.0


def test_metrics_count_rejections(pipeline, make_submission, clock):
    pipeline.submit(make_submission("deck1", "support", 1, "a", "T1"))
    pipeline.submit(make_submission("deck1", "support", 2, "a", "T1"))
    pipeline.submit(make_submission("deck1", "support", 1, "b", "T1", proof="zkp_bad"))
    pipeline.submit(make_submission("deck1", "support", 1, "c", "T1", submitted_at=clock() - 1000))
    m = pipeline.gateway.metrics()
    assert m["total_processed"] == 1
    assert m["rate_limit_violations"] == 1
    assert m["integrity_failures"] == 1
    assert m["timestamp_drift_rejections"] == 1
    assert m["active_submitters"] == 1
    assert m["write_inconsistencies"] == 0


def test_throttle_status_view(pipeline, make_submission, clock):
    assert pipeline.throttle_status("nobody") == {
        "submitter_id": "nobody",
        "is_throttled": False,
        "reset_time": None,
        "remaining_submissions": 1,
        "window_start": None,
    }
    pipeline.submit(make_submission("deck1", "support", 1, "alice", "T1"))
    status = pipeline.throttle_status("alice")
    assert status["is_throttled"] is True
    assert status["window_start"] == clock()
    assert status["reset_time"] == clock() + WINDOW


def test_throttle_state_survives_restart(settings, storage, clock, sink, make_submission):
    """Throttle state is persisted so a restart inside the window still rate-limits."""
    first = build_pipeline(settings, storage, clock=clock, sink=sink)
    first.submit(make_submission("deck1", "support", 1, "alice", "T1"))
    restarted = build_pipeline(settings, storage, clock=clock, sink=sink)
    result = restarted.submit(make_submission("deck1", "support", 2, "alice", "T1"))
    assert isinstance(result, Rejected)
    assert result.reason == RejectionReason.RATE_LIMITED


def test_non_finite_timestamp_rejected_for_every_submitter(pipeline, make_submission, clock):
    """A NaN timestamp is drift for anyone at any time; nothing reaches the store."""
    for name in ("alice", "bob", "carol"):
        result = pipeline.submit(make_submission("deck1", "support", 5, name, "T1", submitted_at=float("nan")))
        assert isinstance(result, Rejected)
        assert result.reason == RejectionReason.TIMESTAMP_DRIFT
        clock.advance(10 * 24 * 60 * 60)
    assert pipeline.get_delta("deck1") is None


class DigestCorruptingBackend(MemoryBackend):
    """Persists every delta row with a wrong integrity digest."""

    def save(self, key, value):
        if key.startswith(KEY_DELTA_PREFIX):
            value = {**value, "integrity_digest": "deadbeef"}
        super().save(key, value)


class AppliedIdDroppingBackend(MemoryBackend):
    """Silently loses applied-id bucket writes."""

    def save(self, key, value):
        if key.startswith(KEY_APPLIED_IDS_PREFIX):
            return
        super().save(key, value)


@pytest.mark.parametrize("backend_cls", [DigestCorruptingBackend, AppliedIdDroppingBackend])
def test_write_inconsistency_detected_from_storage(backend_cls, settings, clock, sink, make_submission):
    """The post-write check reads storage back; a bad persisted record is counted, not hidden."""
    faulty = build_pipeline(settings, backend_cls(), clock=clock, sink=sink)
    result = faulty.submit(make_submission("deck1", "support", 2, "alice", "T1"))
    assert isinstance(result, Accepted)
    assert faulty.gateway.metrics()["write_inconsistencies"] == 1


def test_consistent_write_not_flagged(pipeline, make_submission):
    pipeline.submit(make_submission("deck1", "support", 2, "alice", "T1"))
    pipeline.submit(make_submission("deck1", "dissent", 3, "bob", "T2"))
    assert pipeline.gateway.metrics()["write_inconsistencies"] == 0


def test_expired_throttle_states_pruned_on_commit(storage, clock):
    limiter = RateLimiter(storage, clock=clock)
    limiter.commit(limiter.check("alice"))
    clock.advance(WINDOW + 1)
    limiter.commit(limiter.check("bob"))
    assert storage.keys_with_prefix(KEY_THROTTLE_PREFIX) == [KEY_THROTTLE_PREFIX + "bob"]
    assert limiter.active_count() == 1


def test_throttle_commits_persist_in_order(clock, stalling_backend):
    """A slow throttle write does not let a concurrent commit's row go missing."""
    backend = stalling_backend(KEY_THROTTLE_PREFIX)
    limiter = RateLimiter(backend, clock=clock)
    first = threading.Thread(target=lambda: limiter.commit(limiter.check("sub-a")))
    first.start()
    assert backend.stalled.wait(timeout=2)
    second = threading.Thread(target=lambda: limiter.commit(limiter.check("sub-b")))
    second.start()
    time.sleep(0.05)
    backend.release.set()
    first.join()
    second.join()

    restored = RateLimiter(backend, clock=clock)
    restored.load()
    assert restored.throttle_status("sub-a")["is_throttled"] is True
    assert restored.throttle_status("sub-b")["is_throttled"] is True
