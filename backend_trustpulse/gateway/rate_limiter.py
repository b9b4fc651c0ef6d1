"""
Per-submitter fixed-window rate limiter.

Two-phase so rejected or failed submissions never consume quota:
check() decides admission without mutating; commit() records the admission
after the delta store has accepted the submission. Throttle state is saved to
the StateBackend after every commit for crash recovery: one row per submitter,
written under a persist lock so a stale copy never overwrites a newer one.
Expired windows are dropped from memory and storage on commit.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from backend_trustpulse.core.exceptions import RateLimited
from backend_trustpulse.database.database import KEY_THROTTLE_PREFIX, StateBackend
from backend_trustpulse.database.models import SubmitterThrottleState
from backend_trustpulse.trustpulse_logging import get_logger, short_id

logger = get_logger(__name__)

DEFAULT_WINDOW_SEC = 2 * 60 * 60
DEFAULT_MAX_PER_WINDOW = 1


@dataclass
class RateLimitConfig:
    window_sec: float = DEFAULT_WINDOW_SEC
    """Fixed window length per submitter."""
    max_per_window: int = DEFAULT_MAX_PER_WINDOW
    """Admissions allowed per window."""


@dataclass
class QuotaDecision:
    """Outcome of check(): what commit() will record if the write succeeds."""

    submitter_id: str
    new_window: bool
    window_start: float
    count_after: int
    reset_time: float
    remaining_submissions: int


class RateLimiter:
    def __init__(
        self,
        storage: StateBackend,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._storage = storage
        self._clock = clock
        self._states: dict[str, SubmitterThrottleState] = {}
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()

    def load(self) -> None:
        now = self._clock()
        states: dict[str, SubmitterThrottleState] = {}
        for key in self._storage.keys_with_prefix(KEY_THROTTLE_PREFIX):
            raw = self._storage.load(key)
            if not raw:
                continue
            state = SubmitterThrottleState.from_dict(raw)
            if state.is_expired(now, self.config.window_sec):
                self._storage.delete(key)
                continue
            states[state.submitter_id] = state
        with self._lock:
            self._states = states
        logger.info("throttle_state_loaded", submitters=len(states))

    def _persist(self, submitter_id: str, expired: list[str]) -> None:
        with self._persist_lock:
            with self._lock:
                state = self._states.get(submitter_id)
                payload = state.to_dict() if state is not None else None
                # A submitter committed again since pruning keeps its row
                expired = [sid for sid in expired if sid not in self._states]
            if payload is not None:
                self._storage.save(KEY_THROTTLE_PREFIX + submitter_id, payload)
            for sid in expired:
                self._storage.delete(KEY_THROTTLE_PREFIX + sid)

    def check(self, submitter_id: str, now_ts: float | None = None) -> QuotaDecision:
        """
        Decide admission for submitter_id without mutating state.

        Raises RateLimited when the window quota is exhausted.
        """
        now = now_ts if now_ts is not None else self._clock()
        window = self.config.window_sec
        limit = self.config.max_per_window
        with self._lock:
            state = self._states.get(submitter_id)
            if state is None or state.is_expired(now, window):
                return QuotaDecision(
                    submitter_id=submitter_id,
                    new_window=True,
                    window_start=now,
                    count_after=1,
                    reset_time=now + window,
                    remaining_submissions=max(0, limit - 1),
                )
            reset_time = state.window_start + window
            if state.submission_count_in_window < limit:
                count_after = state.submission_count_in_window + 1
                return QuotaDecision(
                    submitter_id=submitter_id,
                    new_window=False,
                    window_start=state.window_start,
                    count_after=count_after,
                    reset_time=reset_time,
                    remaining_submissions=max(0, limit - count_after),
                )
        raise RateLimited(
            f"submission limit of {limit} per {window:.0f}s reached",
            reset_time=reset_time,
            remaining_submissions=0,
        )

    def commit(self, decision: QuotaDecision, now_ts: float | None = None) -> SubmitterThrottleState:
        """Record an admission decided by check() and persist throttle state."""
        now = now_ts if now_ts is not None else self._clock()
        state = SubmitterThrottleState(
            submitter_id=decision.submitter_id,
            window_start=decision.window_start,
            submission_count_in_window=decision.count_after,
            last_submission_at=now,
        )
        window = self.config.window_sec
        with self._lock:
            self._states[decision.submitter_id] = state
            expired = [sid for sid, s in self._states.items() if s.is_expired(now, window)]
            for sid in expired:
                del self._states[sid]
        self._persist(decision.submitter_id, expired)
        if expired:
            logger.debug("throttle_states_pruned", count=len(expired))
        logger.debug(
            "throttle_committed",
            submitter_id=short_id(decision.submitter_id),
            new_window=decision.new_window,
            count=decision.count_after,
        )
        return state

    def throttle_status(self, submitter_id: str, now_ts: float | None = None) -> dict:
        """Current quota view for a submitter: is_throttled, reset_time, remaining, window_start."""
        now = now_ts if now_ts is not None else self._clock()
        window = self.config.window_sec
        limit = self.config.max_per_window
        with self._lock:
            state = self._states.get(submitter_id)
            if state is None or state.is_expired(now, window):
                return {
                    "submitter_id": submitter_id,
                    "is_throttled": False,
                    "reset_time": None,
                    "remaining_submissions": limit,
                    "window_start": None,
                }
            remaining = max(0, limit - state.submission_count_in_window)
            return {
                "submitter_id": submitter_id,
                "is_throttled": remaining == 0,
                "reset_time": state.window_start + window,
                "remaining_submissions": remaining,
                "window_start": state.window_start,
            }

    def active_count(self, now_ts: float | None = None) -> int:
        now = now_ts if now_ts is not None else self._clock()
        with self._lock:
            return sum(1 for s in self._states.values() if not s.is_expired(now, self.config.window_sec))
