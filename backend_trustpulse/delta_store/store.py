"""
Delta store: tier-weighted support/dissent accumulation per target.

Sole owner and mutator of TrustDelta records and the feedback log. apply() is
idempotent per submission_id. Same-target applications are serialized by a
per-target lock; different targets proceed in parallel. Deltas are replaced
copy-on-write so readers (aggregation, fusion, rewards) always see a whole
record, never a half-applied one.

Persistence is incremental: one row per target delta, the feedback log in
fixed-size segments keyed by sequence number, and applied submission ids in
hourly buckets. Each mutation marks what it touched dirty and flush() writes
only those rows. Flushes are serialized and copy state inside the same lock
hold, so a newer state is never overwritten by an older copy.
"""

from __future__ import annotations

import re
import threading
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Callable

from backend_trustpulse.core.hashing import sha256_hex
from backend_trustpulse.core.locks import KeyedLocks
from backend_trustpulse.database.database import (
    KEY_APPLIED_IDS_PREFIX,
    KEY_DELTA_PREFIX,
    KEY_FEEDBACK_LOG_META,
    KEY_FEEDBACK_LOG_SEGMENT_PREFIX,
    StateBackend,
)
from backend_trustpulse.database.models import (
    FeedbackLogEntry,
    FeedbackType,
    Submission,
    Target,
    Tier,
    TrustDelta,
)
from backend_trustpulse.trustpulse_logging import get_logger, short_id

logger = get_logger(__name__)

DEFAULT_TIER_WEIGHTS = {Tier.T1: 1.0, Tier.T2: 2.0, Tier.T3: 3.0}
DEFAULT_LOG_RETENTION = 50_000
DEFAULT_APPLIED_ID_HORIZON_SEC = 24 * 60 * 60
DEFAULT_ACTIVE_WINDOW_SEC = 24 * 60 * 60
LOG_SEGMENT_SIZE = 500
APPLIED_BUCKET_SEC = 60 * 60
DIGEST_HEX_LEN = 32
ENTRY_ID_PREFIX = "fb_"
TOP_GROUPS = 5

# Identifier patterns scrubbed from free-text explanations before logging
_PII_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"did:[a-z]+:[a-zA-Z0-9]+"), "[DID_REDACTED]"),
    (re.compile(r"Qm[a-zA-Z0-9]{44}"), "[CID_REDACTED]"),
    (re.compile(r"0x[a-fA-F0-9]{64}"), "[ZKP_REDACTED]"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP_REDACTED]"),
]


@dataclass
class DeltaConfig:
    """Tier weighting and retention for the delta store."""

    tier_weights: dict[Tier, float] = field(default_factory=lambda: dict(DEFAULT_TIER_WEIGHTS))
    """intensity x tier_weight is added to net_support or net_dissent."""
    log_retention: int = DEFAULT_LOG_RETENTION
    """Feedback log keeps at most this many entries (oldest dropped first)."""
    applied_id_horizon_sec: float = DEFAULT_APPLIED_ID_HORIZON_SEC
    """Applied submission ids are remembered at least this long; must exceed the drift bound."""


def sanitize_text(text: str | None) -> str | None:
    """Redact DIDs, CIDs, 0x proof hashes and IPv4 addresses."""
    if not text:
        return text
    for pattern, replacement in _PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def compute_integrity_digest(delta: TrustDelta, proof: str) -> str:
    content = f"{delta.net_support}_{delta.net_dissent}_{delta.total_submissions}_{proof}"
    return sha256_hex(content)[:DIGEST_HEX_LEN]


def _segment_key(segment: int) -> str:
    return f"{KEY_FEEDBACK_LOG_SEGMENT_PREFIX}{segment:010d}"


def _bucket_key(bucket: int) -> str:
    return f"{KEY_APPLIED_IDS_PREFIX}{bucket:012d}"


def _bucket_for(ts: float) -> int:
    return int(ts // APPLIED_BUCKET_SEC)


class DeltaStore:
    """Apply(submission) -> TrustDelta, plus copy-returning read API."""

    def __init__(
        self,
        storage: StateBackend,
        config: DeltaConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or DeltaConfig()
        self._storage = storage
        self._clock = clock
        self._deltas: dict[str, TrustDelta] = {}
        self._log: list[FeedbackLogEntry] = []
        self._log_base_seq = 0
        self._applied: dict[str, float] = {}
        self._applied_buckets: dict[int, set[str]] = {}
        # Guards the containers above and the dirty sets below
        self._state_lock = threading.RLock()
        # Held across copy and save so flushes land in order
        self._persist_lock = threading.Lock()
        self._target_locks = KeyedLocks()
        self._dirty_targets: set[str] = set()
        self._removed_targets: set[str] = set()
        self._dirty_segments: set[int] = set()
        self._removed_segments: set[int] = set()
        self._dirty_buckets: set[int] = set()
        self._removed_buckets: set[int] = set()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Restore deltas, log and applied ids from storage."""
        deltas: dict[str, TrustDelta] = {}
        for key in self._storage.keys_with_prefix(KEY_DELTA_PREFIX):
            raw = self._storage.load(key)
            if raw:
                delta = TrustDelta.from_dict(raw)
                deltas[delta.target_id] = delta

        meta = self._storage.load(KEY_FEEDBACK_LOG_META, default={}) or {}
        base_seq = int(meta.get("base_seq", 0))
        next_seq = int(meta.get("next_seq", 0))
        log: list[FeedbackLogEntry] = []
        if next_seq > base_seq:
            for segment in range(base_seq // LOG_SEGMENT_SIZE, (next_seq - 1) // LOG_SEGMENT_SIZE + 1):
                raw = self._storage.load(_segment_key(segment))
                if not raw:
                    continue
                start = int(raw["start_seq"])
                for offset, item in enumerate(raw["entries"]):
                    if base_seq <= start + offset < next_seq:
                        log.append(FeedbackLogEntry.from_dict(item))
        base_seq = next_seq - len(log)

        cutoff = self._clock() - self.config.applied_id_horizon_sec
        applied: dict[str, float] = {}
        buckets: dict[int, set[str]] = {}
        for key in self._storage.keys_with_prefix(KEY_APPLIED_IDS_PREFIX):
            bucket = int(key[len(KEY_APPLIED_IDS_PREFIX):])
            if (bucket + 1) * APPLIED_BUCKET_SEC <= cutoff:
                self._storage.delete(key)
                continue
            raw = self._storage.load(key, default={}) or {}
            buckets[bucket] = set(raw)
            applied.update({sid: float(ts) for sid, ts in raw.items()})

        with self._state_lock:
            self._deltas = deltas
            self._log = log
            self._log_base_seq = base_seq
            self._applied = applied
            self._applied_buckets = buckets
        logger.info(
            "delta_store_loaded",
            deltas=len(deltas),
            log_entries=len(log),
            applied_ids=len(applied),
        )

    def flush(self) -> None:
        """Write every dirty row; on failure the rows stay dirty for the next flush."""
        with self._persist_lock:
            with self._state_lock:
                targets = {tid: self._deltas[tid].to_dict() for tid in self._dirty_targets if tid in self._deltas}
                removed_targets = set(self._removed_targets)
                segments = {s: self._segment_payload(s) for s in self._dirty_segments}
                removed_segments = set(self._removed_segments)
                buckets = {b: self._bucket_payload(b) for b in self._dirty_buckets if b in self._applied_buckets}
                removed_buckets = set(self._removed_buckets)
                meta = {"base_seq": self._log_base_seq, "next_seq": self._next_seq}
                write_meta = bool(segments or removed_segments)
                dirty = (
                    set(self._dirty_targets),
                    set(self._dirty_segments),
                    set(self._dirty_buckets),
                )
                self._clear_dirty()
            try:
                for target_id, payload in targets.items():
                    self._storage.save(KEY_DELTA_PREFIX + target_id, payload)
                for target_id in removed_targets:
                    self._storage.delete(KEY_DELTA_PREFIX + target_id)
                for segment, payload in segments.items():
                    if payload is None:
                        self._storage.delete(_segment_key(segment))
                    else:
                        self._storage.save(_segment_key(segment), payload)
                for segment in removed_segments:
                    self._storage.delete(_segment_key(segment))
                if write_meta:
                    self._storage.save(KEY_FEEDBACK_LOG_META, meta)
                for bucket, payload in buckets.items():
                    self._storage.save(_bucket_key(bucket), payload)
                for bucket in removed_buckets:
                    self._storage.delete(_bucket_key(bucket))
            except Exception:
                with self._state_lock:
                    self._dirty_targets |= dirty[0]
                    self._removed_targets |= removed_targets
                    self._dirty_segments |= dirty[1]
                    self._removed_segments |= removed_segments
                    self._dirty_buckets |= dirty[2]
                    self._removed_buckets |= removed_buckets
                raise

    def _clear_dirty(self) -> None:
        self._dirty_targets.clear()
        self._removed_targets.clear()
        self._dirty_segments.clear()
        self._removed_segments.clear()
        self._dirty_buckets.clear()
        self._removed_buckets.clear()

    @property
    def _next_seq(self) -> int:
        return self._log_base_seq + len(self._log)

    def _segment_payload(self, segment: int) -> dict | None:
        start = max(segment * LOG_SEGMENT_SIZE, self._log_base_seq)
        end = min((segment + 1) * LOG_SEGMENT_SIZE, self._next_seq)
        if start >= end:
            return None
        lo, hi = start - self._log_base_seq, end - self._log_base_seq
        return {"start_seq": start, "entries": [e.to_dict() for e in self._log[lo:hi]]}

    def _bucket_payload(self, bucket: int) -> dict[str, float]:
        return {sid: self._applied[sid] for sid in sorted(self._applied_buckets[bucket])}

    def _append_log(self, entry: FeedbackLogEntry) -> None:
        self._dirty_segments.add(self._next_seq // LOG_SEGMENT_SIZE)
        self._log.append(entry)
        overflow = len(self._log) - self.config.log_retention
        if overflow > 0:
            old_base = self._log_base_seq
            del self._log[:overflow]
            self._log_base_seq += overflow
            for segment in range(old_base // LOG_SEGMENT_SIZE, self._log_base_seq // LOG_SEGMENT_SIZE):
                self._removed_segments.add(segment)
                self._dirty_segments.discard(segment)

    def _record_applied(self, submission_id: str, now: float) -> None:
        bucket = _bucket_for(now)
        self._applied[submission_id] = now
        self._applied_buckets.setdefault(bucket, set()).add(submission_id)
        self._dirty_buckets.add(bucket)
        cutoff = now - self.config.applied_id_horizon_sec
        for old in [b for b in self._applied_buckets if (b + 1) * APPLIED_BUCKET_SEC <= cutoff]:
            for sid in self._applied_buckets.pop(old):
                self._applied.pop(sid, None)
            self._dirty_buckets.discard(old)
            self._removed_buckets.add(old)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def tier_weight(self, tier: Tier) -> float:
        return float(self.config.tier_weights.get(Tier(tier), 1.0))

    def apply(self, submission: Submission) -> TrustDelta:
        """
        Fold one submission into its target's delta.

        Idempotent: a submission_id already applied returns the current delta
        unchanged. Returns a copy of the updated delta.
        """
        target_id = submission.target_id
        with self._target_locks.hold(target_id):
            with self._state_lock:
                if submission.submission_id in self._applied:
                    current = self._deltas.get(target_id)
                    logger.debug(
                        "delta_apply_duplicate",
                        target_id=target_id,
                        submission_id=submission.submission_id,
                    )
                    return current.copy() if current else self._zero_delta(submission.target)
                existing = self._deltas.get(target_id)

            now = self._clock()
            weight = self.tier_weight(submission.submitter_tier)
            weighted_value = submission.intensity * weight
            base = existing.copy() if existing else self._zero_delta(submission.target)
            if submission.feedback_type == FeedbackType.SUPPORT:
                base.net_support += weighted_value
            else:
                base.net_dissent += weighted_value
            updated = replace(
                base,
                total_submissions=base.total_submissions + 1,
                last_updated=now,
            )
            updated.integrity_digest = compute_integrity_digest(updated, submission.integrity_proof)

            entry = FeedbackLogEntry(
                entry_id=ENTRY_ID_PREFIX + submission.submission_id.removeprefix("sub_"),
                submission=replace(submission, explanation=sanitize_text(submission.explanation)),
                processed_at=now,
                tier_weight=weight,
                weighted_value=weighted_value,
            )
            with self._state_lock:
                self._deltas[target_id] = updated
                self._dirty_targets.add(target_id)
                self._removed_targets.discard(target_id)
                self._append_log(entry)
                self._record_applied(submission.submission_id, now)
            self.flush()

        logger.info(
            "delta_applied",
            target_id=target_id,
            submitter_id=short_id(submission.submitter_id),
            feedback_type=submission.feedback_type.value,
            tier=submission.submitter_tier.value,
            weighted_value=weighted_value,
            net_sentiment=updated.net_sentiment,
            total_submissions=updated.total_submissions,
        )
        return updated.copy()

    def register_target(self, target: Target) -> TrustDelta:
        """Create a zero-valued delta so the target is aggregated before its first submission."""
        target_id = target.target_id
        with self._target_locks.hold(target_id):
            with self._state_lock:
                existing = self._deltas.get(target_id)
                if existing is not None:
                    return existing.copy()
                delta = self._zero_delta(target)
                self._deltas[target_id] = delta
                self._dirty_targets.add(target_id)
                self._removed_targets.discard(target_id)
            self.flush()
        logger.info("target_registered", target_id=target_id, group_id=target.group_id)
        return delta.copy()

    def purge(self, target_id: str | None = None) -> int:
        """
        Administrative reset: drop one target's delta and log entries, or everything.

        The only operation that decreases sums. Applied ids are kept so a purged
        submission cannot be replayed back in. Returns number of deltas removed.
        """
        with self._state_lock:
            if target_id is None:
                gone = list(self._deltas)
                self._deltas.clear()
                kept: list[FeedbackLogEntry] = []
            else:
                gone = [target_id] if self._deltas.pop(target_id, None) is not None else []
                kept = [e for e in self._log if e.target_id != target_id]
            for tid in gone:
                self._dirty_targets.discard(tid)
                self._removed_targets.add(tid)
            # Rewrite the surviving log under fresh sequence numbers
            old_first, old_next = self._log_base_seq, self._next_seq
            if old_next > old_first:
                for segment in range(old_first // LOG_SEGMENT_SIZE, (old_next - 1) // LOG_SEGMENT_SIZE + 1):
                    self._removed_segments.add(segment)
            self._dirty_segments.clear()
            self._log = []
            self._log_base_seq = old_next
            for entry in kept:
                self._append_log(entry)
            self._removed_segments -= self._dirty_segments
            removed = len(gone)
        self.flush()
        logger.warning("delta_store_purged", target_id=target_id or "*", removed=removed)
        return removed

    @staticmethod
    def _zero_delta(target: Target) -> TrustDelta:
        return TrustDelta(target_id=target.target_id, group_id=target.group_id)

    # ------------------------------------------------------------------
    # Reads (copies only)
    # ------------------------------------------------------------------

    def get_delta(self, target_id: str) -> TrustDelta | None:
        with self._state_lock:
            delta = self._deltas.get(target_id)
            return delta.copy() if delta else None

    def get_all(self) -> list[TrustDelta]:
        with self._state_lock:
            return [d.copy() for d in self._deltas.values()]

    def snapshot(self) -> tuple[list[TrustDelta], list[FeedbackLogEntry]]:
        """Deltas and the full log taken under one lock hold, so both reflect the same applies."""
        with self._state_lock:
            return [d.copy() for d in self._deltas.values()], list(self._log)

    def get_log(
        self,
        target_id: str | None = None,
        tier: Tier | None = None,
        limit: int | None = None,
    ) -> list[FeedbackLogEntry]:
        """Log entries oldest first, optionally filtered; limit keeps the newest."""
        with self._state_lock:
            entries = list(self._log)
        if target_id is not None:
            entries = [e for e in entries if e.target_id == target_id]
        if tier is not None:
            entries = [e for e in entries if e.submission.submitter_tier == Tier(tier)]
        if limit is not None and limit >= 0:
            entries = entries[-limit:] if limit else []
        return entries

    def contributors(self, target_id: str) -> dict[str, Tier]:
        """Distinct submitters of a target mapped to their most recent tier."""
        result: dict[str, Tier] = {}
        for entry in self.get_log(target_id=target_id):
            result[entry.submission.submitter_id] = entry.submission.submitter_tier
        return result

    def contains(self, submission_id: str) -> bool:
        with self._state_lock:
            return submission_id in self._applied

    def stored_delta(self, target_id: str) -> TrustDelta | None:
        """Read the target's delta back from storage, bypassing memory."""
        raw = self._storage.load(KEY_DELTA_PREFIX + target_id)
        return TrustDelta.from_dict(raw) if raw else None

    def is_durably_applied(self, submission_id: str) -> bool:
        """True when submission_id is present in its persisted applied-id bucket."""
        with self._state_lock:
            applied_at = self._applied.get(submission_id)
        if applied_at is None:
            return False
        raw = self._storage.load(_bucket_key(_bucket_for(applied_at)), default={}) or {}
        return submission_id in raw

    def stats(self) -> dict:
        with self._state_lock:
            total = sum(d.total_submissions for d in self._deltas.values())
            active = sum(1 for d in self._deltas.values() if d.total_submissions > 0)
            tiers = Counter(e.submission.submitter_tier.value for e in self._log)
        return {
            "total_submissions": total,
            "active_deltas": active,
            "tier_distribution": {t.value: tiers.get(t.value, 0) for t in Tier},
        }

    def submitter_insights(
        self,
        now_ts: float | None = None,
        active_window_sec: float = DEFAULT_ACTIVE_WINDOW_SEC,
    ) -> dict:
        """
        Submitter activity over the retained log.

        total_submitters: distinct submitter ids.
        active_last_24h: submitters seen within active_window_sec of now.
        top_groups: up to five groups by distinct submitters, ties by group id.
        tier_distribution: submitters counted at their most recent tier.
        """
        now = now_ts if now_ts is not None else self._clock()
        last_seen: dict[str, float] = {}
        latest_tier: dict[str, Tier] = {}
        group_submitters: dict[str, set[str]] = {}
        for entry in self.get_log():
            submitter = entry.submission.submitter_id
            last_seen[submitter] = max(last_seen.get(submitter, entry.processed_at), entry.processed_at)
            latest_tier[submitter] = entry.submission.submitter_tier
            group_submitters.setdefault(entry.submission.target.group_id, set()).add(submitter)
        tiers = Counter(t.value for t in latest_tier.values())
        ranked = sorted(group_submitters.items(), key=lambda kv: (-len(kv[1]), kv[0]))
        return {
            "total_submitters": len(last_seen),
            "active_last_24h": sum(1 for ts in last_seen.values() if now - ts <= active_window_sec),
            "top_groups": [{"group_id": gid, "submitters": len(s)} for gid, s in ranked[:TOP_GROUPS]],
            "tier_distribution": {t.value: tiers.get(t.value, 0) for t in Tier},
        }
