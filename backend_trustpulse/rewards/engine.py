"""
Reward-trigger agent: tier thresholds, per-submitter cooldowns, hourly cap.

Subscribed to the cycle event bus. For every target in the cycle, each
distinct contributing submitter is a candidate at its tier. A candidate gets a
RewardSignal when |net_sentiment| >= threshold(tier), the submitter is off
cooldown and the hourly cap is not reached. Cooldown and cap misses are
dropped silently (logged and counted, never queued).

Signals move unprocessed -> processed exactly once via mark_processed().
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Callable, Protocol

from backend_trustpulse.aggregation.models import AggregationResult
from backend_trustpulse.core.hashing import canonical_json, sha256_hex
from backend_trustpulse.database.database import (
    KEY_REWARD_COOLDOWNS,
    KEY_REWARD_SIGNALS,
    KEY_REWARD_WINDOW,
    StateBackend,
)
from backend_trustpulse.database.models import Tier
from backend_trustpulse.trustpulse_logging import get_logger, short_id

logger = get_logger(__name__)

DEFAULT_THRESHOLDS = {Tier.T1: 50.0, Tier.T2: 40.0, Tier.T3: 30.0}
DEFAULT_REWARD_AMOUNTS = {Tier.T1: 25, Tier.T2: 50, Tier.T3: 100}
DEFAULT_COOLDOWN_SEC = 2 * 60 * 60
DEFAULT_MAX_PER_HOUR = 100
HOURLY_WINDOW_SEC = 60 * 60
SIGNAL_ID_PREFIX = "reward_"
DIGEST_PREFIX = "zkp_mint_"
DIGEST_HEX_LEN = 32


@dataclass
class RewardConfig:
    enabled: bool = True
    thresholds: dict[Tier, float] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    """Minimum |net_sentiment| per submitter tier."""
    reward_amounts: dict[Tier, int] = field(default_factory=lambda: dict(DEFAULT_REWARD_AMOUNTS))
    cooldown_sec: float = DEFAULT_COOLDOWN_SEC
    """Per-submitter quiet period after a signal."""
    max_per_hour: int = DEFAULT_MAX_PER_HOUR
    """Signals allowed per hourly window across all submitters."""


@dataclass
class RewardSignal:
    signal_id: str
    submitter_id: str
    target_id: str
    tier: Tier
    amount: int
    trust_delta: float
    reason: str
    digest: str
    created_at: float
    processed: bool = False
    processed_at: float | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tier"] = self.tier.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> RewardSignal:
        return cls(
            signal_id=data["signal_id"],
            submitter_id=data["submitter_id"],
            target_id=data["target_id"],
            tier=Tier(data["tier"]),
            amount=int(data["amount"]),
            trust_delta=float(data["trust_delta"]),
            reason=data.get("reason", ""),
            digest=data.get("digest", ""),
            created_at=float(data["created_at"]),
            processed=bool(data.get("processed", False)),
            processed_at=data.get("processed_at"),
        )


@dataclass
class RewardMetrics:
    total_signals: int = 0
    signals_by_tier: dict[str, int] = field(default_factory=lambda: {t.value: 0 for t in Tier})
    total_value: int = 0
    average_trust_delta: float = 0.0
    last_trigger_at: float | None = None
    skipped_cooldown: int = 0
    skipped_hourly_cap: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ContributorSource(Protocol):
    def contributors(self, target_id: str) -> dict[str, Tier]:
        ...


class RewardTriggerAgent:
    def __init__(
        self,
        contributors: ContributorSource,
        storage: StateBackend,
        config: RewardConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or RewardConfig()
        self._contributors = contributors
        self._storage = storage
        self._clock = clock
        self._signals: list[RewardSignal] = []
        self._cooldowns: dict[str, float] = {}
        self._window_start: float | None = None
        self._window_count = 0
        self._metrics = RewardMetrics()
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()

    def load(self) -> None:
        signals_raw = self._storage.load(KEY_REWARD_SIGNALS, default=[]) or []
        cooldowns_raw = self._storage.load(KEY_REWARD_COOLDOWNS, default={}) or {}
        window_raw = self._storage.load(KEY_REWARD_WINDOW, default={}) or {}
        with self._lock:
            self._signals = [RewardSignal.from_dict(s) for s in signals_raw]
            self._cooldowns = {sid: float(ts) for sid, ts in cooldowns_raw.items()}
            self._window_start = window_raw.get("window_start")
            self._window_count = int(window_raw.get("count", 0))
            self._rebuild_metrics()
        logger.info("reward_state_loaded", signals=len(self._signals), cooldowns=len(self._cooldowns))

    def _rebuild_metrics(self) -> None:
        metrics = RewardMetrics()
        for signal in self._signals:
            self._count_signal(metrics, signal)
        self._metrics = metrics

    def _persist(self) -> None:
        with self._persist_lock:
            with self._lock:
                signals = [s.to_dict() for s in self._signals]
                cooldowns = dict(self._cooldowns)
                window = {"window_start": self._window_start, "count": self._window_count}
            self._storage.save(KEY_REWARD_SIGNALS, signals)
            self._storage.save(KEY_REWARD_COOLDOWNS, cooldowns)
            self._storage.save(KEY_REWARD_WINDOW, window)

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def threshold_for(self, tier: Tier) -> float:
        return float(self.config.thresholds[Tier(tier)])

    def on_cycle(self, result: AggregationResult) -> list[RewardSignal]:
        """Event-bus handler: evaluate every (target, contributor) pair of the cycle."""
        if not self.config.enabled:
            return []
        emitted: list[RewardSignal] = []
        for target_id in sorted(result.snapshots):
            trust_delta = abs(result.snapshots[target_id].net_sentiment)
            for submitter_id, tier in sorted(self._contributors.contributors(target_id).items()):
                if trust_delta < self.threshold_for(tier):
                    continue
                signal = self.try_emit(submitter_id, target_id, tier, trust_delta)
                if signal is not None:
                    emitted.append(signal)
        if emitted:
            self._persist()
            logger.info("reward_sweep_done", cycle_id=result.cycle_id, signals=len(emitted))
        return emitted

    def try_emit(
        self,
        submitter_id: str,
        target_id: str,
        tier: Tier,
        trust_delta: float,
        now_ts: float | None = None,
    ) -> RewardSignal | None:
        """Emit one signal unless the submitter is on cooldown or the hourly cap is reached."""
        now = now_ts if now_ts is not None else self._clock()
        tier = Tier(tier)
        with self._lock:
            self._roll_window(now)
            last = self._cooldowns.get(submitter_id)
            if last is not None and now - last < self.config.cooldown_sec:
                self._metrics.skipped_cooldown += 1
                logger.debug("reward_skipped_cooldown", submitter_id=short_id(submitter_id), target_id=target_id)
                return None
            if self._window_count >= self.config.max_per_hour:
                self._metrics.skipped_hourly_cap += 1
                logger.info("reward_skipped_hourly_cap", submitter_id=short_id(submitter_id), target_id=target_id)
                return None
            signal = RewardSignal(
                signal_id=f"{SIGNAL_ID_PREFIX}{uuid.uuid4().hex[:16]}",
                submitter_id=submitter_id,
                target_id=target_id,
                tier=tier,
                amount=int(self.config.reward_amounts[tier]),
                trust_delta=trust_delta,
                reason=f"{tier.value}_threshold_exceeded",
                digest=_signal_digest(submitter_id, target_id, trust_delta, now),
                created_at=now,
            )
            self._signals.append(signal)
            self._cooldowns[submitter_id] = now
            self._window_count += 1
            self._count_signal(self._metrics, signal)
        logger.info(
            "reward_signal_emitted",
            signal_id=signal.signal_id,
            submitter_id=short_id(submitter_id),
            target_id=target_id,
            tier=tier.value,
            amount=signal.amount,
            trust_delta=trust_delta,
        )
        return signal

    def _roll_window(self, now: float) -> None:
        if self._window_start is None or now - self._window_start >= HOURLY_WINDOW_SEC:
            self._window_start = now
            self._window_count = 0

    @staticmethod
    def _count_signal(metrics: RewardMetrics, signal: RewardSignal) -> None:
        metrics.total_signals += 1
        metrics.signals_by_tier[signal.tier.value] = metrics.signals_by_tier.get(signal.tier.value, 0) + 1
        metrics.total_value += signal.amount
        metrics.average_trust_delta += (signal.trust_delta - metrics.average_trust_delta) / metrics.total_signals
        metrics.last_trigger_at = signal.created_at

    # ------------------------------------------------------------------
    # Processing and queries
    # ------------------------------------------------------------------

    def mark_processed(self, signal_id: str) -> bool:
        """Flip a signal to processed. False when unknown or already processed."""
        with self._lock:
            signal = next((s for s in self._signals if s.signal_id == signal_id), None)
            if signal is None or signal.processed:
                return False
            signal.processed = True
            signal.processed_at = self._clock()
        self._persist()
        logger.info("reward_signal_processed", signal_id=signal_id, amount=signal.amount)
        return True

    def get_signal(self, signal_id: str) -> RewardSignal | None:
        with self._lock:
            signal = next((s for s in self._signals if s.signal_id == signal_id), None)
            return RewardSignal.from_dict(signal.to_dict()) if signal else None

    def get_signals(self, processed: bool | None = None) -> list[RewardSignal]:
        with self._lock:
            signals = [RewardSignal.from_dict(s.to_dict()) for s in self._signals]
        if processed is None:
            return signals
        return [s for s in signals if s.processed == processed]

    def signals_since(self, since_ts: float | None) -> list[RewardSignal]:
        """Signals created after since_ts (all when None)."""
        signals = self.get_signals()
        if since_ts is None:
            return signals
        return [s for s in signals if s.created_at > since_ts]

    def metrics(self) -> dict:
        with self._lock:
            data = self._metrics.to_dict()
            states = Counter(s.processed for s in self._signals)
            data["active_signals"] = states.get(False, 0)
            data["processed_signals"] = states.get(True, 0)
            data["hourly_window_count"] = self._window_count
        return data


def _signal_digest(submitter_id: str, target_id: str, trust_delta: float, now: float) -> str:
    content = canonical_json({
        "submitter": submitter_id,
        "target": target_id,
        "trust_delta": trust_delta,
        "created_at": now,
    })
    return DIGEST_PREFIX + sha256_hex(content)[:DIGEST_HEX_LEN]
