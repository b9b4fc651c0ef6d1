"""
Fusion coordinator: cross-target reconciliation after aggregation and rewards.

Each sync reads the latest AggregationResult, the delta store's contributor
view and the reward history, and produces:
- fusion eligibility: targets with |net_sentiment| >= min_trust_level; the
  eligible submitter count (distinct contributors to eligible targets) is
  dampened to floor(count x dampening_factor) when health is concerning/critical;
- a LedgerSyncResult (entries synced, targets affected, rewards since last sync);
- category impact records from a runtime-adjustable impact table.

Read-only with respect to deltas, submissions and reward signals.
"""

from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Callable, Protocol

from backend_trustpulse.aggregation.models import AggregationResult, SystemHealth
from backend_trustpulse.database.database import KEY_FUSION_LOG, StateBackend
from backend_trustpulse.database.models import Tier
from backend_trustpulse.rewards.engine import RewardSignal
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

DEFAULT_PERIOD_SEC = 5 * 60
DEFAULT_MIN_TRUST_LEVEL = 75.0
DEFAULT_DAMPENING_FACTOR = 0.6
DEFAULT_CATEGORY = "general"
DEFAULT_IMPACT_FACTOR = 1.0
DEFAULT_TRUST_MODIFIER = 0.0
SYNC_LOG_RETENTION = 100
DAMPENED_HEALTH = (SystemHealth.CONCERNING, SystemHealth.CRITICAL)


@dataclass
class FusionConfig:
    period_sec: float = DEFAULT_PERIOD_SEC
    min_trust_level: float = DEFAULT_MIN_TRUST_LEVEL
    """|net_sentiment| needed for a target to be fusion-eligible."""
    dampening_factor: float = DEFAULT_DAMPENING_FACTOR
    """Applied to the eligible submitter count under concerning/critical health."""
    default_category: str = DEFAULT_CATEGORY
    category_impacts: dict[str, tuple[float, float]] = field(
        default_factory=lambda: {DEFAULT_CATEGORY: (DEFAULT_IMPACT_FACTOR, DEFAULT_TRUST_MODIFIER)}
    )
    """category -> (impact_factor, trust_modifier)."""
    group_categories: dict[str, str] = field(default_factory=dict)
    """group_id (deck) -> category; unmapped groups use default_category."""


@dataclass
class LedgerSyncResult:
    sync_id: str
    timestamp: float
    entries_synced: int
    targets_affected: list[str]
    reward_count: int
    fusion_eligible: int
    duration_ms: float
    system_health: str | None = None
    eligible_targets: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> LedgerSyncResult:
        return cls(
            sync_id=data["sync_id"],
            timestamp=float(data["timestamp"]),
            entries_synced=int(data.get("entries_synced", 0)),
            targets_affected=list(data.get("targets_affected") or []),
            reward_count=int(data.get("reward_count", 0)),
            fusion_eligible=int(data.get("fusion_eligible", 0)),
            duration_ms=float(data.get("duration_ms", 0.0)),
            system_health=data.get("system_health"),
            eligible_targets=list(data.get("eligible_targets") or []),
        )


@dataclass
class CategoryImpact:
    category: str
    impact_factor: float
    trust_modifier: float
    eligible_targets: int = 0
    total_impact_score: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FusionMetrics:
    total_syncs: int = 0
    total_rewards_value: int = 0
    average_sync_ms: float = 0.0
    last_sync_at: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class AggregationView(Protocol):
    @property
    def latest(self) -> AggregationResult | None:
        ...


class ContributorView(Protocol):
    def contributors(self, target_id: str) -> dict[str, Tier]:
        ...


class RewardHistory(Protocol):
    def signals_since(self, since_ts: float | None) -> list[RewardSignal]:
        ...


class FusionCoordinator:
    def __init__(
        self,
        aggregation: AggregationView,
        contributors: ContributorView,
        rewards: RewardHistory,
        storage: StateBackend,
        config: FusionConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or FusionConfig()
        self._aggregation = aggregation
        self._contributors = contributors
        self._rewards = rewards
        self._storage = storage
        self._clock = clock
        self._sync_log: list[LedgerSyncResult] = []
        self._impacts: list[CategoryImpact] = []
        self._metrics = FusionMetrics()
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()

    def load(self) -> None:
        raw = self._storage.load(KEY_FUSION_LOG, default=[]) or []
        with self._lock:
            self._sync_log = [LedgerSyncResult.from_dict(r) for r in raw]
        logger.info("fusion_log_loaded", syncs=len(self._sync_log))

    def _persist(self) -> None:
        with self._persist_lock:
            with self._lock:
                payload = [r.to_dict() for r in self._sync_log]
            self._storage.save(KEY_FUSION_LOG, payload)

    # ------------------------------------------------------------------
    # Category impact table
    # ------------------------------------------------------------------

    def category_for(self, group_id: str) -> str:
        return self.config.group_categories.get(group_id, self.config.default_category)

    def impact_for(self, category: str) -> tuple[float, float]:
        return self.config.category_impacts.get(category, (DEFAULT_IMPACT_FACTOR, DEFAULT_TRUST_MODIFIER))

    def set_category_impact(self, category: str, impact_factor: float, trust_modifier: float = 0.0) -> None:
        if impact_factor < 0:
            raise ValueError("impact_factor must be >= 0")
        self.config.category_impacts[category] = (float(impact_factor), float(trust_modifier))
        logger.info("category_impact_updated", category=category, impact_factor=impact_factor, trust_modifier=trust_modifier)

    def map_group(self, group_id: str, category: str) -> None:
        self.config.group_categories[group_id] = category

    def scaled_reward_amount(self, signal: RewardSignal, group_id: str | None = None) -> int:
        """Reward amount scaled by the impact factor of the signal's category."""
        group = group_id or signal.target_id.split("::", 1)[0]
        factor, _ = self.impact_for(self.category_for(group))
        return round(signal.amount * factor)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def run_sync(self) -> LedgerSyncResult:
        started = time.perf_counter()
        now = self._clock()
        result = self._aggregation.latest
        with self._lock:
            previous_sync = self._sync_log[-1].timestamp if self._sync_log else None

        eligible_targets: list[str] = []
        eligible_submitters: set[str] = set()
        entries_synced = 0
        targets_affected: list[str] = []
        per_category: dict[str, int] = {}
        health = result.system_health if result is not None else None

        if result is not None:
            for target_id in sorted(result.metrics):
                target_metrics = result.metrics[target_id]
                entries_synced += target_metrics.total_submissions
                targets_affected.append(target_id)
                if abs(target_metrics.net_sentiment) >= self.config.min_trust_level:
                    eligible_targets.append(target_id)
                    eligible_submitters.update(self._contributors.contributors(target_id))
                    category = self.category_for(target_metrics.group_id)
                    per_category[category] = per_category.get(category, 0) + 1

        fusion_eligible = len(eligible_submitters)
        if health in DAMPENED_HEALTH:
            fusion_eligible = math.floor(fusion_eligible * self.config.dampening_factor)

        # (previous_sync, now]: a signal created after now belongs to the next sync
        new_rewards = [s for s in self._rewards.signals_since(previous_sync) if s.created_at <= now]
        impacts = self._compute_impacts(per_category)
        duration_ms = (time.perf_counter() - started) * 1000.0
        sync = LedgerSyncResult(
            sync_id=f"sync_{uuid.uuid4().hex[:16]}",
            timestamp=now,
            entries_synced=entries_synced,
            targets_affected=targets_affected,
            reward_count=len(new_rewards),
            fusion_eligible=fusion_eligible,
            duration_ms=duration_ms,
            system_health=health.value if health is not None else None,
            eligible_targets=eligible_targets,
        )
        rewards_value = sum(self.scaled_reward_amount(s) for s in new_rewards)
        with self._lock:
            self._sync_log.append(sync)
            if len(self._sync_log) > SYNC_LOG_RETENTION:
                del self._sync_log[: len(self._sync_log) - SYNC_LOG_RETENTION]
            self._impacts = impacts
            m = self._metrics
            m.total_syncs += 1
            m.total_rewards_value += rewards_value
            m.average_sync_ms += (duration_ms - m.average_sync_ms) / m.total_syncs
            m.last_sync_at = now
        self._persist()
        logger.info(
            "fusion_sync_done",
            sync_id=sync.sync_id,
            entries_synced=entries_synced,
            targets_affected=len(targets_affected),
            eligible_targets=len(eligible_targets),
            fusion_eligible=fusion_eligible,
            reward_count=sync.reward_count,
            system_health=sync.system_health,
            duration_ms=round(duration_ms, 3),
        )
        return sync

    def _compute_impacts(self, per_category: dict[str, int]) -> list[CategoryImpact]:
        categories = sorted(set(self.config.category_impacts) | set(per_category))
        impacts = []
        for category in categories:
            factor, modifier = self.impact_for(category)
            eligible = per_category.get(category, 0)
            impacts.append(
                CategoryImpact(
                    category=category,
                    impact_factor=factor,
                    trust_modifier=modifier,
                    eligible_targets=eligible,
                    total_impact_score=eligible * factor,
                )
            )
        return impacts

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def last_sync(self) -> LedgerSyncResult | None:
        with self._lock:
            return self._sync_log[-1] if self._sync_log else None

    def get_sync_log(self, limit: int | None = None) -> list[LedgerSyncResult]:
        with self._lock:
            log = list(self._sync_log)
        return log[-limit:] if limit else log

    def category_impacts(self) -> list[CategoryImpact]:
        with self._lock:
            impacts = list(self._impacts)
        return impacts or self._compute_impacts({})

    def summary(self) -> dict:
        last = self.last_sync
        with self._lock:
            metrics = self._metrics.to_dict()
        return {
            "last_sync": last.to_dict() if last else None,
            "eligible_targets": list(last.eligible_targets) if last else [],
            "fusion_eligible": last.fusion_eligible if last else 0,
            "health": last.system_health if last else None,
            "category_impacts": [i.to_dict() for i in self.category_impacts()],
            "metrics": metrics,
        }
