"""
TrustPulse pipeline facade: wires the components and exposes the external API.

build_pipeline(settings, storage) constructs every component explicitly (no
module-level singletons), restores persisted state and subscribes the alert
monitor and reward agent to the aggregation cycle event. The API server and the
runtime threads both talk to one TrustPulsePipeline instance.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from backend_trustpulse.aggregation.engine import AggregationEngine
from backend_trustpulse.aggregation.models import AggregationResult, SentimentSnapshot
from backend_trustpulse.alerts.engine import AlertMonitor
from backend_trustpulse.alerts.escalation import BroadcastSink
from backend_trustpulse.alerts.models import Alert, AlertState
from backend_trustpulse.config.settings import Settings, get_settings, parse_tier_map
from backend_trustpulse.database.database import StateBackend, get_state_backend
from backend_trustpulse.database.models import FeedbackType, Submission, Target, Tier, TrustDelta
from backend_trustpulse.delta_store.store import DeltaStore
from backend_trustpulse.events.bus import CycleEventBus
from backend_trustpulse.fusion.coordinator import FusionCoordinator, LedgerSyncResult
from backend_trustpulse.gateway.gateway import AdmissionResult, SubmissionGateway
from backend_trustpulse.gateway.rate_limiter import RateLimiter
from backend_trustpulse.integrity.validator import IntegrityValidator
from backend_trustpulse.rewards.engine import RewardSignal, RewardTriggerAgent
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

EXPORT_VERSION = "trustpulse.export.v1"
EXPORT_ALERT_WINDOW_HOURS = 24.0


class TrustPulsePipeline:
    """Facade over gateway, delta store, aggregation, alerts, rewards and fusion."""

    def __init__(
        self,
        storage: StateBackend,
        validator: IntegrityValidator,
        rate_limiter: RateLimiter,
        store: DeltaStore,
        gateway: SubmissionGateway,
        bus: CycleEventBus,
        aggregation: AggregationEngine,
        alerts: AlertMonitor,
        rewards: RewardTriggerAgent,
        fusion: FusionCoordinator,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.validator = validator
        self.rate_limiter = rate_limiter
        self.store = store
        self.gateway = gateway
        self.bus = bus
        self.aggregation = aggregation
        self.alerts = alerts
        self.rewards = rewards
        self.fusion = fusion
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def load(self) -> None:
        """Restore every component's persisted state."""
        self.rate_limiter.load()
        self.store.load()
        self.aggregation.load()
        self.alerts.load()
        self.rewards.load()
        self.fusion.load()

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def submit(self, submission: Submission) -> AdmissionResult:
        return self.gateway.admit(submission)

    def register_target(self, target: Target) -> TrustDelta:
        return self.store.register_target(target)

    def issue_proof(
        self,
        target: Target,
        feedback_type: FeedbackType | str,
        tier: Tier | str,
        submitted_at: float,
    ) -> str:
        return self.validator.issue_proof(target, FeedbackType(feedback_type), Tier(tier), submitted_at)

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------

    def run_aggregation_cycle(self) -> AggregationResult:
        """Aggregate now; alerts and rewards react through the event bus."""
        return self.aggregation.run_cycle()

    def run_fusion_sync(self) -> LedgerSyncResult:
        return self.fusion.run_sync()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_delta(self, target_id: str) -> TrustDelta | None:
        return self.store.get_delta(target_id)

    def get_snapshot(self, target_id: str) -> SentimentSnapshot | None:
        return self.aggregation.get_snapshot(target_id)

    def get_alerts(self, severity: str | None = None, since_hours: float = 24.0) -> list[Alert]:
        return self.alerts.get_alerts(severity=severity, since_hours=since_hours)

    def get_reward_signals(self, processed: bool | None = None) -> list[RewardSignal]:
        return self.rewards.get_signals(processed=processed)

    def get_fusion_summary(self) -> dict:
        return self.fusion.summary()

    def throttle_status(self, submitter_id: str) -> dict:
        return self.gateway.throttle_status(submitter_id)

    def export(self) -> dict:
        """Read-only dump: deltas, latest snapshots, active alerts, unprocessed signals."""
        active_alerts = [
            a for a in self.alerts.get_alerts(since_hours=EXPORT_ALERT_WINDOW_HOURS)
            if a.state != AlertState.RESOLVED
        ]
        return {
            "version": EXPORT_VERSION,
            "generated_at": self._clock(),
            "deltas": [d.to_dict() for d in self.store.get_all()],
            "snapshots": [s.to_dict() for s in self.aggregation.recent_snapshots()],
            "active_alerts": [a.to_dict() for a in active_alerts],
            "unprocessed_signals": [s.to_dict() for s in self.rewards.get_signals(processed=False)],
            "stats": self.store.stats(),
            "submitter_insights": self.store.submitter_insights(),
        }

    def metrics(self) -> dict:
        latest = self.aggregation.latest
        return {
            "orchestration": self.gateway.metrics(),
            "delta_store": self.store.stats(),
            "submitters": self.store.submitter_insights(),
            "aggregation": {
                "cycles": self.aggregation.cycle_count,
                "last_cycle": latest.cycle_timestamp if latest else None,
                "system_health": latest.system_health.value if latest else None,
                "volatile_targets": list(latest.volatile_targets) if latest else [],
                "spikes_retained": len(self.aggregation.get_spikes()),
            },
            "monitoring": self.alerts.metrics(),
            "rewards": self.rewards.metrics(),
            "fusion": self.fusion.summary()["metrics"],
        }

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def mark_reward_processed(self, signal_id: str) -> bool:
        return self.rewards.mark_processed(signal_id)

    def acknowledge_broadcast(self, alert_id: str) -> bool:
        return self.alerts.acknowledge_broadcast(alert_id)

    def purge(self, target_id: str | None = None) -> int:
        return self.store.purge(target_id)

    def update_config(self, **changes: Any) -> dict:
        """
        Adjust thresholds at runtime. Unknown keys and negative values raise ValueError;
        nothing is applied unless every change is valid.
        """
        setters = self._config_setters()
        unknown = sorted(set(changes) - set(setters))
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(unknown)}")
        normalized: dict[str, Any] = {}
        for key, value in changes.items():
            if value is None:
                continue
            normalized[key] = _validate_config_value(key, value)
        for key, value in normalized.items():
            setters[key](value)
        if normalized:
            logger.info("config_updated", keys=sorted(normalized))
        return self.config_view()

    def _config_setters(self) -> dict[str, Callable[[Any], None]]:
        agg = self.aggregation.config
        alert = self.alerts.config
        reward = self.rewards.config
        fusion = self.fusion.config
        rate = self.rate_limiter.config
        integrity = self.validator.config
        return {
            "volatility_threshold": lambda v: setattr(agg, "volatility_threshold", v),
            "alert_critical_threshold": lambda v: setattr(alert, "critical_threshold", v),
            "alert_moderate_threshold": lambda v: setattr(alert, "moderate_threshold", v),
            "alert_broadcast_threshold": lambda v: setattr(alert, "broadcast_threshold", v),
            "reward_enabled": lambda v: setattr(reward, "enabled", v),
            "reward_thresholds": lambda v: reward.thresholds.update(v),
            "reward_amounts": lambda v: reward.reward_amounts.update({t: int(a) for t, a in v.items()}),
            "reward_cooldown_sec": lambda v: setattr(reward, "cooldown_sec", v),
            "reward_max_per_hour": lambda v: setattr(reward, "max_per_hour", int(v)),
            "fusion_min_trust_level": lambda v: setattr(fusion, "min_trust_level", v),
            "fusion_dampening_factor": lambda v: setattr(fusion, "dampening_factor", v),
            "rate_window_sec": lambda v: setattr(rate, "window_sec", v),
            "rate_max_per_window": lambda v: setattr(rate, "max_per_window", int(v)),
            "max_drift_sec": lambda v: setattr(integrity, "max_drift_sec", v),
        }

    def config_view(self) -> dict:
        agg = self.aggregation.config
        alert = self.alerts.config
        reward = self.rewards.config
        fusion = self.fusion.config
        rate = self.rate_limiter.config
        return {
            "volatility_threshold": agg.volatility_threshold,
            "aggregation_period_sec": agg.period_sec,
            "alert_critical_threshold": alert.critical_threshold,
            "alert_moderate_threshold": alert.moderate_threshold,
            "alert_broadcast_threshold": alert.broadcast_threshold,
            "reward_enabled": reward.enabled,
            "reward_thresholds": {t.value: v for t, v in reward.thresholds.items()},
            "reward_amounts": {t.value: v for t, v in reward.reward_amounts.items()},
            "reward_cooldown_sec": reward.cooldown_sec,
            "reward_max_per_hour": reward.max_per_hour,
            "fusion_min_trust_level": fusion.min_trust_level,
            "fusion_dampening_factor": fusion.dampening_factor,
            "fusion_period_sec": fusion.period_sec,
            "rate_window_sec": rate.window_sec,
            "rate_max_per_window": rate.max_per_window,
            "max_drift_sec": self.validator.config.max_drift_sec,
        }


def _validate_config_value(key: str, value: Any) -> Any:
    if key == "reward_enabled":
        if not isinstance(value, bool):
            raise ValueError("reward_enabled must be a boolean")
        return value
    if key in ("reward_thresholds", "reward_amounts"):
        if isinstance(value, str):
            tiers = parse_tier_map(value, {})
        elif isinstance(value, dict):
            tiers = {Tier(str(t).upper()): float(v) for t, v in value.items()}
        else:
            raise ValueError(f"{key} must be a tier map")
        if any(v < 0 for v in tiers.values()):
            raise ValueError(f"{key} values must be >= 0")
        return tiers
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    if value < 0:
        raise ValueError(f"{key} must be >= 0")
    if key == "rate_max_per_window" and value < 1:
        raise ValueError("rate_max_per_window must be >= 1")
    return value


def build_pipeline(
    settings: Settings | None = None,
    storage: StateBackend | None = None,
    *,
    clock: Callable[[], float] = time.time,
    sink: BroadcastSink | None = None,
    load_state: bool = True,
) -> TrustPulsePipeline:
    """
    Construct and wire a pipeline.

    settings: defaults to get_settings() (env). storage: defaults to the backend
    selected by settings (DATABASE_URL, else DB_PATH). clock is shared by every
    component so tests can drive time.
    """
    settings = settings or get_settings()
    if storage is None:
        storage = get_state_backend(settings.db_path, database_url=settings.database_url)

    validator = IntegrityValidator(settings.integrity_config(), clock=clock)
    rate_limiter = RateLimiter(storage, settings.rate_limit_config(), clock=clock)
    store = DeltaStore(storage, settings.delta_config(), clock=clock)
    gateway = SubmissionGateway(validator, rate_limiter, store, clock=clock)
    bus = CycleEventBus()
    aggregation = AggregationEngine(store, storage, bus, settings.aggregation_config(), clock=clock)
    alerts = AlertMonitor(storage, settings.alert_config(), sink=sink, clock=clock)
    rewards = RewardTriggerAgent(store, storage, settings.reward_config(), clock=clock)
    fusion = FusionCoordinator(aggregation, store, rewards, storage, settings.fusion_config(), clock=clock)

    bus.subscribe(alerts.on_cycle, name="alert_monitor")
    bus.subscribe(rewards.on_cycle, name="reward_trigger_agent")

    pipeline = TrustPulsePipeline(
        storage=storage,
        validator=validator,
        rate_limiter=rate_limiter,
        store=store,
        gateway=gateway,
        bus=bus,
        aggregation=aggregation,
        alerts=alerts,
        rewards=rewards,
        fusion=fusion,
        clock=clock,
    )
    if load_state:
        pipeline.load()
    logger.info(
        "pipeline_built",
        storage=type(storage).__name__,
        aggregation_period_sec=settings.aggregation_period_sec,
        fusion_period_sec=settings.fusion_period_sec,
    )
    return pipeline
