"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and the project .env file.
- Provide defaults for every optional setting.
- Build the per-component config dataclasses (IntegrityConfig, RateLimitConfig,
  DeltaConfig, AggregationConfig, AlertConfig, RewardConfig, FusionConfig).

Env vars:
  DB_PATH, DATABASE_URL, API_HOST, API_PORT
  TRUSTPULSE_MAX_DRIFT_SEC, TRUSTPULSE_PROOF_SECRET, TRUSTPULSE_ENFORCE_PROOF
  TRUSTPULSE_RATE_WINDOW_SEC, TRUSTPULSE_RATE_MAX_PER_WINDOW
  TRUSTPULSE_TIER_WEIGHTS (e.g. "T1:1,T2:2,T3:3")
  TRUSTPULSE_AGGREGATION_PERIOD_SEC, TRUSTPULSE_VOLATILITY_THRESHOLD
  TRUSTPULSE_ALERT_CRITICAL_THRESHOLD, TRUSTPULSE_ALERT_MODERATE_THRESHOLD,
  TRUSTPULSE_ALERT_BROADCAST_THRESHOLD
  TRUSTPULSE_REWARD_THRESHOLDS, TRUSTPULSE_REWARD_AMOUNTS,
  TRUSTPULSE_REWARD_COOLDOWN_SEC, TRUSTPULSE_REWARD_MAX_PER_HOUR
  TRUSTPULSE_FUSION_PERIOD_SEC, TRUSTPULSE_FUSION_MIN_TRUST, TRUSTPULSE_FUSION_DAMPENING
  TRUSTPULSE_RUNTIME_ENABLED
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from backend_trustpulse.aggregation.engine import (
    DEFAULT_PERIOD_SEC as DEFAULT_AGGREGATION_PERIOD_SEC,
    DEFAULT_VOLATILITY_THRESHOLD,
    AggregationConfig,
)
from backend_trustpulse.alerts.engine import (
    DEFAULT_BROADCAST_THRESHOLD,
    DEFAULT_CRITICAL_THRESHOLD,
    DEFAULT_MODERATE_THRESHOLD,
    AlertConfig,
)
from backend_trustpulse.config.env import (
    get_bool,
    get_float,
    get_int,
    get_str,
    load_trustpulse_env,
    prefixed,
)
from backend_trustpulse.database.models import Tier
from backend_trustpulse.delta_store.store import DEFAULT_TIER_WEIGHTS, DeltaConfig
from backend_trustpulse.fusion.coordinator import (
    DEFAULT_DAMPENING_FACTOR,
    DEFAULT_MIN_TRUST_LEVEL,
    DEFAULT_PERIOD_SEC as DEFAULT_FUSION_PERIOD_SEC,
    FusionConfig,
)
from backend_trustpulse.gateway.rate_limiter import (
    DEFAULT_MAX_PER_WINDOW,
    DEFAULT_WINDOW_SEC,
    RateLimitConfig,
)
from backend_trustpulse.integrity.validator import DEFAULT_MAX_DRIFT_SEC, IntegrityConfig
from backend_trustpulse.rewards.engine import (
    DEFAULT_COOLDOWN_SEC,
    DEFAULT_MAX_PER_HOUR,
    DEFAULT_REWARD_AMOUNTS,
    DEFAULT_THRESHOLDS,
    RewardConfig,
)

DEFAULT_DB_PATH = "trustpulse.db"
DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 8000


def parse_tier_map(raw: str, default: dict[Tier, float]) -> dict[Tier, float]:
    """Parse "T1:1,T2:2,T3:3" into a tier map; missing tiers keep their default."""
    result = dict(default)
    if not raw:
        return result
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        tier, _, value = part.partition(":")
        try:
            result[Tier(tier.strip().upper())] = float(value)
        except ValueError:
            raise ValueError(f"invalid tier entry {part!r} (expected T1:<number>)") from None
    return result


@dataclass
class Settings:
    """All runtime settings; build component configs with the *_config() helpers."""

    db_path: str = DEFAULT_DB_PATH
    database_url: str | None = None
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    runtime_enabled: bool = True

    max_drift_sec: float = DEFAULT_MAX_DRIFT_SEC
    proof_secret: str | None = None
    enforce_proof: bool = True

    rate_window_sec: float = DEFAULT_WINDOW_SEC
    rate_max_per_window: int = DEFAULT_MAX_PER_WINDOW

    tier_weights: dict[Tier, float] = field(default_factory=lambda: dict(DEFAULT_TIER_WEIGHTS))

    aggregation_period_sec: float = DEFAULT_AGGREGATION_PERIOD_SEC
    volatility_threshold: float = DEFAULT_VOLATILITY_THRESHOLD

    alert_critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
    alert_moderate_threshold: float = DEFAULT_MODERATE_THRESHOLD
    alert_broadcast_threshold: float = DEFAULT_BROADCAST_THRESHOLD

    reward_thresholds: dict[Tier, float] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    reward_amounts: dict[Tier, float] = field(
        default_factory=lambda: {t: float(v) for t, v in DEFAULT_REWARD_AMOUNTS.items()}
    )
    reward_cooldown_sec: float = DEFAULT_COOLDOWN_SEC
    reward_max_per_hour: int = DEFAULT_MAX_PER_HOUR

    fusion_period_sec: float = DEFAULT_FUSION_PERIOD_SEC
    fusion_min_trust_level: float = DEFAULT_MIN_TRUST_LEVEL
    fusion_dampening_factor: float = DEFAULT_DAMPENING_FACTOR

    @classmethod
    def from_env(cls) -> Settings:
        load_trustpulse_env()
        return cls(
            db_path=get_str("DB_PATH", DEFAULT_DB_PATH),
            database_url=get_str("DATABASE_URL") or None,
            api_host=get_str("API_HOST", DEFAULT_API_HOST),
            api_port=get_int("API_PORT", DEFAULT_API_PORT),
            runtime_enabled=get_bool(prefixed("runtime_enabled"), True),
            max_drift_sec=get_float(prefixed("max_drift_sec"), DEFAULT_MAX_DRIFT_SEC),
            proof_secret=get_str(prefixed("proof_secret")) or None,
            enforce_proof=get_bool(prefixed("enforce_proof"), True),
            rate_window_sec=get_float(prefixed("rate_window_sec"), DEFAULT_WINDOW_SEC),
            rate_max_per_window=get_int(prefixed("rate_max_per_window"), DEFAULT_MAX_PER_WINDOW),
            tier_weights=parse_tier_map(get_str(prefixed("tier_weights")), DEFAULT_TIER_WEIGHTS),
            aggregation_period_sec=get_float(prefixed("aggregation_period_sec"), DEFAULT_AGGREGATION_PERIOD_SEC),
            volatility_threshold=get_float(prefixed("volatility_threshold"), DEFAULT_VOLATILITY_THRESHOLD),
            alert_critical_threshold=get_float(prefixed("alert_critical_threshold"), DEFAULT_CRITICAL_THRESHOLD),
            alert_moderate_threshold=get_float(prefixed("alert_moderate_threshold"), DEFAULT_MODERATE_THRESHOLD),
            alert_broadcast_threshold=get_float(prefixed("alert_broadcast_threshold"), DEFAULT_BROADCAST_THRESHOLD),
            reward_thresholds=parse_tier_map(get_str(prefixed("reward_thresholds")), DEFAULT_THRESHOLDS),
            reward_amounts=parse_tier_map(
                get_str(prefixed("reward_amounts")),
                {t: float(v) for t, v in DEFAULT_REWARD_AMOUNTS.items()},
            ),
            reward_cooldown_sec=get_float(prefixed("reward_cooldown_sec"), DEFAULT_COOLDOWN_SEC),
            reward_max_per_hour=get_int(prefixed("reward_max_per_hour"), DEFAULT_MAX_PER_HOUR),
            fusion_period_sec=get_float(prefixed("fusion_period_sec"), DEFAULT_FUSION_PERIOD_SEC),
            fusion_min_trust_level=get_float(prefixed("fusion_min_trust"), DEFAULT_MIN_TRUST_LEVEL),
            fusion_dampening_factor=get_float(prefixed("fusion_dampening"), DEFAULT_DAMPENING_FACTOR),
        )

    # Component configs -------------------------------------------------

    def integrity_config(self) -> IntegrityConfig:
        return IntegrityConfig(
            max_drift_sec=self.max_drift_sec,
            enforce_proof=self.enforce_proof,
            proof_secret=self.proof_secret,
        )

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(window_sec=self.rate_window_sec, max_per_window=self.rate_max_per_window)

    def delta_config(self) -> DeltaConfig:
        return DeltaConfig(tier_weights=dict(self.tier_weights))

    def aggregation_config(self) -> AggregationConfig:
        return AggregationConfig(
            period_sec=self.aggregation_period_sec,
            volatility_threshold=self.volatility_threshold,
        )

    def alert_config(self) -> AlertConfig:
        return AlertConfig(
            critical_threshold=self.alert_critical_threshold,
            moderate_threshold=self.alert_moderate_threshold,
            broadcast_threshold=self.alert_broadcast_threshold,
        )

    def reward_config(self) -> RewardConfig:
        return RewardConfig(
            thresholds=dict(self.reward_thresholds),
            reward_amounts={t: int(v) for t, v in self.reward_amounts.items()},
            cooldown_sec=self.reward_cooldown_sec,
            max_per_hour=self.reward_max_per_hour,
        )

    def fusion_config(self) -> FusionConfig:
        return FusionConfig(
            period_sec=self.fusion_period_sec,
            min_trust_level=self.fusion_min_trust_level,
            dampening_factor=self.fusion_dampening_factor,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, read from env once."""
    return Settings.from_env()
