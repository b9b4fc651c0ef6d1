# Reward-trigger agent: tiered thresholds, per-submitter cooldown, hourly cap.

from backend_trustpulse.rewards.engine import RewardConfig, RewardSignal, RewardTriggerAgent

__all__ = ["RewardConfig", "RewardSignal", "RewardTriggerAgent"]
