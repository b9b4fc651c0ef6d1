"""
Pytest tests for the fusion coordinator: eligibility, dampening under poor
health, reward counting between syncs and the category impact table.
"""

from __future__ import annotations

import pytest

from backend_trustpulse.aggregation.models import AggregationResult, SystemHealth, TargetMetrics
from backend_trustpulse.database.database import MemoryBackend
from backend_trustpulse.database.models import Tier
from backend_trustpulse.fusion.coordinator import FusionConfig, FusionCoordinator
from backend_trustpulse.rewards.engine import RewardSignal


class FakeAggregation:
    def __init__(self) -> None:
        self.latest: AggregationResult | None = None


class FakeContributors:
    def __init__(self) -> None:
        self.by_target: dict[str, dict[str, Tier]] = {}

    def contributors(self, target_id: str) -> dict[str, Tier]:
        return dict(self.by_target.get(target_id, {}))


class FakeRewards:
    def __init__(self) -> None:
        self.signals: list[RewardSignal] = []

    def add(self, created_at: float, amount: int = 50, target_id: str = "deck1") -> RewardSignal:
        signal = RewardSignal(
            signal_id=f"reward_{len(self.signals)}",
            submitter_id="alice",
            target_id=target_id,
            tier=Tier.T2,
            amount=amount,
            trust_delta=45.0,
            reason="T2_threshold_exceeded",
            digest="zkp_mint_" + "0" * 32,
            created_at=created_at,
        )
        self.signals.append(signal)
        return signal

    def signals_since(self, since_ts):
        if since_ts is None:
            return list(self.signals)
        return [s for s in self.signals if s.created_at > since_ts]


def _result(targets: dict[str, tuple[float, int]], health: SystemHealth = SystemHealth.GOOD) -> AggregationResult:
    return AggregationResult(
        cycle_id="cycle_test",
        cycle_timestamp=0.0,
        overall_sentiment=0.0,
        total_targets=len(targets),
        active_targets=len(targets),
        volatile_targets=[],
        system_health=health,
        metrics={
            tid: TargetMetrics(
                target_id=tid,
                group_id=tid.split("::", 1)[0],
                net_sentiment=sentiment,
                total_submissions=count,
                average_intensity=3.0,
                tier_breakdown={},
            )
            for tid, (sentiment, count) in targets.items()
        },
    )


@pytest.fixture
def parts():
    return FakeAggregation(), FakeContributors(), FakeRewards()


@pytest.fixture
def coordinator(parts, clock):
    aggregation, contributors, rewards = parts
    return FusionCoordinator(aggregation, contributors, rewards, MemoryBackend(), clock=clock)


def test_sync_without_aggregation(coordinator):
    sync = coordinator.run_sync()
    assert sync.entries_synced == 0
    assert sync.targets_affected == []
    assert sync.fusion_eligible == 0
    assert sync.system_health is None
    assert sync.sync_id.startswith("sync_")


def test_eligibility_counts_distinct_contributors(coordinator, parts):
    aggregation, contributors, _ = parts
    aggregation.latest = _result({"deck1::a": (80.0, 4), "deck1::b": (-75.0, 3), "deck2": (74.9, 6)})
    contributors.by_target = {
        "deck1::a": {"alice": Tier.T1, "bob": Tier.T2},
        "deck1::b": {"bob": Tier.T2, "carol": Tier.T3},
        "deck2": {"dave": Tier.T1},
    }
    sync = coordinator.run_sync()
    assert sync.eligible_targets == ["deck1::a", "deck1::b"]
    assert sync.fusion_eligible == 3
    assert sync.entries_synced == 13
    assert sync.targets_affected == ["deck1::a", "deck1::b", "deck2"]
    assert sync.system_health == "good"


@pytest.mark.parametrize(
    "health,contributor_count,expected",
    [
        (SystemHealth.CONCERNING, 5, 3),
        (SystemHealth.CRITICAL, 4, 2),
        (SystemHealth.EXCELLENT, 4, 4),
    ],
)
def test_dampening_under_poor_health(coordinator, parts, health, contributor_count, expected):
    aggregation, contributors, _ = parts
    aggregation.latest = _result({"deck1": (100.0, contributor_count)}, health=health)
    contributors.by_target["deck1"] = {f"s{i}": Tier.T1 for i in range(contributor_count)}
    assert coordinator.run_sync().fusion_eligible == expected


def test_reward_count_since_previous_sync(coordinator, parts, clock):
    _, _, rewards = parts
    rewards.add(clock())
    rewards.add(clock())
    assert coordinator.run_sync().reward_count == 2
    clock.advance(300)
    assert coordinator.run_sync().reward_count == 0
    clock.advance(1)
    rewards.add(clock())
    clock.advance(300)
    assert coordinator.run_sync().reward_count == 1


def test_reward_created_after_sync_time_counted_once(coordinator, parts, clock):
    """A signal stamped after the sync's own timestamp waits for the next sync."""
    _, _, rewards = parts
    rewards.add(clock() + 0.5)
    first = coordinator.run_sync()
    clock.advance(1)
    second = coordinator.run_sync()
    assert (first.reward_count, second.reward_count) == (0, 1)


def test_category_impacts(coordinator, parts, clock):
    aggregation, contributors, rewards = parts
    coordinator.set_category_impact("governance", 1.5, 0.1)
    coordinator.map_group("deck1", "governance")
    assert coordinator.category_for("deck1") == "governance"
    assert coordinator.category_for("deck9") == "general"
    assert coordinator.impact_for("unknown") == (1.0, 0.0)

    signal = rewards.add(clock(), amount=50, target_id="deck1::mod1")
    assert coordinator.scaled_reward_amount(signal) == 75

    aggregation.latest = _result({"deck1::mod1": (90.0, 2), "deck2": (80.0, 1)})
    coordinator.run_sync()
    impacts = {i.category: i for i in coordinator.category_impacts()}
    assert impacts["governance"].eligible_targets == 1
    assert impacts["governance"].total_impact_score == 1.5
    assert impacts["general"].eligible_targets == 1
    assert coordinator.summary()["metrics"]["total_rewards_value"] == 75


def test_negative_impact_rejected(coordinator):
    with pytest.raises(ValueError):
        coordinator.set_category_impact("general", -0.1)


def test_summary_shape(coordinator, parts):
    aggregation, contributors, _ = parts
    empty = coordinator.summary()
    assert empty["last_sync"] is None
    assert empty["fusion_eligible"] == 0
    assert [i["category"] for i in empty["category_impacts"]] == ["general"]

    aggregation.latest = _result({"deck1": (120.0, 1)}, health=SystemHealth.GOOD)
    contributors.by_target["deck1"] = {"alice": Tier.T1}
    coordinator.run_sync()
    summary = coordinator.summary()
    assert summary["eligible_targets"] == ["deck1"]
    assert summary["fusion_eligible"] == 1
    assert summary["health"] == "good"
    assert summary["metrics"]["total_syncs"] == 1


def test_sync_log_persisted(parts, clock):
    aggregation, contributors, rewards = parts
    storage = MemoryBackend()
    first = FusionCoordinator(aggregation, contributors, rewards, storage, FusionConfig(), clock=clock)
    sync = first.run_sync()
    rewards.add(clock() + 1)

    reloaded = FusionCoordinator(aggregation, contributors, rewards, storage, clock=clock)
    reloaded.load()
    assert reloaded.last_sync.sync_id == sync.sync_id
    clock.advance(5)
    # Only the reward created after the restored sync is counted
    assert reloaded.run_sync().reward_count == 1
