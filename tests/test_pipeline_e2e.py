"""
End-to-end pipeline tests: submissions through aggregation, alerts, rewards,
fusion and export, on the in-memory backend and on SQLite.
"""

from __future__ import annotations

import pytest

from backend_trustpulse.alerts.models import AlertSeverity, AlertState, AlertType
from backend_trustpulse.config.settings import Settings
from backend_trustpulse.database.models import Target
from backend_trustpulse.gateway.gateway import Accepted
from backend_trustpulse.pipeline import EXPORT_VERSION, build_pipeline

TARGET = "deck1::mod1"


def _three_t2_supports(pipeline, make_submission):
    for name in ("alice", "bob", "carol"):
        result = pipeline.submit(make_submission(TARGET, "support", 5, name, "T2"))
        assert isinstance(result, Accepted)


def test_spike_raises_critical_alert_with_broadcast(pipeline, make_submission, sink, clock):
    """Registered target at 0 jumps to 30 after three T2 intensity-5 supports."""
    pipeline.register_target(Target("deck1", "mod1"))
    baseline = pipeline.run_aggregation_cycle()
    assert baseline.snapshots[TARGET].net_sentiment == 0.0
    assert baseline.snapshots[TARGET].volatile is False

    clock.advance(60)
    _three_t2_supports(pipeline, make_submission)
    assert pipeline.get_delta(TARGET).net_support == 30.0

    clock.advance(120)
    result = pipeline.run_aggregation_cycle()
    snapshot = result.snapshots[TARGET]
    assert snapshot.volatile is True
    assert snapshot.change_percent == 30.0

    alerts = pipeline.get_alerts()
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.alert_type == AlertType.CRITICAL_VOLATILITY
    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.state == AlertState.PENDING_BROADCAST
    assert sink.sent_ids == [alert.alert_id]

    # 30 is below the T2 threshold of 40: no rewards yet
    assert pipeline.get_reward_signals() == []


def test_rewards_follow_threshold_crossing(pipeline, make_submission, clock):
    _three_t2_supports(pipeline, make_submission)
    pipeline.submit(make_submission(TARGET, "support", 5, "dave", "T3"))
    assert pipeline.get_delta(TARGET).net_sentiment == 45.0

    pipeline.run_aggregation_cycle()
    signals = pipeline.get_reward_signals()
    assert sorted(s.submitter_id for s in signals) == ["alice", "bob", "carol", "dave"]
    amounts = {s.submitter_id: s.amount for s in signals}
    assert amounts["alice"] == 50
    assert amounts["dave"] == 100

    # Still above threshold next cycle, but everyone is cooling down
    clock.advance(180)
    pipeline.run_aggregation_cycle()
    assert len(pipeline.get_reward_signals()) == 4

    target = signals[0].signal_id
    assert pipeline.mark_reward_processed(target) is True
    assert pipeline.mark_reward_processed(target) is False
    assert len(pipeline.get_reward_signals(processed=False)) == 3


def test_fusion_after_aggregation(pipeline, make_submission, clock):
    for i in range(6):
        pipeline.submit(make_submission("deck2", "dissent", 5, f"s{i}", "T3"))
    pipeline.run_aggregation_cycle()
    sync = pipeline.run_fusion_sync()
    # |-90| >= 75; mean sentiment -90 makes health concerning, so 6 contributors dampen to 3
    assert sync.eligible_targets == ["deck2"]
    assert sync.system_health == "concerning"
    assert sync.fusion_eligible == 3
    assert sync.entries_synced == 6
    assert sync.reward_count == 6
    summary = pipeline.get_fusion_summary()
    assert summary["last_sync"]["sync_id"] == sync.sync_id


def test_export_shape(pipeline, make_submission, clock):
    pipeline.register_target(Target("deck0"))
    pipeline.run_aggregation_cycle()
    clock.advance(60)
    _three_t2_supports(pipeline, make_submission)
    pipeline.run_aggregation_cycle()

    dump = pipeline.export()
    assert dump["version"] == EXPORT_VERSION
    assert dump["generated_at"] == clock()
    assert {d["target_id"] for d in dump["deltas"]} == {"deck0", TARGET}
    assert {s["target_id"] for s in dump["snapshots"]} == {"deck0", TARGET}
    assert dump["stats"]["total_submissions"] == 3
    # The new target's first reading has no baseline, so no alerts
    assert dump["active_alerts"] == []
    assert dump["unprocessed_signals"] == []


def test_export_lists_pending_alerts_only(pipeline, make_submission, clock):
    pipeline.register_target(Target("deck1", "mod1"))
    pipeline.run_aggregation_cycle()
    _three_t2_supports(pipeline, make_submission)
    pipeline.run_aggregation_cycle()
    active = pipeline.export()["active_alerts"]
    assert len(active) == 1
    assert active[0]["state"] == "pending_broadcast"
    assert pipeline.acknowledge_broadcast(active[0]["alert_id"]) is True
    assert pipeline.export()["active_alerts"][0]["state"] == "broadcast_complete"


def test_update_config_applies_and_validates(pipeline, make_submission, clock):
    view = pipeline.update_config(volatility_threshold=100.0, reward_thresholds={"T2": 20})
    assert view["volatility_threshold"] == 100.0
    assert view["reward_thresholds"]["T2"] == 20.0
    assert view["reward_thresholds"]["T1"] == 50.0

    pipeline.register_target(Target("deck1", "mod1"))
    pipeline.run_aggregation_cycle()
    _three_t2_supports(pipeline, make_submission)
    result = pipeline.run_aggregation_cycle()
    assert result.spikes == []
    assert len(pipeline.get_reward_signals()) == 3

    with pytest.raises(ValueError):
        pipeline.update_config(not_a_setting=1)
    with pytest.raises(ValueError):
        pipeline.update_config(volatility_threshold=0.2, alert_critical_threshold=-1)
    # Nothing applied from the rejected batch
    assert pipeline.config_view()["volatility_threshold"] == 100.0


def test_update_rate_limit_takes_effect(pipeline, make_submission, clock):
    pipeline.update_config(rate_max_per_window=2)
    assert isinstance(pipeline.submit(make_submission("deck1", "support", 1, "alice", "T1")), Accepted)
    assert isinstance(pipeline.submit(make_submission("deck1", "support", 2, "alice", "T1")), Accepted)
    assert pipeline.throttle_status("alice")["is_throttled"] is True


def test_purge_resets_target(pipeline, make_submission):
    _three_t2_supports(pipeline, make_submission)
    assert pipeline.purge(TARGET) == 1
    assert pipeline.get_delta(TARGET) is None
    assert pipeline.export()["stats"]["total_submissions"] == 0


def test_metrics_cover_every_component(pipeline, make_submission):
    _three_t2_supports(pipeline, make_submission)
    pipeline.run_aggregation_cycle()
    pipeline.run_fusion_sync()
    m = pipeline.metrics()
    assert set(m) == {"orchestration", "delta_store", "submitters", "aggregation", "monitoring", "rewards", "fusion"}
    assert m["orchestration"]["total_processed"] == 3
    assert m["submitters"]["tier_distribution"] == {"T1": 0, "T2": 3, "T3": 0}
    assert m["aggregation"]["cycles"] == 1
    assert m["monitoring"]["total_cycles"] == 1
    assert m["fusion"]["total_syncs"] == 1


def test_state_survives_restart_on_sqlite(tmp_path, clock, sink, make_submission):
    """Deltas, snapshots, alerts, signals and throttles reload from the SQLite file."""
    settings = Settings(db_path=str(tmp_path / "trustpulse.db"), runtime_enabled=False)
    first = build_pipeline(settings, clock=clock, sink=sink)
    first.register_target(Target("deck1", "mod1"))
    first.run_aggregation_cycle()
    _three_t2_supports(first, make_submission)
    first.submit(make_submission(TARGET, "support", 5, "dave", "T3"))
    first.run_aggregation_cycle()
    first.run_fusion_sync()

    restarted = build_pipeline(settings, clock=clock, sink=sink)
    assert restarted.get_delta(TARGET).net_sentiment == 45.0
    assert len(restarted.aggregation.get_history(TARGET)) == 2
    assert len(restarted.get_alerts()) == 1
    assert len(restarted.get_reward_signals()) == 4
    assert restarted.fusion.last_sync is not None
    assert restarted.throttle_status("alice")["is_throttled"] is True
