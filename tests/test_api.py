"""
FastAPI TestClient tests for the TrustPulse API: status codes, headers and
response bodies over an injected pipeline.
"""

from __future__ import annotations

import json

from backend_trustpulse.database.models import Target


def _body(pipeline, clock, target=("deck1", "mod1"), feedback="support", intensity=5, submitter="alice", tier="T2", **overrides):
    group_id, sub_id = target
    ts = overrides.pop("submitted_at", clock())
    proof = pipeline.issue_proof(Target(group_id, sub_id), feedback, tier, ts)
    body = {
        "target": {"group_id": group_id, "sub_id": sub_id},
        "feedback_type": feedback,
        "intensity": intensity,
        "submitter_id": submitter,
        "submitter_tier": tier,
        "integrity_proof": proof,
        "submitted_at": ts,
    }
    body.update(overrides)
    return body


def _spike(client, pipeline, clock):
    """Register deck1::mod1, take a baseline, then push it to 30."""
    client.post("/targets", json={"group_id": "deck1", "sub_id": "mod1"})
    client.post("/admin/aggregate")
    for name in ("alice", "bob", "carol"):
        assert client.post("/submissions", json=_body(pipeline, clock, submitter=name)).status_code == 202
    return client.post("/admin/aggregate").json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_submission_accepted(client, pipeline, clock):
    r = client.post("/submissions", json=_body(pipeline, clock))
    assert r.status_code == 202
    data = r.json()
    assert data["status"] == "accepted"
    assert data["delta_id"] == "deck1::mod1"
    assert data["remaining_submissions"] == 0
    assert data["submission_id"].startswith("sub_")


def test_rate_limited_has_retry_after(client, pipeline, clock):
    client.post("/submissions", json=_body(pipeline, clock))
    r = client.post("/submissions", json=_body(pipeline, clock, intensity=2))
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "7200"
    data = r.json()
    assert data["status"] == "rejected"
    assert data["reason"] == "RateLimited"
    assert data["remaining_submissions"] == 0


def test_integrity_and_drift_are_400(client, pipeline, clock):
    bad_proof = client.post("/submissions", json=_body(pipeline, clock, integrity_proof="zkp_forged"))
    assert bad_proof.status_code == 400
    assert bad_proof.json()["reason"] == "IntegrityViolation"
    stale = client.post("/submissions", json=_body(pipeline, clock, submitter="bob", submitted_at=clock() - 600))
    assert stale.status_code == 400
    assert stale.json()["reason"] == "TimestampDrift"


def test_malformed_submission(client, pipeline, clock):
    assert client.post("/submissions", json=_body(pipeline, clock, intensity=6)).status_code == 422
    assert client.post("/submissions", json=_body(pipeline, clock, submitter_tier="T9")).status_code == 422
    orphan_item = _body(pipeline, clock)
    orphan_item["target"] = {"group_id": "deck1", "item_id": "c1"}
    assert client.post("/submissions", json=orphan_item).status_code == 400


def test_non_finite_timestamp_rejected(client, pipeline, clock):
    """Raw JSON NaN or Infinity in submitted_at is refused before reaching the pipeline."""
    for value in (float("nan"), float("inf")):
        raw = json.dumps(_body(pipeline, clock, submitted_at=value))
        r = client.post("/submissions", content=raw, headers={"content-type": "application/json"})
        assert r.status_code == 422
    assert pipeline.get_delta("deck1::mod1") is None


def test_storage_failure_is_503(client, pipeline, clock, monkeypatch):
    def broken_apply(submission):
        raise OSError("disk full")

    monkeypatch.setattr(pipeline.store, "apply", broken_apply)
    r = client.post("/submissions", json=_body(pipeline, clock))
    assert r.status_code == 503
    assert r.json()["reason"] == "StorageFailure"


def test_register_target_and_get_delta(client):
    assert client.get("/deltas/deck7").status_code == 404
    r = client.post("/targets", json={"group_id": "deck7"})
    assert r.status_code == 201
    assert r.json() == {"target_id": "deck7", "group_id": "deck7", "total_submissions": 0}
    delta = client.get("/deltas/deck7").json()
    assert delta["net_sentiment"] == 0.0


def test_snapshot_with_history(client, pipeline, clock):
    assert client.get("/snapshots/deck1::mod1").status_code == 404
    _spike(client, pipeline, clock)
    r = client.get("/snapshots/deck1::mod1", params={"history": 5})
    assert r.status_code == 200
    data = r.json()
    assert data["net_sentiment"] == 30.0
    assert data["volatile"] is True
    assert [s["net_sentiment"] for s in data["history"]] == [0.0, 30.0]


def test_alerts_and_acknowledge(client, pipeline, clock):
    result = _spike(client, pipeline, clock)
    assert result["volatile_targets"] == ["deck1::mod1"]
    alerts = client.get("/alerts", params={"severity": "critical"}).json()
    assert len(alerts) == 1
    assert client.get("/alerts", params={"severity": "medium"}).json() == []
    alert_id = alerts[0]["alert_id"]

    r = client.post(f"/admin/alerts/{alert_id}/ack")
    assert r.status_code == 200
    assert r.json() == {"id": alert_id, "status": "broadcast_complete"}
    assert client.post(f"/admin/alerts/{alert_id}/ack").status_code == 409
    assert client.post("/admin/alerts/alert_missing/ack").status_code == 404


def test_rewards_and_mark_processed(client, pipeline, clock):
    client.patch("/admin/config", json={"reward_thresholds": {"T2": 10}})
    _spike(client, pipeline, clock)
    signals = client.get("/rewards", params={"processed": "false"}).json()
    assert len(signals) == 3
    signal_id = signals[0]["signal_id"]
    assert client.post(f"/admin/rewards/{signal_id}/processed").status_code == 200
    assert client.post(f"/admin/rewards/{signal_id}/processed").status_code == 409
    assert client.post("/admin/rewards/reward_missing/processed").status_code == 404
    assert len(client.get("/rewards", params={"processed": "true"}).json()) == 1


def test_update_config(client):
    r = client.patch("/admin/config", json={"volatility_threshold": 0.5, "reward_enabled": False})
    assert r.status_code == 200
    assert r.json()["volatility_threshold"] == 0.5
    assert r.json()["reward_enabled"] is False
    assert client.patch("/admin/config", json={"reward_amounts": {"T9": 5}}).status_code == 400
    assert client.patch("/admin/config", json={"volatility_threshold": -1}).status_code == 422


def test_fusion_export_metrics_throttle(client, pipeline, clock):
    _spike(client, pipeline, clock)
    sync = client.post("/admin/fusion/sync").json()
    assert sync["targets_affected"] == ["deck1::mod1"]
    summary = client.get("/fusion/summary").json()
    assert summary["last_sync"]["sync_id"] == sync["sync_id"]

    export = client.get("/export").json()
    assert export["version"] == "trustpulse.export.v1"
    assert len(export["active_alerts"]) == 1

    metrics = client.get("/metrics").json()
    assert metrics["orchestration"]["total_processed"] == 3
    assert metrics["submitters"]["total_submitters"] == 3
    assert metrics["submitters"]["top_groups"] == [{"group_id": "deck1", "submitters": 3}]

    throttle = client.get("/throttle/alice").json()
    assert throttle["is_throttled"] is True
    assert throttle["remaining_submissions"] == 0
