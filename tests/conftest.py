"""
Pytest fixtures for TrustPulse tests. In-memory state backend, fake clock, and a
recording broadcast sink so tests run without SQLite files or real time.
"""

from __future__ import annotations

import threading

import pytest

from backend_trustpulse.config.settings import Settings
from backend_trustpulse.database.database import MemoryBackend
from backend_trustpulse.database.models import FeedbackType, Submission, Target, Tier

START_TS = 1_700_000_000.0


class FakeClock:
    """Callable clock; advance() moves time forward."""

    def __init__(self, start: float = START_TS) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingSink:
    """Broadcast sink that records payloads; set fail=True to raise."""

    def __init__(self) -> None:
        self.payloads: list[dict] = []
        self.fail = False

    def send(self, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("federation unreachable")
        self.payloads.append(payload)

    @property
    def sent_ids(self) -> list[str]:
        return [alert_id for p in self.payloads for alert_id in p["alert_ids"]]


class StallingBackend(MemoryBackend):
    """Holds the first save under prefix until released, so a second writer can overtake it."""

    def __init__(self, prefix: str) -> None:
        super().__init__()
        self.prefix = prefix
        self.stalled = threading.Event()
        self.release = threading.Event()

    def save(self, key, value):
        if key.startswith(self.prefix) and not self.stalled.is_set():
            self.stalled.set()
            self.release.wait(timeout=2)
        super().save(key, value)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def storage():
    return MemoryBackend()


@pytest.fixture
def stalling_backend():
    """Factory: stalling_backend(prefix) -> StallingBackend."""
    return StallingBackend


@pytest.fixture
def settings():
    return Settings(db_path=":memory:", runtime_enabled=False)


@pytest.fixture
def pipeline(settings, storage, clock, sink):
    """Fresh pipeline on MemoryBackend with a fake clock and recording sink."""
    from backend_trustpulse.pipeline import build_pipeline

    return build_pipeline(settings, storage, clock=clock, sink=sink)


@pytest.fixture
def make_submission(pipeline, clock):
    """
    Factory for correctly-proofed submissions at the current fake time.

    make_submission("deck1::mod1", "support", 5, "sub-a", "T2")
    """

    def _make(
        target_id: str,
        feedback_type: str = "support",
        intensity: int = 3,
        submitter_id: str = "submitter-1",
        tier: str = "T1",
        submitted_at: float | None = None,
        explanation: str | None = None,
        proof: str | None = None,
    ) -> Submission:
        target = Target.from_target_id(target_id)
        ts = clock() if submitted_at is None else submitted_at
        return Submission(
            target=target,
            feedback_type=FeedbackType(feedback_type),
            intensity=intensity,
            submitter_id=submitter_id,
            submitter_tier=Tier(tier),
            integrity_proof=proof if proof is not None else pipeline.issue_proof(target, feedback_type, tier, ts),
            submitted_at=ts,
            explanation=explanation,
        )

    return _make


@pytest.fixture
def client(pipeline):
    """FastAPI TestClient over the fixture pipeline; background runtime disabled."""
    from fastapi.testclient import TestClient

    from backend_trustpulse.api_server.server import create_app

    return TestClient(create_app(pipeline, start_runtime=False))
