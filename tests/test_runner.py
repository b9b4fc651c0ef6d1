"""
Pytest tests for the periodic task runner and the background runtime.
"""

from __future__ import annotations

import threading
import time

from backend_trustpulse.agent_worker.runner import PeriodicTask
from backend_trustpulse.agent_worker.runtime import TrustPulseRuntime


class SteppingMonotonic:
    """Monotonic clock that advances by a fixed step on every read."""

    def __init__(self, step: float) -> None:
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        self.value += self.step
        return self.value


def test_tick_runs_body():
    calls = []
    task = PeriodicTask("t", lambda: calls.append(1), 60, monotonic=SteppingMonotonic(0.1))
    assert task.tick() is True
    assert task.tick() is True
    assert calls == [1, 1]
    assert task.stats()["runs"] == 2


def test_tick_skipped_while_busy():
    """A tick arriving while the previous run holds the task is skipped, not queued."""
    results = []

    def body():
        results.append(task.busy)
        results.append(task.tick())

    task = PeriodicTask("agg", body, 60, monotonic=SteppingMonotonic(0.1))
    assert task.tick() is True
    assert results == [True, False]
    assert task.stats()["skipped_busy"] == 1
    assert task.busy is False


def test_overrun_skips_next_tick():
    """A run longer than its period makes the next tick a skip; the one after runs."""
    calls = []
    task = PeriodicTask("slow", lambda: calls.append(1), 5, monotonic=SteppingMonotonic(10.0))
    assert task.tick() is True
    assert task.tick() is False
    assert task.tick() is True
    assert len(calls) == 2
    stats = task.stats()
    assert stats["skipped_overrun"] == 1
    assert stats["last_elapsed_sec"] == 10.0


def test_exception_logged_and_loop_continues():
    calls = []

    def body():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")

    task = PeriodicTask("flaky", body, 60, monotonic=SteppingMonotonic(0.1))
    assert task.tick() is True
    assert task.tick() is True
    assert len(calls) == 2
    assert task.stats()["failures"] == 1


def test_run_until_stopped():
    stop = threading.Event()
    ran = threading.Event()
    task = PeriodicTask("loop", ran.set, 0.05)
    thread = threading.Thread(target=task.run, args=(stop,), daemon=True)
    thread.start()
    assert ran.wait(timeout=5)
    stop.set()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert task.stats()["runs"] >= 1


def test_runtime_drives_aggregation_and_fusion(pipeline):
    runtime = TrustPulseRuntime(pipeline, aggregation_interval_sec=0.05, fusion_interval_sec=0.05)
    runtime.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if pipeline.aggregation.cycle_count >= 1 and pipeline.fusion.last_sync is not None:
                break
            time.sleep(0.01)
        assert runtime.running
    finally:
        runtime.stop(timeout_sec=5)
    assert not runtime.running
    assert pipeline.aggregation.cycle_count >= 1
    assert pipeline.fusion.last_sync is not None
    assert {s["name"] for s in runtime.stats()} == {"aggregation", "fusion"}
