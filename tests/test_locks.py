"""
Pytest tests for the keyed lock registry: per-key exclusion and bounded size.
"""

from __future__ import annotations

import threading

import pytest

from backend_trustpulse.core.locks import KeyedLocks


def test_entry_released_after_use():
    locks = KeyedLocks()
    with locks.hold("alice"):
        assert len(locks) == 1
    assert len(locks) == 0


def test_entry_released_when_body_raises():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("alice"):
            raise RuntimeError("boom")
    assert len(locks) == 0


def test_same_key_is_exclusive():
    """Read-modify-write under one key loses no increments."""
    locks = KeyedLocks()
    counter = {"n": 0}

    def bump():
        for _ in range(200):
            with locks.hold("hot"):
                value = counter["n"]
                counter["n"] = value + 1

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert counter["n"] == 1600
    assert len(locks) == 0


def test_gateway_does_not_retain_submitter_locks(pipeline, make_submission):
    for name in ("alice", "bob", "carol"):
        pipeline.submit(make_submission("deck1", "support", 1, name, "T1"))
    assert len(pipeline.gateway._submitter_locks) == 0
    assert len(pipeline.store._target_locks) == 0
