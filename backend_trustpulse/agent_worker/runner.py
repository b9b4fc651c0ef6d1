"""
Periodic task runner with an overrun guard.

- PeriodicTask.tick(): run the body once unless the previous run is still busy
  (non-blocking lock) or overran its period, in which case this tick is skipped
  and logged as a PeriodicTaskOverrun. There is no queue of missed ticks.
- PeriodicTask.run(stop_event): loop every interval_sec until stop_event is set.
  Exceptions in a tick are logged and the loop continues.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from backend_trustpulse.core.exceptions import PeriodicTaskOverrun
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

MIN_INTERVAL_SEC = 0.01
STOP_POLL_SEC = 1.0


@dataclass
class TaskStats:
    runs: int = 0
    failures: int = 0
    skipped_busy: int = 0
    skipped_overrun: int = 0
    last_started_at: float | None = None
    last_elapsed_sec: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        body: Callable[[], Any],
        interval_sec: float,
        *,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.interval_sec = max(MIN_INTERVAL_SEC, float(interval_sec))
        self._body = body
        self._monotonic = monotonic
        self._busy = threading.Lock()
        self._skip_next = False
        self._stats = TaskStats()
        self._stats_lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def tick(self) -> bool:
        """Run the body once. Returns False when the tick was skipped."""
        if not self._busy.acquire(blocking=False):
            self._record_skip(
                PeriodicTaskOverrun("previous run still in progress", task_name=self.name),
                "skipped_busy",
            )
            return False
        try:
            if self._skip_next:
                self._skip_next = False
                self._record_skip(
                    PeriodicTaskOverrun("previous run exceeded its period", task_name=self.name),
                    "skipped_overrun",
                )
                return False
            started = self._monotonic()
            with self._stats_lock:
                self._stats.runs += 1
                self._stats.last_started_at = time.time()
            try:
                self._body()
            except Exception as e:
                with self._stats_lock:
                    self._stats.failures += 1
                logger.exception("periodic_task_failed", task=self.name, error=str(e))
            elapsed = self._monotonic() - started
            with self._stats_lock:
                self._stats.last_elapsed_sec = elapsed
            if elapsed > self.interval_sec:
                self._skip_next = True
                logger.warning(
                    "periodic_task_overrun",
                    task=self.name,
                    elapsed_sec=round(elapsed, 3),
                    interval_sec=self.interval_sec,
                )
            return True
        finally:
            self._busy.release()

    def _record_skip(self, overrun: PeriodicTaskOverrun, counter: str) -> None:
        with self._stats_lock:
            setattr(self._stats, counter, getattr(self._stats, counter) + 1)
        logger.warning("periodic_tick_skipped", task=overrun.task_name, reason=overrun.message)

    def run(self, stop_event: threading.Event) -> None:
        """Tick every interval_sec until stop_event is set."""
        logger.info("periodic_task_started", task=self.name, interval_sec=self.interval_sec)
        while not stop_event.is_set():
            tick_start = time.monotonic()
            self.tick()
            # Sleep until next tick; wake periodically to check stop_event
            deadline = tick_start + self.interval_sec
            while not stop_event.is_set() and time.monotonic() < deadline:
                stop_event.wait(timeout=min(STOP_POLL_SEC, max(0.0, deadline - time.monotonic())))
        logger.info("periodic_task_stopped", task=self.name, runs=self.stats()["runs"])

    def stats(self) -> dict:
        with self._stats_lock:
            data = self._stats.to_dict()
        data["name"] = self.name
        data["interval_sec"] = self.interval_sec
        return data
