"""
Background runtime: aggregation and fusion PeriodicTasks on daemon threads.

Alert dispatch and the reward sweep run inside the aggregation cycle (event bus
subscribers), so two threads cover the whole periodic side of the pipeline.
Started by the FastAPI lifespan or by main.py; stop() signals and joins.

Usage (standalone, no API): python -m backend_trustpulse.agent_worker.runtime
"""

from __future__ import annotations

import signal
import sys
import threading
from typing import Any

from backend_trustpulse.agent_worker.runner import PeriodicTask
from backend_trustpulse.pipeline import TrustPulsePipeline
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

SHUTDOWN_JOIN_TIMEOUT_SEC = 15.0


class TrustPulseRuntime:
    def __init__(
        self,
        pipeline: TrustPulsePipeline,
        *,
        aggregation_interval_sec: float | None = None,
        fusion_interval_sec: float | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.tasks = [
            PeriodicTask(
                "aggregation",
                pipeline.run_aggregation_cycle,
                aggregation_interval_sec or pipeline.aggregation.config.period_sec,
            ),
            PeriodicTask(
                "fusion",
                pipeline.run_fusion_sync,
                fusion_interval_sec or pipeline.fusion.config.period_sec,
            ),
        ]
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=task.run, args=(self._stop_event,), name=f"trustpulse-{task.name}", daemon=True)
            for task in self.tasks
        ]
        for thread in self._threads:
            thread.start()
        logger.info("runtime_started", tasks=[t.name for t in self.tasks])

    def stop(self, timeout_sec: float = SHUTDOWN_JOIN_TIMEOUT_SEC) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout_sec)
            if thread.is_alive():
                logger.warning("runtime_shutdown_timeout", thread=thread.name, timeout_sec=timeout_sec)
        logger.info("runtime_stopped")

    def wait(self) -> None:
        """Block until stop() is called (standalone mode)."""
        while not self._stop_event.wait(timeout=1.0):
            pass

    def stats(self) -> list[dict]:
        return [task.stats() for task in self.tasks]


def main() -> int:
    """CLI entrypoint: build the pipeline from env and run the periodic tasks."""
    from backend_trustpulse.pipeline import build_pipeline

    try:
        runtime = TrustPulseRuntime(build_pipeline())
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1

    def request_shutdown(*args: Any) -> None:
        runtime.stop()

    try:
        signal.signal(signal.SIGTERM, request_shutdown)
    except (AttributeError, ValueError):
        # Windows or not on the main thread
        pass

    runtime.start()
    try:
        runtime.wait()
    except KeyboardInterrupt:
        logger.info("runtime_shutdown_signal")
        runtime.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
