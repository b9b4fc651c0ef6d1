"""
Background workers: PeriodicTask (busy guard, overrun skip) and the runtime
that drives aggregation and fusion on daemon threads.
"""

from backend_trustpulse.agent_worker.runner import PeriodicTask

__all__ = ["PeriodicTask"]
