"""
Database abstraction layer: pipeline state persistence and domain models.

SQLite by default via get_state_backend(); SQLAlchemy for DATABASE_URL;
in-memory for tests. Components only see the StateBackend interface.
"""

from backend_trustpulse.database.database import (
    MemoryBackend,
    SQLAlchemyBackend,
    SQLiteBackend,
    StateBackend,
    get_state_backend,
)
from backend_trustpulse.database.models import (
    FeedbackLogEntry,
    FeedbackType,
    Submission,
    SubmitterThrottleState,
    Target,
    Tier,
    TrustDelta,
)

__all__ = [
    "MemoryBackend",
    "SQLAlchemyBackend",
    "SQLiteBackend",
    "StateBackend",
    "get_state_backend",
    "FeedbackLogEntry",
    "FeedbackType",
    "Submission",
    "SubmitterThrottleState",
    "Target",
    "Tier",
    "TrustDelta",
]
