"""
Storage abstraction for pipeline state: throttle map, trust deltas, feedback log,
snapshot history, spikes, alerts, reward signals and cooldowns.

Each component persists its own keys through the StateBackend interface
(load(key) / save(key, value)); values are JSON-serializable structures.
SQLite is the default; SQLAlchemyBackend covers DATABASE_URL (e.g. PostgreSQL);
MemoryBackend is used by tests and ephemeral runs. Pipeline logic never assumes
a particular backend.
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import Column, Float, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Schema (SQLite). One row per state key; value is JSON.
# -----------------------------------------------------------------------------

SCHEMA_PIPELINE_STATE = """
CREATE TABLE IF NOT EXISTS pipeline_state (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_pipeline_state_updated ON pipeline_state(updated_at);
"""

# State keys, one per owning component
# Prefixed keys hold one row per record or segment and are written incrementally
KEY_THROTTLE_PREFIX = "gateway.throttle/"
KEY_DELTA_PREFIX = "delta_store.delta/"
KEY_FEEDBACK_LOG_META = "delta_store.feedback_log.meta"
KEY_FEEDBACK_LOG_SEGMENT_PREFIX = "delta_store.feedback_log/"
KEY_APPLIED_IDS_PREFIX = "delta_store.applied_ids/"
KEY_SNAPSHOTS = "aggregation.snapshots"
KEY_SPIKES = "aggregation.spikes"
KEY_ALERTS = "alerts.log"
KEY_REWARD_SIGNALS = "rewards.signals"
KEY_REWARD_COOLDOWNS = "rewards.cooldowns"
KEY_REWARD_WINDOW = "rewards.hourly_window"
KEY_FUSION_LOG = "fusion.sync_log"


# -----------------------------------------------------------------------------
# Abstract backend: swap implementation without touching pipeline logic.
# -----------------------------------------------------------------------------


class StateBackend(ABC):
    """Abstract key/value persistence with Load()/Save() semantics."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables if they do not exist (no-op for non-relational backends)."""
        ...

    @abstractmethod
    def load(self, key: str, default: Any = None) -> Any:
        """Return the stored value for key, or default when absent."""
        ...

    @abstractmethod
    def save(self, key: str, value: Any) -> None:
        """Durably replace the value stored under key."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        ...

    def keys_with_prefix(self, prefix: str) -> list[str]:
        """Sorted keys starting with prefix."""
        return [k for k in self.keys() if k.startswith(prefix)]


# -----------------------------------------------------------------------------
# In-memory backend (tests, ephemeral runs)
# -----------------------------------------------------------------------------


class MemoryBackend(StateBackend):
    """Process-local dict; values are deep-copied on save and load."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def ensure_schema(self) -> None:
        return None

    def load(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def save(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------


class SQLiteBackend(StateBackend):
    """SQLite implementation; single file, one connection per operation."""

    def __init__(self, path: str | Path, *, timeout_sec: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.executescript(SCHEMA_PIPELINE_STATE)

    def load(self, key: str, default: Any = None) -> Any:
        with self._cursor() as cur:
            cur.execute("SELECT value_json FROM pipeline_state WHERE key = ?", (key,))
            row = cur.fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value_json"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("state_load_corrupt", key=key)
            return default

    def save(self, key: str, value: Any) -> None:
        value_json = json.dumps(value, default=str)
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO pipeline_state (key, value_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (key, value_json, time.time()),
            )

    def delete(self, key: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM pipeline_state WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        with self._cursor() as cur:
            cur.execute("SELECT key FROM pipeline_state ORDER BY key")
            return [row["key"] for row in cur.fetchall()]


# -----------------------------------------------------------------------------
# SQLAlchemy backend (DATABASE_URL, e.g. PostgreSQL)
# -----------------------------------------------------------------------------

Base = declarative_base()


class PipelineStateRow(Base):
    """One persisted state key; value stored as JSON text."""

    __tablename__ = "pipeline_state"

    key = Column(String(128), primary_key=True)
    value_json = Column(Text, nullable=False)
    updated_at = Column(Float, nullable=False, index=True)


class SQLAlchemyBackend(StateBackend):
    """SQLAlchemy implementation for any database URL SQLAlchemy supports."""

    def __init__(self, url: str) -> None:
        self._url = url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self._engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
        self._session_factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ensure_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    def load(self, key: str, default: Any = None) -> Any:
        with self._session() as session:
            row = session.get(PipelineStateRow, key)
            if row is None:
                return default
            raw = row.value_json
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("state_load_corrupt", key=key)
            return default

    def save(self, key: str, value: Any) -> None:
        value_json = json.dumps(value, default=str)
        with self._session() as session:
            row = session.get(PipelineStateRow, key)
            if row is None:
                session.add(PipelineStateRow(key=key, value_json=value_json, updated_at=time.time()))
            else:
                row.value_json = value_json
                row.updated_at = time.time()

    def delete(self, key: str) -> None:
        with self._session() as session:
            row = session.get(PipelineStateRow, key)
            if row is not None:
                session.delete(row)

    def keys(self) -> list[str]:
        with self._session() as session:
            return [row.key for row in session.query(PipelineStateRow).order_by(PipelineStateRow.key)]


def get_state_backend(
    path: str | Path | None = None,
    *,
    database_url: str | None = None,
) -> StateBackend:
    """
    Return a ready StateBackend.

    database_url: SQLAlchemy URL; takes precedence when set (e.g. postgresql+psycopg://...).
    path: SQLite file path; ":memory:" returns a MemoryBackend. Default: "trustpulse.db" in cwd.
    """
    backend: StateBackend
    if database_url:
        backend = SQLAlchemyBackend(database_url)
        logger.info("state_backend_selected", backend="sqlalchemy", dialect=database_url.split(":", 1)[0])
    elif path is not None and str(path) == ":memory:":
        backend = MemoryBackend()
        logger.info("state_backend_selected", backend="memory")
    else:
        backend = SQLiteBackend(Path(path) if path is not None else Path("trustpulse.db"))
        logger.info("state_backend_selected", backend="sqlite", path=str(path or "trustpulse.db"))
    backend.ensure_schema()
    return backend
