"""
Relational storage shared by checkpoints, outcome history and the event log.

SQLModel tables on top of a SQLAlchemy engine; SQLite by default, any
SQLAlchemy URL otherwise. Blocking calls are serialized behind one lock and
pushed to a worker thread for async callers.
"""

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import Column, DateTime, Index, Text, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import NullPool, StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

from ..utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class OrchestratorTaskRow(SQLModel, table=True):
    """Checkpoint of one non-terminal task."""

    __tablename__ = "orchestrator_tasks"
    __table_args__ = (Index("idx_orchestrator_tasks_status", "status"),)

    task_id: str = Field(primary_key=True)
    capability: str = Field(index=True)
    dispatched_to: Optional[str] = None
    dispatched_at: datetime = Field(sa_column=Column(DateTime(), nullable=False))
    status: str = Field(default="pending")
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    generation: int = Field(default=0)
    timeout_seconds: float = Field(default=120.0)
    priority: int = Field(default=5)
    payload: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(), nullable=False))


class AgentTaskHistoryRow(SQLModel, table=True):
    """One recorded task outcome, used for rolling success rates."""

    __tablename__ = "agent_task_history"
    __table_args__ = (
        Index("idx_task_history_agent_capability", "agent_id", "capability", "recorded_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: str
    agent_id: str
    capability: str
    success: bool
    duration_ms: float = Field(default=0)
    error_type: Optional[str] = None
    recorded_at: datetime = Field(sa_column=Column(DateTime(), nullable=False))


class MeshEventRow(SQLModel, table=True):
    """Trace event."""

    __tablename__ = "mesh_events"

    seq: Optional[int] = Field(default=None, primary_key=True)
    trace_id: str = Field(index=True)
    task_id: Optional[str] = Field(default=None, index=True)
    agent_id: str
    event_type: str
    payload: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(), nullable=False))


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to naive UTC for storage."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _is_memory_sqlite(database_url: str) -> bool:
    url = make_url(database_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()


def build_engine(database_url: str, busy_timeout_ms: int = 5000) -> Engine:
    """
    Build a SQLAlchemy engine with a consistent SQLite policy.

    Args:
        database_url: SQLAlchemy URL
        busy_timeout_ms: SQLite busy timeout

    Returns:
        Engine: Configured engine
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)

    connect_args = {
        "check_same_thread": False,
        "timeout": max(1.0, busy_timeout_ms / 1000.0),
    }
    if _is_memory_sqlite(database_url):
        engine = create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    else:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(database_url, connect_args=connect_args, poolclass=NullPool)

    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


class Database:
    """Owns the engine and serializes access to it."""

    def __init__(self, database_url: str, busy_timeout_ms: int = 5000):
        self.database_url = database_url
        self.engine = build_engine(database_url, busy_timeout_ms)
        self._lock = threading.Lock()
        self._closed = False

    def init_schema(self) -> None:
        """Create missing tables."""
        SQLModel.metadata.create_all(self.engine)
        logger.info("Database schema ready", url=make_url(self.database_url).render_as_string(hide_password=True))

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def run_sync(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking database function under the access lock."""
        with self._lock:
            return fn(*args)

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking database function in a worker thread."""
        return await asyncio.to_thread(self.run_sync, fn, *args)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release pooled connections."""
        if self._closed:
            return
        with self._lock:
            self.engine.dispose()
            self._closed = True
