"""
Checkpoint storage for in-flight orchestrator tasks.
"""

import json
from typing import Iterable, List

from sqlmodel import col, delete, select

from ..models.core import TaskCheckpoint, TaskState, TaskStatus, ensure_utc, utc_now
from ..models.errors import PersistenceError
from ..utils.logging import get_logger
from .database import Database, OrchestratorTaskRow, to_db_datetime

logger = get_logger(__name__)

_TERMINAL_STATES = (TaskState.COMPLETED.value, TaskState.FAILED.value)


def _to_row(checkpoint: TaskCheckpoint) -> OrchestratorTaskRow:
    return OrchestratorTaskRow(
        task_id=checkpoint.task_id,
        capability=checkpoint.capability,
        dispatched_to=checkpoint.dispatched_to,
        dispatched_at=to_db_datetime(checkpoint.dispatched_at),
        status=checkpoint.status.value,
        attempts=checkpoint.attempts,
        max_attempts=checkpoint.max_attempts,
        generation=checkpoint.generation,
        timeout_seconds=checkpoint.timeout_seconds,
        priority=checkpoint.priority,
        payload=json.dumps(checkpoint.payload),
        created_at=to_db_datetime(checkpoint.created_at),
        updated_at=to_db_datetime(utc_now()),
    )


def _from_row(row: OrchestratorTaskRow) -> TaskCheckpoint:
    return TaskCheckpoint(
        task_id=row.task_id,
        capability=row.capability,
        dispatched_to=row.dispatched_to,
        dispatched_at=ensure_utc(row.dispatched_at),
        status=TaskState(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        generation=row.generation,
        timeout_seconds=row.timeout_seconds,
        priority=row.priority,
        payload=json.loads(row.payload or "{}"),
        created_at=ensure_utc(row.created_at),
    )


class CheckpointStore:
    """
    Durable snapshots of non-terminal tasks.

    Async methods push the blocking SQL work to a worker thread;
    ``checkpoint_all`` stays synchronous so it can run during shutdown
    after the event loop has stopped accepting new work.
    """

    def __init__(self, database: Database, max_attempts: int = 3):
        self.database = database
        self.max_attempts = max_attempts

    def _snapshot(self, status: TaskStatus) -> TaskCheckpoint:
        checkpoint = status.to_checkpoint()
        checkpoint.max_attempts = self.max_attempts
        return checkpoint

    def _save_sync(self, checkpoint: TaskCheckpoint) -> None:
        with self.database.session() as session:
            session.merge(_to_row(checkpoint))
            session.commit()

    def _delete_sync(self, task_id: str) -> None:
        with self.database.session() as session:
            session.exec(delete(OrchestratorTaskRow).where(col(OrchestratorTaskRow.task_id) == task_id))
            session.commit()

    def _load_active_sync(self) -> List[TaskCheckpoint]:
        with self.database.session() as session:
            rows = session.exec(
                select(OrchestratorTaskRow)
                .where(col(OrchestratorTaskRow.status).not_in(_TERMINAL_STATES))
                .order_by(col(OrchestratorTaskRow.created_at))
            ).all()
        return [_from_row(row) for row in rows]

    def _checkpoint_all_sync(self, checkpoints: List[TaskCheckpoint]) -> int:
        with self.database.session() as session:
            with session.begin():
                for checkpoint in checkpoints:
                    session.merge(_to_row(checkpoint))
        return len(checkpoints)

    async def save(self, status: TaskStatus) -> None:
        """Insert or replace the checkpoint row for ``status``."""
        checkpoint = self._snapshot(status)
        try:
            await self.database.run(self._save_sync, checkpoint)
        except Exception as e:
            raise PersistenceError(f"Failed to save checkpoint: {e}", task_id=status.task_id) from e

    async def delete(self, task_id: str) -> None:
        """Remove the checkpoint row; missing rows are ignored."""
        try:
            await self.database.run(self._delete_sync, task_id)
        except Exception as e:
            raise PersistenceError(f"Failed to delete checkpoint: {e}", task_id=task_id) from e

    async def load_active(self) -> List[TaskCheckpoint]:
        """All non-terminal checkpoints, oldest first."""
        try:
            return await self.database.run(self._load_active_sync)
        except Exception as e:
            raise PersistenceError(f"Failed to load checkpoints: {e}") from e

    def checkpoint_all(self, statuses: Iterable[TaskStatus]) -> int:
        """
        Write every tracked task in one transaction.

        Args:
            statuses: Tasks to snapshot

        Returns:
            int: Number of rows written
        """
        checkpoints = [self._snapshot(status) for status in statuses if not status.status.is_terminal]
        if not checkpoints:
            return 0
        try:
            written = self.database.run_sync(self._checkpoint_all_sync, checkpoints)
        except Exception as e:
            raise PersistenceError(f"Failed to checkpoint tasks: {e}", count=len(checkpoints)) from e
        logger.info("Checkpointed active tasks", count=written)
        return written

    def close(self) -> None:
        self.database.close()
