"""
Outcome history consumed by the agent scorer.

Every accepted result (and every synthesized timeout) becomes one
``TaskOutcome``. The scorer only ever reads the most recent N outcomes for an
(agent, capability) pair, so both backends are optimized for that query.
"""

from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Tuple

from sqlmodel import col, select

from ..models.core import TaskOutcome, ensure_utc
from ..models.errors import PersistenceError
from .database import AgentTaskHistoryRow, Database, to_db_datetime


class TaskHistoryStore(ABC):
    """Append-only store of task outcomes."""

    @abstractmethod
    async def record(self, outcome: TaskOutcome) -> None:
        """Append one outcome."""

    @abstractmethod
    async def recent(self, agent_id: str, capability: str, limit: int) -> List[TaskOutcome]:
        """Most recent outcomes for the pair, newest first."""

    @abstractmethod
    async def for_agent(self, agent_id: str, limit: int) -> List[TaskOutcome]:
        """Most recent outcomes of an agent across capabilities, newest first."""


class InMemoryTaskHistory(TaskHistoryStore):
    """Bounded per-pair history kept in process memory."""

    def __init__(self, max_per_key: int = 100):
        self.max_per_key = max_per_key
        self._outcomes: Dict[Tuple[str, str], Deque[TaskOutcome]] = defaultdict(
            lambda: deque(maxlen=self.max_per_key)
        )

    async def record(self, outcome: TaskOutcome) -> None:
        self._outcomes[(outcome.agent_id, outcome.capability)].append(outcome)

    async def recent(self, agent_id: str, capability: str, limit: int) -> List[TaskOutcome]:
        outcomes = self._outcomes.get((agent_id, capability))
        if not outcomes:
            return []
        return list(reversed(outcomes))[:limit]

    async def for_agent(self, agent_id: str, limit: int) -> List[TaskOutcome]:
        merged = [
            outcome
            for (owner, _), outcomes in self._outcomes.items()
            if owner == agent_id
            for outcome in outcomes
        ]
        merged.sort(key=lambda o: o.recorded_at, reverse=True)
        return merged[:limit]


def _from_row(row: AgentTaskHistoryRow) -> TaskOutcome:
    return TaskOutcome(
        task_id=row.task_id,
        agent_id=row.agent_id,
        capability=row.capability,
        success=row.success,
        duration_ms=row.duration_ms,
        error_type=row.error_type,
        recorded_at=ensure_utc(row.recorded_at),
    )


class SqlTaskHistory(TaskHistoryStore):
    """History stored in the ``agent_task_history`` table."""

    def __init__(self, database: Database):
        self.database = database

    def _record_sync(self, outcome: TaskOutcome) -> None:
        with self.database.session() as session:
            session.add(AgentTaskHistoryRow(
                task_id=outcome.task_id,
                agent_id=outcome.agent_id,
                capability=outcome.capability,
                success=outcome.success,
                duration_ms=outcome.duration_ms,
                error_type=outcome.error_type,
                recorded_at=to_db_datetime(outcome.recorded_at),
            ))
            session.commit()

    def _query_sync(self, agent_id: str, capability: Optional[str], limit: int) -> List[TaskOutcome]:
        statement = select(AgentTaskHistoryRow).where(col(AgentTaskHistoryRow.agent_id) == agent_id)
        if capability is not None:
            statement = statement.where(col(AgentTaskHistoryRow.capability) == capability)
        statement = statement.order_by(
            col(AgentTaskHistoryRow.recorded_at).desc(),
            col(AgentTaskHistoryRow.id).desc(),
        ).limit(limit)
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_from_row(row) for row in rows]

    async def record(self, outcome: TaskOutcome) -> None:
        try:
            await self.database.run(self._record_sync, outcome)
        except Exception as e:
            raise PersistenceError(f"Failed to record outcome: {e}", task_id=outcome.task_id) from e

    async def recent(self, agent_id: str, capability: str, limit: int) -> List[TaskOutcome]:
        return await self.database.run(self._query_sync, agent_id, capability, limit)

    async def for_agent(self, agent_id: str, limit: int) -> List[TaskOutcome]:
        return await self.database.run(self._query_sync, agent_id, None, limit)
