"""
Trace event sink.

Events are diagnostics only; callers emit them through ``BestEffortRunner``
so a failing write never reaches scheduling.
"""

import json
from typing import List

from sqlmodel import col, select

from ..models.core import MeshEvent, ensure_utc
from .database import Database, MeshEventRow, to_db_datetime


class EventLog:
    """Appends ``MeshEvent`` rows to the ``mesh_events`` table."""

    def __init__(self, database: Database):
        self.database = database

    def _emit_sync(self, event: MeshEvent) -> None:
        with self.database.session() as session:
            session.add(MeshEventRow(
                trace_id=event.trace_id,
                task_id=event.task_id,
                agent_id=event.agent_id,
                event_type=event.event_type,
                payload=json.dumps(event.payload, default=str),
                created_at=to_db_datetime(event.created_at),
            ))
            session.commit()

    def _for_task_sync(self, task_id: str) -> List[MeshEvent]:
        with self.database.session() as session:
            rows = session.exec(
                select(MeshEventRow)
                .where(col(MeshEventRow.task_id) == task_id)
                .order_by(col(MeshEventRow.seq))
            ).all()
        return [
            MeshEvent(
                trace_id=row.trace_id,
                task_id=row.task_id,
                agent_id=row.agent_id,
                event_type=row.event_type,
                payload=json.loads(row.payload or "{}"),
                created_at=ensure_utc(row.created_at),
            )
            for row in rows
        ]

    async def emit(self, event: MeshEvent) -> None:
        await self.database.run(self._emit_sync, event)

    async def events_for_task(self, task_id: str) -> List[MeshEvent]:
        """Events recorded for one task, in emission order."""
        return await self.database.run(self._for_task_sync, task_id)
