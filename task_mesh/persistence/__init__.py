"""
Persistence: registry key/value store, checkpoints, outcome history and trace events.
"""

from .checkpoints import CheckpointStore
from .database import Database, build_engine
from .event_log import EventLog
from .state_store import FileStateStore, InMemoryStateStore, StateStore
from .task_history import InMemoryTaskHistory, SqlTaskHistory, TaskHistoryStore

__all__ = [
    'CheckpointStore',
    'Database',
    'build_engine',
    'EventLog',
    'FileStateStore',
    'InMemoryStateStore',
    'StateStore',
    'InMemoryTaskHistory',
    'SqlTaskHistory',
    'TaskHistoryStore',
]
