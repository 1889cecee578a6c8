"""
Data models and error types for Task Mesh.
"""

from .core import (
    MAX_ATTEMPTS,
    AgentCapability,
    AgentRegistration,
    AgentScoreCard,
    AgentStatus,
    DispatchDecision,
    MeshEvent,
    TaskCheckpoint,
    TaskError,
    TaskOutcome,
    TaskRequest,
    TaskResult,
    TaskState,
    TaskStatus,
    utc_now,
)
from .errors import (
    NoAgentsAvailableError,
    ParseOutcome,
    PersistenceError,
    TaskMeshError,
    ValidationError,
)

__all__ = [
    'MAX_ATTEMPTS',
    'AgentCapability',
    'AgentRegistration',
    'AgentScoreCard',
    'AgentStatus',
    'DispatchDecision',
    'MeshEvent',
    'TaskCheckpoint',
    'TaskError',
    'TaskOutcome',
    'TaskRequest',
    'TaskResult',
    'TaskState',
    'TaskStatus',
    'utc_now',
    'NoAgentsAvailableError',
    'ParseOutcome',
    'PersistenceError',
    'TaskMeshError',
    'ValidationError',
]
