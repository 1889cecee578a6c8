"""
Orchestration: agent registry, scoring, message bus and the task orchestrator.
"""

from .bus import DaprMessageBus, InMemoryMessageBus, MessageBus, task_topic
from .health import DependencyHealthSource, HealthProber
from .orchestrator import ResultDisposition, TaskOrchestrator
from .registry import AgentRegistry
from .scoring import AgentScorer

__all__ = [
    'DaprMessageBus',
    'InMemoryMessageBus',
    'MessageBus',
    'task_topic',
    'DependencyHealthSource',
    'HealthProber',
    'ResultDisposition',
    'TaskOrchestrator',
    'AgentRegistry',
    'AgentScorer',
]
