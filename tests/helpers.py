"""
Shared test doubles and helpers for Task Mesh tests.
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional

from task_mesh.agents.base import BaseAgent
from task_mesh.models.core import AgentCapability, AgentRegistration, TaskRequest, utc_now
from task_mesh.orchestration.bus import InMemoryMessageBus
from task_mesh.orchestration.health import DependencyHealthSource
from task_mesh.orchestration.orchestrator import TaskOrchestrator
from task_mesh.orchestration.registry import AgentRegistry
from task_mesh.orchestration.scoring import AgentScorer
from task_mesh.persistence.checkpoints import CheckpointStore
from task_mesh.persistence.database import Database
from task_mesh.persistence.state_store import InMemoryStateStore
from task_mesh.persistence.task_history import InMemoryTaskHistory
from task_mesh.utils.config import BusConfig, OrchestratorConfig, ScoringConfig
from task_mesh.utils.monitoring import MetricsCollector


class StaticHealth(DependencyHealthSource):
    """Dependency health fixed per agent id (1.0 unless overridden)."""

    def __init__(self, values: Optional[Dict[str, float]] = None):
        self.values = values or {}
        self.calls: List[str] = []

    async def dependency_health(self, agent: AgentRegistration, capability: str) -> float:
        self.calls.append(agent.app_id)
        return self.values.get(agent.app_id, 1.0)


class EchoAgent(BaseAgent):
    """Succeeds with the payload it received."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.received: List[TaskRequest] = []

    async def handle(self, request: TaskRequest) -> Dict[str, Any]:
        self.received.append(request)
        return {"echo": request.payload, "handledBy": self.app_id}


class FailingAgent(EchoAgent):
    """Always raises from ``handle``."""

    async def handle(self, request: TaskRequest) -> Dict[str, Any]:
        self.received.append(request)
        raise RuntimeError(f"{self.app_id} cannot do this")


def make_registration(
    app_id: str,
    capability: str = "code-review",
    weight: float = 0.9,
    preferred: bool = False,
    requirements: Optional[List[str]] = None,
    health_checks: Optional[Dict[str, str]] = None,
    heartbeat_age: float = 0.0,
) -> AgentRegistration:
    """Build a registration with a single capability."""
    return AgentRegistration(
        app_id=app_id,
        name=app_id.title(),
        capabilities=[AgentCapability(
            name=capability,
            weight=weight,
            preferred=preferred,
            requirements=requirements or [],
        )],
        health_checks=health_checks or {},
        last_heartbeat=utc_now() - timedelta(seconds=heartbeat_age),
    )


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


class Mesh:
    """An orchestrator wired to in-memory collaborators."""

    def __init__(self, database: Optional[Database] = None, **orchestrator_options: Any):
        self.store = InMemoryStateStore()
        self.registry = AgentRegistry(self.store)
        self.history = InMemoryTaskHistory()
        self.health = StaticHealth()
        self.metrics = MetricsCollector()
        self.scorer = AgentScorer(
            history=self.history,
            health=self.health,
            config=ScoringConfig(),
            metrics=self.metrics,
        )
        self.bus = InMemoryMessageBus()
        self.bus_config = BusConfig()
        self.database = database
        self.checkpoints = CheckpointStore(database) if database is not None else None
        self.orchestrator = TaskOrchestrator(
            registry=self.registry,
            scorer=self.scorer,
            bus=self.bus,
            checkpoints=self.checkpoints,
            config=OrchestratorConfig(**orchestrator_options),
            bus_config=self.bus_config,
            metrics=self.metrics,
        )
        self.bus.subscribe(self.bus_config.results_topic, self.orchestrator.handle_result)
        self.agents: List[BaseAgent] = []

    async def add_agent(self, agent_cls, app_id: str, weight: float = 0.9, capability: str = "code-review") -> BaseAgent:
        agent = agent_cls(
            app_id=app_id,
            name=app_id.title(),
            capabilities=[AgentCapability(name=capability, weight=weight)],
            registry=self.registry,
            bus=self.bus,
            heartbeat_interval=0,
        )
        await agent.start()
        self.agents.append(agent)
        return agent

    async def close(self) -> None:
        for agent in self.agents:
            await agent.stop()
        await self.orchestrator.shutdown(drain_timeout=1.0)
        await self.bus.close()
