"""
Service wiring: builds the registry, scorer, bus, persistence and
orchestrator from configuration and exposes them to request handlers.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request

from ..orchestration.bus import DaprMessageBus, InMemoryMessageBus, MessageBus
from ..orchestration.health import HealthProber
from ..orchestration.orchestrator import TaskOrchestrator
from ..orchestration.registry import AgentRegistry
from ..orchestration.scoring import AgentScorer
from ..persistence.checkpoints import CheckpointStore
from ..persistence.database import Database
from ..persistence.event_log import EventLog
from ..persistence.state_store import FileStateStore, InMemoryStateStore, StateStore
from ..persistence.task_history import InMemoryTaskHistory, SqlTaskHistory
from ..utils.config import SystemConfig
from ..utils.logging import get_logger
from ..utils.monitoring import MetricsCollector

RESULTS_ROUTE = "/results"

logger = get_logger(__name__)


@dataclass
class ServiceComponents:
    """Everything one orchestrator process owns, with an explicit lifecycle."""
    config: SystemConfig
    store: StateStore
    database: Database
    registry: AgentRegistry
    scorer: AgentScorer
    bus: MessageBus
    orchestrator: TaskOrchestrator
    metrics: MetricsCollector
    health: Optional[HealthProber] = None
    started_at: float = field(default_factory=time.monotonic)
    recovered_tasks: int = 0

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at

    async def start(self) -> None:
        """Create the schema, connect the bus and recover in-flight tasks."""
        self.database.init_schema()
        await self.bus.start()

        results_topic = self.config.bus.results_topic
        if isinstance(self.bus, DaprMessageBus):
            # The sidecar posts results to the HTTP route, which hands them to the orchestrator.
            self.bus.add_route(results_topic, RESULTS_ROUTE)
        else:
            self.bus.subscribe(results_topic, self.orchestrator.handle_result)

        self.recovered_tasks = await self.orchestrator.recover()
        self.started_at = time.monotonic()
        logger.info(
            "Task Mesh started",
            service=self.config.orchestrator.app_id,
            bus=self.config.bus.backend,
            recovered_tasks=self.recovered_tasks,
        )

    async def stop(self) -> None:
        """Checkpoint tracked tasks and release resources."""
        written = await self.orchestrator.shutdown()
        await self.bus.close()
        if self.health is not None:
            await self.health.close()
        await self.store.close()
        logger.info("Task Mesh stopped", checkpointed_tasks=written)


def build_components(config: SystemConfig) -> ServiceComponents:
    """
    Construct all service components from configuration.

    Args:
        config: System configuration

    Returns:
        ServiceComponents: Unstarted components
    """
    metrics = MetricsCollector()

    if config.registry.store_backend == "file":
        store: StateStore = FileStateStore(config.registry.store_path)
    else:
        store = InMemoryStateStore()
    registry = AgentRegistry(
        store,
        degraded_after_seconds=config.registry.degraded_after_seconds,
        offline_after_seconds=config.registry.offline_after_seconds,
    )

    database = Database(config.persistence.database_url, config.persistence.busy_timeout_ms)
    if config.persistence.history_backend == "database":
        history = SqlTaskHistory(database)
    else:
        history = InMemoryTaskHistory(max_per_key=max(100, config.scoring.rolling_window))

    health = HealthProber(
        timeout=config.scoring.health_check_timeout_seconds,
        cache_seconds=config.scoring.health_cache_seconds,
    )
    scorer = AgentScorer(history=history, health=health, config=config.scoring, metrics=metrics)

    if config.bus.backend == "dapr":
        bus: MessageBus = DaprMessageBus(config.bus)
    else:
        bus = InMemoryMessageBus()

    orchestrator = TaskOrchestrator(
        registry=registry,
        scorer=scorer,
        bus=bus,
        checkpoints=CheckpointStore(database, max_attempts=config.orchestrator.max_attempts),
        event_log=EventLog(database) if config.persistence.event_log_enabled else None,
        config=config.orchestrator,
        bus_config=config.bus,
        metrics=metrics,
    )

    return ServiceComponents(
        config=config,
        store=store,
        database=database,
        registry=registry,
        scorer=scorer,
        bus=bus,
        orchestrator=orchestrator,
        metrics=metrics,
        health=health,
    )


def get_components(request: Request) -> ServiceComponents:
    return request.app.state.components


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return request.app.state.components.orchestrator


def get_registry(request: Request) -> AgentRegistry:
    return request.app.state.components.registry
