"""
Base agent runtime for Task Mesh.

An agent registers itself, heartbeats, receives ``TaskRequest`` messages on
its own topic and publishes exactly one ``TaskResult`` per attempt.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (
    AgentCapability,
    AgentRegistration,
    AgentStatus,
    TaskError,
    TaskRequest,
    TaskResult,
    utc_now,
)
from ..models.errors import parse_model
from ..orchestration.bus import MessageBus, task_topic
from ..orchestration.registry import AgentRegistry
from ..utils.config import BusConfig
from ..utils.logging import LoggerMixin, task_context


class BaseAgent(LoggerMixin, ABC):
    """
    Abstract base class for Task Mesh agents.

    Subclasses implement ``handle``; everything else (registration,
    heartbeats, result publishing, redelivery handling) is provided here.
    """

    def __init__(
        self,
        app_id: str,
        name: str,
        capabilities: List[AgentCapability],
        registry: AgentRegistry,
        bus: MessageBus,
        bus_config: Optional[BusConfig] = None,
        health_checks: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        heartbeat_interval: float = 30.0,
        result_cache_size: int = 256,
    ):
        self.app_id = app_id
        self.name = name
        self.capabilities = capabilities
        self.registry = registry
        self.bus = bus
        self.bus_config = bus_config or BusConfig()
        self.health_checks = health_checks or {}
        self.metadata = metadata
        self.heartbeat_interval = heartbeat_interval
        self.result_cache_size = result_cache_size

        self._results: "OrderedDict[Tuple[str, int], TaskResult]" = OrderedDict()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._running = False

    def log_context(self) -> Dict[str, Any]:
        return {"app_id": self.app_id}

    @abstractmethod
    async def handle(self, request: TaskRequest) -> Dict[str, Any]:
        """
        Execute one task.

        Args:
            request: The dispatched task

        Returns:
            Dict[str, Any]: Result payload reported back to the orchestrator
        """
        pass

    @property
    def topic(self) -> str:
        return task_topic(self.app_id, self.bus_config.task_topic_prefix)

    @property
    def is_running(self) -> bool:
        return self._running

    def registration(self) -> AgentRegistration:
        """Registration record advertised to the registry."""
        return AgentRegistration(
            app_id=self.app_id,
            name=self.name,
            capabilities=self.capabilities,
            status=AgentStatus.ONLINE,
            health_checks=self.health_checks,
            last_heartbeat=utc_now(),
            metadata=self.metadata,
        )

    async def start(self) -> None:
        """Register, subscribe to the agent's topic and start heartbeating."""
        if self._running:
            return
        await self.registry.register(self.registration())
        self.bus.subscribe(self.topic, self.on_message)
        self._running = True
        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.logger.info("Agent started", topic=self.topic)

    async def stop(self) -> None:
        """Stop heartbeating, unsubscribe and mark the agent offline."""
        if not self._running:
            return
        self._running = False
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        self.bus.unsubscribe(self.topic, self.on_message)
        try:
            await self.registry.mark_offline(self.app_id)
        except Exception as e:
            self.logger.error("Failed to mark agent offline", error=str(e))
        self.logger.info("Agent stopped")

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                known = await self.registry.heartbeat(self.app_id)
                if not known:
                    await self.registry.register(self.registration())
            except Exception as e:
                self.logger.warning("Heartbeat failed", error=str(e))

    async def on_message(self, data: Dict[str, Any]) -> Optional[TaskResult]:
        """Bus entry point: validate the envelope and run the task."""
        parsed = parse_model(TaskRequest, data.get("data", data) if isinstance(data, dict) else data)
        if not parsed.ok:
            self.logger.warning("Dropping malformed task request", issues=parsed.error.issues)
            return None
        return await self.on_task(parsed.value)

    async def on_task(self, request: TaskRequest) -> TaskResult:
        """
        Run one attempt and publish its result.

        A redelivered attempt gets the cached result republished instead of
        being executed again.

        Args:
            request: Dispatched task

        Returns:
            TaskResult: The published result
        """
        with task_context(request.id, attempt=request.attempt):
            return await self._run_attempt(request)

    async def _run_attempt(self, request: TaskRequest) -> TaskResult:
        key = (request.id, request.attempt)
        cached = self._results.get(key)
        if cached is not None:
            self.logger.info("Redelivered task, republishing result")
            await self._publish_result(cached)
            return cached

        self.logger.info("Received task", capability=request.capability)
        start_time = time.monotonic()
        try:
            output = await self.handle(request)
            result = TaskResult(
                task_id=request.id,
                agent_id=self.app_id,
                success=True,
                result=output,
                duration_ms=(time.monotonic() - start_time) * 1000,
                completed_at=utc_now(),
                attempt=request.attempt,
            )
            self.logger.info("Task completed", duration_ms=round(result.duration_ms, 2))
        except Exception as e:
            result = TaskResult(
                task_id=request.id,
                agent_id=self.app_id,
                success=False,
                error=TaskError(type="unhandled", message=str(e)),
                duration_ms=(time.monotonic() - start_time) * 1000,
                completed_at=utc_now(),
                attempt=request.attempt,
            )
            self.logger.error("Task failed", error=str(e), error_type=type(e).__name__)

        self._remember(key, result)
        await self._publish_result(result)
        return result

    def _remember(self, key: Tuple[str, int], result: TaskResult) -> None:
        self._results[key] = result
        while len(self._results) > self.result_cache_size:
            self._results.popitem(last=False)

    async def _publish_result(self, result: TaskResult) -> None:
        await self.bus.publish(self.bus_config.results_topic, result.to_wire())
