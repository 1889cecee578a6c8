"""
Task Orchestrator for Task Mesh.

This module owns the lifecycle of every submitted task: picking an agent,
publishing the request, waiting for a result or a timeout, retrying against
another agent, and checkpointing in-flight work so a restart resumes it.

All state transitions run on one event loop. A task's ``generation`` is
bumped on every (re)dispatch; result and timeout handlers claim the current
generation before their first suspension point, and whichever claims second
drops its effect.
"""

import asyncio
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from ..models.core import (
    DEFAULT_PRIORITY,
    AgentRegistration,
    AgentScoreCard,
    DispatchDecision,
    MeshEvent,
    TaskError,
    TaskRequest,
    TaskResult,
    TaskState,
    TaskStatus,
    utc_now,
)
from ..models.errors import (
    AgentCommunicationError,
    NoAgentsAvailableError,
    PersistenceError,
    parse_model,
)
from ..persistence.checkpoints import CheckpointStore
from ..persistence.event_log import EventLog
from ..utils.config import BusConfig, OrchestratorConfig
from ..utils.error_handler import BestEffortRunner
from ..utils.logging import LoggerMixin, task_context
from ..utils.monitoring import MetricsCollector
from .bus import MessageBus, task_topic
from .registry import AgentRegistry
from .scoring import AgentScorer


class ResultDisposition(str, Enum):
    """What happened to an inbound result. Every disposition is acknowledged."""
    ACCEPTED = "accepted"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"
    STALE = "stale"
    DUPLICATE = "duplicate"


class TaskOrchestrator(LoggerMixin):
    """Dispatches tasks to the best-scoring agent and tracks them to completion."""

    def __init__(
        self,
        registry: AgentRegistry,
        scorer: AgentScorer,
        bus: MessageBus,
        checkpoints: Optional[CheckpointStore] = None,
        event_log: Optional[EventLog] = None,
        config: Optional[OrchestratorConfig] = None,
        bus_config: Optional[BusConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.registry = registry
        self.scorer = scorer
        self.bus = bus
        self.checkpoints = checkpoints
        self.event_log = event_log
        self.config = config or OrchestratorConfig()
        self.bus_config = bus_config or BusConfig()
        self.metrics = metrics or MetricsCollector()
        self.best_effort = BestEffortRunner(self.metrics)

        self._tasks: Dict[str, TaskStatus] = {}
        self._completed: "OrderedDict[str, Tuple[float, TaskStatus]]" = OrderedDict()
        self._timeout_tasks: Set[asyncio.Task] = set()
        self._closed = False

    def log_context(self) -> Dict[str, Any]:
        return {"service": self.config.app_id}

    # --- Read-only views ---

    @property
    def active_task_count(self) -> int:
        return len(self._tasks)

    def get_task(self, task_id: str) -> Optional[TaskStatus]:
        """
        Get a tracked task, or a recently completed one.

        Failed tasks are not retained and return None.
        """
        status = self._tasks.get(task_id)
        if status is not None:
            return status
        self._prune_completed()
        entry = self._completed.get(task_id)
        return entry[1] if entry else None

    def active_tasks(self) -> List[TaskStatus]:
        return list(self._tasks.values())

    async def list_agents(self) -> List[AgentRegistration]:
        return await self.registry.list_all()

    async def preview_scores(self, capability: str) -> List[AgentScoreCard]:
        """Rank current candidates for a capability without dispatching."""
        candidates = await self.registry.find_by_capability(capability)
        return await self.scorer.score(candidates, capability)

    def get_metrics(self) -> Dict[str, Any]:
        self.metrics.set_gauge("active_tasks", len(self._tasks))
        return self.metrics.get_all_metrics()

    # --- Submission ---

    async def submit(
        self,
        capability: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = DEFAULT_PRIORITY,
        timeout: Optional[float] = None,
    ) -> DispatchDecision:
        """
        Dispatch a new task to the best available agent.

        Args:
            capability: Capability the task requires
            payload: Opaque task input, forwarded unchanged on every attempt
            priority: 0 (lowest) to 10 (highest)
            timeout: Seconds to wait for a result per attempt

        Returns:
            DispatchDecision: Task id, chosen agent and its score

        Raises:
            ValidationError: Invalid capability, payload, priority or timeout
            NoAgentsAvailableError: No registered or no healthy candidate
            AgentCommunicationError: The request could not be published
        """
        if self._closed:
            raise AgentCommunicationError("Orchestrator is shutting down")

        parsed = parse_model(TaskRequest, {
            "capability": capability,
            "payload": {} if payload is None else payload,
            "priority": priority,
            "timeout": self.config.default_timeout_seconds if timeout is None else timeout,
            "requested_by": self.config.app_id,
        }, "Invalid task submission")
        if not parsed.ok:
            raise parsed.error
        request: TaskRequest = parsed.value

        candidates = await self.registry.find_by_capability(capability)
        if not candidates:
            self.metrics.increment_counter("tasks_rejected", tags={"reason": "no_candidates"})
            raise NoAgentsAvailableError(capability)

        scores = await self.scorer.score(candidates, capability)
        if not scores:
            self.metrics.increment_counter("tasks_rejected", tags={"reason": "no_healthy_candidates"})
            raise NoAgentsAvailableError(capability, reason="No agents available", detail="no healthy candidates")
        best = scores[0]

        now = utc_now()
        status = TaskStatus(
            task_id=request.id,
            capability=capability,
            dispatched_to=best.agent_id,
            dispatched_at=now,
            status=TaskState.DISPATCHED,
            attempts=1,
            payload=request.payload,
            priority=request.priority,
            timeout_seconds=request.timeout,
            generation=1,
            created_at=request.created_at,
            updated_at=now,
        )
        # Tracked before publishing so a fast result always finds it; the
        # timer starts only once the request is out.
        self._tasks[status.task_id] = status

        try:
            await self.bus.publish(self._topic(best.agent_id), request.to_wire())
        except Exception as e:
            if not self._awaiting_first_result(status):
                self.logger.warning(
                    "Publish reported failure after the task already progressed",
                    task_id=status.task_id,
                    agent_id=best.agent_id,
                    error=str(e),
                )
            else:
                self._tasks.pop(status.task_id, None)
                self.logger.error("Failed to publish task", task_id=status.task_id, agent_id=best.agent_id, error=str(e))
                if isinstance(e, AgentCommunicationError):
                    raise
                raise AgentCommunicationError(f"Failed to publish task: {e}", task_id=status.task_id) from e
        else:
            if self._awaiting_first_result(status):
                self._arm_timer(status, request.timeout)

        self.scorer.record_dispatch(best.agent_id, capability)
        self.metrics.increment_counter("tasks_dispatched", tags={"capability": capability})
        self.logger.info(
            "Task dispatched",
            task_id=status.task_id,
            capability=capability,
            agent_id=best.agent_id,
            score=round(best.final_score, 4),
        )

        self._emit("task.dispatched", status, score=best.final_score)
        await self._checkpoint(status)

        return DispatchDecision(
            task_id=status.task_id,
            dispatched_to=best.agent_id,
            score=best.final_score,
            status=TaskState.DISPATCHED,
        )

    def _awaiting_first_result(self, status: TaskStatus) -> bool:
        return self._tasks.get(status.task_id) is status and status.generation == 1 and not status.is_claimed

    # --- Inbound results and timeouts ---

    async def handle_result(self, raw: Any) -> ResultDisposition:
        """
        Process one result delivery.

        Args:
            raw: A TaskResult or its decoded JSON

        Returns:
            ResultDisposition: Only ``accepted`` changes state
        """
        if isinstance(raw, TaskResult):
            result = raw
        else:
            parsed = parse_model(TaskResult, raw, "Malformed task result")
            if not parsed.ok:
                self.logger.warning("Dropping malformed result", issues=parsed.error.issues)
                self.metrics.increment_counter("results_dropped", tags={"reason": "malformed"})
                return ResultDisposition.MALFORMED
            result = parsed.value

        status = self._tasks.get(result.task_id)
        if status is None:
            if result.task_id in self._completed:
                self.logger.info("Duplicate result for completed task ignored", task_id=result.task_id)
                self.metrics.increment_counter("results_dropped", tags={"reason": "duplicate"})
                return ResultDisposition.DUPLICATE
            self.logger.warning("Result for unknown task ignored", task_id=result.task_id, agent_id=result.agent_id)
            self.metrics.increment_counter("results_dropped", tags={"reason": "unknown"})
            return ResultDisposition.UNKNOWN

        if result.agent_id != status.dispatched_to or (
            result.attempt is not None and result.attempt != status.attempts
        ):
            self.logger.warning(
                "Stale result from a previous attempt ignored",
                task_id=result.task_id,
                agent_id=result.agent_id,
                dispatched_to=status.dispatched_to,
                attempt=result.attempt,
                current_attempt=status.attempts,
            )
            self.metrics.increment_counter("results_dropped", tags={"reason": "stale"})
            return ResultDisposition.STALE

        # Retries may return to the same agent; delivery keys catch redelivered earlier results.
        if status.has_settled(result) or not status.claim(status.generation):
            self.logger.info(
                "Duplicate result ignored",
                task_id=result.task_id,
                agent_id=result.agent_id,
                generation=status.generation,
            )
            self.metrics.increment_counter("results_dropped", tags={"reason": "duplicate"})
            return ResultDisposition.DUPLICATE
        status.mark_settled(result)

        with task_context(status.task_id, attempt=status.attempts):
            await self._settle_attempt(status, result)
        return ResultDisposition.ACCEPTED

    async def handle_timeout(self, task_id: str, generation: int) -> bool:
        """
        Handle a timer firing for ``(task_id, generation)``.

        Returns:
            bool: False when the firing was stale and discarded
        """
        status = self._tasks.get(task_id)
        if status is None or not status.claim(generation):
            self.logger.debug("Stale timeout discarded", task_id=task_id, generation=generation)
            return False

        status.status = TaskState.TIMEOUT
        status.updated_at = utc_now()
        elapsed_ms = 0.0
        if status.dispatched_at is not None:
            elapsed_ms = max(0.0, (status.updated_at - status.dispatched_at).total_seconds() * 1000)

        self.metrics.increment_counter("tasks_timed_out", tags={"capability": status.capability})
        self.logger.warning(
            "Task attempt timed out",
            task_id=task_id,
            agent_id=status.dispatched_to,
            attempt=status.attempts,
        )

        result = TaskResult(
            task_id=task_id,
            agent_id=status.dispatched_to or self.config.app_id,
            success=False,
            error=TaskError(type="timeout", message=f"No result within {status.timeout_seconds}s"),
            duration_ms=elapsed_ms,
            attempt=status.attempts,
        )
        self._emit("task.timeout", status)
        with task_context(status.task_id, attempt=status.attempts):
            await self._settle_attempt(status, result)
        return True

    async def _settle_attempt(self, status: TaskStatus, result: TaskResult) -> None:
        await self.scorer.record_task_result(result, status.capability)

        if self._tasks.get(status.task_id) is not status:
            return

        if result.success:
            await self._complete(status, result)
        elif status.attempts >= self.config.max_attempts:
            await self._fail(status, result, reason="max_attempts")
        else:
            await self.retry_task(status, result)

    # --- Retry ---

    async def retry_task(self, status: TaskStatus, last_result: Optional[TaskResult] = None) -> Optional[DispatchDecision]:
        """
        Re-dispatch a failed attempt to another agent.

        The agent that just failed is excluded when any alternative exists.
        The original task id, payload, priority and timeout are reused.

        Args:
            status: Tracked task whose current attempt failed
            last_result: The failed (or synthesized timeout) result

        Returns:
            Optional[DispatchDecision]: None when the task failed terminally
            or is no longer tracked
        """
        if self._tasks.get(status.task_id) is not status:
            return None

        previous = status.dispatched_to
        status.status = TaskState.RETRYING
        status.updated_at = utc_now()

        try:
            candidates = await self.registry.find_by_capability(status.capability)
        except Exception as e:
            self.logger.error("Candidate lookup failed during retry", task_id=status.task_id, error=str(e))
            candidates = []

        alternatives = [agent for agent in candidates if agent.app_id != previous]
        if alternatives:
            pool = alternatives
        elif self.config.allow_same_agent_retry:
            pool = candidates
        else:
            pool = []

        scores = await self.scorer.score(pool, status.capability) if pool else []

        if self._tasks.get(status.task_id) is not status:
            return None

        if not scores:
            await self._fail(status, last_result, reason="no_alternative_agent")
            return None

        best = scores[0]
        now = utc_now()
        status.attempts += 1
        status.generation += 1
        status.dispatched_to = best.agent_id
        status.dispatched_at = now
        status.updated_at = now

        request = TaskRequest(
            id=status.task_id,
            capability=status.capability,
            payload=status.payload,
            priority=status.priority,
            timeout=status.timeout_seconds,
            requested_by=self.config.app_id,
            created_at=status.created_at,
            attempt=status.attempts,
        )
        self._arm_timer(status, status.timeout_seconds)
        self.scorer.record_dispatch(best.agent_id, status.capability)

        try:
            await self.bus.publish(self._topic(best.agent_id), request.to_wire())
        except Exception as e:
            # The armed timer turns this into a failed attempt.
            self.logger.error(
                "Failed to publish retry",
                task_id=status.task_id,
                agent_id=best.agent_id,
                attempt=status.attempts,
                error=str(e),
            )

        self.metrics.increment_counter("task_retries", tags={"capability": status.capability})
        self.logger.info(
            "Task retried",
            task_id=status.task_id,
            previous_agent=previous,
            agent_id=best.agent_id,
            attempt=status.attempts,
        )

        self._emit("task.retrying", status, previous_agent=previous, score=best.final_score)
        await self._checkpoint(status)

        return DispatchDecision(
            task_id=status.task_id,
            dispatched_to=best.agent_id,
            score=best.final_score,
            status=TaskState.RETRYING,
        )

    # --- Terminal transitions ---

    async def _complete(self, status: TaskStatus, result: TaskResult) -> None:
        status.status = TaskState.COMPLETED
        status.result = result
        status.updated_at = utc_now()
        self._tasks.pop(status.task_id, None)
        self._remember_completed(status)

        self.metrics.increment_counter("tasks_completed", tags={"capability": status.capability})
        self.logger.info(
            "Task completed",
            task_id=status.task_id,
            agent_id=result.agent_id,
            attempts=status.attempts,
            duration_ms=result.duration_ms,
        )
        self._emit("task.completed", status, duration_ms=result.duration_ms)
        await self._delete_checkpoint(status.task_id)

    async def _fail(self, status: TaskStatus, result: Optional[TaskResult], reason: str) -> None:
        status.status = TaskState.FAILED
        status.result = result
        status.updated_at = utc_now()
        status.cancel_timer()
        self._tasks.pop(status.task_id, None)

        self.metrics.increment_counter("tasks_failed", tags={"reason": reason})
        self.logger.warning(
            "Task failed",
            task_id=status.task_id,
            capability=status.capability,
            attempts=status.attempts,
            reason=reason,
            error_type=result.error_type if result else None,
        )
        self._emit("task.failed", status, reason=reason)
        await self._delete_checkpoint(status.task_id)

    def _remember_completed(self, status: TaskStatus) -> None:
        if self.config.completed_retention_max <= 0 or self.config.completed_retention_seconds <= 0:
            return
        self._completed[status.task_id] = (time.monotonic() + self.config.completed_retention_seconds, status)
        self._completed.move_to_end(status.task_id)
        self._prune_completed()

    def _prune_completed(self) -> None:
        now = time.monotonic()
        while self._completed:
            task_id, (expires_at, _) = next(iter(self._completed.items()))
            if expires_at > now and len(self._completed) <= self.config.completed_retention_max:
                break
            self._completed.pop(task_id)

    # --- Timers ---

    def _topic(self, app_id: str) -> str:
        return task_topic(app_id, self.bus_config.task_topic_prefix)

    def _arm_timer(self, status: TaskStatus, delay: float) -> None:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(0.0, delay), self._on_timer, status.task_id, status.generation)
        status.set_timer(handle)

    def _on_timer(self, task_id: str, generation: int) -> None:
        task = asyncio.create_task(self.handle_timeout(task_id, generation))
        self._timeout_tasks.add(task)
        task.add_done_callback(self._timeout_done)

    def _timeout_done(self, task: asyncio.Task) -> None:
        self._timeout_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error("Timeout handling failed", error=str(error), error_type=type(error).__name__)

    # --- Persistence and tracing ---

    async def _checkpoint(self, status: TaskStatus) -> None:
        if self.checkpoints is None or self._tasks.get(status.task_id) is not status:
            return
        await self.best_effort.run(lambda: self.checkpoints.save(status), "save_checkpoint", task_id=status.task_id)

    async def _delete_checkpoint(self, task_id: str) -> None:
        if self.checkpoints is None:
            return
        await self.best_effort.run(lambda: self.checkpoints.delete(task_id), "delete_checkpoint", task_id=task_id)

    def _emit(self, event_type: str, status: TaskStatus, **payload: Any) -> None:
        if self.event_log is None:
            return
        event = MeshEvent(
            trace_id=status.task_id,
            task_id=status.task_id,
            agent_id=self.config.app_id,
            event_type=event_type,
            payload={
                "capability": status.capability,
                "dispatchedTo": status.dispatched_to,
                "attempt": status.attempts,
                "generation": status.generation,
                **payload,
            },
        )
        self.best_effort.spawn(lambda: self.event_log.emit(event), "emit_event", task_id=status.task_id)

    # --- Lifecycle ---

    async def recover(self) -> int:
        """
        Rebuild in-flight tasks from checkpoints after a restart.

        Each timer is re-armed for whatever is left of the original timeout,
        firing almost immediately for overdue tasks.

        Returns:
            int: Number of tasks recovered
        """
        if self.checkpoints is None:
            return 0

        try:
            checkpoints = await self.checkpoints.load_active()
        except PersistenceError as e:
            self.logger.error("Checkpoint recovery failed", error=str(e))
            return 0

        now = utc_now()
        recovered = 0
        for checkpoint in checkpoints:
            if checkpoint.task_id in self._tasks:
                continue
            status = checkpoint.to_status()
            remaining = checkpoint.remaining_seconds(now)
            self._tasks[status.task_id] = status
            self._arm_timer(status, remaining)
            recovered += 1
            self.logger.info(
                "Recovered task",
                task_id=status.task_id,
                agent_id=status.dispatched_to,
                attempt=status.attempts,
                remaining_seconds=round(remaining, 3),
            )

        self.metrics.increment_counter("tasks_recovered", recovered)
        return recovered

    async def shutdown(self, drain_timeout: float = 5.0) -> int:
        """
        Stop timers, checkpoint every tracked task and close the store.

        Returns:
            int: Number of tasks checkpointed
        """
        if self._closed:
            return 0
        self._closed = True

        for status in self._tasks.values():
            status.cancel_timer()
        for task in list(self._timeout_tasks):
            task.cancel()

        await self.best_effort.drain(timeout=drain_timeout)

        if self.checkpoints is None:
            return 0

        written = 0
        try:
            written = self.checkpoints.checkpoint_all(list(self._tasks.values()))
        except PersistenceError as e:
            self.logger.error("Shutdown checkpoint failed", error=str(e), tasks=len(self._tasks))
        finally:
            self.checkpoints.close()
        return written
