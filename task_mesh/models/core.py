"""
Core Pydantic data models for Task Mesh.

Wire models serialize with camelCase aliases so they can be exchanged with
agents written in any language; they accept snake_case on input as well.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic.alias_generators import to_camel


MAX_ATTEMPTS = 3
DEFAULT_PRIORITY = 5
DEFAULT_TIMEOUT_SECONDS = 120.0

DEGRADED_AFTER_SECONDS = 60.0
OFFLINE_AFTER_SECONDS = 120.0


def utc_now() -> datetime:
    """Current UTC timestamp."""
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WireModel(BaseModel):
    """Base for models exchanged over HTTP and the message bus."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AgentStatus(str, Enum):
    """Liveness of a registered agent."""
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class AgentCapability(WireModel):
    """A named unit of work an agent can perform."""
    name: str = Field(..., min_length=1)
    weight: float = Field(..., ge=0.0, le=1.0)
    preferred: bool = False
    requirements: List[str] = Field(default_factory=list)
    estimated_duration: Optional[str] = None


class AgentRegistration(WireModel):
    """Registration record owned by an agent and stored by the registry."""
    app_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    capabilities: List[AgentCapability] = Field(default_factory=list)
    status: AgentStatus = AgentStatus.ONLINE
    health_checks: Dict[str, str] = Field(default_factory=dict)
    last_heartbeat: datetime = Field(default_factory=utc_now)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("last_heartbeat")
    @classmethod
    def _heartbeat_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def capability(self, name: str) -> Optional[AgentCapability]:
        """Get a declared capability by name."""
        return next((cap for cap in self.capabilities if cap.name == name), None)

    def has_capability(self, name: str) -> bool:
        return self.capability(name) is not None

    def heartbeat_age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - self.last_heartbeat).total_seconds()

    def computed_status(
        self,
        now: Optional[datetime] = None,
        degraded_after: float = DEGRADED_AFTER_SECONDS,
        offline_after: float = OFFLINE_AFTER_SECONDS,
    ) -> AgentStatus:
        """
        Derive liveness from heartbeat age, ignoring the stored status.

        Args:
            now: Reference time (defaults to now)
            degraded_after: Age in seconds at which an agent becomes degraded
            offline_after: Age in seconds at which an agent becomes offline

        Returns:
            AgentStatus: Status implied by the heartbeat age
        """
        age = self.heartbeat_age_seconds(now)
        if age >= offline_after:
            return AgentStatus.OFFLINE
        if age >= degraded_after:
            return AgentStatus.DEGRADED
        return AgentStatus.ONLINE

    def with_computed_status(self, now: Optional[datetime] = None, **thresholds: float) -> "AgentRegistration":
        """Return a copy whose status is recomputed from heartbeat age."""
        return self.model_copy(update={"status": self.computed_status(now, **thresholds)})


class TaskRequest(WireModel):
    """Unit of work published to an agent's topic."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    capability: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=DEFAULT_PRIORITY, ge=0, le=10)
    timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    requested_by: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utc_now)
    attempt: int = Field(default=1, ge=1)

    @field_validator("id")
    @classmethod
    def _id_is_uuid(cls, v: str) -> str:
        return str(uuid.UUID(v))


class TaskError(WireModel):
    """Error reported by an agent (or synthesized on timeout)."""
    type: str = Field(..., min_length=1)
    message: str = ""


class TaskResult(WireModel):
    """Result of one dispatch attempt, published by the agent that ran it."""
    task_id: str
    agent_id: str = Field(..., min_length=1)
    success: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[TaskError] = None
    duration_ms: float = Field(default=0, ge=0)
    completed_at: datetime = Field(default_factory=utc_now)
    attempt: Optional[int] = Field(default=None, ge=1)

    @field_validator("task_id")
    @classmethod
    def _task_id_is_uuid(cls, v: str) -> str:
        return str(uuid.UUID(v))

    @property
    def error_type(self) -> Optional[str]:
        return self.error.type if self.error else None

    @property
    def delivery_key(self) -> Tuple[str, str, Optional[int]]:
        """Identifies one published result; redeliveries of it share the key."""
        return (self.agent_id, self.completed_at.isoformat(), self.attempt)


class TaskState(str, Enum):
    """Lifecycle state of a tracked task."""
    PENDING = "pending"
    DISPATCHED = "dispatched"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


class TaskStatus(WireModel):
    """
    Orchestrator-side tracking record for one task.

    The timer handle and the claimed generation are runtime-only and never
    leave the process; use ``public_view`` for anything external.
    """
    task_id: str
    capability: str
    dispatched_to: Optional[str] = None
    dispatched_at: Optional[datetime] = None
    status: TaskState = TaskState.PENDING
    attempts: int = Field(default=0, ge=0)
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = DEFAULT_PRIORITY
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    generation: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    result: Optional[TaskResult] = None

    _timer_handle: Any = PrivateAttr(default=None)
    _claimed_generation: int = PrivateAttr(default=0)
    _settled_results: Set[Tuple[str, str, Optional[int]]] = PrivateAttr(default_factory=set)

    def cancel_timer(self) -> None:
        """Cancel and forget the pending timer, if any."""
        if self._timer_handle is not None:
            self._timer_handle.cancel()
            self._timer_handle = None

    def set_timer(self, handle: Any) -> None:
        self.cancel_timer()
        self._timer_handle = handle

    @property
    def has_timer(self) -> bool:
        return self._timer_handle is not None

    def claim(self, generation: int) -> bool:
        """
        Claim the right to act on ``generation``.

        Returns False when the generation is no longer current or another
        handler already claimed it. Runs without suspension points so it is
        atomic on the event loop.
        """
        if generation != self.generation or self._claimed_generation == generation:
            return False
        self._claimed_generation = generation
        self.cancel_timer()
        return True

    @property
    def is_claimed(self) -> bool:
        return self._claimed_generation == self.generation

    def has_settled(self, result: TaskResult) -> bool:
        return result.delivery_key in self._settled_results

    def mark_settled(self, result: TaskResult) -> None:
        """Remember a result that settled an attempt so a redelivery of it is recognized."""
        self._settled_results.add(result.delivery_key)

    def public_view(self) -> Dict[str, Any]:
        return self.to_wire()

    def to_checkpoint(self) -> "TaskCheckpoint":
        return TaskCheckpoint(
            task_id=self.task_id,
            capability=self.capability,
            dispatched_to=self.dispatched_to,
            dispatched_at=self.dispatched_at or utc_now(),
            status=self.status,
            attempts=self.attempts,
            generation=self.generation,
            timeout_seconds=self.timeout_seconds,
            priority=self.priority,
            payload=self.payload,
            created_at=self.created_at,
        )


class TaskCheckpoint(WireModel):
    """Durable snapshot of a non-terminal task used for restart recovery."""
    task_id: str
    capability: str
    dispatched_to: Optional[str] = None
    dispatched_at: datetime
    status: TaskState = TaskState.DISPATCHED
    attempts: int = 1
    max_attempts: int = MAX_ATTEMPTS
    generation: int = 1
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    priority: int = DEFAULT_PRIORITY
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("dispatched_at", "created_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        """Time left before this attempt times out; never negative."""
        now = now or utc_now()
        deadline = self.dispatched_at + timedelta(seconds=self.timeout_seconds)
        return max(0.0, (deadline - now).total_seconds())

    def to_status(self) -> TaskStatus:
        return TaskStatus(
            task_id=self.task_id,
            capability=self.capability,
            dispatched_to=self.dispatched_to,
            dispatched_at=self.dispatched_at,
            status=self.status,
            attempts=self.attempts,
            payload=self.payload,
            priority=self.priority,
            timeout_seconds=self.timeout_seconds,
            generation=self.generation,
            created_at=self.created_at,
        )


class AgentScoreCard(WireModel):
    """Ephemeral ranking of one agent for one capability."""
    agent_id: str
    capability: str
    base_weight: float
    dependency_health: float = Field(..., ge=0.0, le=1.0)
    rolling_success_rate: float = Field(..., ge=0.0, le=1.0)
    recency_boost: float
    final_score: float
    preferred: bool = Field(default=False, exclude=True)


class TaskOutcome(WireModel):
    """One entry of the outcome history consumed by the scorer."""
    task_id: str
    agent_id: str
    capability: str
    success: bool
    duration_ms: float = 0
    error_type: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_result(cls, result: TaskResult, capability: str) -> "TaskOutcome":
        return cls(
            task_id=result.task_id,
            agent_id=result.agent_id,
            capability=capability,
            success=result.success,
            duration_ms=result.duration_ms,
            error_type=result.error_type,
            recorded_at=ensure_utc(result.completed_at),
        )


class MeshEvent(WireModel):
    """Trace event emitted around task lifecycle transitions."""
    trace_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_id: Optional[str] = None
    agent_id: str
    event_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class DispatchDecision(WireModel):
    """Returned to the submitter once a task has been dispatched."""
    task_id: str
    dispatched_to: str
    score: float
    status: TaskState = TaskState.DISPATCHED
