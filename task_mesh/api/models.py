"""
API request/response models for the Task Mesh control plane.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..models.core import WireModel, utc_now


class CreateTaskRequest(WireModel):
    """Request model for submitting a task."""
    capability: str = Field(..., min_length=1, description="Capability the task requires")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Opaque task input")
    priority: Optional[int] = Field(default=None, ge=0, le=10, description="0 (lowest) to 10 (highest)")
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-attempt timeout in seconds")


class ErrorResponse(WireModel):
    """Error response model."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")


class HealthCheck(WireModel):
    """Liveness probe response."""
    status: str = Field(..., description="Service status")
    service: str = Field(..., description="Orchestrator app id")
    tasks: int = Field(..., description="Number of actively tracked tasks")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    agents: Optional[Dict[str, Any]] = Field(None, description="Registry summary")
    metrics: Optional[Dict[str, Any]] = Field(None, description="Orchestrator counters")
    resources: Optional[Dict[str, float]] = Field(None, description="Process resource usage")


class AgentList(WireModel):
    """All registered agents."""
    agents: List[Dict[str, Any]]


class ScorePreview(WireModel):
    """Ranked candidates for a capability."""
    capability: str
    scores: List[Dict[str, Any]]


class AgentHistory(WireModel):
    """Recent outcomes of one agent."""
    agent_id: str
    history: List[Dict[str, Any]]


class DeliveryAck(WireModel):
    """Answer to the bus for an inbound delivery."""
    status: str = Field(..., pattern="^(SUCCESS|DROP|RETRY)$")
