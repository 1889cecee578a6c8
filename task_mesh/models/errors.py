"""
Error handling models and exceptions for Task Mesh.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Categories of errors."""
    NETWORK = "network"
    VALIDATION = "validation"
    AVAILABILITY = "availability"
    PERSISTENCE = "persistence"
    AGENT_COMMUNICATION = "agent_communication"
    SYSTEM = "system"


class ErrorDetails(BaseModel):
    """Detailed error information."""
    error_id: str = Field(..., min_length=1)
    category: ErrorCategory
    severity: ErrorSeverity
    message: str = Field(..., min_length=1)
    details: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    recoverable: bool = True


# Custom exceptions
class TaskMeshError(Exception):
    """Base exception for Task Mesh."""

    retryable = False

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.SYSTEM,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **kwargs):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = kwargs


class ValidationError(TaskMeshError):
    """Malformed submission or malformed result delivery. Never retried."""

    def __init__(self, message: str, issues: Optional[List[Dict[str, Any]]] = None, **kwargs):
        super().__init__(message, ErrorCategory.VALIDATION, ErrorSeverity.HIGH, **kwargs)
        self.issues = issues or []

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError, message: str = "Invalid request") -> "ValidationError":
        issues = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        return cls(message, issues=issues)


class NoAgentsAvailableError(TaskMeshError):
    """No registered or no healthy agent offers the requested capability."""

    def __init__(self, capability: str, reason: str = "No agents available", **kwargs):
        super().__init__(reason, ErrorCategory.AVAILABILITY, ErrorSeverity.MEDIUM,
                         capability=capability, **kwargs)
        self.capability = capability


class PersistenceError(TaskMeshError):
    """Checkpoint, history or registry store write failed."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.PERSISTENCE, ErrorSeverity.HIGH, **kwargs)


class NetworkError(TaskMeshError):
    """Network-related errors (bus sidecar, health probes)."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, **kwargs)


class AgentCommunicationError(TaskMeshError):
    """Publishing to or subscribing on the message bus failed."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.AGENT_COMMUNICATION, ErrorSeverity.HIGH, **kwargs)


T = TypeVar("T")


@dataclass
class ParseOutcome(Generic[T]):
    """
    Result of validating an inbound message at the boundary.

    Exactly one of ``value`` and ``error`` is set. ``retryable`` tells the
    caller whether redelivering the same message could ever succeed.
    """
    value: Optional[T] = None
    error: Optional[ValidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        return False if self.error is None else self.error.retryable


def parse_model(model_cls: type, data: Any, message: str = "Invalid payload") -> ParseOutcome:
    """
    Validate ``data`` against a pydantic model without raising.

    Args:
        model_cls: Pydantic model class to validate against
        data: Raw decoded JSON
        message: Error message used when validation fails

    Returns:
        ParseOutcome: Parsed model or a ValidationError
    """
    try:
        return ParseOutcome(value=model_cls.model_validate(data))
    except PydanticValidationError as e:
        return ParseOutcome(error=ValidationError.from_pydantic(e, message))
