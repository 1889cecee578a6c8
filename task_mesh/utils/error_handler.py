"""
Centralized error handling: retry logic, circuit breaker, and best-effort
execution of side effects that must never fail the caller.
"""

import asyncio
import inspect
import random
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Type

from ..models.errors import (
    ErrorCategory,
    ErrorDetails,
    ErrorSeverity,
    NetworkError,
    TaskMeshError,
)
from .logging import get_logger
from .monitoring import MetricsCollector


class CircuitBreakerState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_factor: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Type[Exception] = Exception
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception


class CircuitBreaker:
    """Circuit breaker for external endpoints (sidecar, health probes)."""

    def __init__(self, config: CircuitBreakerConfig):
        self.config = config
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = CircuitBreakerState.CLOSED
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.state == CircuitBreakerState.OPEN and not self._should_attempt_reset()

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        async with self._lock:
            if self.state == CircuitBreakerState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitBreakerState.HALF_OPEN
                else:
                    raise NetworkError(
                        "Circuit breaker is OPEN. Service unavailable.",
                        circuit_breaker_state=self.state.value,
                        failure_count=self.failure_count
                    )

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            await self._on_success()
            return result
        except self.config.expected_exception:
            await self._on_failure()
            raise

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (datetime.now() - self.last_failure_time).total_seconds() >= self.config.recovery_timeout

    async def _on_success(self):
        async with self._lock:
            self.failure_count = 0
            self.state = CircuitBreakerState.CLOSED

    async def _on_failure(self):
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.now()

            if self.failure_count >= self.config.failure_threshold:
                self.state = CircuitBreakerState.OPEN


class ErrorHandler:
    """Centralized error handling system."""

    def __init__(self):
        self.logger = get_logger(__name__)
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.error_stats: Dict[str, Dict[str, int]] = {}

    def get_circuit_breaker(self, service_name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """Get or create circuit breaker for a service."""
        if service_name not in self.circuit_breakers:
            config = config or CircuitBreakerConfig()
            self.circuit_breakers[service_name] = CircuitBreaker(config)
        return self.circuit_breakers[service_name]

    async def with_retry(
        self,
        operation: Callable,
        retry_config: Optional[RetryConfig] = None,
        error_types: Tuple[Type[Exception], ...] = (Exception,),
        context: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Execute operation with retry logic and exponential backoff."""
        config = retry_config or RetryConfig()
        context = context or {}

        for attempt in range(config.max_retries + 1):
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
                return result
            except error_types as e:
                if attempt == config.max_retries:
                    error_details = self.create_error_details(e, context, retry_count=attempt)
                    self._log_error(error_details)
                    raise

                delay = config.delay_for(attempt)
                self.logger.warning(
                    f"Operation failed (attempt {attempt + 1}/{config.max_retries + 1}). "
                    f"Retrying in {delay:.2f}s. Error: {str(e)}"
                )
                await asyncio.sleep(delay)

    async def with_circuit_breaker(
        self,
        operation: Callable,
        service_name: str,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Execute operation with circuit breaker protection."""
        circuit_breaker = self.get_circuit_breaker(service_name, circuit_config)
        context = context or {}

        try:
            return await circuit_breaker.call(operation)
        except Exception as e:
            error_details = self.create_error_details(e, context, service_name=service_name)
            self._log_error(error_details)
            raise

    def create_error_details(
        self,
        error: Exception,
        context: Dict[str, Any],
        agent_id: Optional[str] = None,
        service_name: Optional[str] = None,
        retry_count: int = 0
    ) -> ErrorDetails:
        """Create standardized error details."""
        if isinstance(error, TaskMeshError):
            category = error.category
            severity = error.severity
            message = error.message
        else:
            category = self._classify_error(error)
            severity = self._determine_severity(category)
            message = str(error) or type(error).__name__

        if service_name:
            context["service_name"] = service_name

        return ErrorDetails(
            error_id=str(uuid.uuid4()),
            category=category,
            severity=severity,
            message=message,
            details=f"{type(error).__name__}: {str(error)}",
            context=context,
            agent_id=agent_id or context.get("agent_id"),
            task_id=context.get("task_id"),
            retry_count=retry_count,
            recoverable=category != ErrorCategory.VALIDATION
        )

    def _classify_error(self, error: Exception) -> ErrorCategory:
        error_type = type(error).__name__.lower()

        if any(keyword in error_type for keyword in ["network", "connection", "timeout", "http"]):
            return ErrorCategory.NETWORK
        elif any(keyword in error_type for keyword in ["validation", "value", "type"]):
            return ErrorCategory.VALIDATION
        elif any(keyword in error_type for keyword in ["sql", "database", "operational", "integrity", "oserror"]):
            return ErrorCategory.PERSISTENCE
        return ErrorCategory.SYSTEM

    def _determine_severity(self, category: ErrorCategory) -> ErrorSeverity:
        if category in (ErrorCategory.VALIDATION, ErrorCategory.PERSISTENCE):
            return ErrorSeverity.HIGH
        elif category == ErrorCategory.NETWORK:
            return ErrorSeverity.MEDIUM
        return ErrorSeverity.LOW

    def _log_error(self, error_details: ErrorDetails):
        log_message = (
            f"Error {error_details.error_id}: {error_details.message} "
            f"[{error_details.category.value}/{error_details.severity.value}]"
        )
        self._update_error_stats(error_details.context.get("service_name", "core"), error_details.category.value)

        if error_details.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message, context=error_details.context)
        elif error_details.severity == ErrorSeverity.HIGH:
            self.logger.error(log_message, context=error_details.context)
        elif error_details.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(log_message, context=error_details.context)
        else:
            self.logger.info(log_message, context=error_details.context)

    def _update_error_stats(self, source: str, category: str):
        per_source = self.error_stats.setdefault(source, {})
        per_source[category] = per_source.get(category, 0) + 1

    def get_error_stats(self) -> Dict[str, Dict[str, int]]:
        """Get current error statistics."""
        return {source: dict(counts) for source, counts in self.error_stats.items()}


class BestEffortRunner:
    """
    Runs side effects whose failure must be logged and counted but never
    propagated: trace events, checkpoint writes, outcome recording.

    ``run`` awaits the operation in place; ``spawn`` schedules it without
    waiting and keeps a reference until it finishes so it is not garbage
    collected mid-flight.
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = get_logger(f"{__name__}.BestEffortRunner")
        self._pending: Set[asyncio.Task] = set()

    async def run(self, operation: Callable[[], Awaitable[Any]], description: str, **context: Any) -> bool:
        """
        Await ``operation`` and swallow any exception.

        Returns:
            bool: True when the operation completed without raising
        """
        try:
            await operation()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(
                "Best-effort operation failed",
                operation=description,
                error=str(e),
                error_type=type(e).__name__,
                **context
            )
            if self.metrics is not None:
                self.metrics.increment_counter("best_effort_failures", tags={"operation": description})
            return False

    def spawn(self, operation: Callable[[], Awaitable[Any]], description: str, **context: Any) -> asyncio.Task:
        """Schedule ``operation`` without waiting for it."""
        task = asyncio.create_task(self.run(operation, description, **context))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for spawned operations, e.g. before shutdown."""
        if not self._pending:
            return
        await asyncio.wait(list(self._pending), timeout=timeout)
