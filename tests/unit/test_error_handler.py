"""
Unit tests for the centralized error handling system.
"""

import asyncio
import time

import pytest

from task_mesh.models.errors import ErrorCategory, ErrorSeverity, NetworkError, PersistenceError, ValidationError
from task_mesh.utils.error_handler import (
    BestEffortRunner,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    ErrorHandler,
    RetryConfig,
)
from task_mesh.utils.monitoring import MetricsCollector


class TestRetryConfig:
    """Test retry configuration."""

    def test_default_config(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 60.0
        assert config.backoff_factor == 2.0
        assert config.jitter is True

    def test_delay_without_jitter_is_exponential_and_capped(self):
        config = RetryConfig(base_delay=0.5, max_delay=3.0, backoff_factor=2.0, jitter=False)
        assert config.delay_for(0) == 0.5
        assert config.delay_for(1) == 1.0
        assert config.delay_for(2) == 2.0
        assert config.delay_for(5) == 3.0

    def test_jitter_stays_within_half_to_full_delay(self):
        config = RetryConfig(base_delay=1.0, jitter=True)
        for _ in range(20):
            assert 0.5 <= config.delay_for(0) <= 1.0


class TestCircuitBreaker:
    """Test circuit breaker implementation."""

    @pytest.fixture
    def circuit_breaker(self):
        config = CircuitBreakerConfig(failure_threshold=2, recovery_timeout=0.2)
        return CircuitBreaker(config)

    @pytest.fixture
    def failing_function(self):
        def func():
            raise NetworkError("Test network error")
        return func

    @pytest.fixture
    def success_function(self):
        def func():
            return "success"
        return func

    def test_initial_state(self, circuit_breaker):
        assert circuit_breaker.state == CircuitBreakerState.CLOSED
        assert circuit_breaker.failure_count == 0
        assert circuit_breaker.last_failure_time is None
        assert circuit_breaker.is_open is False

    @pytest.mark.asyncio
    async def test_successful_call(self, circuit_breaker, success_function):
        result = await circuit_breaker.call(success_function)
        assert result == "success"
        assert circuit_breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_circuit_opens_after_threshold(self, circuit_breaker, failing_function):
        for _ in range(2):
            with pytest.raises(NetworkError):
                await circuit_breaker.call(failing_function)

        assert circuit_breaker.state == CircuitBreakerState.OPEN
        assert circuit_breaker.failure_count == 2
        assert circuit_breaker.is_open is True

    @pytest.mark.asyncio
    async def test_open_circuit_blocks_calls(self, circuit_breaker, failing_function, success_function):
        for _ in range(2):
            with pytest.raises(NetworkError):
                await circuit_breaker.call(failing_function)

        with pytest.raises(NetworkError) as exc_info:
            await circuit_breaker.call(success_function)

        assert "Circuit breaker is OPEN" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_half_open_state_recovery(self, circuit_breaker, failing_function, success_function):
        for _ in range(2):
            with pytest.raises(NetworkError):
                await circuit_breaker.call(failing_function)

        await asyncio.sleep(0.25)

        result = await circuit_breaker.call(success_function)
        assert result == "success"
        assert circuit_breaker.state == CircuitBreakerState.CLOSED
        assert circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_awaitable_results_are_awaited(self, circuit_breaker):
        async def async_func(value):
            return value

        assert await circuit_breaker.call(async_func, "async_success") == "async_success"
        assert await circuit_breaker.call(lambda: async_func("from_lambda")) == "from_lambda"


class TestErrorHandler:
    """Test centralized error handler."""

    @pytest.fixture
    def handler(self):
        return ErrorHandler()

    def test_circuit_breaker_is_shared_per_service(self, handler):
        breaker = handler.get_circuit_breaker("dapr-sidecar", CircuitBreakerConfig(failure_threshold=3))

        assert breaker.config.failure_threshold == 3
        assert handler.get_circuit_breaker("dapr-sidecar") is breaker

    @pytest.mark.asyncio
    async def test_retry_success_after_failures(self, handler):
        calls = []

        def operation():
            calls.append(1)
            if len(calls) < 3:
                raise NetworkError("Temporary failure")
            return "success"

        result = await handler.with_retry(operation, RetryConfig(max_retries=3, base_delay=0.01), (NetworkError,))

        assert result == "success"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_retry_exhaustion_reraises(self, handler):
        def operation():
            raise ValidationError("Permanent failure")

        with pytest.raises(ValidationError):
            await handler.with_retry(operation, RetryConfig(max_retries=2, base_delay=0.01), (ValidationError,))

    @pytest.mark.asyncio
    async def test_unlisted_errors_are_not_retried(self, handler):
        calls = []

        async def operation():
            calls.append(1)
            raise ValueError("not transient")

        with pytest.raises(ValueError):
            await handler.with_retry(operation, RetryConfig(max_retries=3, base_delay=0.01), (NetworkError,))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retry_with_exponential_backoff(self, handler):
        call_times = []

        def operation():
            call_times.append(time.monotonic())
            if len(call_times) < 3:
                raise NetworkError("Temporary failure")
            return "success"

        config = RetryConfig(max_retries=3, base_delay=0.05, backoff_factor=2.0, jitter=False)
        assert await handler.with_retry(operation, config, (NetworkError,)) == "success"

        assert call_times[1] - call_times[0] >= 0.05
        assert call_times[2] - call_times[1] >= 0.1

    @pytest.mark.asyncio
    async def test_circuit_breaker_integration(self, handler):
        calls = []

        def operation():
            calls.append(1)
            raise NetworkError("Service unavailable")

        config = CircuitBreakerConfig(failure_threshold=2, expected_exception=NetworkError)
        for _ in range(2):
            with pytest.raises(NetworkError):
                await handler.with_circuit_breaker(operation, "test_service", config)

        with pytest.raises(NetworkError) as exc_info:
            await handler.with_circuit_breaker(operation, "test_service", config)

        assert "Circuit breaker is OPEN" in str(exc_info.value)
        assert len(calls) == 2
        assert handler.get_error_stats()["test_service"]["network"] == 3

    def test_error_classification(self, handler):
        assert handler._classify_error(ConnectionError("x")) == ErrorCategory.NETWORK
        assert handler._classify_error(ValueError("x")) == ErrorCategory.VALIDATION
        assert handler._classify_error(RuntimeError("x")) == ErrorCategory.SYSTEM

    def test_create_error_details_from_task_mesh_error(self, handler):
        error = PersistenceError("disk full", task_id="t-1")
        details = handler.create_error_details(error, {"task_id": "t-1"})

        assert details.category == ErrorCategory.PERSISTENCE
        assert details.severity == ErrorSeverity.HIGH
        assert details.task_id == "t-1"
        assert details.recoverable is True


class TestBestEffortRunner:
    """Best-effort side effects never propagate failures."""

    @pytest.mark.asyncio
    async def test_run_returns_true_on_success(self):
        runner = BestEffortRunner()
        seen = []

        async def operation():
            seen.append("ran")

        assert await runner.run(operation, "write") is True
        assert seen == ["ran"]

    @pytest.mark.asyncio
    async def test_run_swallows_and_counts_failures(self):
        metrics = MetricsCollector()
        runner = BestEffortRunner(metrics)

        async def operation():
            raise PersistenceError("database is locked")

        assert await runner.run(operation, "save_checkpoint", task_id="t-1") is False
        assert metrics.get_counter("best_effort_failures") == 1
        assert metrics.get_counter("best_effort_failures", tags={"operation": "save_checkpoint"}) == 1

    @pytest.mark.asyncio
    async def test_run_propagates_cancellation(self):
        runner = BestEffortRunner()

        async def operation():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await runner.run(operation, "emit_event")

    @pytest.mark.asyncio
    async def test_spawn_keeps_reference_until_done(self):
        runner = BestEffortRunner()
        gate = asyncio.Event()

        async def operation():
            await gate.wait()

        task = runner.spawn(operation, "emit_event")
        await asyncio.sleep(0)
        assert runner.pending_count == 1

        gate.set()
        await runner.drain(timeout=1.0)
        assert task.done()
        assert runner.pending_count == 0
