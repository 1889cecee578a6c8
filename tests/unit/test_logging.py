"""
Unit tests for structured logging helpers.
"""

import uuid
from typing import Any, Dict

import pytest
import structlog

from task_mesh.models.core import AgentCapability, TaskRequest
from task_mesh.orchestration.bus import InMemoryMessageBus
from task_mesh.orchestration.registry import AgentRegistry
from task_mesh.persistence.state_store import InMemoryStateStore
from task_mesh.utils.logging import LoggerMixin, task_context

from tests.helpers import EchoAgent


class ContextRecordingAgent(EchoAgent):
    """Records the log context visible while a task runs."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.contexts = []

    async def handle(self, request: TaskRequest) -> Dict[str, Any]:
        self.contexts.append(structlog.contextvars.get_contextvars())
        return await super().handle(request)


class Component(LoggerMixin):
    def __init__(self, node: str):
        self.node = node

    def log_context(self) -> Dict[str, Any]:
        return {"node": self.node}


class TestTaskContext:
    """Test task-scoped context binding."""

    def test_binds_task_fields_only_inside_block(self):
        with task_context("task-1", attempt=2):
            inside = structlog.contextvars.get_contextvars()

        assert inside["task_id"] == "task-1"
        assert inside["attempt"] == 2
        assert "task_id" not in structlog.contextvars.get_contextvars()

    def test_nested_blocks_restore_outer_task(self):
        with task_context("outer"):
            with task_context("inner"):
                assert structlog.contextvars.get_contextvars()["task_id"] == "inner"
            assert structlog.contextvars.get_contextvars()["task_id"] == "outer"


class TestLoggerMixin:
    """Test component identity binding."""

    def test_logger_is_bound_to_component_identity(self):
        component = Component("node-7")

        assert structlog.get_context(component.logger)["node"] == "node-7"
        assert component.logger is component.logger

    def test_operation_errors_are_logged_with_context(self):
        component = Component("node-7")

        with structlog.testing.capture_logs() as logs:
            component.log_operation_error("checkpoint", ValueError("disk full"), task_id="t-1")

        assert logs == [
            {
                "event": "Operation failed",
                "log_level": "error",
                "node": "node-7",
                "operation": "checkpoint",
                "error": "disk full",
                "error_type": "ValueError",
                "task_id": "t-1",
            }
        ]

    @pytest.mark.asyncio
    async def test_orchestrator_logger_carries_service_id(self, mesh):
        context = structlog.get_context(mesh.orchestrator.logger)

        assert context["service"] == mesh.orchestrator.config.app_id

    @pytest.mark.asyncio
    async def test_agent_runs_tasks_inside_task_context(self):
        agent = ContextRecordingAgent(
            app_id="code-reviewer",
            name="Code Reviewer",
            capabilities=[AgentCapability(name="code-review", weight=0.9)],
            registry=AgentRegistry(InMemoryStateStore()),
            bus=InMemoryMessageBus(),
            heartbeat_interval=0,
        )
        task_id = str(uuid.uuid4())
        request = TaskRequest(id=task_id, capability="code-review", requested_by="orchestrator", attempt=2)

        await agent.on_task(request)

        assert agent.contexts[0]["task_id"] == task_id
        assert agent.contexts[0]["attempt"] == 2
        assert structlog.get_context(agent.logger)["app_id"] == "code-reviewer"
        assert "task_id" not in structlog.contextvars.get_contextvars()
