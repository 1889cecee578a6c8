"""
API routes for the Task Mesh control plane and bus inbound delivery.
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..models.core import AgentRegistration
from ..orchestration.bus import DaprMessageBus
from ..orchestration.orchestrator import ResultDisposition, TaskOrchestrator
from ..orchestration.registry import AgentRegistry
from ..utils.logging import get_logger
from ..utils.monitoring import process_resources
from .dependencies import RESULTS_ROUTE, ServiceComponents, get_components, get_orchestrator, get_registry
from .models import (
    AgentHistory,
    AgentList,
    CreateTaskRequest,
    DeliveryAck,
    HealthCheck,
    ScorePreview,
)

logger = get_logger(__name__)

router = APIRouter()


@router.get("/healthz", tags=["Health"])
async def health_check(components: ServiceComponents = Depends(get_components)):
    """Liveness probe."""
    orchestrator = components.orchestrator
    try:
        agents = await components.registry.get_registry_status()
    except Exception as e:
        logger.warning("Registry summary unavailable", error=str(e))
        agents = None
    return HealthCheck(
        status="ok",
        service=components.config.orchestrator.app_id,
        tasks=orchestrator.active_task_count,
        uptime_seconds=round(components.uptime_seconds, 3),
        agents=agents,
        metrics=orchestrator.get_metrics()["counters"],
        resources=process_resources(),
    ).to_wire()


@router.post("/tasks", status_code=status.HTTP_201_CREATED, tags=["Tasks"])
async def create_task(
    request: CreateTaskRequest,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
):
    """Submit a task for dispatch to the best available agent."""
    kwargs = {}
    if request.priority is not None:
        kwargs["priority"] = request.priority
    if request.timeout is not None:
        kwargs["timeout"] = request.timeout

    decision = await orchestrator.submit(request.capability, request.payload, **kwargs)
    return decision.to_wire()


@router.get("/tasks/{task_id}", tags=["Tasks"])
async def get_task(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    """Current status of a tracked or recently completed task."""
    task = orchestrator.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task.public_view()


@router.get("/agents", tags=["Agents"])
async def list_agents(orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    """All registered agents with liveness recomputed."""
    agents = await orchestrator.list_agents()
    return AgentList(agents=[agent.to_wire() for agent in agents]).to_wire()


@router.post("/agents", status_code=status.HTTP_201_CREATED, tags=["Agents"])
async def register_agent(
    registration: AgentRegistration,
    registry: AgentRegistry = Depends(get_registry),
):
    """Register or replace an agent."""
    await registry.register(registration)
    return {"status": "registered", "appId": registration.app_id}


@router.get("/agents/score/{capability}", tags=["Agents"])
async def preview_scores(capability: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    """Ranked candidates for a capability; no side effects."""
    scores = await orchestrator.preview_scores(capability)
    return ScorePreview(capability=capability, scores=[card.to_wire() for card in scores]).to_wire()


@router.post("/agents/{app_id}/heartbeat", tags=["Agents"])
async def heartbeat(app_id: str, registry: AgentRegistry = Depends(get_registry)):
    """Refresh an agent's heartbeat. Unknown agents are told to re-register."""
    known = await registry.heartbeat(app_id)
    return {"status": "ok", "appId": app_id, "known": known}


@router.delete("/agents/{app_id}", tags=["Agents"])
async def deregister_agent(app_id: str, registry: AgentRegistry = Depends(get_registry)):
    """Remove an agent from the registry."""
    await registry.deregister(app_id)
    return {"status": "deregistered", "appId": app_id}


@router.get("/agents/{app_id}/history", tags=["Agents"])
async def agent_history(
    app_id: str,
    limit: int = Query(default=20, ge=1, le=500),
    components: ServiceComponents = Depends(get_components),
):
    """Recent task outcomes of one agent."""
    outcomes = await components.scorer.get_agent_history(app_id, limit)
    return AgentHistory(agent_id=app_id, history=[outcome.to_wire() for outcome in outcomes]).to_wire()


@router.get("/dapr/subscribe", tags=["Bus"])
async def dapr_subscriptions(components: ServiceComponents = Depends(get_components)):
    """Programmatic pub/sub subscriptions for the Dapr sidecar."""
    bus = components.bus
    if isinstance(bus, DaprMessageBus):
        return bus.subscriptions()
    return [{
        "pubsubname": components.config.bus.pubsub_name,
        "topic": components.config.bus.results_topic,
        "route": RESULTS_ROUTE,
    }]


@router.post(RESULTS_ROUTE, tags=["Bus"])
async def receive_result(request: Request, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    """
    Inbound task results.

    Always answers 200: malformed deliveries are dropped, everything else is
    acknowledged whether or not it changed any state.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Dropping undecodable result delivery")
        return DeliveryAck(status="DROP").to_wire()

    data = body.get("data", body) if isinstance(body, dict) else body
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Dropping undecodable result delivery")
            return DeliveryAck(status="DROP").to_wire()

    try:
        disposition = await orchestrator.handle_result(data)
    except Exception as e:
        logger.error("Result handling failed", error=str(e), error_type=type(e).__name__)
        return DeliveryAck(status="SUCCESS").to_wire()

    if disposition == ResultDisposition.MALFORMED:
        return DeliveryAck(status="DROP").to_wire()
    return DeliveryAck(status="SUCCESS").to_wire()
