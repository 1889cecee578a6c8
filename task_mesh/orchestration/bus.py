"""
Message bus used for task dispatch and result delivery.

Outbound task requests go to ``tasks.<appId>``; results come back on the
shared results topic. Delivery is at-least-once, so subscribers must be
idempotent.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

import httpx

from ..models.errors import AgentCommunicationError
from ..utils.config import BusConfig
from ..utils.error_handler import ErrorHandler, RetryConfig
from ..utils.logging import get_logger

MessageHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

logger = get_logger(__name__)


def task_topic(app_id: str, prefix: str = "tasks.") -> str:
    """Dedicated topic of one agent."""
    return f"{prefix}{app_id}"


class MessageBus(ABC):
    """Topic-based publish/subscribe."""

    def __init__(self):
        self._handlers: Dict[str, List[MessageHandler]] = defaultdict(list)
        self.stats = {
            "published": 0,
            "delivered": 0,
            "delivery_failures": 0,
        }

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Register ``handler`` for messages on ``topic``."""
        self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: MessageHandler) -> None:
        handlers = self._handlers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def topics(self) -> List[str]:
        return [topic for topic, handlers in self._handlers.items() if handlers]

    async def deliver(self, topic: str, data: Dict[str, Any]) -> int:
        """
        Hand an inbound message to the local subscribers of ``topic``.

        Handler failures are logged and counted; they never propagate to the
        transport, which must always be acknowledged.

        Returns:
            int: Number of handlers that completed without raising
        """
        delivered = 0
        for handler in list(self._handlers.get(topic, [])):
            try:
                await handler(data)
                delivered += 1
            except Exception as e:
                self.stats["delivery_failures"] += 1
                logger.error("Message handler failed", topic=topic, error=str(e), error_type=type(e).__name__)
        self.stats["delivered"] += delivered
        return delivered

    @abstractmethod
    async def publish(self, topic: str, data: Dict[str, Any]) -> None:
        """Publish ``data`` to ``topic``; raises AgentCommunicationError on failure."""

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def get_statistics(self) -> Dict[str, Any]:
        return {**self.stats, "active_topics": len(self.topics())}


class InMemoryMessageBus(MessageBus):
    """
    In-process bus for tests and single-process deployments.

    Messages are JSON round-tripped, as on a real wire, and delivered on
    separate tasks so publishers never run subscriber code inline.
    """

    def __init__(self, log_size: int = 1000):
        super().__init__()
        self.message_log: Deque[Dict[str, Any]] = deque(maxlen=log_size)
        self._inflight: Set[asyncio.Task] = set()

    async def publish(self, topic: str, data: Dict[str, Any]) -> None:
        try:
            wire = json.loads(json.dumps(data, default=str))
        except (TypeError, ValueError) as e:
            raise AgentCommunicationError(f"Message not serializable: {e}", topic=topic) from e

        self.stats["published"] += 1
        self.message_log.append({"topic": topic, "data": wire})
        task = asyncio.create_task(self.deliver(topic, wire))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def published(self, topic: Optional[str] = None) -> List[Dict[str, Any]]:
        """Messages published so far, optionally filtered by topic."""
        return [entry["data"] for entry in self.message_log if topic is None or entry["topic"] == topic]

    async def drain(self) -> None:
        """Wait until every in-flight delivery has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._inflight):
            task.cancel()
        self._inflight.clear()


class DaprMessageBus(MessageBus):
    """
    Publishes through the Dapr sidecar HTTP API.

    Inbound messages arrive as HTTP calls on the routes declared by
    ``subscriptions()``. The web application owns those routes and hands each
    delivery straight to its consumer, so nothing subscribes locally.
    """

    def __init__(
        self,
        config: Optional[BusConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        super().__init__()
        self.config = config or BusConfig()
        self.base_url = f"http://{self.config.dapr_host}:{self.config.dapr_http_port}"
        self._client = client
        self._owns_client = client is None
        self.error_handler = error_handler or ErrorHandler()
        self.retry_config = RetryConfig(
            max_retries=self.config.publish_max_retries,
            base_delay=0.2,
            max_delay=2.0,
        )
        self._routes: Dict[str, str] = {}

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.publish_timeout_seconds)

    def publish_url(self, topic: str) -> str:
        return f"{self.base_url}/v1.0/publish/{self.config.pubsub_name}/{topic}"

    def add_route(self, topic: str, route: str) -> None:
        """Declare the HTTP route on which the sidecar delivers ``topic``."""
        self._routes[topic] = route

    def subscriptions(self) -> List[Dict[str, str]]:
        """Programmatic subscription list served on ``/dapr/subscribe``."""
        return [
            {"pubsubname": self.config.pubsub_name, "topic": topic, "route": route}
            for topic, route in self._routes.items()
        ]

    async def _post(self, topic: str, data: Dict[str, Any]) -> None:
        response = await self._client.post(self.publish_url(topic), json=data)
        response.raise_for_status()

    async def publish(self, topic: str, data: Dict[str, Any]) -> None:
        if self._client is None:
            await self.start()

        async def operation():
            await self.error_handler.with_circuit_breaker(
                lambda: self._post(topic, data),
                service_name="dapr-sidecar",
                context={"topic": topic},
            )

        try:
            await self.error_handler.with_retry(
                operation,
                retry_config=self.retry_config,
                error_types=(httpx.HTTPError,),
                context={"topic": topic},
            )
        except Exception as e:
            raise AgentCommunicationError(f"Failed to publish to {topic}: {e}", topic=topic) from e

        self.stats["published"] += 1

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
