"""Dependency health probing for agent scoring."""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import httpx

from ..models.core import AgentRegistration
from ..utils.error_handler import CircuitBreakerConfig, ErrorHandler
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProbeResult:
    """Outcome of probing one health URL."""
    url: str
    healthy: bool
    message: str
    response_time_ms: Optional[float] = None


class DependencyHealthSource(ABC):
    """Supplies the dependency-health factor used in agent scores."""

    @abstractmethod
    async def dependency_health(self, agent: AgentRegistration, capability: str) -> float:
        """Fraction in [0, 1] of the capability's probed requirements that are healthy."""


class HealthProber(DependencyHealthSource):
    """
    Probes the health URLs an agent advertises for a capability's requirements.

    Requirements without a URL in ``healthChecks`` are not probed and do not
    count. Results are cached per URL for ``cache_seconds``; a URL that keeps
    failing trips its circuit breaker and is reported unhealthy without a
    request until the breaker's recovery window passes.
    """

    def __init__(
        self,
        timeout: float = 3.0,
        cache_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        error_handler: Optional[ErrorHandler] = None,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
    ):
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self._client = client
        self._owns_client = client is None
        self.error_handler = error_handler or ErrorHandler()
        self._breaker_config = CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )
        self._cache: Dict[str, Tuple[float, ProbeResult]] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _request(self, url: str) -> ProbeResult:
        start_time = time.monotonic()
        response = await self._get_client().get(url, timeout=self.timeout)
        response_time = (time.monotonic() - start_time) * 1000
        if response.is_success:
            return ProbeResult(url, True, "healthy", response_time)
        # Counted by the breaker as a failure.
        raise httpx.HTTPStatusError(
            f"Health check returned status {response.status_code}",
            request=response.request,
            response=response,
        )

    async def probe(self, url: str) -> ProbeResult:
        """Probe one URL, using the cache when fresh."""
        cached = self._cache.get(url)
        if cached is not None and time.monotonic() - cached[0] < self.cache_seconds:
            return cached[1]

        breaker = self.error_handler.get_circuit_breaker(f"health:{url}", self._breaker_config)
        try:
            result = await breaker.call(self._request, url)
        except httpx.TimeoutException:
            result = ProbeResult(url, False, "Health check timed out")
        except Exception as e:
            result = ProbeResult(url, False, f"Health check failed: {str(e)}")

        if not result.healthy:
            logger.debug("Dependency unhealthy", url=url, reason=result.message)
        self._cache[url] = (time.monotonic(), result)
        return result

    def probe_urls(self, agent: AgentRegistration, capability: str) -> List[str]:
        cap = agent.capability(capability)
        if cap is None:
            return []
        return [agent.health_checks[req] for req in cap.requirements if agent.health_checks.get(req)]

    async def dependency_health(self, agent: AgentRegistration, capability: str) -> float:
        urls = self.probe_urls(agent, capability)
        if not urls:
            return 1.0
        results = await asyncio.gather(*(self.probe(url) for url in urls))
        return sum(1 for result in results if result.healthy) / len(results)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
