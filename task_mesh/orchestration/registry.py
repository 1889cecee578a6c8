"""
Agent registry: a directory of agent registrations over a key/value store.

Each registration lives under ``agent:<appId>``; ``agent:_index`` holds the
list of known app ids. The two writes are not transactional, so readers
tolerate index entries without a record and heartbeats re-add records
missing from the index.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.core import (
    DEGRADED_AFTER_SECONDS,
    OFFLINE_AFTER_SECONDS,
    AgentRegistration,
    AgentStatus,
    utc_now,
)
from ..models.errors import PersistenceError
from ..persistence.state_store import StateStore
from ..utils.logging import get_logger

REGISTRY_PREFIX = "agent:"
INDEX_KEY = "agent:_index"

logger = get_logger(__name__)


class AgentRegistry:
    """Stores registrations and derives liveness from heartbeat age on read."""

    def __init__(
        self,
        store: StateStore,
        degraded_after_seconds: float = DEGRADED_AFTER_SECONDS,
        offline_after_seconds: float = OFFLINE_AFTER_SECONDS,
    ):
        self.store = store
        self.degraded_after_seconds = degraded_after_seconds
        self.offline_after_seconds = offline_after_seconds

    @staticmethod
    def _key(app_id: str) -> str:
        return f"{REGISTRY_PREFIX}{app_id}"

    def _with_liveness(self, registration: AgentRegistration, now: Optional[datetime] = None) -> AgentRegistration:
        computed = registration.with_computed_status(
            now,
            degraded_after=self.degraded_after_seconds,
            offline_after=self.offline_after_seconds,
        )
        # An explicit offline mark holds while the heartbeat is still fresh.
        if registration.status == AgentStatus.OFFLINE and computed.status == AgentStatus.ONLINE:
            return registration
        return computed

    async def _load(self, app_id: str) -> Optional[AgentRegistration]:
        raw = await self.store.get(self._key(app_id))
        if raw is None:
            return None
        return AgentRegistration.model_validate(raw)

    async def _save(self, registration: AgentRegistration) -> None:
        await self.store.save(self._key(registration.app_id), registration.to_wire())

    async def _get_index(self) -> List[str]:
        index = await self.store.get(INDEX_KEY)
        return list(index or [])

    async def _add_to_index(self, app_id: str) -> None:
        index = await self._get_index()
        if app_id not in index:
            index.append(app_id)
            await self.store.save(INDEX_KEY, index)

    async def _remove_from_index(self, app_id: str) -> None:
        index = await self._get_index()
        if app_id in index:
            await self.store.save(INDEX_KEY, [entry for entry in index if entry != app_id])

    async def register(self, registration: AgentRegistration) -> None:
        """
        Insert or replace a registration and make sure it is indexed.

        Args:
            registration: Registration supplied by the agent
        """
        try:
            await self._save(registration)
            await self._add_to_index(registration.app_id)
        except Exception as e:
            logger.error("Failed to register agent", app_id=registration.app_id, error=str(e))
            raise PersistenceError(f"Failed to register agent: {e}", app_id=registration.app_id) from e

        logger.info(
            "Registered agent",
            app_id=registration.app_id,
            capabilities=[cap.name for cap in registration.capabilities],
        )

    async def heartbeat(self, app_id: str) -> bool:
        """
        Refresh an agent's heartbeat.

        Returns:
            bool: False when the agent is unknown (not an error)
        """
        registration = await self._load(app_id)
        if registration is None:
            logger.debug("Heartbeat from unknown agent ignored", app_id=app_id)
            return False

        registration.last_heartbeat = utc_now()
        registration.status = AgentStatus.ONLINE
        await self._save(registration)
        await self._add_to_index(app_id)
        return True

    async def get(self, app_id: str) -> Optional[AgentRegistration]:
        """Get one registration with its liveness recomputed."""
        registration = await self._load(app_id)
        if registration is None:
            return None
        return self._with_liveness(registration)

    async def list_all(self) -> List[AgentRegistration]:
        """All indexed registrations with liveness recomputed."""
        now = utc_now()
        agents = []
        for app_id in await self._get_index():
            registration = await self._load(app_id)
            if registration is None:
                logger.debug("Index entry without registration skipped", app_id=app_id)
                continue
            agents.append(self._with_liveness(registration, now))
        return agents

    async def find_by_capability(self, capability: str) -> List[AgentRegistration]:
        """Non-offline agents that declare ``capability``."""
        return [
            agent
            for agent in await self.list_all()
            if agent.status != AgentStatus.OFFLINE and agent.has_capability(capability)
        ]

    async def mark_offline(self, app_id: str) -> bool:
        """Overwrite the stored status with offline (controlled shutdown)."""
        registration = await self._load(app_id)
        if registration is None:
            return False
        registration.status = AgentStatus.OFFLINE
        await self._save(registration)
        logger.info("Marked agent offline", app_id=app_id)
        return True

    async def deregister(self, app_id: str) -> None:
        """Remove the registration and its index entry."""
        try:
            await self.store.delete(self._key(app_id))
            await self._remove_from_index(app_id)
        except Exception as e:
            logger.error("Failed to deregister agent", app_id=app_id, error=str(e))
            raise PersistenceError(f"Failed to deregister agent: {e}", app_id=app_id) from e
        logger.info("Deregistered agent", app_id=app_id)

    async def get_registry_status(self) -> Dict[str, Any]:
        """Summary counts of registered agents by status and capability."""
        agents = await self.list_all()
        by_status = Counter(agent.status.value for agent in agents)
        by_capability = Counter(cap.name for agent in agents for cap in agent.capabilities)
        return {
            "total_agents": len(agents),
            "by_status": {status.value: by_status.get(status.value, 0) for status in AgentStatus},
            "capabilities": dict(by_capability),
        }
