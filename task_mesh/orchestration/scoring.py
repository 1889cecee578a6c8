"""
Agent scoring.

For each candidate declaring a capability::

    final = base_weight * dependency_health * (0.5 + 0.5 * success_rate) * recency_boost

``success_rate`` is a recency-weighted ratio over the last ``rolling_window``
outcomes (newest weight 1, each older one multiplied by ``recency_decay``).
"""

import asyncio
from typing import Dict, List, Optional, Sequence

from ..models.core import AgentRegistration, AgentScoreCard, TaskOutcome, TaskResult
from ..persistence.task_history import InMemoryTaskHistory, TaskHistoryStore
from ..utils.config import ScoringConfig
from ..utils.logging import LoggerMixin
from ..utils.monitoring import MetricsCollector
from .health import DependencyHealthSource, HealthProber

MIN_RECENCY_BOOST = 0.9
MAX_RECENCY_BOOST = 1.1


def weighted_success_rate(outcomes: Sequence[TaskOutcome], decay: float) -> Optional[float]:
    """
    Recency-weighted success ratio of ``outcomes`` (newest first).

    Returns:
        Optional[float]: None when there are no outcomes
    """
    if not outcomes:
        return None
    weighted_success = 0.0
    total_weight = 0.0
    for i, outcome in enumerate(outcomes):
        weight = decay ** i
        total_weight += weight
        if outcome.success:
            weighted_success += weight
    return weighted_success / total_weight


class AgentScorer(LoggerMixin):
    """Ranks candidate agents for a capability and records task outcomes."""

    def __init__(
        self,
        history: Optional[TaskHistoryStore] = None,
        health: Optional[DependencyHealthSource] = None,
        config: Optional[ScoringConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or ScoringConfig()
        self.history = history or InMemoryTaskHistory()
        self.health = health or HealthProber(
            timeout=self.config.health_check_timeout_seconds,
            cache_seconds=self.config.health_cache_seconds,
        )
        self.metrics = metrics
        self._last_dispatched: Dict[str, str] = {}

    async def _recent_outcomes(self, agent_id: str, capability: str) -> List[TaskOutcome]:
        try:
            return await self.history.recent(agent_id, capability, self.config.rolling_window)
        except Exception as e:
            self.logger.warning(
                "Outcome history unavailable, scoring with neutral rate",
                agent_id=agent_id,
                capability=capability,
                error=str(e),
            )
            return []

    def _recency_boost(self, agent_id: str, capability: str, outcomes: Sequence[TaskOutcome]) -> float:
        boost = 1.0
        streak = outcomes[:self.config.recovery_streak]
        if len(streak) >= self.config.recovery_streak and all(o.success for o in streak):
            boost *= self.config.recovery_boost
        if self._last_dispatched.get(capability) == agent_id:
            boost *= self.config.last_used_penalty
        return min(MAX_RECENCY_BOOST, max(MIN_RECENCY_BOOST, boost))

    async def _score_one(self, agent: AgentRegistration, capability: str) -> Optional[AgentScoreCard]:
        cap = agent.capability(capability)
        if cap is None:
            return None

        dependency_health = await self.health.dependency_health(agent, capability)
        if dependency_health <= 0:
            self.logger.info("Agent excluded, dependencies unhealthy", agent_id=agent.app_id, capability=capability)
            return None

        outcomes = await self._recent_outcomes(agent.app_id, capability)
        rate = weighted_success_rate(outcomes, self.config.recency_decay)
        if rate is None:
            rate = self.config.neutral_success_rate
        recency_boost = self._recency_boost(agent.app_id, capability, outcomes)

        final_score = cap.weight * dependency_health * (0.5 + 0.5 * rate) * recency_boost
        return AgentScoreCard(
            agent_id=agent.app_id,
            capability=capability,
            base_weight=cap.weight,
            dependency_health=dependency_health,
            rolling_success_rate=rate,
            recency_boost=recency_boost,
            final_score=final_score,
            preferred=cap.preferred,
        )

    async def score(self, candidates: Sequence[AgentRegistration], capability: str) -> List[AgentScoreCard]:
        """
        Rank candidates for ``capability``, best first.

        Candidates that do not declare the capability, or whose probed
        dependencies are all unhealthy, are left out. Ties go to preferred
        capabilities, then to the lexicographically smaller app id.
        """
        cards = await asyncio.gather(*(self._score_one(agent, capability) for agent in candidates))
        scored = [card for card in cards if card is not None]
        scored.sort(key=lambda card: (-card.final_score, not card.preferred, card.agent_id))
        return scored

    def record_dispatch(self, agent_id: str, capability: str) -> None:
        """Remember the most recent dispatch target for load spreading."""
        self._last_dispatched[capability] = agent_id

    async def record_task_result(self, result: TaskResult, capability: str) -> bool:
        """
        Append an outcome to the history. Never raises.

        Returns:
            bool: True when the outcome was stored
        """
        try:
            await self.history.record(TaskOutcome.from_result(result, capability))
            return True
        except Exception as e:
            self.log_operation_error("record_task_result", e, task_id=result.task_id, agent_id=result.agent_id)
            if self.metrics is not None:
                self.metrics.increment_counter("best_effort_failures", tags={"operation": "record_outcome"})
            return False

    async def get_agent_history(self, agent_id: str, limit: int = 20) -> List[TaskOutcome]:
        """Recent outcomes of one agent across capabilities, newest first."""
        return await self.history.for_agent(agent_id, limit)
