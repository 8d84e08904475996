"""Phase-weighted reward attribution.

A cycle outcome becomes a base reward, which is then split across the
memories used in the cycle according to the phases they were used in:

    memory_reward = base_reward * (sum of weights of phases used) / total weight

Default weights favour planning (0.30) and action (0.25) over
observation (0.15), reasoning (0.20) and reflection (0.10).
"""

from __future__ import annotations

import logging
from datetime import datetime

from orpar.config import PHASE_WEIGHT_TOLERANCE, PhaseWeights, RewardMapping
from orpar.cycle.types import CycleMemoryUsage, CycleOutcome, PhaseRewardAttribution
from orpar.events import EventBus, OrparMemoryEvent
from orpar.memory.qvalues import QValueStore, QValueUpdate
from orpar.phases import OrparPhase

logger = logging.getLogger(__name__)


class PhaseWeightedRewarder:
    """Turns cycle outcomes into per-memory Q-value updates."""

    def __init__(
        self,
        q_store: QValueStore,
        phase_weights: PhaseWeights | None = None,
        learning_rate: float = 0.1,
        reward_mapping: RewardMapping | None = None,
        events: EventBus | None = None,
    ):
        """Initialize the rewarder.

        Args:
            q_store: Store receiving the Q-value updates
            phase_weights: Share of reward per phase
            learning_rate: EMA rate attached to each update
            reward_mapping: Base rewards per outcome class (default: the Q store's)
            events: Event bus for observability
        """
        self.q_store = q_store
        self.phase_weights = phase_weights or PhaseWeights()
        self.reward_mapping = reward_mapping or q_store.config.reward_mapping
        self.events = events or EventBus()
        self._learning_rate = learning_rate

    def calculate_base_reward(self, outcome: CycleOutcome) -> float:
        """Map a cycle outcome to a base reward.

        Success earns the success reward scaled by quality_score when
        given. A failed cycle that still completed its task earns the
        partial reward; one with errors earns the failure reward;
        anything else is treated as a timeout.
        """
        mapping = self.reward_mapping
        if outcome.success:
            if outcome.quality_score is not None:
                return mapping.success * outcome.quality_score
            return mapping.success
        if outcome.task_completed:
            return mapping.partial
        if outcome.error_count > 0:
            return mapping.failure
        return mapping.timeout

    def calculate_rewards(
        self,
        usage: CycleMemoryUsage,
        outcome: CycleOutcome,
        task_id: str | None = None,
        agent_id: str | None = None,
        channel_id: str | None = None,
    ) -> list[PhaseRewardAttribution]:
        """Attribute a cycle's reward to each memory it used.

        Args:
            usage: Memories used per phase
            outcome: How the cycle ended
            task_id: Task the cycle worked on
            agent_id: Agent that ran the cycle (default: usage.agent_id)
            channel_id: Channel of the cycle (default: usage.channel_id)

        Returns:
            One attribution per distinct memory
        """
        agent_id = agent_id or usage.agent_id
        channel_id = channel_id or usage.channel_id
        base_reward = self.calculate_base_reward(outcome)
        weights = self.phase_weights.as_dict()
        total_weight = sum(weights.values())

        attributions: list[PhaseRewardAttribution] = []
        for memory_id in sorted(usage.memory_ids()):
            phases = usage.phases_for(memory_id)
            contributions = {phase: weights[phase] for phase in phases}
            used_weight = sum(contributions.values())
            reward = base_reward * (used_weight / total_weight) if total_weight > 0 else 0.0

            attribution = PhaseRewardAttribution(
                memory_id=memory_id,
                reward=reward,
                phase_contributions=contributions,
                base_reward=base_reward,
                total_phase_weight=used_weight,
                q_value_update=QValueUpdate(
                    memory_id=memory_id,
                    reward=reward,
                    learning_rate=self._learning_rate,
                    context={
                        "task_id": task_id or usage.task_id,
                        "agent_id": agent_id,
                        "channel_id": channel_id,
                        "timestamp": datetime.now().isoformat(),
                    },
                ),
            )
            attributions.append(attribution)

            self.events.emit(
                OrparMemoryEvent.PHASE_REWARD_CALCULATED,
                {
                    "memory_id": memory_id,
                    "reward": reward,
                    "base_reward": base_reward,
                    "phase_contributions": {p.value: w for p, w in contributions.items()},
                },
                agent_id=agent_id,
                channel_id=channel_id,
            )

        return attributions

    async def apply_rewards(
        self,
        attributions: list[PhaseRewardAttribution],
        agent_id: str | None = None,
        channel_id: str | None = None,
    ) -> int:
        """Apply attributed rewards to the Q-value store.

        Returns:
            Number of Q-values updated (0 when Q-learning is disabled)
        """
        if not self.q_store.enabled or not attributions:
            return 0

        result = await self.q_store.batch_update_q_values(
            [a.q_value_update for a in attributions],
            agent_id=agent_id,
            channel_id=channel_id,
        )

        # Observability only: the updates above stand even if this fails
        try:
            self.events.emit(
                OrparMemoryEvent.PHASE_REWARDS_BATCH_APPLIED,
                {
                    "updated": result.updated,
                    "failed": result.failed,
                    "total_reward": sum(a.reward for a in attributions),
                },
                agent_id=agent_id,
                channel_id=channel_id,
            )
        except Exception as e:
            logger.warning(f"Failed to emit reward batch event: {e}")

        if result.failed:
            logger.warning(f"{result.failed} Q-value updates failed: {result.errors}")
        return result.updated

    async def process_outcome(
        self,
        usage: CycleMemoryUsage,
        outcome: CycleOutcome,
        task_id: str | None = None,
        agent_id: str | None = None,
        channel_id: str | None = None,
    ) -> list[PhaseRewardAttribution]:
        """Calculate and apply rewards for a finished cycle."""
        agent_id = agent_id or usage.agent_id
        channel_id = channel_id or usage.channel_id
        attributions = self.calculate_rewards(usage, outcome, task_id, agent_id, channel_id)
        updated = await self.apply_rewards(attributions, agent_id, channel_id)

        self.events.emit(
            OrparMemoryEvent.PHASE_REWARD_ATTRIBUTED,
            {
                "cycle_id": usage.cycle_id,
                "task_id": task_id or usage.task_id,
                "success": outcome.success,
                "memory_count": len(attributions),
                "updated_count": updated,
                "base_reward": self.calculate_base_reward(outcome),
            },
            agent_id=agent_id,
            channel_id=channel_id,
        )
        return attributions

    def update_phase_weights(self, weights: dict[OrparPhase | str, float]) -> PhaseWeights:
        """Override phase weights. Warns if they no longer sum to 1.0."""
        for phase, weight in weights.items():
            setattr(self.phase_weights, OrparPhase(phase).value, weight)

        total = self.phase_weights.total()
        if abs(total - 1.0) > PHASE_WEIGHT_TOLERANCE:
            logger.warning(f"Phase weights sum to {total:.3f}, expected 1.0")
        return self.phase_weights

    def get_phase_weights(self) -> dict[OrparPhase, float]:
        return self.phase_weights.as_dict()

    def set_learning_rate(self, rate: float) -> None:
        """Set the learning rate attached to updates.

        Raises:
            ValueError: Unless 0 < rate <= 1
        """
        if not 0.0 < rate <= 1.0:
            raise ValueError(f"Learning rate must be in (0, 1], got {rate}")
        self._learning_rate = rate

    def get_learning_rate(self) -> float:
        return self._learning_rate
