"""Coordinator for ORPAR cycles and their memory side effects.

Owns the active-cycle map. The control loop reports phase transitions
and cycle boundaries; on completion the coordinator attributes rewards
and triggers consolidation by calling those components directly.

Safety nets:
- Per-cycle locks: a phase event for a cycle that is already being
  mutated is dropped, not queued
- Stale sweep: cycles older than the stale TTL that never completed are
  removed periodically
- Retroactive correction: a task completion that arrives after its
  cycle was recorded as failed re-attributes rewards as a success
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from orpar.config import OrparMemoryConfig, get_config_summary
from orpar.cycle.consolidation import CycleConsolidationTrigger
from orpar.cycle.operations import PhaseMemoryOperations
from orpar.cycle.rewarder import PhaseWeightedRewarder
from orpar.cycle.surprise import SurpriseOrparAdapter
from orpar.cycle.types import (
    ConsolidationResult,
    CycleOutcome,
    MemoryUsageEntry,
    OrparCycleState,
    PhaseRetrievalOptions,
    PhaseRetrievalResult,
    PhaseStorageOptions,
    PhaseStorageResult,
    SurpriseDecisionType,
    SurpriseDetection,
    SurpriseOrparDecision,
    SurpriseProcessingContext,
)
from orpar.events import EventBus, OrparMemoryEvent
from orpar.phases import PHASE_ORDER, OrparPhase

logger = logging.getLogger(__name__)

# Outcome assumed when a tool-driven cycle reaches reflection
TOOL_SUCCESS_QUALITY = 0.8
TOOL_FAILURE_QUALITY = 0.4
TOOL_ASSUMED_CALL_COUNT = 5
RETROACTIVE_MIN_QUALITY = 0.8


def _elapsed_ms(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000


class OrparMemoryCoordinator:
    """Tracks ORPAR cycles and drives reward and consolidation on completion."""

    def __init__(
        self,
        config: OrparMemoryConfig,
        operations: PhaseMemoryOperations,
        rewarder: PhaseWeightedRewarder,
        consolidation: CycleConsolidationTrigger,
        surprise: SurpriseOrparAdapter,
        events: EventBus | None = None,
    ):
        """Initialize the coordinator.

        Args:
            config: Integration configuration
            operations: Phase-aware store/retrieve
            rewarder: Reward attribution
            consolidation: Rule-based consolidation
            surprise: Surprise decision adapter
            events: Event bus for observability
        """
        self.config = config
        self.operations = operations
        self.rewarder = rewarder
        self.consolidation = consolidation
        self.surprise = surprise
        self.events = events or EventBus()

        self._active_cycles: dict[str, OrparCycleState] = {}
        self._recently_completed: dict[str, OrparCycleState] = {}
        self._locks: set[str] = set()
        self._cleanup_task: asyncio.Task | None = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic stale-cycle sweep. Requires a running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        interval = self.config.timing.cleanup_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup_stale_cycles()
            except Exception as e:
                logger.error(f"Stale cycle cleanup failed: {e}")

    async def shutdown(self) -> None:
        """Stop the sweep task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def reset(self) -> None:
        """Stop the sweep and drop all cycle state."""
        await self.shutdown()
        for cycle_id in list(self._active_cycles):
            self.surprise.clear_momentum(cycle_id)
        self._active_cycles.clear()
        self._recently_completed.clear()
        self._locks.clear()

    # ------------------------------------------------------------------
    # Cycle lifecycle
    # ------------------------------------------------------------------

    def start_cycle(self, agent_id: str, channel_id: str, task_id: str | None = None) -> str:
        """Begin tracking a new cycle.

        Returns:
            The new cycle id (also returned when the integration is disabled)
        """
        cycle_id = str(uuid4())
        if not self.enabled:
            return cycle_id

        self._create_cycle(cycle_id, agent_id, channel_id, task_id)
        return cycle_id

    def _create_cycle(
        self, cycle_id: str, agent_id: str, channel_id: str, task_id: str | None = None
    ) -> OrparCycleState:
        state = OrparCycleState(
            cycle_id=cycle_id,
            agent_id=agent_id,
            channel_id=channel_id,
            task_id=task_id,
            memory_usage=self.operations.create_usage_record(cycle_id, agent_id, channel_id, task_id),
        )
        self._active_cycles[cycle_id] = state

        self.events.emit(
            OrparMemoryEvent.CYCLE_STARTED,
            {"cycle_id": cycle_id, "task_id": task_id},
            agent_id=agent_id,
            channel_id=channel_id,
        )
        logger.debug(f"Started cycle {cycle_id} for agent {agent_id}")
        return state

    def on_phase_event(
        self,
        phase: OrparPhase | str,
        agent_id: str,
        channel_id: str,
        loop_id: str | None = None,
    ) -> OrparCycleState | None:
        """Record a phase transition reported by the control loop.

        Creates the cycle on first sight. Events for a cycle whose lock is
        held are dropped.

        Returns:
            Updated cycle state, or None if disabled or dropped
        """
        if not self.enabled:
            return None
        cycle_id = loop_id or f"{agent_id}-{int(datetime.now().timestamp() * 1000)}"
        return self._record_phase(OrparPhase(phase), agent_id, channel_id, cycle_id)

    async def on_tool_phase_event(
        self,
        phase: OrparPhase | str,
        agent_id: str,
        channel_id: str,
        loop_id: str | None = None,
        expectations_met: bool | None = None,
    ) -> OrparCycleState | None:
        """Record a phase transition reported by an ORPAR tool call.

        Without a loop id, tool events for the same agent and channel share
        one cycle. Reaching reflection completes the cycle with an outcome
        derived from `expectations_met`. If completion fails the cycle is
        dropped.
        """
        if not self.enabled:
            return None
        cycle_id = loop_id or f"orpar-{agent_id}-{channel_id}"
        state = self._record_phase(OrparPhase(phase), agent_id, channel_id, cycle_id)
        if state is None or OrparPhase(phase) != OrparPhase.REFLECTION:
            return state

        success = expectations_met is not False
        outcome = CycleOutcome(
            success=success,
            quality_score=TOOL_SUCCESS_QUALITY if success else TOOL_FAILURE_QUALITY,
            tool_call_count=TOOL_ASSUMED_CALL_COUNT,
            task_completed=True,
            metadata={"source": "orpar_tools"},
        )
        try:
            await self.complete_cycle(state.cycle_id, outcome)
        except Exception as e:
            logger.error(f"Failed to complete cycle {state.cycle_id} from tool event: {e}")
            self._discard_cycle(state.cycle_id)
        return state

    def _record_phase(
        self, phase: OrparPhase, agent_id: str, channel_id: str, cycle_id: str
    ) -> OrparCycleState | None:
        if cycle_id in self._locks:
            logger.debug(f"Cycle {cycle_id} locked, dropping {phase.value} event")
            return None

        self._locks.add(cycle_id)
        try:
            state = self._active_cycles.get(cycle_id)
            if state is None:
                state = self._create_cycle(cycle_id, agent_id, channel_id)

            previous = state.current_phase
            now = datetime.now()
            state.current_phase = phase
            state.phase_start_times[phase] = now

            if previous != phase:
                previous_start = state.phase_start_times.get(previous) if previous else None
                self.events.emit(
                    OrparMemoryEvent.PHASE_CHANGED,
                    {
                        "cycle_id": cycle_id,
                        "previous_phase": previous.value if previous else None,
                        "new_phase": phase.value,
                        "previous_phase_duration_ms": (
                            _elapsed_ms(previous_start, now) if previous_start else None
                        ),
                    },
                    agent_id=agent_id,
                    channel_id=channel_id,
                )
            return state
        finally:
            self._locks.discard(cycle_id)

    async def complete_cycle(self, cycle_id: str, outcome: CycleOutcome) -> list[ConsolidationResult]:
        """Finish a cycle: attribute rewards, consolidate and stop tracking it.

        Args:
            cycle_id: Cycle to complete
            outcome: How the cycle ended

        Returns:
            Consolidations executed for the cycle's memories

        Raises:
            ConsolidationError: If a decided consolidation fails
        """
        state = self._active_cycles.get(cycle_id)
        if state is None:
            logger.warning(f"Cannot complete unknown cycle {cycle_id}")
            return []

        now = datetime.now()
        state.is_complete = True
        state.completed_at = now
        state.outcome = outcome
        phase_durations = self.calculate_phase_durations(state)

        try:
            try:
                await self.rewarder.process_outcome(
                    state.memory_usage,
                    outcome,
                    task_id=state.task_id,
                    agent_id=state.agent_id,
                    channel_id=state.channel_id,
                )
            except Exception as e:
                logger.error(f"Reward attribution failed for cycle {cycle_id}: {e}")
                self.events.emit(
                    OrparMemoryEvent.REWARD_ATTRIBUTION_ERROR,
                    {"cycle_id": cycle_id, "error": str(e)},
                    agent_id=state.agent_id,
                    channel_id=state.channel_id,
                )

            results = self.consolidation.on_cycle_completed(state, outcome)

            self.events.emit(
                OrparMemoryEvent.CYCLE_COMPLETED,
                {
                    "cycle_id": cycle_id,
                    "outcome": outcome.to_dict(),
                    "total_duration_ms": _elapsed_ms(state.start_time, now),
                    "phase_durations": {p.value: d for p, d in phase_durations.items()},
                    "memories_used_count": self.count_memories_used(state),
                    "surprise_count": len(state.surprise_detections),
                },
                agent_id=state.agent_id,
                channel_id=state.channel_id,
            )
        finally:
            self.surprise.clear_momentum(cycle_id)
            if state.task_id:
                self._recently_completed[self._task_key(state.agent_id, state.task_id)] = state
            self._active_cycles.pop(cycle_id, None)

        logger.info(
            f"Completed cycle {cycle_id} for agent {state.agent_id} "
            f"(success={outcome.success}, memories={self.count_memories_used(state)})"
        )
        return results

    async def on_task_completed(self, agent_id: str, task_id: str) -> bool:
        """Correct a recently completed cycle that was recorded as failed.

        If the cycle for this task finished as a failure within the
        recent-cycle TTL, rewards are re-attributed as a success.

        Returns:
            True if rewards were re-attributed
        """
        key = self._task_key(agent_id, task_id)
        state = self._recently_completed.pop(key, None)
        if state is None or state.outcome is None or state.completed_at is None:
            return False

        age_ms = _elapsed_ms(state.completed_at, datetime.now())
        if age_ms > self.config.timing.recent_cycle_ttl_ms or state.outcome.success:
            return False

        corrected = CycleOutcome(
            success=True,
            quality_score=max(state.outcome.quality_score or RETROACTIVE_MIN_QUALITY, RETROACTIVE_MIN_QUALITY),
            error_count=state.outcome.error_count,
            tool_call_count=state.outcome.tool_call_count,
            task_completed=True,
            metadata={**state.outcome.metadata, "retroactive": True},
        )
        try:
            await self.rewarder.process_outcome(
                state.memory_usage,
                corrected,
                task_id=task_id,
                agent_id=agent_id,
                channel_id=state.channel_id,
            )
        except Exception as e:
            logger.error(f"Retroactive reward correction failed for task {task_id}: {e}")
            return False

        state.outcome = corrected
        logger.info(f"Retroactively corrected cycle {state.cycle_id} for task {task_id} to success")
        return True

    @staticmethod
    def _task_key(agent_id: str, task_id: str) -> str:
        return f"{agent_id}:{task_id}"

    def _discard_cycle(self, cycle_id: str) -> None:
        self._active_cycles.pop(cycle_id, None)
        self._locks.discard(cycle_id)
        self.surprise.clear_momentum(cycle_id)

    # ------------------------------------------------------------------
    # Memory operations
    # ------------------------------------------------------------------

    def retrieve_memories(self, options: PhaseRetrievalOptions) -> PhaseRetrievalResult:
        """Retrieve memories for a phase."""
        return self.operations.retrieve(options)

    def store_memory(self, options: PhaseStorageOptions) -> PhaseStorageResult:
        """Store a memory from a phase."""
        return self.operations.store(options)

    def record_memory_usage(
        self,
        cycle_id: str,
        phase: OrparPhase | str,
        memory_id: str,
        usage_type: str = "context",
    ) -> MemoryUsageEntry | None:
        """Record that a memory was used in a phase of an active cycle."""
        state = self._active_cycles.get(cycle_id)
        if state is None:
            logger.warning(f"Cannot record memory usage for unknown cycle {cycle_id}")
            return None
        return self.operations.record_usage(state.memory_usage, phase, memory_id, usage_type)

    def process_surprise(
        self, cycle_id: str, surprise: SurpriseDetection
    ) -> SurpriseOrparDecision | None:
        """Decide how an active cycle should react to a surprise.

        Returns:
            The decision, or None if disabled, the cycle is unknown or
            processing failed
        """
        if not self.enabled:
            return None
        state = self._active_cycles.get(cycle_id)
        if state is None:
            return None

        state.surprise_detections.append(surprise)
        context = SurpriseProcessingContext(
            cycle_id=cycle_id,
            agent_id=state.agent_id,
            channel_id=state.channel_id,
            current_phase=state.current_phase,
        )
        try:
            decision = self.surprise.process_surprise(surprise, context)
        except Exception as e:
            logger.error(f"Surprise processing failed for cycle {cycle_id}: {e}")
            self.events.emit(
                OrparMemoryEvent.SURPRISE_PROCESSING_ERROR,
                {"cycle_id": cycle_id, "error": str(e)},
                agent_id=state.agent_id,
                channel_id=state.channel_id,
            )
            return None

        if decision.type == SurpriseDecisionType.RE_OBSERVE:
            state.additional_observations_queued += decision.additional_observations
        return decision

    # ------------------------------------------------------------------
    # Maintenance and inspection
    # ------------------------------------------------------------------

    def cleanup_stale_cycles(self) -> int:
        """Remove incomplete cycles older than the stale TTL.

        Also expires retroactive-correction entries past their TTL.

        Returns:
            Number of stale cycles removed
        """
        now = datetime.now()
        ttl_ms = self.config.timing.stale_cycle_ttl_ms

        stale = [
            cycle_id
            for cycle_id, state in self._active_cycles.items()
            if not state.is_complete and _elapsed_ms(state.start_time, now) > ttl_ms
        ]
        for cycle_id in stale:
            self._discard_cycle(cycle_id)
            logger.warning(f"Cleaned up stale cycle {cycle_id}")

        recent_ttl_ms = self.config.timing.recent_cycle_ttl_ms
        expired = [
            key
            for key, state in self._recently_completed.items()
            if state.completed_at is None or _elapsed_ms(state.completed_at, now) > recent_ttl_ms
        ]
        for key in expired:
            del self._recently_completed[key]

        return len(stale)

    def calculate_phase_durations(self, state: OrparCycleState) -> dict[OrparPhase, float]:
        """Milliseconds spent in each phase the cycle entered.

        A phase ends when the next phase (by start time) begins, else at
        completion, else now.
        """
        started = sorted(state.phase_start_times.items(), key=lambda item: item[1])
        end_of_cycle = state.completed_at or datetime.now()

        durations: dict[OrparPhase, float] = {}
        for i, (phase, start) in enumerate(started):
            end = started[i + 1][1] if i + 1 < len(started) else end_of_cycle
            durations[phase] = _elapsed_ms(start, end)
        return durations

    def count_memories_used(self, state: OrparCycleState) -> int:
        """Distinct memories used across the cycle."""
        return len(state.memory_usage.memory_ids())

    def get_active_cycle(self, cycle_id: str) -> OrparCycleState | None:
        return self._active_cycles.get(cycle_id)

    def get_active_cycles(self) -> list[OrparCycleState]:
        return list(self._active_cycles.values())

    def is_locked(self, cycle_id: str) -> bool:
        return cycle_id in self._locks

    def get_config_summary(self) -> dict[str, Any]:
        """Configuration and live counters for diagnostics."""
        return {
            **get_config_summary(self.config),
            "active_cycles": len(self._active_cycles),
            "recently_completed": len(self._recently_completed),
            "phase_order": [p.value for p in PHASE_ORDER],
            "sweep_running": self._cleanup_task is not None and not self._cleanup_task.done(),
        }
