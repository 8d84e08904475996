"""Phase-aware store and retrieve operations.

Each phase writes to a fixed stratum with its own auto-tags and default
importance:

- observation -> working (observation, context)
- reasoning -> episodic (reasoning, analysis)
- planning -> short_term (planning, strategy)
- action -> working (action, tool_result)
- reflection -> long_term (reflection, learning, insight)

Reads are delegated to PhaseStrataRouter.
"""

from __future__ import annotations

import logging

from orpar.config import OrparMemoryConfig
from orpar.cycle.router import PhaseStrataRouter
from orpar.cycle.types import (
    CycleMemoryUsage,
    MemoryUsageEntry,
    PhaseRetrievalOptions,
    PhaseRetrievalResult,
    PhaseStorageOptions,
    PhaseStorageResult,
    PhaseStorageSpec,
)
from orpar.errors import OrparMemoryError
from orpar.events import EventBus, OrparMemoryEvent
from orpar.memory.strata import MemoryStrataStore
from orpar.memory.types import (
    ContentType,
    MemoryContext,
    MemoryEntry,
    MemoryImportance,
    MemoryScope,
    MemorySource,
    MemoryStratum,
    SourceType,
)
from orpar.phases import PHASE_CONTEXT_NAMES, OrparPhase

logger = logging.getLogger(__name__)


PHASE_STORAGE_SPECS: dict[OrparPhase, PhaseStorageSpec] = {
    OrparPhase.OBSERVATION: PhaseStorageSpec(
        target_stratum=MemoryStratum.WORKING,
        auto_tags=["observation", "context"],
        content_type="observation",
        default_importance="medium",
    ),
    OrparPhase.REASONING: PhaseStorageSpec(
        target_stratum=MemoryStratum.EPISODIC,
        auto_tags=["reasoning", "analysis"],
        content_type="analysis",
        default_importance="high",
    ),
    OrparPhase.PLANNING: PhaseStorageSpec(
        target_stratum=MemoryStratum.SHORT_TERM,
        auto_tags=["planning", "strategy"],
        content_type="plan",
        default_importance="high",
    ),
    OrparPhase.ACTION: PhaseStorageSpec(
        target_stratum=MemoryStratum.WORKING,
        auto_tags=["action", "tool_result"],
        content_type="action_result",
        default_importance="medium",
    ),
    OrparPhase.REFLECTION: PhaseStorageSpec(
        target_stratum=MemoryStratum.LONG_TERM,
        auto_tags=["reflection", "learning", "insight"],
        content_type="learning",
        default_importance="high",
    ),
}

# Phase content classification -> memory source type
CONTENT_SOURCE_TYPES: dict[str, SourceType] = {
    "observation": SourceType.OBSERVATION,
    "analysis": SourceType.REASONING,
    "plan": SourceType.REASONING,
    "action_result": SourceType.OBSERVATION,
    "learning": SourceType.REFLECTION,
}


class PhaseMemoryOperations:
    """Store and retrieve memories with phase-appropriate defaults."""

    def __init__(
        self,
        config: OrparMemoryConfig,
        strata: MemoryStrataStore,
        router: PhaseStrataRouter,
        events: EventBus | None = None,
    ):
        self.config = config
        self.strata = strata
        self.router = router
        self.events = events or EventBus()

    def get_target_stratum(self, phase: OrparPhase | str) -> MemoryStratum:
        """Stratum a phase writes to."""
        return PHASE_STORAGE_SPECS[OrparPhase(phase)].target_stratum

    def get_auto_tags(self, phase: OrparPhase | str) -> list[str]:
        """Tags automatically applied to a phase's memories."""
        return list(PHASE_STORAGE_SPECS[OrparPhase(phase)].auto_tags)

    def store(self, options: PhaseStorageOptions) -> PhaseStorageResult:
        """Store a memory in the phase's target stratum.

        Args:
            options: Content, phase and optional overrides

        Returns:
            PhaseStorageResult with the stored entry

        Raises:
            OrparMemoryError: If the integration is disabled
            ValueError: If the importance name is unknown
        """
        if not self.config.enabled:
            raise OrparMemoryError("ORPAR memory integration is disabled")

        phase = OrparPhase(options.phase)
        spec = PHASE_STORAGE_SPECS[phase]
        tags = list(dict.fromkeys([*spec.auto_tags, *options.additional_tags]))

        importance_name = options.importance or spec.default_importance
        try:
            importance = MemoryImportance.from_name(importance_name)
        except KeyError:
            raise ValueError(f"Unknown importance: {importance_name}")

        entry = MemoryEntry(
            content=options.content,
            stratum=spec.target_stratum,
            content_type=ContentType.TEXT,
            importance=importance,
            tags=set(tags),
            source=MemorySource(
                type=CONTENT_SOURCE_TYPES.get(spec.content_type, SourceType.EXTERNAL),
                agent_id=options.agent_id,
                channel_id=options.channel_id,
            ),
            context=MemoryContext(
                orpar_phase=PHASE_CONTEXT_NAMES[phase],
                task_id=options.task_id,
            ),
            related_memories=list(options.related_memories),
            metadata={**options.metadata, "content_classification": spec.content_type},
        )

        memory = self.strata.add_memory(
            MemoryScope.AGENT, options.agent_id, spec.target_stratum, entry
        )

        self.events.emit(
            OrparMemoryEvent.PHASE_MEMORY_STORED,
            {
                "memory_id": memory.id,
                "phase": phase.value,
                "stratum": spec.target_stratum.value,
                "tags": tags,
                "importance": importance.value,
            },
            agent_id=options.agent_id,
            channel_id=options.channel_id,
        )

        return PhaseStorageResult(
            memory=memory,
            stratum=spec.target_stratum,
            tags=tags,
            phase=phase,
        )

    def retrieve(self, options: PhaseRetrievalOptions) -> PhaseRetrievalResult:
        """Retrieve memories for a phase via the router."""
        return self.router.retrieve(options)

    # ------------------------------------------------------------------
    # Usage tracking
    # ------------------------------------------------------------------

    def create_usage_record(
        self,
        cycle_id: str,
        agent_id: str,
        channel_id: str,
        task_id: str | None = None,
    ) -> CycleMemoryUsage:
        """Start an empty memory usage record for a cycle."""
        return CycleMemoryUsage(
            cycle_id=cycle_id,
            agent_id=agent_id,
            channel_id=channel_id,
            task_id=task_id,
        )

    def record_usage(
        self,
        usage: CycleMemoryUsage,
        phase: OrparPhase | str,
        memory_id: str,
        usage_type: str = "context",
    ) -> MemoryUsageEntry:
        """Record that a memory was used in a phase of a cycle."""
        phase = OrparPhase(phase)
        entry = MemoryUsageEntry(memory_id=memory_id, phase=phase, usage_type=usage_type)
        usage.phase_usage[phase].append(entry)

        self.events.emit(
            OrparMemoryEvent.CYCLE_MEMORY_USAGE_RECORDED,
            {
                "cycle_id": usage.cycle_id,
                "memory_id": memory_id,
                "phase": phase.value,
                "usage_type": usage_type,
            },
            agent_id=usage.agent_id,
            channel_id=usage.channel_id,
        )
        return entry

    # ------------------------------------------------------------------
    # Per-phase conveniences
    # ------------------------------------------------------------------

    def _store_for(self, phase: OrparPhase, agent_id: str, content: str, **kwargs) -> PhaseStorageResult:
        return self.store(PhaseStorageOptions(agent_id=agent_id, phase=phase, content=content, **kwargs))

    def _retrieve_for(self, phase: OrparPhase, agent_id: str, query: str, **kwargs) -> PhaseRetrievalResult:
        return self.retrieve(PhaseRetrievalOptions(agent_id=agent_id, phase=phase, query=query, **kwargs))

    def store_observation(self, agent_id: str, content: str, **kwargs) -> PhaseStorageResult:
        return self._store_for(OrparPhase.OBSERVATION, agent_id, content, **kwargs)

    def store_reasoning(self, agent_id: str, content: str, **kwargs) -> PhaseStorageResult:
        return self._store_for(OrparPhase.REASONING, agent_id, content, **kwargs)

    def store_plan(self, agent_id: str, content: str, **kwargs) -> PhaseStorageResult:
        return self._store_for(OrparPhase.PLANNING, agent_id, content, **kwargs)

    def store_action_result(self, agent_id: str, content: str, **kwargs) -> PhaseStorageResult:
        return self._store_for(OrparPhase.ACTION, agent_id, content, **kwargs)

    def store_reflection(self, agent_id: str, content: str, **kwargs) -> PhaseStorageResult:
        return self._store_for(OrparPhase.REFLECTION, agent_id, content, **kwargs)

    def retrieve_for_observation(self, agent_id: str, query: str = "", **kwargs) -> PhaseRetrievalResult:
        return self._retrieve_for(OrparPhase.OBSERVATION, agent_id, query, **kwargs)

    def retrieve_for_reasoning(self, agent_id: str, query: str = "", **kwargs) -> PhaseRetrievalResult:
        return self._retrieve_for(OrparPhase.REASONING, agent_id, query, **kwargs)

    def retrieve_for_planning(self, agent_id: str, query: str = "", **kwargs) -> PhaseRetrievalResult:
        return self._retrieve_for(OrparPhase.PLANNING, agent_id, query, **kwargs)

    def retrieve_for_action(self, agent_id: str, query: str = "", **kwargs) -> PhaseRetrievalResult:
        return self._retrieve_for(OrparPhase.ACTION, agent_id, query, **kwargs)

    def retrieve_for_reflection(self, agent_id: str, query: str = "", **kwargs) -> PhaseRetrievalResult:
        return self._retrieve_for(OrparPhase.REFLECTION, agent_id, query, **kwargs)
