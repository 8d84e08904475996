"""Phase-aware routing of memory queries across strata.

Each ORPAR phase reads from a primary set of strata and, when those do
not yield enough results, a secondary set:

- observation: working, short_term (then episodic)
- reasoning: episodic, semantic (then long_term)
- planning: semantic, long_term (then episodic)
- action: working, short_term
- reflection: every stratum

With Q-value learning enabled, results are re-ranked by a blend of
access frequency and learned utility at the phase's lambda.
"""

from __future__ import annotations

import logging
import time

from orpar.config import OrparMemoryConfig, PhaseStrataMapping, check_unit_interval
from orpar.cycle.types import PhaseRetrievalOptions, PhaseRetrievalResult
from orpar.events import EventBus, OrparMemoryEvent
from orpar.memory.qvalues import QValueStore
from orpar.memory.strata import MemoryStrataStore
from orpar.memory.types import MemoryEntry, MemoryQuery, MemoryScope, MemoryStratum
from orpar.phases import OrparPhase

logger = logging.getLogger(__name__)

# Access count at which the frequency proxy saturates at 1.0
ACCESS_COUNT_SATURATION = 10


class PhaseStrataRouter:
    """Routes phase retrievals to the right strata and ranks the results."""

    def __init__(
        self,
        config: OrparMemoryConfig,
        strata: MemoryStrataStore,
        q_store: QValueStore | None = None,
        events: EventBus | None = None,
    ):
        """Initialize the router.

        Args:
            config: Integration configuration holding the phase mappings
            strata: Memory store to query
            q_store: Q-value store for utility re-ranking
            events: Event bus for observability
        """
        self.config = config
        self.strata = strata
        self.q_store = q_store
        self.events = events or EventBus()

    def get_mapping(self, phase: OrparPhase | str) -> PhaseStrataMapping:
        """Get a phase's strata mapping, falling back to observation."""
        try:
            return self.config.phase_strata_mappings[OrparPhase(phase)]
        except (KeyError, ValueError):
            logger.warning(f"No strata mapping for phase {phase}, using observation mapping")
            return self.config.phase_strata_mappings[OrparPhase.OBSERVATION]

    def get_strata_for_phase(
        self, phase: OrparPhase | str, include_secondary: bool = True
    ) -> list[MemoryStratum]:
        """Strata a phase reads from, primary first, without duplicates."""
        mapping = self.get_mapping(phase)
        strata = list(mapping.primary_strata)
        if include_secondary:
            strata.extend(mapping.secondary_strata)
        return list(dict.fromkeys(strata))

    def update_mapping(
        self,
        phase: OrparPhase | str,
        primary_strata: list[MemoryStratum] | None = None,
        secondary_strata: list[MemoryStratum] | None = None,
        lambda_: float | None = None,
    ) -> PhaseStrataMapping:
        """Override parts of a phase's mapping.

        Raises:
            ValueError: If lambda_ is outside [0, 1] or the phase is unknown
        """
        mapping = self.config.phase_strata_mappings[OrparPhase(phase)]
        if lambda_ is not None:
            check_unit_interval("lambda", lambda_)
            mapping.lambda_ = lambda_
        if primary_strata is not None:
            mapping.primary_strata = list(primary_strata)
        if secondary_strata is not None:
            mapping.secondary_strata = list(secondary_strata)

        self.events.emit(OrparMemoryEvent.PHASE_STRATA_CONFIG_UPDATED, mapping.to_dict())
        logger.info(f"Updated strata mapping for {mapping.phase.value}")
        return mapping

    def get_mapping_summary(self) -> dict[str, dict]:
        """All phase mappings as plain dicts."""
        return {
            phase.value: mapping.to_dict()
            for phase, mapping in self.config.phase_strata_mappings.items()
        }

    def retrieve(self, options: PhaseRetrievalOptions) -> PhaseRetrievalResult:
        """Retrieve memories for a phase.

        Queries the agent's primary strata, then secondary strata if the
        primary results fall short of max_results, then the same for the
        channel scope when a channel id is given. A failing stratum query
        is logged and skipped. Only the memories returned count as
        accessed.

        Args:
            options: Phase, query text and limits

        Returns:
            PhaseRetrievalResult with at most max_results memories
        """
        phase = OrparPhase(options.phase)
        if not self.config.enabled:
            return PhaseRetrievalResult(memories=[], queried_strata=[], phase=phase, lambda_used=0.0)

        start = time.perf_counter()
        mapping = self.get_mapping(phase)

        found: dict[str, MemoryEntry] = {}
        scores: dict[str, float] = {}
        queried: list[MemoryStratum] = []
        primary_count = 0
        secondary_count = 0

        scopes: list[tuple[MemoryScope, str]] = [(MemoryScope.AGENT, options.agent_id)]
        if options.channel_id:
            scopes.append((MemoryScope.CHANNEL, options.channel_id))

        for scope, scope_id in scopes:
            primary_count += self._query_strata(
                scope, scope_id, mapping.primary_strata, options, found, scores, queried
            )
            if (
                options.include_secondary
                and mapping.secondary_strata
                and len(found) < options.max_results
            ):
                secondary_count += self._query_strata(
                    scope, scope_id, mapping.secondary_strata, options, found, scores, queried
                )

        memories = list(found.values())
        if self.q_store is not None and self.q_store.enabled:
            memories = self._rank_by_utility(memories, mapping.lambda_)
        else:
            memories.sort(key=lambda m: scores.get(m.id, 0.0), reverse=True)
        memories = memories[: options.max_results]
        self.strata.record_access(memories)

        query_time_ms = (time.perf_counter() - start) * 1000
        self.events.emit(
            OrparMemoryEvent.PHASE_MEMORY_RETRIEVED,
            {
                "phase": phase.value,
                "memory_count": len(memories),
                "queried_strata": [s.value for s in dict.fromkeys(queried)],
                "lambda": mapping.lambda_,
                "query_time_ms": query_time_ms,
            },
            agent_id=options.agent_id,
            channel_id=options.channel_id,
        )

        return PhaseRetrievalResult(
            memories=memories,
            queried_strata=list(dict.fromkeys(queried)),
            phase=phase,
            lambda_used=mapping.lambda_,
            primary_result_count=primary_count,
            secondary_result_count=secondary_count,
            query_time_ms=query_time_ms,
        )

    def _query_strata(
        self,
        scope: MemoryScope,
        scope_id: str,
        strata: list[MemoryStratum],
        options: PhaseRetrievalOptions,
        found: dict[str, MemoryEntry],
        scores: dict[str, float],
        queried: list[MemoryStratum],
    ) -> int:
        """Query each stratum separately, merging into `found`.

        Returns:
            Number of new memories added
        """
        added = 0
        for stratum in strata:
            queried.append(stratum)
            try:
                result = self.strata.query_memories(
                    scope,
                    scope_id,
                    MemoryQuery(
                        query=options.query,
                        strata=[stratum],
                        tags=options.tags,
                        limit=options.max_results,
                        record_access=False,
                    ),
                )
            except Exception as e:
                logger.error(f"Failed to query {stratum.value} for {scope.value}:{scope_id}: {e}")
                self.events.emit(
                    OrparMemoryEvent.PHASE_ROUTING_ERROR,
                    {"phase": OrparPhase(options.phase).value, "stratum": stratum.value, "error": str(e)},
                    agent_id=options.agent_id,
                    channel_id=options.channel_id,
                )
                continue

            for memory in result.memories:
                if memory.id not in found:
                    found[memory.id] = memory
                    scores[memory.id] = result.scores.get(memory.id, 0.0)
                    added += 1
        return added

    def _rank_by_utility(self, memories: list[MemoryEntry], lambda_: float) -> list[MemoryEntry]:
        """Sort by (1 - lambda) * access frequency + lambda * Q-value."""

        def composite(memory: MemoryEntry) -> float:
            frequency = min(memory.access_count / ACCESS_COUNT_SATURATION, 1.0)
            return (1 - lambda_) * frequency + lambda_ * self.q_store.get_q_value(memory.id)

        return sorted(memories, key=composite, reverse=True)
