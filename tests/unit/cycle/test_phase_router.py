"""Tests for phase-aware strata routing."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from orpar.config import OrparMemoryConfig
from orpar.cycle.router import PhaseStrataRouter
from orpar.cycle.types import PhaseRetrievalOptions
from orpar.events import OrparMemoryEvent
from orpar.memory.qvalues import QValueStore
from orpar.memory.config import QValueConfig
from orpar.memory.types import MemoryStratum
from orpar.phases import OrparPhase


@pytest.fixture
def router(orpar_config, strata_store, events):
    """Router without utility re-ranking."""
    return PhaseStrataRouter(orpar_config, strata_store, events=events)


class TestMappings:
    """Tests for phase-to-strata mappings."""

    def test_default_strata_per_phase(self, router):
        """Test default strata mapping for every phase."""
        assert router.get_strata_for_phase(OrparPhase.OBSERVATION) == [
            MemoryStratum.WORKING,
            MemoryStratum.SHORT_TERM,
            MemoryStratum.EPISODIC,
        ]
        assert router.get_strata_for_phase(OrparPhase.PLANNING, include_secondary=False) == [
            MemoryStratum.SEMANTIC,
            MemoryStratum.LONG_TERM,
        ]
        assert router.get_strata_for_phase(OrparPhase.REFLECTION) == list(MemoryStratum)

    def test_unknown_phase_falls_back_to_observation(self, router):
        """Test an unknown phase uses the observation mapping."""
        mapping = router.get_mapping("daydreaming")

        assert mapping.phase == OrparPhase.OBSERVATION

    def test_update_mapping_emits_event(self, router, events):
        """Test updating a mapping emits an event."""
        mapping = router.update_mapping(
            OrparPhase.ACTION, primary_strata=[MemoryStratum.WORKING], lambda_=0.4
        )

        assert mapping.primary_strata == [MemoryStratum.WORKING]
        assert mapping.lambda_ == 0.4
        emitted = events.get_history(OrparMemoryEvent.PHASE_STRATA_CONFIG_UPDATED)
        assert emitted[0].payload["phase"] == "action"

    def test_update_mapping_rejects_bad_lambda(self, router):
        """Test a mapping lambda outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            router.update_mapping(OrparPhase.ACTION, lambda_=-0.1)

    def test_mapping_summary_covers_all_phases(self, router):
        """Test the mapping summary lists every phase."""
        summary = router.get_mapping_summary()

        assert set(summary) == {p.value for p in OrparPhase}
        assert summary["planning"]["lambda"] == 0.7


class TestRetrieve:
    """Tests for phase retrieval."""

    def test_disabled_returns_empty(self, strata_store, make_entry):
        """Test a disabled router returns nothing."""
        strata_store.add_memory("agent", "a", MemoryStratum.WORKING, make_entry())
        router = PhaseStrataRouter(OrparMemoryConfig(enabled=False), strata_store)

        result = router.retrieve(PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.ACTION))

        assert result.memories == []
        assert result.queried_strata == []

    def test_primary_strata_only(self, router, strata_store, make_entry):
        """Action reads working and short-term only."""
        working = strata_store.add_memory("agent", "a", MemoryStratum.WORKING, make_entry())
        strata_store.add_memory("agent", "a", MemoryStratum.SEMANTIC, make_entry())

        result = router.retrieve(PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.ACTION))

        assert [m.id for m in result.memories] == [working.id]
        assert result.queried_strata == [MemoryStratum.WORKING, MemoryStratum.SHORT_TERM]
        assert result.lambda_used == 0.3

    def test_secondary_used_when_primary_short(self, router, strata_store, make_entry):
        """Test secondary strata fill in when primary results are short."""
        strata_store.add_memory("agent", "a", MemoryStratum.WORKING, make_entry())
        strata_store.add_memory("agent", "a", MemoryStratum.EPISODIC, make_entry())

        result = router.retrieve(
            PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.OBSERVATION, max_results=10)
        )

        assert len(result.memories) == 2
        assert result.primary_result_count == 1
        assert result.secondary_result_count == 1
        assert MemoryStratum.EPISODIC in result.queried_strata

    def test_secondary_skipped_when_primary_sufficient(self, router, strata_store, make_entry):
        """Test secondary strata are skipped when primary results suffice."""
        strata_store.add_memory("agent", "a", MemoryStratum.WORKING, make_entry())
        strata_store.add_memory("agent", "a", MemoryStratum.EPISODIC, make_entry())

        result = router.retrieve(
            PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.OBSERVATION, max_results=1)
        )

        assert len(result.memories) == 1
        assert MemoryStratum.EPISODIC not in result.queried_strata

    def test_channel_scope_included(self, router, strata_store, make_entry):
        """Test channel memories are included with a channel id."""
        shared = strata_store.add_memory("channel", "c1", MemoryStratum.WORKING, make_entry())

        result = router.retrieve(
            PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.ACTION, channel_id="c1")
        )

        assert [m.id for m in result.memories] == [shared.id]

    def test_results_truncated(self, router, strata_store, make_entry):
        """Test results are cut to max_results."""
        for _ in range(5):
            strata_store.add_memory("agent", "a", MemoryStratum.WORKING, make_entry())
            strata_store.add_memory("agent", "a", MemoryStratum.SHORT_TERM, make_entry())

        result = router.retrieve(
            PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.ACTION, max_results=3)
        )

        assert len(result.memories) == 3

    def test_only_returned_memories_count_as_accessed(self, router, strata_store, make_entry):
        """Candidates dropped by the final cut keep their access stats."""
        added = []
        for _ in range(5):
            added.append(strata_store.add_memory("agent", "a", MemoryStratum.WORKING, make_entry()))
            added.append(strata_store.add_memory("agent", "a", MemoryStratum.SHORT_TERM, make_entry()))

        result = router.retrieve(
            PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.ACTION, max_results=3)
        )

        returned = {m.id for m in result.memories}
        assert all(m.access_count == 1 for m in result.memories)
        assert all(m.access_count == 0 for m in added if m.id not in returned)

    def test_failing_stratum_is_skipped(self, orpar_config, strata_store, events, make_entry):
        """A stratum query error is reported and other strata still answer."""
        kept = strata_store.add_memory("agent", "a", MemoryStratum.SHORT_TERM, make_entry())
        real_query = strata_store.query_memories

        def query(scope, scope_id, query=None):
            if query.strata == [MemoryStratum.WORKING]:
                raise RuntimeError("index unavailable")
            return real_query(scope, scope_id, query)

        store = MagicMock(wraps=strata_store)
        store.query_memories.side_effect = query
        router = PhaseStrataRouter(orpar_config, store, events=events)

        result = router.retrieve(PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.ACTION))

        assert [m.id for m in result.memories] == [kept.id]
        errors = events.get_history(OrparMemoryEvent.PHASE_ROUTING_ERROR)
        assert len(errors) == 1
        assert errors[0].payload["stratum"] == "working"

    def test_emits_retrieved_event(self, router, events, strata_store, make_entry):
        """Test retrieval emits an event."""
        strata_store.add_memory("agent", "a", MemoryStratum.WORKING, make_entry())

        router.retrieve(PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.ACTION))

        emitted = events.get_history(OrparMemoryEvent.PHASE_MEMORY_RETRIEVED)
        assert emitted[0].payload["memory_count"] == 1
        assert emitted[0].agent_id == "a"

    @pytest.mark.asyncio
    async def test_utility_ranking_when_q_enabled(self, orpar_config, strata_store, events, make_entry):
        """Planning ranks proven memories above frequently accessed ones."""
        q_store = QValueStore(QValueConfig(enabled=True), events=events)
        popular = strata_store.add_memory("agent", "a", MemoryStratum.SEMANTIC, make_entry())
        proven = strata_store.add_memory("agent", "a", MemoryStratum.LONG_TERM, make_entry())
        popular.access_count = 4
        await q_store.set_q_value_in_cache(popular.id, 0.1)
        await q_store.set_q_value_in_cache(proven.id, 0.9)
        router = PhaseStrataRouter(orpar_config, strata_store, q_store=q_store, events=events)

        result = router.retrieve(PhaseRetrievalOptions(agent_id="a", phase=OrparPhase.PLANNING))

        assert [m.id for m in result.memories] == [proven.id, popular.id]
