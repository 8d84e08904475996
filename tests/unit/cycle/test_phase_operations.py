"""Tests for phase-aware store and retrieve operations."""

from __future__ import annotations

import pytest

from orpar.config import OrparMemoryConfig
from orpar.cycle.operations import PhaseMemoryOperations
from orpar.cycle.router import PhaseStrataRouter
from orpar.cycle.types import PhaseStorageOptions
from orpar.errors import OrparMemoryError
from orpar.events import OrparMemoryEvent
from orpar.memory.types import MemoryImportance, MemoryStratum, SourceType
from orpar.phases import OrparPhase


@pytest.fixture
def operations(orpar_config, strata_store, events):
    router = PhaseStrataRouter(orpar_config, strata_store, events=events)
    return PhaseMemoryOperations(orpar_config, strata_store, router, events=events)


class TestStore:
    """Tests for phase storage."""

    @pytest.mark.parametrize(
        "phase,stratum",
        [
            (OrparPhase.OBSERVATION, MemoryStratum.WORKING),
            (OrparPhase.REASONING, MemoryStratum.EPISODIC),
            (OrparPhase.PLANNING, MemoryStratum.SHORT_TERM),
            (OrparPhase.ACTION, MemoryStratum.WORKING),
            (OrparPhase.REFLECTION, MemoryStratum.LONG_TERM),
        ],
    )
    def test_target_stratum(self, operations, phase, stratum):
        """Test each phase stores into its target stratum."""
        result = operations.store(PhaseStorageOptions(agent_id="a", phase=phase, content="x"))

        assert result.stratum == stratum
        assert result.memory.stratum == stratum
        assert operations.get_target_stratum(phase) == stratum

    def test_reflection_round_trip(self, operations, strata_store):
        """A stored reflection should come back from long-term with its tags."""
        result = operations.store_reflection(
            "agent-1",
            "retry with backoff fixed the flaky deploy",
            task_id="task-9",
            additional_tags=["deploy", "learning"],
        )

        memory = strata_store.get_memory("agent", "agent-1", result.memory.id)
        assert memory.stratum == MemoryStratum.LONG_TERM
        assert memory.tags == {"reflection", "learning", "insight", "deploy"}
        assert memory.importance == MemoryImportance.HIGH
        assert memory.context.orpar_phase == "reflect"
        assert memory.context.task_id == "task-9"
        assert memory.source.type == SourceType.REFLECTION
        assert memory.metadata["content_classification"] == "learning"
        assert result.tags == ["reflection", "learning", "insight", "deploy"]

        retrieved = operations.retrieve_for_reflection("agent-1", "flaky deploy")
        assert [m.id for m in retrieved.memories] == [memory.id]

    def test_importance_override(self, operations):
        """Test an explicit importance overrides the phase default."""
        result = operations.store_observation("a", "x", importance="critical")

        assert result.memory.importance == MemoryImportance.CRITICAL

    def test_unknown_importance_raises(self, operations):
        """Test an unknown importance name is rejected."""
        with pytest.raises(ValueError):
            operations.store_plan("a", "x", importance="urgent")

    def test_disabled_store_raises(self, strata_store):
        """Test storing into a disabled strata store raises."""
        config = OrparMemoryConfig(enabled=False)
        operations = PhaseMemoryOperations(
            config, strata_store, PhaseStrataRouter(config, strata_store)
        )

        with pytest.raises(OrparMemoryError):
            operations.store_observation("a", "x")

    def test_store_emits_event(self, operations, events):
        """Test storing emits a phase memory event."""
        operations.store_action_result("a", "exit 0", channel_id="c1")

        emitted = events.get_history(OrparMemoryEvent.PHASE_MEMORY_STORED)
        assert emitted[0].payload["stratum"] == "working"
        assert emitted[0].channel_id == "c1"

    def test_auto_tags_are_copies(self, operations):
        """Test stored tags do not alias the phase defaults."""
        tags = operations.get_auto_tags(OrparPhase.ACTION)
        tags.append("mutated")

        assert operations.get_auto_tags(OrparPhase.ACTION) == ["action", "tool_result"]


class TestUsageTracking:
    """Tests for per-cycle memory usage records."""

    def test_record_usage_groups_by_phase(self, operations, events):
        """Test usage entries are grouped by phase."""
        usage = operations.create_usage_record("cycle-1", "a", "c1", task_id="t1")

        operations.record_usage(usage, OrparPhase.PLANNING, "m1")
        operations.record_usage(usage, "action", "m1", usage_type="action")
        operations.record_usage(usage, OrparPhase.REASONING, "m2")

        assert usage.memory_ids() == {"m1", "m2"}
        assert usage.phases_for("m1") == {OrparPhase.PLANNING, OrparPhase.ACTION}
        assert len(events.get_history(OrparMemoryEvent.CYCLE_MEMORY_USAGE_RECORDED)) == 3
