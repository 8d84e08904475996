"""Tests for cycle-driven memory consolidation."""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from orpar.config import ConsolidationConfig
from orpar.cycle.consolidation import CycleConsolidationTrigger, default_consolidation_rules
from orpar.cycle.types import (
    ConsolidationAction,
    ConsolidationActionType,
    ConsolidationCondition,
    ConsolidationRule,
    CycleMemoryUsage,
    CycleOutcome,
    MemoryConsolidationState,
    MemoryUsageEntry,
    OrparCycleState,
)
from orpar.errors import ConsolidationError
from orpar.events import OrparMemoryEvent
from orpar.memory.config import CacheConfig, QValueConfig
from orpar.memory.qvalues import QValueStore
from orpar.memory.types import MemoryStratum
from orpar.phases import OrparPhase


def _state(
    stratum=MemoryStratum.WORKING,
    q_value=0.5,
    success=0,
    failure=0,
    days_idle=0,
) -> MemoryConsolidationState:
    return MemoryConsolidationState(
        memory_id="m1",
        stratum=stratum,
        q_value=q_value,
        success_count=success,
        failure_count=failure,
        last_accessed=datetime.now() - timedelta(days=days_idle),
    )


def _cycle(*memory_ids: str, agent_id: str = "a") -> OrparCycleState:
    usage = CycleMemoryUsage(cycle_id="cycle-1", agent_id=agent_id, channel_id="c")
    for memory_id in memory_ids:
        usage.phase_usage[OrparPhase.PLANNING].append(
            MemoryUsageEntry(memory_id=memory_id, phase=OrparPhase.PLANNING)
        )
    return OrparCycleState(
        cycle_id="cycle-1", agent_id=agent_id, channel_id="c", memory_usage=usage
    )


@pytest.fixture
def trigger(strata_store, q_store, events):
    return CycleConsolidationTrigger(strata_store, q_store, events=events)


class TestRuleEvaluation:
    """Tests for rule matching."""

    def test_rules_sorted_by_priority(self, trigger):
        """Test default rules are ordered by priority."""
        assert [r.priority for r in trigger.get_rules()] == [100, 90, 80, 70]

    def test_promote_wins_over_abstract(self, trigger):
        """A long-term memory qualifying for both promotes first."""
        rule = trigger.evaluate_rules(_state(MemoryStratum.LONG_TERM, q_value=0.8, success=12))

        assert rule.id == "promote-high-performers"
        assert rule.action.type == ConsolidationActionType.PROMOTE

    def test_promote_needs_enough_successes(self, trigger):
        """Test promotion requires the minimum success count."""
        assert trigger.evaluate_rules(_state(q_value=0.9, success=2)) is None

    def test_semantic_memories_are_not_promoted(self, trigger):
        """Test semantic memories have nowhere higher to go."""
        assert trigger.evaluate_rules(_state(MemoryStratum.SEMANTIC, q_value=0.9, success=5)) is None

    def test_demote_low_performers(self, trigger):
        """Test repeated failures with a low Q-value archive a memory."""
        rule = trigger.evaluate_rules(_state(MemoryStratum.SHORT_TERM, q_value=0.2, failure=5))

        assert rule.id == "demote-low-performers"
        assert rule.action.type == ConsolidationActionType.ARCHIVE

    def test_demote_ignores_other_strata(self, trigger):
        """Test the demote rule only covers its own strata."""
        assert trigger.evaluate_rules(_state(MemoryStratum.EPISODIC, q_value=0.2, failure=9)) is None

    def test_archive_stale_is_inclusive_at_threshold(self, trigger):
        """Test the stale rule matches a Q-value equal to its bound."""
        rule = trigger.evaluate_rules(_state(q_value=0.5, days_idle=31))

        assert rule.id == "archive-stale"

    def test_recent_memories_are_not_stale(self, trigger):
        """Test recently accessed memories are not archived as stale."""
        assert trigger.evaluate_rules(_state(q_value=0.1, days_idle=29)) is None

    def test_custom_rules_and_removal(self, strata_store, q_store):
        """Test replacing and removing rules."""
        custom = ConsolidationRule(
            id="demote-idle",
            name="Demote idle",
            priority=10,
            condition=ConsolidationCondition(days_since_access=1),
            action=ConsolidationAction(type=ConsolidationActionType.DEMOTE),
        )
        trigger = CycleConsolidationTrigger(strata_store, q_store, rules=[custom])

        assert trigger.evaluate_rules(_state(days_idle=2)).id == "demote-idle"
        assert trigger.remove_rule("demote-idle") is True
        assert trigger.get_rules() == []

    def test_add_rule_replaces_same_id(self, trigger):
        """Test adding a rule with an existing id replaces it."""
        rules = default_consolidation_rules(ConsolidationConfig(promotion_min_success=1))
        trigger.add_rule(rules[0])

        assert len(trigger.get_rules()) == 4
        assert trigger.evaluate_rules(_state(q_value=0.9, success=1)).id == "promote-high-performers"

    def test_evaluate_memory_uses_tracked_counters(self, trigger, q_store):
        """Test memory evaluation reads the tracked counters."""
        for _ in range(3):
            q_store.record_outcome("m1", success=True)

        rule = trigger.evaluate_memory("m1", MemoryStratum.EPISODIC, 0.75, datetime.now())

        assert rule.id == "promote-high-performers"


class TestCycleCompletion:
    """Tests for consolidation after a cycle."""

    def test_successes_are_counted(self, trigger, q_store, events):
        """Test cycle outcomes update per-memory counters."""
        trigger.on_cycle_completed(_cycle("m1", "m2"), CycleOutcome(success=True))
        trigger.on_cycle_completed(_cycle("m1"), CycleOutcome(success=False))

        assert trigger.get_success_count("m1") == 1
        assert trigger.get_failure_count("m1") == 1
        assert trigger.get_success_count("m2") == 1
        assert len(events.get_history(OrparMemoryEvent.CONSOLIDATION_TRIGGERED)) == 2

    @pytest.mark.asyncio
    async def test_high_performer_promoted_one_stratum(
        self, trigger, strata_store, q_store, events, make_entry
    ):
        """Test a high performer moves up exactly one stratum."""
        memory = strata_store.add_memory("agent", "a", MemoryStratum.SHORT_TERM, make_entry())
        await q_store.set_q_value_in_cache(memory.id, 0.8)
        for _ in range(2):
            q_store.record_outcome(memory.id, success=True)

        results = trigger.on_cycle_completed(_cycle(memory.id), CycleOutcome(success=True))

        assert len(results) == 1
        assert results[0].to_stratum == MemoryStratum.EPISODIC
        assert memory.stratum == MemoryStratum.EPISODIC
        promoted = events.get_history(OrparMemoryEvent.MEMORY_PROMOTED)
        assert promoted[0].payload["rule_id"] == "promote-high-performers"

    @pytest.mark.asyncio
    async def test_low_performer_archived_with_counters(
        self, trigger, strata_store, q_store, events, make_entry
    ):
        """Test archiving a memory also drops its counters."""
        memory = strata_store.add_memory("agent", "a", MemoryStratum.LONG_TERM, make_entry())
        await q_store.set_q_value_in_cache(memory.id, 0.1)
        for _ in range(4):
            q_store.record_outcome(memory.id, success=False)

        results = trigger.on_cycle_completed(_cycle(memory.id), CycleOutcome(success=False))

        assert results[0].action == ConsolidationActionType.ARCHIVE
        assert results[0].to_stratum is None
        assert strata_store.get_memory("agent", "a", memory.id) is None
        assert trigger.get_failure_count(memory.id) == 0
        assert events.get_history(OrparMemoryEvent.MEMORY_ARCHIVED)

    @pytest.mark.asyncio
    async def test_channel_scoped_memory_is_consolidated(
        self, trigger, strata_store, q_store, make_entry
    ):
        """Test memories in a channel scope are consolidated in place."""
        memory = strata_store.add_memory("channel", "c", MemoryStratum.WORKING, make_entry())
        await q_store.set_q_value_in_cache(memory.id, 0.9)
        for _ in range(2):
            q_store.record_outcome(memory.id, success=True)

        trigger.on_cycle_completed(_cycle(memory.id), CycleOutcome(success=True))

        assert strata_store.get_memory("channel", "c", memory.id).stratum == MemoryStratum.SHORT_TERM

    @pytest.mark.asyncio
    async def test_counters_accumulate_past_cache_eviction(self, strata_store, events):
        """Outcome counters keep accumulating after the Q-value cache evicts a memory."""
        q_store = QValueStore(
            QValueConfig(enabled=True, cache=CacheConfig(max_size=2)), events=events
        )
        trigger = CycleConsolidationTrigger(strata_store, q_store, events=events)

        for i in range(3):
            trigger.on_cycle_completed(_cycle("m1"), CycleOutcome(success=True))
            await q_store.update_q_value(f"other-{i}-a", reward=1.0)
            await q_store.update_q_value(f"other-{i}-b", reward=1.0)

        assert q_store.get_cache_stats()["size"] == 2
        assert trigger.get_success_count("m1") == 3

    def test_unknown_memories_are_skipped(self, trigger):
        """Test memories missing from every scope are skipped."""
        assert trigger.on_cycle_completed(_cycle("ghost"), CycleOutcome(success=True)) == []

    def test_disabled_consolidation_does_nothing(self, strata_store, q_store):
        """Test disabled consolidation neither counts nor transitions."""
        trigger = CycleConsolidationTrigger(
            strata_store, q_store, config=ConsolidationConfig(enabled=False)
        )

        assert trigger.on_cycle_completed(_cycle("m1"), CycleOutcome(success=True)) == []
        assert q_store.get_success_count("m1") == 0

    @pytest.mark.asyncio
    async def test_transition_failure_raises(self, strata_store, q_store, events, make_entry):
        """A decided transition that fails is reported and raised."""
        memory = strata_store.add_memory("agent", "a", MemoryStratum.WORKING, make_entry())
        await q_store.set_q_value_in_cache(memory.id, 0.9)
        for _ in range(3):
            q_store.record_outcome(memory.id, success=True)

        store = MagicMock(wraps=strata_store)
        store.transition_memory.side_effect = RuntimeError("write conflict")
        trigger = CycleConsolidationTrigger(store, q_store, events=events)

        with pytest.raises(ConsolidationError) as exc_info:
            trigger.evaluate_consolidation_for_cycle(_cycle(memory.id))

        assert exc_info.value.memory_id == memory.id
        assert exc_info.value.action == "promote"
        assert events.get_history(OrparMemoryEvent.CONSOLIDATION_ERROR)

    def test_lookup_failure_is_skipped(self, q_store):
        """Test a failing state lookup skips the memory."""
        store = MagicMock()
        store.get_memory.side_effect = RuntimeError("lookup failed")
        trigger = CycleConsolidationTrigger(store, q_store)

        assert trigger.evaluate_consolidation_for_cycle(_cycle("m1")) == []
