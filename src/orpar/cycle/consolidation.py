"""Cycle-driven memory consolidation.

After each ORPAR cycle, every memory the cycle used has its success or
failure counter updated and is then checked against a prioritized rule
list. The first matching rule wins:

- promote-high-performers (100): Q >= 0.7 and >= 3 successes -> next stratum up
- demote-low-performers (90): Q <= 0.3 and >= 5 failures -> archive
- abstract-proven-patterns (80): long_term, Q >= 0.7 and >= 10 successes -> semantic
- archive-stale (70): Q <= 0.5 and not accessed for 30 days -> archive

Looking up a memory's state is best effort: a memory that cannot be
found is skipped. Executing a decided transition is not: failures are
logged and raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from orpar.config import ConsolidationConfig
from orpar.cycle.types import (
    ConsolidationAction,
    ConsolidationActionType,
    ConsolidationCondition,
    ConsolidationResult,
    ConsolidationRule,
    CycleOutcome,
    MemoryConsolidationState,
    OrparCycleState,
)
from orpar.errors import ConsolidationError
from orpar.events import EventBus, OrparMemoryEvent
from orpar.memory.qvalues import QValueStore
from orpar.memory.strata import MemoryStrataStore
from orpar.memory.types import (
    MemoryScope,
    MemoryStratum,
    next_stratum_down,
    next_stratum_up,
)

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000

PROMOTE_REASON = "High Q-value and success count - promoted via ORPAR cycle"
DEMOTE_REASON = "Low Q-value and failure count - demoted via ORPAR cycle"
ABSTRACT_REASON = "Proven pattern - abstracted to semantic knowledge via ORPAR cycle"

ACTION_PAST_TENSE: dict[ConsolidationActionType, str] = {
    ConsolidationActionType.PROMOTE: "Promoted",
    ConsolidationActionType.DEMOTE: "Demoted",
    ConsolidationActionType.ARCHIVE: "Archived",
    ConsolidationActionType.ABSTRACT: "Abstracted",
}


def default_consolidation_rules(
    config: ConsolidationConfig | None = None,
) -> list[ConsolidationRule]:
    """Build the default rule set from consolidation thresholds."""
    config = config or ConsolidationConfig()
    return [
        ConsolidationRule(
            id="promote-high-performers",
            name="Promote High Performers",
            priority=100,
            condition=ConsolidationCondition(
                min_q_value=config.promotion_q_value,
                min_success_count=config.promotion_min_success,
                current_strata=[
                    MemoryStratum.WORKING,
                    MemoryStratum.SHORT_TERM,
                    MemoryStratum.EPISODIC,
                    MemoryStratum.LONG_TERM,
                ],
            ),
            action=ConsolidationAction(type=ConsolidationActionType.PROMOTE),
            description="Memories that keep contributing to successful cycles move up one stratum",
        ),
        ConsolidationRule(
            id="demote-low-performers",
            name="Demote Low Performers",
            priority=90,
            condition=ConsolidationCondition(
                max_q_value=config.demotion_q_value,
                min_failure_count=config.demotion_min_failure,
                current_strata=[MemoryStratum.SHORT_TERM, MemoryStratum.LONG_TERM],
            ),
            action=ConsolidationAction(type=ConsolidationActionType.ARCHIVE),
            description="Memories repeatedly used in failed cycles are archived",
        ),
        ConsolidationRule(
            id="abstract-proven-patterns",
            name="Abstract Proven Patterns",
            priority=80,
            condition=ConsolidationCondition(
                min_q_value=config.abstraction_q_value,
                min_success_count=config.abstraction_min_success,
                current_strata=[MemoryStratum.LONG_TERM],
            ),
            action=ConsolidationAction(
                type=ConsolidationActionType.ABSTRACT,
                target_stratum=MemoryStratum.SEMANTIC,
            ),
            description="Long-term memories with sustained success become semantic knowledge",
        ),
        ConsolidationRule(
            id="archive-stale",
            name="Archive Stale Memories",
            priority=70,
            condition=ConsolidationCondition(
                max_q_value=config.archive_max_q_value,
                days_since_access=config.archive_days_since_access,
            ),
            action=ConsolidationAction(type=ConsolidationActionType.ARCHIVE),
            description="Unused memories of no proven value are archived",
        ),
    ]


class CycleConsolidationTrigger:
    """Evaluates consolidation rules for memories used in a cycle."""

    def __init__(
        self,
        strata: MemoryStrataStore,
        q_store: QValueStore,
        config: ConsolidationConfig | None = None,
        rules: list[ConsolidationRule] | None = None,
        events: EventBus | None = None,
    ):
        """Initialize the trigger.

        Args:
            strata: Memory store holding the memories
            q_store: Q-value store holding utility records and counters
            config: Thresholds for the default rules
            rules: Custom rule set (replaces the defaults)
            events: Event bus for observability
        """
        self.strata = strata
        self.q_store = q_store
        self.config = config or ConsolidationConfig()
        self.events = events or EventBus()
        self._rules = sorted(
            rules if rules is not None else default_consolidation_rules(self.config),
            key=lambda r: r.priority,
            reverse=True,
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_rule(self, rule: ConsolidationRule) -> None:
        """Add a rule, replacing any rule with the same id."""
        self._rules = [r for r in self._rules if r.id != rule.id]
        self._rules.append(rule)
        self._rules.sort(key=lambda r: r.priority, reverse=True)

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule by id."""
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.id != rule_id]
        return len(self._rules) < before

    def get_rules(self) -> list[ConsolidationRule]:
        """Rules in evaluation order."""
        return list(self._rules)

    def check_condition(
        self, condition: ConsolidationCondition, state: MemoryConsolidationState
    ) -> bool:
        """Check whether a memory's state satisfies every set threshold."""
        if condition.current_strata is not None and state.stratum not in condition.current_strata:
            return False
        if condition.min_q_value is not None and state.q_value < condition.min_q_value:
            return False
        if condition.max_q_value is not None and state.q_value > condition.max_q_value:
            return False
        if (
            condition.min_success_count is not None
            and state.success_count < condition.min_success_count
        ):
            return False
        if (
            condition.min_failure_count is not None
            and state.failure_count < condition.min_failure_count
        ):
            return False
        if condition.days_since_access is not None:
            if _days_since(state.last_accessed) < condition.days_since_access:
                return False
        return True

    def evaluate_rules(self, state: MemoryConsolidationState) -> ConsolidationRule | None:
        """Return the highest-priority rule the memory matches, if any."""
        for rule in self._rules:
            if self.check_condition(rule.condition, state):
                return rule
        return None

    def evaluate_memory(
        self,
        memory_id: str,
        stratum: MemoryStratum,
        q_value: float,
        last_accessed: datetime,
        access_count: int = 0,
    ) -> ConsolidationRule | None:
        """Evaluate rules for one memory using its tracked counters."""
        state = MemoryConsolidationState(
            memory_id=memory_id,
            stratum=stratum,
            q_value=q_value,
            success_count=self.get_success_count(memory_id),
            failure_count=self.get_failure_count(memory_id),
            last_accessed=last_accessed,
            access_count=access_count,
        )
        return self.evaluate_rules(state)

    def get_success_count(self, memory_id: str) -> int:
        return self.q_store.get_success_count(memory_id)

    def get_failure_count(self, memory_id: str) -> int:
        return self.q_store.get_failure_count(memory_id)

    # ------------------------------------------------------------------
    # Cycle evaluation
    # ------------------------------------------------------------------

    def on_cycle_completed(
        self, cycle: OrparCycleState, outcome: CycleOutcome
    ) -> list[ConsolidationResult]:
        """Update counters for the cycle's memories and consolidate them.

        Args:
            cycle: Completed cycle state
            outcome: How the cycle ended

        Returns:
            Executed consolidations

        Raises:
            ConsolidationError: If a decided transition fails
        """
        if not self.config.enabled:
            return []

        memory_ids = sorted(cycle.memory_usage.memory_ids())
        self.events.emit(
            OrparMemoryEvent.CONSOLIDATION_TRIGGERED,
            {
                "cycle_id": cycle.cycle_id,
                "memory_count": len(memory_ids),
                "success": outcome.success,
            },
            agent_id=cycle.agent_id,
            channel_id=cycle.channel_id,
        )

        for memory_id in memory_ids:
            self.q_store.record_outcome(memory_id, outcome.success)

        return self.evaluate_consolidation_for_cycle(cycle, memory_ids)

    def evaluate_consolidation_for_cycle(
        self, cycle: OrparCycleState, memory_ids: list[str] | None = None
    ) -> list[ConsolidationResult]:
        """Evaluate and execute rules for every memory used in a cycle."""
        if memory_ids is None:
            memory_ids = sorted(cycle.memory_usage.memory_ids())

        results: list[ConsolidationResult] = []
        for memory_id in memory_ids:
            state = self._resolve_state(memory_id, cycle.agent_id, cycle.channel_id)
            if state is None:
                logger.debug(f"Skipping consolidation for unresolved memory {memory_id}")
                continue

            rule = self.evaluate_rules(state)
            if rule is None:
                continue

            result = self._execute(rule, state, cycle.agent_id, cycle.channel_id)
            if result is not None:
                results.append(result)

        if results:
            logger.info(f"Consolidated {len(results)} memories for cycle {cycle.cycle_id}")
        return results

    def _resolve_state(
        self, memory_id: str, agent_id: str, channel_id: str
    ) -> MemoryConsolidationState | None:
        """Locate a memory across agent then channel strata."""
        for scope, scope_id in ((MemoryScope.AGENT, agent_id), (MemoryScope.CHANNEL, channel_id)):
            for stratum in MemoryStratum:
                try:
                    memory = self.strata.get_memory(scope, scope_id, memory_id, stratum)
                except Exception as e:
                    logger.warning(
                        f"Failed to look up memory {memory_id} in {stratum.value}: {e}"
                    )
                    continue

                if memory is not None:
                    return MemoryConsolidationState(
                        memory_id=memory_id,
                        stratum=stratum,
                        q_value=self.q_store.get_q_value(memory_id),
                        success_count=self.get_success_count(memory_id),
                        failure_count=self.get_failure_count(memory_id),
                        last_accessed=memory.last_accessed,
                        access_count=memory.access_count,
                        scope=scope,
                        scope_id=scope_id,
                    )
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        rule: ConsolidationRule,
        state: MemoryConsolidationState,
        agent_id: str,
        channel_id: str,
    ) -> ConsolidationResult | None:
        action = rule.action.type
        try:
            if action == ConsolidationActionType.PROMOTE:
                return self._execute_transition(
                    rule, state, next_stratum_up, PROMOTE_REASON,
                    OrparMemoryEvent.MEMORY_PROMOTED, agent_id, channel_id,
                )
            elif action == ConsolidationActionType.DEMOTE:
                return self._execute_transition(
                    rule, state, next_stratum_down, DEMOTE_REASON,
                    OrparMemoryEvent.MEMORY_DEMOTED, agent_id, channel_id,
                )
            elif action == ConsolidationActionType.ABSTRACT:
                return self._execute_transition(
                    rule, state, next_stratum_up, ABSTRACT_REASON,
                    OrparMemoryEvent.MEMORY_ABSTRACTED, agent_id, channel_id,
                )
            else:
                return self._execute_archive(rule, state, agent_id, channel_id)
        except Exception as e:
            logger.error(f"Failed to {action.value} memory {state.memory_id}: {e}")
            self.events.emit(
                OrparMemoryEvent.CONSOLIDATION_ERROR,
                {"memory_id": state.memory_id, "action": action.value, "error": str(e)},
                agent_id=agent_id,
                channel_id=channel_id,
            )
            raise ConsolidationError(
                f"Failed to {action.value} memory {state.memory_id}: {e}",
                memory_id=state.memory_id,
                action=action.value,
            ) from e

    def _execute_transition(
        self,
        rule: ConsolidationRule,
        state: MemoryConsolidationState,
        default_target: Callable[[MemoryStratum], MemoryStratum | None],
        reason: str,
        event: OrparMemoryEvent,
        agent_id: str,
        channel_id: str,
    ) -> ConsolidationResult | None:
        target = rule.action.target_stratum or default_target(state.stratum)
        if target is None or target == state.stratum:
            logger.debug(
                f"No {rule.action.type.value} target for memory {state.memory_id} "
                f"in {state.stratum.value}"
            )
            return None

        moved = self.strata.transition_memory(
            state.scope, state.scope_id, state.memory_id, state.stratum, target, reason
        )
        if not moved:
            return None

        self.events.emit(
            event,
            {
                "memory_id": state.memory_id,
                "from_stratum": state.stratum.value,
                "to_stratum": target.value,
                "rule_id": rule.id,
                "q_value": state.q_value,
                "success_count": state.success_count,
                "failure_count": state.failure_count,
            },
            agent_id=agent_id,
            channel_id=channel_id,
        )
        logger.info(
            f"{ACTION_PAST_TENSE[rule.action.type]} memory {state.memory_id} "
            f"from {state.stratum.value} to {target.value} (rule {rule.id})"
        )

        return ConsolidationResult(
            memory_id=state.memory_id,
            action=rule.action.type,
            rule_id=rule.id,
            from_stratum=state.stratum,
            to_stratum=target,
            reason=reason,
        )

    def _execute_archive(
        self,
        rule: ConsolidationRule,
        state: MemoryConsolidationState,
        agent_id: str,
        channel_id: str,
    ) -> ConsolidationResult:
        self.strata.remove_memory(state.scope, state.scope_id, state.memory_id)
        self.q_store.evict_record(state.memory_id)

        reason = f"Archived by rule {rule.id}"
        self.events.emit(
            OrparMemoryEvent.MEMORY_ARCHIVED,
            {
                "memory_id": state.memory_id,
                "from_stratum": state.stratum.value,
                "rule_id": rule.id,
                "q_value": state.q_value,
                "failure_count": state.failure_count,
            },
            agent_id=agent_id,
            channel_id=channel_id,
        )
        logger.info(f"Archived memory {state.memory_id} from {state.stratum.value} (rule {rule.id})")

        return ConsolidationResult(
            memory_id=state.memory_id,
            action=ConsolidationActionType.ARCHIVE,
            rule_id=rule.id,
            from_stratum=state.stratum,
            to_stratum=None,
            reason=reason,
        )


def _days_since(moment: datetime) -> int:
    elapsed_ms = (datetime.now() - moment).total_seconds() * 1000
    return int(elapsed_ms // MS_PER_DAY)
