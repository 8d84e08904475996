"""Types for ORPAR cycle coordination.

Covers cycle state and outcomes, memory usage tracking, surprise
decisions, consolidation rules and reward attribution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from orpar.memory.qvalues import QValueUpdate
from orpar.memory.types import MemoryEntry, MemoryScope, MemoryStratum
from orpar.phases import OrparPhase


# ---------------------------------------------------------------------------
# Cycle state
# ---------------------------------------------------------------------------


@dataclass
class CycleOutcome:
    """How a cycle ended, as reported by the control loop."""

    success: bool
    quality_score: float | None = None  # 0-1, scales the success reward
    error_count: int = 0
    tool_call_count: int = 0
    task_completed: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "success": self.success,
            "quality_score": self.quality_score,
            "error_count": self.error_count,
            "tool_call_count": self.tool_call_count,
            "task_completed": self.task_completed,
            "metadata": self.metadata,
        }


@dataclass
class MemoryUsageEntry:
    """One use of a memory within a cycle phase."""

    memory_id: str
    phase: OrparPhase
    usage_type: str = "context"  # context | reference | action
    retrieved_at: datetime = field(default_factory=datetime.now)


@dataclass
class CycleMemoryUsage:
    """Memories used in one cycle, grouped by phase."""

    cycle_id: str
    agent_id: str
    channel_id: str
    task_id: str | None = None
    phase_usage: dict[OrparPhase, list[MemoryUsageEntry]] = field(
        default_factory=lambda: {phase: [] for phase in OrparPhase}
    )

    def memory_ids(self) -> set[str]:
        """Every memory id used anywhere in the cycle."""
        return {entry.memory_id for entries in self.phase_usage.values() for entry in entries}

    def phases_for(self, memory_id: str) -> set[OrparPhase]:
        """Phases in which a memory was used."""
        return {
            phase
            for phase, entries in self.phase_usage.items()
            if any(entry.memory_id == memory_id for entry in entries)
        }


@dataclass
class OrparCycleState:
    """Live state of one ORPAR cycle, owned by the coordinator."""

    cycle_id: str
    agent_id: str
    channel_id: str
    memory_usage: CycleMemoryUsage
    task_id: str | None = None
    current_phase: OrparPhase | None = None
    phase_start_times: dict[OrparPhase, datetime] = field(default_factory=dict)
    surprise_detections: list[SurpriseDetection] = field(default_factory=list)
    additional_observations_queued: int = 0
    is_complete: bool = False
    start_time: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    outcome: CycleOutcome | None = None


# ---------------------------------------------------------------------------
# Surprise
# ---------------------------------------------------------------------------


class SurpriseType(str, Enum):
    """Category of an externally detected surprise."""

    SCHEMA_VIOLATION = "schema_violation"
    PREDICTION_FAILURE = "prediction_failure"
    ANOMALY = "anomaly"
    NOVEL_PATTERN = "novel_pattern"
    CONTEXT_MISMATCH = "context_mismatch"
    PERFORMANCE_DEVIATION = "performance_deviation"
    UNEXPECTED_ERROR = "unexpected_error"
    UNEXPECTED_SUCCESS = "unexpected_success"


# Surprise types that call the current plan into question
PLAN_RELATED_SURPRISES: frozenset[SurpriseType] = frozenset(
    {
        SurpriseType.PREDICTION_FAILURE,
        SurpriseType.PERFORMANCE_DEVIATION,
        SurpriseType.UNEXPECTED_ERROR,
    }
)


@dataclass
class Expectation:
    """What was expected before the surprising observation."""

    expected: Any
    confidence: float
    source: str
    based_on: list[str] = field(default_factory=list)


@dataclass
class SurpriseDetection:
    """A surprise scored by an external detector."""

    is_surprising: bool
    surprise_score: float
    type: SurpriseType
    observation: Any
    explanation: str | None = None
    expectation: Expectation | None = None
    suggested_actions: list[str] = field(default_factory=list)


class SurpriseDecisionType(str, Enum):
    """Control decision taken in response to a surprise."""

    NO_ACTION = "no_action"
    RE_OBSERVE = "re_observe"
    INJECT_CONTEXT = "inject_context"
    EXTEND_REASONING = "extend_reasoning"
    RECONSIDER_PLAN = "reconsider_plan"


@dataclass
class SurpriseContext:
    """Context injected into reasoning after a surprise."""

    observation: Any
    explanation: str
    violated_expectation: Expectation | None
    focus_areas: list[str]
    surprise_score: float


@dataclass
class PlanReconsideration:
    """Request to revisit the current plan."""

    reason: str
    aspects_to_review: list[str]
    alternatives_to_consider: list[str]
    severity: str  # low | medium | high


@dataclass
class SurpriseProcessingContext:
    """Cycle the surprise belongs to."""

    cycle_id: str
    agent_id: str
    channel_id: str
    current_phase: OrparPhase | None = None


@dataclass
class SurpriseOrparDecision:
    """Decision produced from a surprise."""

    type: SurpriseDecisionType
    confidence: float
    surprise_score: float
    additional_observations: int = 0
    extend_reasoning: bool = False
    surprise_context: SurpriseContext | None = None
    plan_reconsideration: PlanReconsideration | None = None


# ---------------------------------------------------------------------------
# Consolidation
# ---------------------------------------------------------------------------


class ConsolidationActionType(str, Enum):
    """What to do with a memory that matched a rule."""

    PROMOTE = "promote"
    DEMOTE = "demote"
    ARCHIVE = "archive"
    ABSTRACT = "abstract"


@dataclass
class ConsolidationCondition:
    """Thresholds a memory must meet for a rule to match.

    Unset thresholds are ignored. Bounds are inclusive.
    """

    min_q_value: float | None = None
    max_q_value: float | None = None
    min_success_count: int | None = None
    min_failure_count: int | None = None
    days_since_access: int | None = None
    current_strata: list[MemoryStratum] | None = None


@dataclass
class ConsolidationAction:
    """Transition to execute.

    Without a target, PROMOTE/ABSTRACT move one stratum up and DEMOTE
    moves one stratum down.
    """

    type: ConsolidationActionType
    target_stratum: MemoryStratum | None = None


@dataclass
class ConsolidationRule:
    """Prioritized condition/action pair. Higher priority is evaluated first."""

    id: str
    name: str
    priority: int
    condition: ConsolidationCondition
    action: ConsolidationAction
    description: str = ""


@dataclass
class MemoryConsolidationState:
    """Live facts about one memory used to evaluate rules."""

    memory_id: str
    stratum: MemoryStratum
    q_value: float
    success_count: int
    failure_count: int
    last_accessed: datetime
    access_count: int = 0
    scope: MemoryScope = MemoryScope.AGENT
    scope_id: str = ""


@dataclass
class ConsolidationResult:
    """Executed consolidation for one memory."""

    memory_id: str
    action: ConsolidationActionType
    rule_id: str
    from_stratum: MemoryStratum
    to_stratum: MemoryStratum | None  # None when archived
    reason: str


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


@dataclass
class PhaseRewardAttribution:
    """Reward credited to one memory for one cycle."""

    memory_id: str
    reward: float
    phase_contributions: dict[OrparPhase, float]
    base_reward: float
    total_phase_weight: float
    q_value_update: QValueUpdate


# ---------------------------------------------------------------------------
# Phase memory operations
# ---------------------------------------------------------------------------


@dataclass
class PhaseStorageSpec:
    """Where and how a phase stores its memories."""

    target_stratum: MemoryStratum
    auto_tags: list[str]
    content_type: str  # observation | analysis | plan | action_result | learning
    default_importance: str  # critical | high | medium | low | trivial


@dataclass
class PhaseRetrievalOptions:
    """Request for phase-aware memory retrieval."""

    agent_id: str
    phase: OrparPhase
    query: str = ""
    channel_id: str | None = None
    max_results: int = 10
    include_secondary: bool = True
    tags: list[str] | None = None


@dataclass
class PhaseRetrievalResult:
    """Memories retrieved for a phase."""

    memories: list[MemoryEntry]
    queried_strata: list[MemoryStratum]
    phase: OrparPhase
    lambda_used: float
    primary_result_count: int = 0
    secondary_result_count: int = 0
    query_time_ms: float = 0.0


@dataclass
class PhaseStorageOptions:
    """Request to store a memory from a phase."""

    agent_id: str
    phase: OrparPhase
    content: str
    channel_id: str | None = None
    task_id: str | None = None
    additional_tags: list[str] = field(default_factory=list)
    importance: str | None = None  # Overrides the phase default
    related_memories: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PhaseStorageResult:
    """Stored memory and where it went."""

    memory: MemoryEntry
    stratum: MemoryStratum
    tags: list[str]
    phase: OrparPhase
