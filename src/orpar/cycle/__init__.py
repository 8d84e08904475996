"""ORPAR cycle integration for the memory layer.

Components:
- PhaseStrataRouter: Which strata each phase reads from
- PhaseMemoryOperations: Phase-aware store/retrieve and usage tracking
- PhaseWeightedRewarder: Cycle outcome -> per-memory Q-value updates
- CycleConsolidationTrigger: Rule-based promote/demote/archive/abstract
- SurpriseOrparAdapter: Surprise score -> control decision
- OrparMemoryCoordinator: Cycle state and completion flow

Usage:
    from orpar.runtime import create_runtime

    runtime = create_runtime()
    coordinator = runtime.coordinator

    cycle_id = coordinator.start_cycle("agent-1", "channel-1", task_id="task-9")
    coordinator.on_phase_event("observation", "agent-1", "channel-1", loop_id=cycle_id)
    coordinator.record_memory_usage(cycle_id, "planning", memory_id)
    await coordinator.complete_cycle(cycle_id, CycleOutcome(success=True, quality_score=0.9))
"""

from orpar.cycle.types import (
    ConsolidationAction,
    ConsolidationActionType,
    ConsolidationCondition,
    ConsolidationResult,
    ConsolidationRule,
    CycleMemoryUsage,
    CycleOutcome,
    Expectation,
    MemoryConsolidationState,
    MemoryUsageEntry,
    OrparCycleState,
    PhaseRetrievalOptions,
    PhaseRetrievalResult,
    PhaseRewardAttribution,
    PhaseStorageOptions,
    PhaseStorageResult,
    PhaseStorageSpec,
    PlanReconsideration,
    SurpriseContext,
    SurpriseDecisionType,
    SurpriseDetection,
    SurpriseOrparDecision,
    SurpriseProcessingContext,
    SurpriseType,
)
from orpar.cycle.router import PhaseStrataRouter
from orpar.cycle.operations import PHASE_STORAGE_SPECS, PhaseMemoryOperations
from orpar.cycle.rewarder import PhaseWeightedRewarder
from orpar.cycle.consolidation import CycleConsolidationTrigger, default_consolidation_rules
from orpar.cycle.surprise import SurpriseOrparAdapter
from orpar.cycle.coordinator import OrparMemoryCoordinator

__all__ = [
    # Cycle types
    "CycleMemoryUsage",
    "CycleOutcome",
    "MemoryUsageEntry",
    "OrparCycleState",
    # Phase operations
    "PHASE_STORAGE_SPECS",
    "PhaseMemoryOperations",
    "PhaseRetrievalOptions",
    "PhaseRetrievalResult",
    "PhaseStorageOptions",
    "PhaseStorageResult",
    "PhaseStorageSpec",
    "PhaseStrataRouter",
    # Rewards
    "PhaseRewardAttribution",
    "PhaseWeightedRewarder",
    # Consolidation
    "ConsolidationAction",
    "ConsolidationActionType",
    "ConsolidationCondition",
    "ConsolidationResult",
    "ConsolidationRule",
    "CycleConsolidationTrigger",
    "MemoryConsolidationState",
    "default_consolidation_rules",
    # Surprise
    "Expectation",
    "PlanReconsideration",
    "SurpriseContext",
    "SurpriseDecisionType",
    "SurpriseDetection",
    "SurpriseOrparAdapter",
    "SurpriseOrparDecision",
    "SurpriseProcessingContext",
    "SurpriseType",
    # Coordinator
    "OrparMemoryCoordinator",
]
