"""Configuration for the ORPAR memory subsystem.

Every config is a dataclass with working defaults. `from_env()` overrides
the defaults from environment variables, for example
ORPAR_MEMORY_INTEGRATION_ENABLED=true or SURPRISE_HIGH_THRESHOLD=0.8.
Strata and Q-value configs live in orpar.memory.config and are
re-exported here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any

from orpar.memory.config import (
    DEFAULT_PHASE_LAMBDAS,
    CacheConfig,
    MemoryStrataConfig,
    QValueConfig,
    RewardMapping,
    check_unit_interval,
    parse_bool,
    parse_strata,
    update_config,
)
from orpar.memory.types import MemoryStratum
from orpar.phases import OrparPhase

logger = logging.getLogger(__name__)

PHASE_WEIGHT_TOLERANCE = 0.01


@dataclass
class PhaseStrataMapping:
    """Strata a phase reads from, and how it blends similarity with utility."""

    phase: OrparPhase
    primary_strata: list[MemoryStratum]
    secondary_strata: list[MemoryStratum]
    lambda_: float
    rationale: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "phase": self.phase.value,
            "primary_strata": [s.value for s in self.primary_strata],
            "secondary_strata": [s.value for s in self.secondary_strata],
            "lambda": self.lambda_,
            "rationale": self.rationale,
        }


def default_phase_strata_mappings() -> dict[OrparPhase, PhaseStrataMapping]:
    """Build the default phase to strata routing table."""
    return {
        OrparPhase.OBSERVATION: PhaseStrataMapping(
            phase=OrparPhase.OBSERVATION,
            primary_strata=[MemoryStratum.WORKING, MemoryStratum.SHORT_TERM],
            secondary_strata=[MemoryStratum.EPISODIC],
            lambda_=DEFAULT_PHASE_LAMBDAS[OrparPhase.OBSERVATION],
            rationale="Recent context grounds new observations; similar episodes add background",
        ),
        OrparPhase.REASONING: PhaseStrataMapping(
            phase=OrparPhase.REASONING,
            primary_strata=[MemoryStratum.EPISODIC, MemoryStratum.SEMANTIC],
            secondary_strata=[MemoryStratum.LONG_TERM],
            lambda_=DEFAULT_PHASE_LAMBDAS[OrparPhase.REASONING],
            rationale="Past episodes and abstracted knowledge inform analysis",
        ),
        OrparPhase.PLANNING: PhaseStrataMapping(
            phase=OrparPhase.PLANNING,
            primary_strata=[MemoryStratum.SEMANTIC, MemoryStratum.LONG_TERM],
            secondary_strata=[MemoryStratum.EPISODIC],
            lambda_=DEFAULT_PHASE_LAMBDAS[OrparPhase.PLANNING],
            rationale="Proven patterns and consolidated strategies drive plans",
        ),
        OrparPhase.ACTION: PhaseStrataMapping(
            phase=OrparPhase.ACTION,
            primary_strata=[MemoryStratum.WORKING, MemoryStratum.SHORT_TERM],
            secondary_strata=[],
            lambda_=DEFAULT_PHASE_LAMBDAS[OrparPhase.ACTION],
            rationale="Execution needs the immediate plan and current state",
        ),
        OrparPhase.REFLECTION: PhaseStrataMapping(
            phase=OrparPhase.REFLECTION,
            primary_strata=list(MemoryStratum),
            secondary_strata=[],
            lambda_=DEFAULT_PHASE_LAMBDAS[OrparPhase.REFLECTION],
            rationale="Reflection reviews the whole memory hierarchy",
        ),
    }


@dataclass
class SurpriseThresholds:
    """Score cutoffs that turn a surprise into a control decision."""

    high: float = 0.7  # Re-observe at or above
    moderate: float = 0.4  # Inject context or extend reasoning at or above
    plan: float = 0.6  # Reconsider plan for plan-related surprises
    max_extra_observations: int = 3


@dataclass
class PhaseWeights:
    """Share of a cycle's reward credited to each phase."""

    observation: float = 0.15
    reasoning: float = 0.20
    planning: float = 0.30
    action: float = 0.25
    reflection: float = 0.10

    def as_dict(self) -> dict[OrparPhase, float]:
        """Weights keyed by phase."""
        return {phase: getattr(self, phase.value) for phase in OrparPhase}

    def total(self) -> float:
        """Sum of all phase weights."""
        return sum(self.as_dict().values())


@dataclass
class ConsolidationConfig:
    """Thresholds for the default consolidation rules."""

    enabled: bool = True
    promotion_q_value: float = 0.7
    promotion_min_success: int = 3
    demotion_q_value: float = 0.3
    demotion_min_failure: int = 5
    abstraction_q_value: float = 0.7
    abstraction_min_success: int = 10
    archive_max_q_value: float = 0.5
    archive_days_since_access: int = 30


@dataclass
class CoordinatorTiming:
    """Cycle bookkeeping timers, in milliseconds."""

    stale_cycle_ttl_ms: int = 30 * 60 * 1000
    cleanup_interval_ms: int = 5 * 60 * 1000
    recent_cycle_ttl_ms: int = 60 * 1000


@dataclass
class OrparMemoryConfig:
    """Top-level configuration for ORPAR memory integration."""

    enabled: bool = False
    debug: bool = False
    phase_strata_mappings: dict[OrparPhase, PhaseStrataMapping] = field(
        default_factory=default_phase_strata_mappings
    )
    surprise: SurpriseThresholds = field(default_factory=SurpriseThresholds)
    phase_weights: PhaseWeights = field(default_factory=PhaseWeights)
    reward_learning_rate: float = 0.1
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    timing: CoordinatorTiming = field(default_factory=CoordinatorTiming)

    def validate(self) -> None:
        """Validate thresholds, lambdas and weights.

        Raises:
            ValueError: If a threshold or lambda is out of range
        """
        check_unit_interval("surprise.high", self.surprise.high)
        check_unit_interval("surprise.moderate", self.surprise.moderate)
        check_unit_interval("surprise.plan", self.surprise.plan)
        if self.surprise.moderate > self.surprise.high:
            raise ValueError("surprise.moderate must not exceed surprise.high")
        if self.surprise.max_extra_observations < 1:
            raise ValueError("surprise.max_extra_observations must be at least 1")
        for mapping in self.phase_strata_mappings.values():
            check_unit_interval(f"{mapping.phase.value} lambda", mapping.lambda_)
        if not 0.0 < self.reward_learning_rate <= 1.0:
            raise ValueError(
                f"reward_learning_rate must be in (0, 1], got {self.reward_learning_rate}"
            )
        total = self.phase_weights.total()
        if abs(total - 1.0) > PHASE_WEIGHT_TOLERANCE:
            logger.warning(f"Phase weights sum to {total:.3f}, expected 1.0")

    @classmethod
    def from_env(cls) -> "OrparMemoryConfig":
        """Load integration config from environment variables with defaults."""
        config = cls()

        if val := os.environ.get("ORPAR_MEMORY_INTEGRATION_ENABLED"):
            config.enabled = parse_bool(val)
        if val := os.environ.get("ORPAR_MEMORY_DEBUG"):
            config.debug = parse_bool(val)

        # Phase routing overrides
        for phase in (OrparPhase.OBSERVATION, OrparPhase.REASONING, OrparPhase.PLANNING):
            env_name = f"PHASE_STRATA_{phase.name}_PRIMARY"
            if val := os.environ.get(env_name):
                strata = parse_strata(val, env_name)
                if strata:
                    config.phase_strata_mappings[phase].primary_strata = strata

        # Surprise thresholds
        if val := os.environ.get("SURPRISE_HIGH_THRESHOLD"):
            config.surprise.high = float(val)
        if val := os.environ.get("SURPRISE_MODERATE_THRESHOLD"):
            config.surprise.moderate = float(val)
        if val := os.environ.get("SURPRISE_PLAN_THRESHOLD"):
            config.surprise.plan = float(val)
        if val := os.environ.get("SURPRISE_MAX_EXTRA_OBSERVATIONS"):
            config.surprise.max_extra_observations = int(val)

        # Phase weights, e.g. PHASE_WEIGHT_PLANNING=0.35
        for phase in OrparPhase:
            if val := os.environ.get(f"PHASE_WEIGHT_{phase.name}"):
                setattr(config.phase_weights, phase.value, float(val))

        # Consolidation
        if val := os.environ.get("CONSOLIDATION_PROMOTION_QVALUE"):
            config.consolidation.promotion_q_value = float(val)
        if val := os.environ.get("CONSOLIDATION_DEMOTION_QVALUE"):
            config.consolidation.demotion_q_value = float(val)

        # Coordinator timing
        if val := os.environ.get("ORPAR_STALE_CYCLE_TTL_MS"):
            config.timing.stale_cycle_ttl_ms = int(val)
        if val := os.environ.get("ORPAR_CLEANUP_INTERVAL_MS"):
            config.timing.cleanup_interval_ms = int(val)
        if val := os.environ.get("ORPAR_RECENT_CYCLE_TTL_MS"):
            config.timing.recent_cycle_ttl_ms = int(val)

        return config


def get_config_summary(config: OrparMemoryConfig) -> dict[str, Any]:
    """Plain-dict summary of the integration config for logging and diagnostics."""
    return {
        "enabled": config.enabled,
        "debug": config.debug,
        "phase_strata_mappings": {
            phase.value: mapping.to_dict()
            for phase, mapping in config.phase_strata_mappings.items()
        },
        "surprise": asdict(config.surprise),
        "phase_weights": asdict(config.phase_weights),
        "reward_learning_rate": config.reward_learning_rate,
        "consolidation": asdict(config.consolidation),
        "timing": asdict(config.timing),
    }


__all__ = [
    # Memory configs
    "CacheConfig",
    "DEFAULT_PHASE_LAMBDAS",
    "MemoryStrataConfig",
    "QValueConfig",
    "RewardMapping",
    # Integration configs
    "ConsolidationConfig",
    "CoordinatorTiming",
    "OrparMemoryConfig",
    "PhaseStrataMapping",
    "PhaseWeights",
    "SurpriseThresholds",
    "default_phase_strata_mappings",
    # Helpers
    "get_config_summary",
    "update_config",
]
