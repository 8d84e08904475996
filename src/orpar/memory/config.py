"""Configuration for the memory strata store and Q-value learning.

Defaults match the production tuning. `from_env()` overrides them from
environment variables, for example MULS_ENABLED=true or MULS_LAMBDA=0.6.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any

from orpar.memory.normalization import NormalizationMethod
from orpar.memory.types import (
    DEFAULT_STRATUM_CONFIGS,
    MemoryStratum,
    StratumConfig,
)
from orpar.phases import OrparPhase

logger = logging.getLogger(__name__)


def parse_bool(val: str) -> bool:
    return val.lower() == "true"


def parse_strata(val: str, env_name: str) -> list[MemoryStratum]:
    strata: list[MemoryStratum] = []
    for raw in val.split(","):
        raw = raw.strip()
        if not raw:
            continue
        try:
            strata.append(MemoryStratum(raw))
        except ValueError:
            logger.warning(f"Ignoring unknown stratum '{raw}' in {env_name}")
    return strata


def check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0 and 1, got {value}")


# ---------------------------------------------------------------------------
# Memory strata
# ---------------------------------------------------------------------------


@dataclass
class MemoryStrataConfig:
    """Configuration for the multi-stratum memory store."""

    enabled: bool = True
    strata: dict[MemoryStratum, StratumConfig] = field(
        default_factory=lambda: {
            stratum: StratumConfig(cfg.max_capacity, cfg.decay_rate, cfg.update_frequency)
            for stratum, cfg in DEFAULT_STRATUM_CONFIGS.items()
        }
    )

    def get(self, stratum: MemoryStratum) -> StratumConfig:
        """Get the settings for one stratum."""
        return self.strata[stratum]

    def validate(self) -> None:
        """Validate stratum settings.

        Raises:
            ValueError: If any capacity, frequency or decay rate is invalid
        """
        for stratum, cfg in self.strata.items():
            if cfg.max_capacity <= 0:
                raise ValueError(f"{stratum.value} max_capacity must be positive")
            if cfg.update_frequency <= 0:
                raise ValueError(f"{stratum.value} update_frequency must be positive")
            check_unit_interval(f"{stratum.value} decay_rate", cfg.decay_rate)

    @classmethod
    def from_env(cls) -> "MemoryStrataConfig":
        """Load strata config from environment variables with defaults."""
        config = cls()
        if val := os.environ.get("MEMORY_STRATA_ENABLED"):
            config.enabled = parse_bool(val)
        return config


# ---------------------------------------------------------------------------
# Memory utility learning (Q-values)
# ---------------------------------------------------------------------------


@dataclass
class RewardMapping:
    """Reward assigned to each class of cycle outcome."""

    success: float = 1.0
    failure: float = -1.0
    partial: float = 0.3
    timeout: float = -0.5


@dataclass
class CacheConfig:
    """Q-value cache sizing."""

    enabled: bool = True
    max_size: int = 1000
    ttl_ms: int = 60_000  # Age after which read-through reloads from the persister


DEFAULT_PHASE_LAMBDAS: dict[OrparPhase, float] = {
    OrparPhase.OBSERVATION: 0.2,  # Explore: favour semantic similarity
    OrparPhase.REASONING: 0.5,
    OrparPhase.PLANNING: 0.7,  # Exploit: favour proven memories
    OrparPhase.ACTION: 0.3,
    OrparPhase.REFLECTION: 0.6,
}


@dataclass
class QValueConfig:
    """Configuration for Q-value learning and utility scoring."""

    enabled: bool = False
    lambda_default: float = 0.5
    phase_lambdas: dict[OrparPhase, float] = field(
        default_factory=lambda: dict(DEFAULT_PHASE_LAMBDAS)
    )
    default_q_value: float = 0.5
    learning_rate: float = 0.1
    max_candidates: int = 20
    max_results: int = 5
    similarity_threshold: float = 0.3
    normalization: NormalizationMethod = NormalizationMethod.ZSCORE
    reward_mapping: RewardMapping = field(default_factory=RewardMapping)
    q_value_history_limit: int = 100
    cache: CacheConfig = field(default_factory=CacheConfig)

    def validate(self) -> None:
        """Validate lambdas, learning rate and limits.

        Raises:
            ValueError: If any value is out of range
        """
        check_unit_interval("lambda_default", self.lambda_default)
        for phase, value in self.phase_lambdas.items():
            check_unit_interval(f"{OrparPhase(phase).value} lambda", value)
        check_unit_interval("default_q_value", self.default_q_value)
        if not 0.0 < self.learning_rate <= 1.0:
            raise ValueError(f"learning_rate must be in (0, 1], got {self.learning_rate}")
        if self.max_results <= 0 or self.max_candidates <= 0:
            raise ValueError("max_results and max_candidates must be positive")
        if self.cache.max_size <= 0:
            raise ValueError("cache max_size must be positive")

    @classmethod
    def from_env(cls) -> "QValueConfig":
        """Load Q-value config from environment variables with defaults."""
        config = cls()

        if val := os.environ.get("MULS_ENABLED"):
            config.enabled = parse_bool(val)
        if val := os.environ.get("MULS_LAMBDA"):
            config.lambda_default = float(val)
        if val := os.environ.get("MULS_DEFAULT_QVALUE"):
            config.default_q_value = float(val)
        if val := os.environ.get("MULS_LEARNING_RATE"):
            config.learning_rate = float(val)
        if val := os.environ.get("MULS_NORMALIZATION"):
            config.normalization = NormalizationMethod(val)
        if val := os.environ.get("MULS_CACHE_MAX_SIZE"):
            config.cache.max_size = int(val)

        # Per-phase lambdas, e.g. MULS_LAMBDA_PLANNING=0.8
        for phase in OrparPhase:
            if val := os.environ.get(f"MULS_LAMBDA_{phase.name}"):
                config.phase_lambdas[phase] = float(val)

        return config


def update_config(config: Any, **overrides: Any) -> Any:
    """Apply field overrides to a config dataclass and re-validate it.

    Args:
        config: Any config dataclass
        **overrides: Field names and new values

    Returns:
        The same config object, updated

    Raises:
        ValueError: If a field is unknown or the result fails validation
    """
    known = {f.name for f in fields(config)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown config fields for {type(config).__name__}: {sorted(unknown)}")

    for name, value in overrides.items():
        setattr(config, name, value)

    validate = getattr(config, "validate", None)
    if validate is not None:
        validate()
    return config
