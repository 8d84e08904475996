"""Composition root for the ORPAR memory subsystem.

Builds every component once and wires them together explicitly. Nothing
else in the package constructs shared components.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field

from orpar.config import MemoryStrataConfig, OrparMemoryConfig, QValueConfig
from orpar.cycle.consolidation import CycleConsolidationTrigger
from orpar.cycle.coordinator import OrparMemoryCoordinator
from orpar.cycle.operations import PhaseMemoryOperations
from orpar.cycle.rewarder import PhaseWeightedRewarder
from orpar.cycle.router import PhaseStrataRouter
from orpar.cycle.surprise import SurpriseOrparAdapter
from orpar.events import EventBus
from orpar.memory.qvalues import QValueStore
from orpar.memory.strata import MemoryStrataStore
from orpar.memory.utility import UtilityScorer
from orpar.persistence import Persister

logger = logging.getLogger(__name__)


@dataclass
class RuntimeConfig:
    """All configuration needed to build a runtime."""

    orpar: OrparMemoryConfig = field(default_factory=OrparMemoryConfig)
    q_values: QValueConfig = field(default_factory=QValueConfig)
    strata: MemoryStrataConfig = field(default_factory=MemoryStrataConfig)

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        """Load every config from environment variables with defaults."""
        return cls(
            orpar=OrparMemoryConfig.from_env(),
            q_values=QValueConfig.from_env(),
            strata=MemoryStrataConfig.from_env(),
        )

    def validate(self) -> None:
        """Validate every config.

        Raises:
            ValueError: If any config is invalid
        """
        self.orpar.validate()
        self.q_values.validate()
        self.strata.validate()


@dataclass
class OrparMemoryRuntime:
    """Wired set of ORPAR memory components."""

    config: RuntimeConfig
    events: EventBus
    strata: MemoryStrataStore
    q_store: QValueStore
    scorer: UtilityScorer
    router: PhaseStrataRouter
    operations: PhaseMemoryOperations
    rewarder: PhaseWeightedRewarder
    consolidation: CycleConsolidationTrigger
    surprise: SurpriseOrparAdapter
    coordinator: OrparMemoryCoordinator


def create_runtime(
    config: RuntimeConfig | None = None,
    persister: Persister | None = None,
    events: EventBus | None = None,
    rng: random.Random | None = None,
) -> OrparMemoryRuntime:
    """Build and wire all components.

    Args:
        config: Configuration (default: loaded from the environment)
        persister: Utility record persistence (default: in-memory only)
        events: Event bus (default: a new bus)
        rng: Random source for strata decay

    Returns:
        OrparMemoryRuntime

    Raises:
        ValueError: If the configuration is invalid
    """
    config = config or RuntimeConfig.from_env()
    config.validate()

    if config.orpar.debug:
        logging.getLogger("orpar").setLevel(logging.DEBUG)

    events = events or EventBus()
    strata = MemoryStrataStore(config.strata, rng=rng)
    q_store = QValueStore(config.q_values, persister=persister, events=events)
    scorer = UtilityScorer(config.q_values, q_store=q_store)
    router = PhaseStrataRouter(config.orpar, strata, q_store=q_store, events=events)
    operations = PhaseMemoryOperations(config.orpar, strata, router, events=events)
    rewarder = PhaseWeightedRewarder(
        q_store,
        phase_weights=config.orpar.phase_weights,
        learning_rate=config.orpar.reward_learning_rate,
        events=events,
    )
    consolidation = CycleConsolidationTrigger(
        strata, q_store, config=config.orpar.consolidation, events=events
    )
    surprise = SurpriseOrparAdapter(
        config.orpar.surprise, enabled=config.orpar.enabled, events=events
    )
    coordinator = OrparMemoryCoordinator(
        config.orpar,
        operations=operations,
        rewarder=rewarder,
        consolidation=consolidation,
        surprise=surprise,
        events=events,
    )

    logger.info(
        f"ORPAR memory runtime created (integration={config.orpar.enabled}, "
        f"q_values={config.q_values.enabled}, strata={config.strata.enabled})"
    )
    return OrparMemoryRuntime(
        config=config,
        events=events,
        strata=strata,
        q_store=q_store,
        scorer=scorer,
        router=router,
        operations=operations,
        rewarder=rewarder,
        consolidation=consolidation,
        surprise=surprise,
        coordinator=coordinator,
    )
