"""ORPAR memory utility and strata subsystem.

Tiered memory for agents running the Observe-Reason-Plan-Act-Reflect
cycle, with learned utility (Q-values), phase-weighted reward
attribution, rule-based consolidation and surprise-driven control.

Subpackages:
- orpar.memory: Strata store, Q-value store, utility scoring
- orpar.cycle: Phase routing, rewards, consolidation, surprise, coordinator

Usage:
    from orpar import RuntimeConfig, create_runtime

    runtime = create_runtime(RuntimeConfig.from_env(), persister=my_persister)
    runtime.coordinator.start()
"""

from orpar.phases import (
    OrparPhase,
    get_next_orpar_phase,
    get_previous_orpar_phase,
    is_valid_orpar_phase,
)
from orpar.memory.types import is_valid_memory_stratum
from orpar.errors import (
    ConsolidationError,
    OrparMemoryError,
    StrataDisabledError,
)
from orpar.events import (
    EmittedEvent,
    EventBus,
    MemoryUtilityEvent,
    OrparMemoryEvent,
)
from orpar.persistence import (
    InMemoryPersister,
    NullPersister,
    Persister,
)
from orpar.config import (
    MemoryStrataConfig,
    OrparMemoryConfig,
    QValueConfig,
    update_config,
)
from orpar.runtime import (
    OrparMemoryRuntime,
    RuntimeConfig,
    create_runtime,
)

__all__ = [
    # Phases
    "OrparPhase",
    "get_next_orpar_phase",
    "get_previous_orpar_phase",
    "is_valid_orpar_phase",
    "is_valid_memory_stratum",
    # Errors
    "ConsolidationError",
    "OrparMemoryError",
    "StrataDisabledError",
    # Events
    "EmittedEvent",
    "EventBus",
    "MemoryUtilityEvent",
    "OrparMemoryEvent",
    # Persistence
    "InMemoryPersister",
    "NullPersister",
    "Persister",
    # Config
    "MemoryStrataConfig",
    "OrparMemoryConfig",
    "QValueConfig",
    "update_config",
    # Runtime
    "OrparMemoryRuntime",
    "RuntimeConfig",
    "create_runtime",
]
