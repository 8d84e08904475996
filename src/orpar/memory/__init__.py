"""Memory layer for the ORPAR memory subsystem.

Provides:
- Strata: Five temporal tiers (working -> semantic) per agent or channel
- Q-values: Learned utility per memory with a write-back cache
- Utility scoring: Similarity blended with utility, lambda per phase

Usage:
    from orpar.memory import (
        MemoryStrataStore,
        QValueStore,
        UtilityScorer,
        MemoryEntry,
        MemoryStratum,
    )

    strata = MemoryStrataStore()
    entry = strata.add_memory("agent", "agent-1", MemoryStratum.WORKING, MemoryEntry(...))
    result = strata.query_memories("agent", "agent-1", MemoryQuery(query="deploy"))

    q_store = QValueStore(QValueConfig(enabled=True), persister=my_persister)
    await q_store.update_q_value(entry.id, reward=1.0)

    scorer = UtilityScorer(q_store=q_store)
    ranked = scorer.score_for_phase("deploy", candidates, OrparPhase.PLANNING)
"""

from orpar.memory.types import (
    ContentType,
    DEFAULT_STRATUM_CONFIGS,
    MemoryContext,
    MemoryEntry,
    MemoryImportance,
    MemoryQuery,
    MemoryQueryResult,
    MemoryScope,
    MemorySource,
    MemoryStratum,
    MemoryTransition,
    SourceType,
    StratumConfig,
    StratumStatistics,
    STRATUM_ORDER,
    is_valid_memory_stratum,
    next_stratum_down,
    next_stratum_up,
)
from orpar.memory.config import (
    CacheConfig,
    MemoryStrataConfig,
    QValueConfig,
    RewardMapping,
)
from orpar.memory.normalization import NormalizationMethod, normalize
from orpar.memory.strata import MemoryStrataStore
from orpar.memory.qvalues import (
    BatchUpdateResult,
    OutcomeCounters,
    QValueDistribution,
    QValueHistoryEntry,
    QValueStore,
    QValueUpdate,
    UtilityRecord,
)
from orpar.memory.utility import (
    MemoryCandidate,
    ScoredMemory,
    ScoringOptions,
    ScoringResult,
    UtilityScorer,
)

__all__ = [
    # Types
    "ContentType",
    "DEFAULT_STRATUM_CONFIGS",
    "MemoryContext",
    "MemoryEntry",
    "MemoryImportance",
    "MemoryQuery",
    "MemoryQueryResult",
    "MemoryScope",
    "MemorySource",
    "MemoryStratum",
    "MemoryTransition",
    "SourceType",
    "StratumConfig",
    "StratumStatistics",
    "STRATUM_ORDER",
    "is_valid_memory_stratum",
    "next_stratum_down",
    "next_stratum_up",
    # Config
    "CacheConfig",
    "MemoryStrataConfig",
    "QValueConfig",
    "RewardMapping",
    # Normalization
    "NormalizationMethod",
    "normalize",
    # Strata
    "MemoryStrataStore",
    # Q-values
    "BatchUpdateResult",
    "OutcomeCounters",
    "QValueDistribution",
    "QValueHistoryEntry",
    "QValueStore",
    "QValueUpdate",
    "UtilityRecord",
    # Utility scoring
    "MemoryCandidate",
    "ScoredMemory",
    "ScoringOptions",
    "ScoringResult",
    "UtilityScorer",
]
