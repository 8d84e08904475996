"""Memory strata types and configuration.

Defines the five temporal strata, memory entries, queries and the
per-stratum capacity/decay/cadence settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4


class MemoryStratum(str, Enum):
    """Temporal memory tier.

    Ordered from most transient to most abstract:
    - WORKING: Immediate context, refreshed every cycle
    - SHORT_TERM: Recent activity across a few cycles
    - EPISODIC: Specific past episodes and analyses
    - LONG_TERM: Consolidated, proven memories
    - SEMANTIC: Abstracted patterns and knowledge
    """

    WORKING = "working"
    SHORT_TERM = "short_term"
    EPISODIC = "episodic"
    LONG_TERM = "long_term"
    SEMANTIC = "semantic"


# Promotion moves right along this ladder, demotion moves left
STRATUM_ORDER: list[MemoryStratum] = [
    MemoryStratum.WORKING,
    MemoryStratum.SHORT_TERM,
    MemoryStratum.EPISODIC,
    MemoryStratum.LONG_TERM,
    MemoryStratum.SEMANTIC,
]


def next_stratum_up(stratum: MemoryStratum) -> MemoryStratum | None:
    """Get the stratum above `stratum`, or None at the top."""
    index = STRATUM_ORDER.index(stratum)
    return STRATUM_ORDER[index + 1] if index + 1 < len(STRATUM_ORDER) else None


def next_stratum_down(stratum: MemoryStratum) -> MemoryStratum | None:
    """Get the stratum below `stratum`, or None at the bottom."""
    index = STRATUM_ORDER.index(stratum)
    return STRATUM_ORDER[index - 1] if index > 0 else None


def is_valid_memory_stratum(value: str) -> bool:
    """Check whether a string names a memory stratum."""
    return value in {stratum.value for stratum in MemoryStratum}


class MemoryScope(str, Enum):
    """Owner of a memory partition."""

    AGENT = "agent"
    CHANNEL = "channel"


class MemoryImportance(Enum):
    """Ordinal importance of a memory (1-5)."""

    CRITICAL = 5
    HIGH = 4
    MEDIUM = 3
    LOW = 2
    TRIVIAL = 1

    @classmethod
    def from_name(cls, name: str) -> MemoryImportance:
        """Map a lowercase name ("high", "medium", ...) to an importance."""
        return cls[name.upper()]


class ContentType(str, Enum):
    """Representation of a memory's content."""

    TEXT = "text"
    STRUCTURED = "structured"
    EMBEDDING = "embedding"


class SourceType(str, Enum):
    """Where a memory came from."""

    CONVERSATION = "conversation"
    OBSERVATION = "observation"
    REASONING = "reasoning"
    REFLECTION = "reflection"
    LEARNING = "learning"
    EXTERNAL = "external"


@dataclass
class MemorySource:
    """Origin of a memory."""

    type: SourceType = SourceType.EXTERNAL
    agent_id: str | None = None
    channel_id: str | None = None


@dataclass
class MemoryContext:
    """Cycle context a memory was created in."""

    orpar_phase: str | None = None  # observe | reason | plan | act | reflect
    task_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class MemoryEntry:
    """A single memory held in one stratum of one scope.

    `last_accessed` and `access_count` are updated whenever the memory is
    returned from a query.
    """

    content: str
    stratum: MemoryStratum
    scope: MemoryScope = MemoryScope.AGENT
    scope_id: str = ""
    id: str = field(default_factory=lambda: str(uuid4()))
    content_type: ContentType = ContentType.TEXT
    importance: MemoryImportance = MemoryImportance.MEDIUM
    tags: set[str] = field(default_factory=set)
    source: MemorySource = field(default_factory=MemorySource)
    context: MemoryContext = field(default_factory=MemoryContext)
    related_memories: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    last_accessed: datetime = field(default_factory=datetime.now)
    access_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "scope": self.scope.value,
            "scope_id": self.scope_id,
            "stratum": self.stratum.value,
            "content": self.content,
            "content_type": self.content_type.value,
            "importance": self.importance.value,
            "tags": sorted(self.tags),
            "source": {
                "type": self.source.type.value,
                "agent_id": self.source.agent_id,
                "channel_id": self.source.channel_id,
            },
            "context": {
                "orpar_phase": self.context.orpar_phase,
                "task_id": self.context.task_id,
                "timestamp": self.context.timestamp.isoformat(),
            },
            "related_memories": list(self.related_memories),
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "access_count": self.access_count,
        }


@dataclass
class MemoryQuery:
    """Filters for querying a scope's strata.

    An empty query string matches every memory that passes the filters.
    """

    query: str = ""
    strata: list[MemoryStratum] | None = None  # None = all strata
    min_importance: MemoryImportance | None = None
    tags: list[str] | None = None  # Match if any tag is shared
    time_range: tuple[datetime, datetime] | None = None  # Inclusive created_at bounds
    limit: int | None = None
    record_access: bool = True  # Bump access stats of returned memories


@dataclass
class MemoryQueryResult:
    """Result of a strata query."""

    memories: list[MemoryEntry]
    total_count: int  # Matches before the limit was applied
    scores: dict[str, float]
    execution_time_ms: float


@dataclass
class MemoryTransition:
    """Record of a memory moving between strata."""

    memory_id: str
    from_stratum: MemoryStratum
    to_stratum: MemoryStratum
    reason: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "memory_id": self.memory_id,
            "from_stratum": self.from_stratum.value,
            "to_stratum": self.to_stratum.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StratumConfig:
    """Capacity, decay and update cadence for one stratum."""

    max_capacity: int
    decay_rate: float  # Base probability of removal per decay pass
    update_frequency: int  # Update every N cycles


DEFAULT_STRATUM_CONFIGS: dict[MemoryStratum, StratumConfig] = {
    MemoryStratum.WORKING: StratumConfig(max_capacity=50, decay_rate=0.8, update_frequency=1),
    MemoryStratum.SHORT_TERM: StratumConfig(max_capacity=200, decay_rate=0.3, update_frequency=3),
    MemoryStratum.EPISODIC: StratumConfig(max_capacity=500, decay_rate=0.1, update_frequency=10),
    MemoryStratum.LONG_TERM: StratumConfig(max_capacity=2000, decay_rate=0.05, update_frequency=50),
    MemoryStratum.SEMANTIC: StratumConfig(max_capacity=1000, decay_rate=0.05, update_frequency=50),
}


@dataclass
class StratumStatistics:
    """Summary of one scope's strata contents."""

    entries_by_stratum: dict[str, int]
    entries_by_importance: dict[int, int]
    total_entries: int
    average_access_count: float
    most_accessed: list[tuple[str, int]]
    memory_usage_bytes: int
    transition_count: int

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "entries_by_stratum": self.entries_by_stratum,
            "entries_by_importance": self.entries_by_importance,
            "total_entries": self.total_entries,
            "average_access_count": self.average_access_count,
            "most_accessed": [list(item) for item in self.most_accessed],
            "memory_usage_bytes": self.memory_usage_bytes,
            "transition_count": self.transition_count,
        }
