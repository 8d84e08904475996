"""Multi-stratum memory store.

Memories are partitioned per scope (an agent or a channel) into five
temporal strata. Each stratum has its own capacity, decay rate and
update cadence (see DEFAULT_STRATUM_CONFIGS).

Writes never block on capacity. Overflow is trimmed by an explicit
decay pass or by enforce_capacity().
"""

from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime

from orpar.errors import StrataDisabledError
from orpar.memory.config import MemoryStrataConfig
from orpar.memory.types import (
    MemoryEntry,
    MemoryImportance,
    MemoryQuery,
    MemoryQueryResult,
    MemoryScope,
    MemoryStratum,
    MemoryTransition,
    StratumStatistics,
)

logger = logging.getLogger(__name__)

# Match score boosts
IMPORTANCE_BOOST = 0.2  # Scaled by importance / 5
MAX_ACCESS_BOOST = 0.2  # access_count / 10, capped

DECAY_WINDOW_HOURS = 24.0
DECAY_STALE_AGE_FACTOR = 0.9


@dataclass
class _ScopeStorage:
    """Strata and update cadence for one scope."""

    strata: dict[MemoryStratum, dict[str, MemoryEntry]] = field(
        default_factory=lambda: {stratum: {} for stratum in MemoryStratum}
    )
    cycles_since_update: dict[MemoryStratum, int] = field(
        default_factory=lambda: {stratum: 0 for stratum in MemoryStratum}
    )
    last_updated: dict[MemoryStratum, datetime] = field(default_factory=dict)


class MemoryStrataStore:
    """In-memory store of memories partitioned by scope and stratum.

    Invariant: a memory lives in exactly one stratum map of its scope,
    and its `stratum` field always names that map.
    """

    def __init__(
        self,
        config: MemoryStrataConfig | None = None,
        rng: random.Random | None = None,
    ):
        """Initialize the store.

        Args:
            config: Strata configuration
            rng: Random source for probabilistic decay (seed it in tests)
        """
        self.config = config or MemoryStrataConfig()
        self._rng = rng or random.Random()
        self._storage: dict[str, _ScopeStorage] = {}
        self._transitions: list[MemoryTransition] = []

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @staticmethod
    def _scope_key(scope: MemoryScope | str, scope_id: str) -> str:
        return f"{MemoryScope(scope).value}:{scope_id}"

    def _get_storage(
        self, scope: MemoryScope | str, scope_id: str, create: bool = False
    ) -> _ScopeStorage | None:
        key = self._scope_key(scope, scope_id)
        storage = self._storage.get(key)
        if storage is None and create:
            storage = _ScopeStorage()
            self._storage[key] = storage
        return storage

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_memory(
        self,
        scope: MemoryScope | str,
        scope_id: str,
        stratum: MemoryStratum,
        entry: MemoryEntry,
    ) -> MemoryEntry:
        """Insert a memory into a stratum.

        The entry's id is kept if set; scope, stratum and timestamps are
        assigned by the store.

        Args:
            scope: Owning scope type
            scope_id: Agent or channel id
            stratum: Target stratum
            entry: Memory to insert

        Returns:
            The stored entry

        Raises:
            StrataDisabledError: If the store is disabled
        """
        if not self.enabled:
            raise StrataDisabledError("Memory strata store is disabled")

        storage = self._get_storage(scope, scope_id, create=True)
        now = datetime.now()

        entry.scope = MemoryScope(scope)
        entry.scope_id = scope_id
        entry.stratum = stratum
        entry.created_at = now
        entry.last_accessed = now
        entry.access_count = 0

        memories = storage.strata[stratum]
        memories[entry.id] = entry

        capacity = self.config.get(stratum).max_capacity
        if len(memories) > capacity:
            logger.warning(
                f"Stratum {stratum.value} for {self._scope_key(scope, scope_id)} "
                f"over capacity ({len(memories)}/{capacity})"
            )

        logger.debug(f"Added memory {entry.id} to {stratum.value} for {scope_id}")
        return entry

    def remove_memory(self, scope: MemoryScope | str, scope_id: str, memory_id: str) -> bool:
        """Remove a memory from whichever stratum holds it.

        Returns:
            True if a memory was removed
        """
        storage = self._get_storage(scope, scope_id)
        if storage is None:
            return False

        for stratum, memories in storage.strata.items():
            if memories.pop(memory_id, None) is not None:
                logger.debug(f"Removed memory {memory_id} from {stratum.value}")
                return True
        return False

    def transition_memory(
        self,
        scope: MemoryScope | str,
        scope_id: str,
        memory_id: str,
        from_stratum: MemoryStratum,
        to_stratum: MemoryStratum,
        reason: str,
    ) -> bool:
        """Move a memory between strata and record the transition.

        Args:
            scope: Owning scope type
            scope_id: Agent or channel id
            memory_id: Memory to move
            from_stratum: Stratum the memory is expected in
            to_stratum: Destination stratum
            reason: Human-readable reason kept in the history

        Returns:
            False if the memory is not in `from_stratum`, True otherwise
        """
        storage = self._get_storage(scope, scope_id)
        memory = storage.strata[from_stratum].get(memory_id) if storage else None
        if memory is None:
            logger.warning(
                f"Memory {memory_id} not found in {from_stratum.value} for transition"
            )
            return False

        del storage.strata[from_stratum][memory_id]
        memory.stratum = to_stratum
        storage.strata[to_stratum][memory_id] = memory

        self._transitions.append(
            MemoryTransition(
                memory_id=memory_id,
                from_stratum=from_stratum,
                to_stratum=to_stratum,
                reason=reason,
            )
        )

        logger.info(
            f"Transitioned memory {memory_id} from {from_stratum.value} "
            f"to {to_stratum.value}: {reason}"
        )
        return True

    def clear(self, scope: MemoryScope | str, scope_id: str) -> None:
        """Drop every memory and cadence counter for a scope."""
        self._storage.pop(self._scope_key(scope, scope_id), None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query_memories(
        self,
        scope: MemoryScope | str,
        scope_id: str,
        query: MemoryQuery | None = None,
    ) -> MemoryQueryResult:
        """Query a scope's strata.

        Memories are filtered by importance, tags and creation time, then
        scored by keyword overlap with the query string plus importance
        and access-count boosts. Unless `query.record_access` is off,
        every returned memory has its access count and last-accessed time
        updated.

        Args:
            scope: Owning scope type
            scope_id: Agent or channel id
            query: Filters and limit (default: everything)

        Returns:
            MemoryQueryResult sorted by descending score
        """
        start = time.perf_counter()
        query = query or MemoryQuery()

        storage = self._get_storage(scope, scope_id)
        if not self.enabled or storage is None:
            return MemoryQueryResult(memories=[], total_count=0, scores={}, execution_time_ms=0.0)

        strata = query.strata or list(MemoryStratum)
        scored: list[tuple[MemoryEntry, float]] = []

        for stratum in strata:
            for memory in storage.strata[stratum].values():
                if not self._passes_filters(memory, query):
                    continue
                score = self._calculate_match_score(memory, query.query)
                if score > 0:
                    scored.append((memory, score))

        scored.sort(key=lambda item: item[1], reverse=True)
        total_count = len(scored)
        if query.limit is not None:
            scored = scored[: query.limit]

        if query.record_access:
            self.record_access([memory for memory, _ in scored])

        return MemoryQueryResult(
            memories=[memory for memory, _ in scored],
            total_count=total_count,
            scores={memory.id: score for memory, score in scored},
            execution_time_ms=(time.perf_counter() - start) * 1000,
        )

    def record_access(self, memories: list[MemoryEntry]) -> None:
        """Mark memories as accessed now."""
        now = datetime.now()
        for memory in memories:
            memory.access_count += 1
            memory.last_accessed = now

    def get_memory(
        self,
        scope: MemoryScope | str,
        scope_id: str,
        memory_id: str,
        stratum: MemoryStratum | None = None,
    ) -> MemoryEntry | None:
        """Look up a memory without touching its access statistics."""
        storage = self._get_storage(scope, scope_id)
        if storage is None:
            return None

        strata = [stratum] if stratum is not None else list(MemoryStratum)
        for s in strata:
            memory = storage.strata[s].get(memory_id)
            if memory is not None:
                return memory
        return None

    def get_memories(
        self, scope: MemoryScope | str, scope_id: str, stratum: MemoryStratum
    ) -> list[MemoryEntry]:
        """List a stratum's memories without touching access statistics."""
        storage = self._get_storage(scope, scope_id)
        if storage is None:
            return []
        return list(storage.strata[stratum].values())

    def _passes_filters(self, memory: MemoryEntry, query: MemoryQuery) -> bool:
        if query.min_importance is not None:
            if memory.importance.value < query.min_importance.value:
                return False

        if query.tags:
            if not memory.tags.intersection(query.tags):
                return False

        if query.time_range is not None:
            start, end = query.time_range
            if memory.created_at < start or memory.created_at > end:
                return False

        return True

    @staticmethod
    def _calculate_match_score(memory: MemoryEntry, query_text: str) -> float:
        """Keyword overlap score in [0, 1].

        An empty query matches everything with 1.0. Otherwise a memory
        sharing no query words scores 0 and is excluded.
        """
        words = query_text.lower().split()
        if not words:
            return 1.0

        content = memory.content.lower()
        matches = sum(1 for word in words if word in content)
        if matches == 0:
            return 0.0

        score = matches / len(words)
        score += (memory.importance.value / 5) * IMPORTANCE_BOOST
        score += min(memory.access_count / 10, MAX_ACCESS_BOOST)
        return min(score, 1.0)

    # ------------------------------------------------------------------
    # Decay and capacity
    # ------------------------------------------------------------------

    def apply_decay(
        self,
        scope: MemoryScope | str,
        scope_id: str,
        stratum: MemoryStratum,
        rate: float | None = None,
    ) -> int:
        """Probabilistically remove stale memories from a stratum.

        Removal probability is rate * age_factor, where age_factor is the
        hours since last access over 24h (capped at 1). Only memories that
        were never accessed, or whose age factor exceeds 0.9, can be removed.

        Args:
            scope: Owning scope type
            scope_id: Agent or channel id
            stratum: Stratum to decay
            rate: Decay rate (default: the stratum's configured rate)

        Returns:
            Number of memories removed
        """
        storage = self._get_storage(scope, scope_id)
        if storage is None:
            return 0

        decay_rate = rate if rate is not None else self.config.get(stratum).decay_rate
        now = datetime.now()
        memories = storage.strata[stratum]

        to_remove: list[str] = []
        for memory_id, memory in memories.items():
            hours = (now - memory.last_accessed).total_seconds() / 3600
            age_factor = min(hours / DECAY_WINDOW_HOURS, 1.0)
            decay_probability = decay_rate * age_factor

            if self._rng.random() < decay_probability and (
                memory.access_count == 0 or age_factor > DECAY_STALE_AGE_FACTOR
            ):
                to_remove.append(memory_id)

        for memory_id in to_remove:
            del memories[memory_id]

        if to_remove:
            logger.info(
                f"Decay removed {len(to_remove)} memories from {stratum.value} for {scope_id}"
            )
        return len(to_remove)

    def enforce_capacity(
        self, scope: MemoryScope | str, scope_id: str, stratum: MemoryStratum
    ) -> list[str]:
        """Evict memories until a stratum is within its capacity.

        Eviction order: lowest importance, then fewest accesses, then
        least recently accessed.

        Returns:
            IDs of evicted memories
        """
        storage = self._get_storage(scope, scope_id)
        if storage is None:
            return []

        memories = storage.strata[stratum]
        overflow = len(memories) - self.config.get(stratum).max_capacity
        if overflow <= 0:
            return []

        victims = sorted(
            memories.values(),
            key=lambda m: (m.importance.value, m.access_count, m.last_accessed),
        )[:overflow]
        for memory in victims:
            del memories[memory.id]

        logger.info(f"Evicted {len(victims)} memories from {stratum.value} for {scope_id}")
        return [memory.id for memory in victims]

    # ------------------------------------------------------------------
    # Update cadence
    # ------------------------------------------------------------------

    def should_update_stratum(
        self, scope: MemoryScope | str, scope_id: str, stratum: MemoryStratum
    ) -> bool:
        """Check whether a stratum is due for its periodic update.

        A scope that has never been touched is always due.
        """
        storage = self._get_storage(scope, scope_id)
        if storage is None:
            return True
        return storage.cycles_since_update[stratum] >= self.config.get(stratum).update_frequency

    def mark_stratum_updated(
        self, scope: MemoryScope | str, scope_id: str, stratum: MemoryStratum
    ) -> None:
        """Reset a stratum's cycle counter after an update."""
        storage = self._get_storage(scope, scope_id, create=True)
        storage.cycles_since_update[stratum] = 0
        storage.last_updated[stratum] = datetime.now()

    def increment_cycles(self, scope: MemoryScope | str, scope_id: str) -> None:
        """Advance every stratum's cycle counter for a scope by one."""
        storage = self._get_storage(scope, scope_id, create=True)
        for stratum in MemoryStratum:
            storage.cycles_since_update[stratum] += 1

    def get_cycles_since_update(
        self, scope: MemoryScope | str, scope_id: str, stratum: MemoryStratum
    ) -> int:
        storage = self._get_storage(scope, scope_id)
        return storage.cycles_since_update[stratum] if storage else 0

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_statistics(self, scope: MemoryScope | str, scope_id: str) -> StratumStatistics:
        """Summarize a scope's strata contents."""
        storage = self._get_storage(scope, scope_id)
        all_memories = (
            [m for memories in storage.strata.values() for m in memories.values()]
            if storage
            else []
        )

        entries_by_stratum = {
            stratum.value: len(storage.strata[stratum]) if storage else 0
            for stratum in MemoryStratum
        }
        entries_by_importance = {importance.value: 0 for importance in MemoryImportance}
        for memory in all_memories:
            entries_by_importance[memory.importance.value] += 1

        total = len(all_memories)
        average_access = sum(m.access_count for m in all_memories) / total if total else 0.0
        most_accessed = [
            (m.id, m.access_count)
            for m in sorted(all_memories, key=lambda m: m.access_count, reverse=True)[:10]
        ]
        usage_bytes = sum(len(json.dumps(m.to_dict())) for m in all_memories)

        memory_ids = {m.id for m in all_memories}
        transition_count = sum(1 for t in self._transitions if t.memory_id in memory_ids)

        return StratumStatistics(
            entries_by_stratum=entries_by_stratum,
            entries_by_importance=entries_by_importance,
            total_entries=total,
            average_access_count=average_access,
            most_accessed=most_accessed,
            memory_usage_bytes=usage_bytes,
            transition_count=transition_count,
        )

    def get_transition_history(self, memory_id: str | None = None) -> list[MemoryTransition]:
        """Get recorded transitions, optionally for one memory."""
        if memory_id is None:
            return list(self._transitions)
        return [t for t in self._transitions if t.memory_id == memory_id]
