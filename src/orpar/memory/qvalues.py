"""Q-value store for memory utility learning.

Each memory carries a utility record: a scalar Q-value in [0, 1] learned
from cycle rewards by exponential moving average, a bounded history of
updates, and success/failure counters used by consolidation.

Records are held in an LRU cache that writes back to an injected
Persister. Updates are written back immediately; dirty records that are
evicted are written back before they are dropped. Outcome counters are
kept outside the cache for the life of the process and are only dropped
when the memory is archived.

Concurrent updates to the same memory are not serialized. The last
write to the cache entry wins.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np

from orpar.events import EventBus, MemoryUtilityEvent
from orpar.memory.config import QValueConfig, update_config
from orpar.memory.normalization import NormalizationMethod, normalize
from orpar.persistence import NullPersister, Persister

logger = logging.getLogger(__name__)

CONVERGENCE_STD_DEV = 0.1  # Distribution std below this counts as converging
STABLE_DISTANCE = 0.1  # Within this of the mean counts as stable
DISTRIBUTION_PERCENTILES = (25, 50, 75, 90, 99)


def clamp01(value: float) -> float:
    """Clamp a value into [0, 1]."""
    return max(0.0, min(1.0, value))


@dataclass
class QValueHistoryEntry:
    """One Q-value update."""

    value: float
    reward: float
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "value": self.value,
            "reward": self.reward,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QValueHistoryEntry:
        """Deserialize from dictionary."""
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            value=float(data["value"]),
            reward=float(data["reward"]),
            timestamp=timestamp or datetime.now(),
        )


@dataclass
class UtilityRecord:
    """Cached utility state for one memory.

    `pending_history` holds history entries not yet written back.
    """

    memory_id: str
    q_value: float
    history: list[QValueHistoryEntry] = field(default_factory=list)
    pending_history: list[QValueHistoryEntry] = field(default_factory=list)
    last_reward_at: datetime | None = None
    dirty: bool = False
    loaded_at: datetime = field(default_factory=datetime.now)

    def to_update(self) -> dict[str, Any]:
        """Partial utility document for the persister."""
        return {
            "q_value": self.q_value,
            "q_value_history": [entry.to_dict() for entry in self.pending_history],
            "last_reward_at": self.last_reward_at.isoformat() if self.last_reward_at else None,
        }


@dataclass
class OutcomeCounters:
    """Cycle outcomes attributed to one memory."""

    success_count: int = 0
    failure_count: int = 0
    dirty: bool = False

    def to_update(self) -> dict[str, Any]:
        return {"success_count": self.success_count, "failure_count": self.failure_count}


@dataclass
class QValueUpdate:
    """Instruction to move a memory's Q-value toward a reward."""

    memory_id: str
    reward: float
    learning_rate: float | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchUpdateResult:
    """Outcome of a batch of Q-value updates."""

    updated: int
    failed: int
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass
class QValueDistribution:
    """Summary statistics over a set of Q-values."""

    mean: float
    std_dev: float
    min: float
    max: float
    count: int
    percentiles: dict[int, float]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "mean": self.mean,
            "std_dev": self.std_dev,
            "min": self.min,
            "max": self.max,
            "count": self.count,
            "percentiles": {f"p{p}": v for p, v in self.percentiles.items()},
        }


class QValueStore:
    """LRU write-back cache of memory utility records."""

    def __init__(
        self,
        config: QValueConfig | None = None,
        persister: Persister | None = None,
        events: EventBus | None = None,
    ):
        """Initialize the store.

        Args:
            config: Q-value configuration
            persister: Write-back target (default: in-memory only)
            events: Event bus for observability
        """
        self.config = config or QValueConfig()
        self.persister: Persister = persister or NullPersister()
        self.events = events or EventBus()
        self._records: OrderedDict[str, UtilityRecord] = OrderedDict()
        self._counters: dict[str, OutcomeCounters] = {}
        self._hits = 0
        self._misses = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_q_value(self, memory_id: str) -> float:
        """Get a memory's cached Q-value.

        A miss returns the default Q-value without populating the cache.
        """
        if not self.enabled:
            return self.config.default_q_value

        record = self._records.get(memory_id)
        if record is None:
            self._misses += 1
            return self.config.default_q_value

        self._hits += 1
        self._records.move_to_end(memory_id)
        return record.q_value

    def get_q_values(self, memory_ids: list[str]) -> dict[str, float]:
        """Get cached Q-values for several memories."""
        return {memory_id: self.get_q_value(memory_id) for memory_id in memory_ids}

    async def load_q_value(self, memory_id: str) -> float:
        """Get a Q-value, reading through to the persister on a miss.

        Cached records older than the cache TTL (or every record, when
        the cache is disabled) are reloaded. Dirty records are never
        overwritten by a reload.
        """
        if not self.enabled:
            return self.config.default_q_value

        record = self._records.get(memory_id)
        if record is not None and (record.dirty or self._is_fresh(record)):
            return self.get_q_value(memory_id)

        try:
            data = await self.persister.load_utility(memory_id)
        except Exception as e:
            logger.warning(f"Failed to load utility for memory {memory_id}: {e}")
            return self.get_q_value(memory_id)

        if data is None or data.get("q_value") is None:
            return self.get_q_value(memory_id)

        history = [QValueHistoryEntry.from_dict(h) for h in data.get("q_value_history", [])]
        record = UtilityRecord(
            memory_id=memory_id,
            q_value=clamp01(float(data["q_value"])),
            history=history[-self.config.q_value_history_limit:],
        )
        if memory_id not in self._counters:
            self._counters[memory_id] = OutcomeCounters(
                success_count=int(data.get("success_count", 0)),
                failure_count=int(data.get("failure_count", 0)),
            )
        self._records[memory_id] = record
        self._records.move_to_end(memory_id)
        await self._enforce_cache_limit()
        return record.q_value

    def _is_fresh(self, record: UtilityRecord) -> bool:
        if not self.config.cache.enabled:
            return False
        age_ms = (datetime.now() - record.loaded_at).total_seconds() * 1000
        return age_ms < self.config.cache.ttl_ms

    def get_q_value_history(self, memory_id: str) -> list[QValueHistoryEntry]:
        """Get the cached update history for a memory, oldest first."""
        record = self._records.get(memory_id)
        return list(record.history) if record else []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_q_value_in_cache(
        self,
        memory_id: str,
        q_value: float,
        history: list[QValueHistoryEntry] | None = None,
    ) -> None:
        """Seed the cache with a known Q-value (e.g. from persistence).

        The record is stored clean; it is not written back.
        """
        record = UtilityRecord(
            memory_id=memory_id,
            q_value=clamp01(q_value),
            history=list(history or [])[-self.config.q_value_history_limit:],
        )
        self._records[memory_id] = record
        self._records.move_to_end(memory_id)
        await self._enforce_cache_limit()

    async def update_q_value(
        self,
        memory_id: str,
        reward: float,
        learning_rate: float | None = None,
        agent_id: str | None = None,
        channel_id: str | None = None,
    ) -> float:
        """Move a memory's Q-value toward a reward.

        new_q = clamp01(old_q + rate * (reward - old_q))

        Rewards are expected in [-1, 1] but are not validated; the result
        is clamped regardless.

        Args:
            memory_id: Memory to update
            reward: Reward signal
            learning_rate: EMA rate (default: configured learning rate)
            agent_id: Agent for the emitted event
            channel_id: Channel for the emitted event

        Returns:
            The new Q-value (the default Q-value when disabled)
        """
        if not self.enabled:
            return self.config.default_q_value

        rate = learning_rate if learning_rate is not None else self.config.learning_rate
        record = self._get_or_create_record(memory_id)
        old_value = record.q_value
        new_value = clamp01(old_value + rate * (reward - old_value))

        now = datetime.now()
        entry = QValueHistoryEntry(value=new_value, reward=reward, timestamp=now)
        record.q_value = new_value
        record.last_reward_at = now
        record.dirty = True
        record.history.append(entry)
        record.history = record.history[-self.config.q_value_history_limit:]
        record.pending_history.append(entry)
        self._records.move_to_end(memory_id)

        await self._write_back(record)

        self.events.emit(
            MemoryUtilityEvent.QVALUE_UPDATED,
            {
                "memory_id": memory_id,
                "old_value": old_value,
                "new_value": new_value,
                "reward": reward,
                "delta": new_value - old_value,
            },
            agent_id=agent_id,
            channel_id=channel_id,
        )

        await self._enforce_cache_limit()
        return new_value

    async def batch_update_q_values(
        self,
        updates: list[QValueUpdate],
        agent_id: str | None = None,
        channel_id: str | None = None,
    ) -> BatchUpdateResult:
        """Apply many updates concurrently.

        A failing update is recorded in `errors` and does not abort the
        rest of the batch. Completion order is undefined.
        """
        if not self.enabled or not updates:
            return BatchUpdateResult(updated=0, failed=0)

        results = await asyncio.gather(
            *[
                self.update_q_value(
                    u.memory_id,
                    u.reward,
                    learning_rate=u.learning_rate,
                    agent_id=agent_id,
                    channel_id=channel_id,
                )
                for u in updates
            ],
            return_exceptions=True,
        )

        result = BatchUpdateResult(updated=0, failed=0)
        for update, outcome in zip(updates, results):
            if isinstance(outcome, Exception):
                result.failed += 1
                result.errors.append({"memory_id": update.memory_id, "error": str(outcome)})
            else:
                result.updated += 1

        self.events.emit(
            MemoryUtilityEvent.QVALUE_BATCH_UPDATED,
            {"updated": result.updated, "failed": result.failed, "count": len(updates)},
            agent_id=agent_id,
            channel_id=channel_id,
        )
        return result

    def record_outcome(self, memory_id: str, success: bool) -> None:
        """Count a cycle success or failure against a memory.

        Counters survive cache eviction. They are written back with the
        memory's next utility write or on flush.
        """
        counters = self._counters.setdefault(memory_id, OutcomeCounters())
        if success:
            counters.success_count += 1
        else:
            counters.failure_count += 1
        counters.dirty = True

    def get_success_count(self, memory_id: str) -> int:
        counters = self._counters.get(memory_id)
        return counters.success_count if counters else 0

    def get_failure_count(self, memory_id: str) -> int:
        counters = self._counters.get(memory_id)
        return counters.failure_count if counters else 0

    def evict_record(self, memory_id: str) -> bool:
        """Drop a memory's utility record and counters without writing back.

        Used when the memory itself is archived.
        """
        had_counters = self._counters.pop(memory_id, None) is not None
        return self._records.pop(memory_id, None) is not None or had_counters

    def _get_or_create_record(self, memory_id: str) -> UtilityRecord:
        record = self._records.get(memory_id)
        if record is None:
            record = UtilityRecord(memory_id=memory_id, q_value=self.config.default_q_value)
            self._records[memory_id] = record
        return record

    async def _write_back(self, record: UtilityRecord) -> bool:
        counters = self._counters.get(record.memory_id)
        update = record.to_update()
        if counters is not None:
            update.update(counters.to_update())
        try:
            await self.persister.save_utility(record.memory_id, update)
        except Exception as e:
            logger.warning(f"Failed to persist Q-value for memory {record.memory_id}: {e}")
            return False

        record.pending_history = []
        record.dirty = False
        if counters is not None:
            counters.dirty = False
        return True

    async def _write_back_counters(self, memory_id: str, counters: OutcomeCounters) -> bool:
        try:
            await self.persister.save_utility(memory_id, counters.to_update())
        except Exception as e:
            logger.warning(f"Failed to persist outcome counters for memory {memory_id}: {e}")
            return False

        counters.dirty = False
        return True

    async def flush(self) -> int:
        """Write back every dirty record.

        Returns:
            Number of records successfully written
        """
        written = 0
        for record in list(self._records.values()):
            counters = self._counters.get(record.memory_id)
            needs_write = record.dirty or (counters is not None and counters.dirty)
            if needs_write and await self._write_back(record):
                written += 1
        for memory_id, counters in list(self._counters.items()):
            if memory_id in self._records or not counters.dirty:
                continue
            if await self._write_back_counters(memory_id, counters):
                written += 1
        return written

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    async def _enforce_cache_limit(self) -> None:
        """Evict least recently used records beyond the cache size.

        Dirty records are written back before being dropped.
        """
        while len(self._records) > self.config.cache.max_size:
            memory_id, record = self._records.popitem(last=False)
            if record.dirty:
                await self._write_back(record)
            logger.debug(f"Evicted Q-value record {memory_id} from cache")

    def clear_from_cache(self, memory_id: str) -> bool:
        """Remove one record from the cache."""
        return self._records.pop(memory_id, None) is not None

    def clear_cache(self) -> None:
        """Remove every record and reset hit statistics.

        Outcome counters are kept.
        """
        self._records.clear()
        self._hits = 0
        self._misses = 0

    def get_cache_stats(self) -> dict[str, Any]:
        """Cache size and hit statistics."""
        lookups = self._hits + self._misses
        return {
            "size": len(self._records),
            "max_size": self.config.cache.max_size,
            "dirty": sum(1 for r in self._records.values() if r.dirty),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }

    def update_config(self, **overrides: Any) -> QValueConfig:
        """Update configuration fields in place.

        Raises:
            ValueError: If a field is unknown or invalid
        """
        return update_config(self.config, **overrides)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def get_normalized_q_values(
        self,
        memory_ids: list[str],
        method: NormalizationMethod | str | None = None,
    ) -> dict[str, float]:
        """Normalize the current Q-values of the given memories.

        Args:
            memory_ids: Memories to include
            method: Normalization scheme (default: configured method)

        Returns:
            Mapping of memory id to normalized value
        """
        if not memory_ids:
            return {}
        values = [self.get_q_value(memory_id) for memory_id in memory_ids]
        normalized = normalize(values, method or self.config.normalization)
        return {memory_id: float(v) for memory_id, v in zip(memory_ids, normalized)}

    def get_q_value_distribution(self, memory_ids: list[str] | None = None) -> QValueDistribution:
        """Summary statistics over cached Q-values.

        Percentile pN is the value at index floor(N/100 * count) of the
        sorted values.
        """
        if memory_ids is None:
            values = [r.q_value for r in self._records.values()]
        else:
            values = [self.get_q_value(memory_id) for memory_id in memory_ids]

        if not values:
            return QValueDistribution(
                mean=0.0,
                std_dev=0.0,
                min=0.0,
                max=0.0,
                count=0,
                percentiles={p: 0.0 for p in DISTRIBUTION_PERCENTILES},
            )

        arr = np.sort(np.asarray(values, dtype=float))
        n = len(arr)
        percentiles = {
            p: float(arr[min(math.floor(p / 100 * n), n - 1)]) for p in DISTRIBUTION_PERCENTILES
        }

        return QValueDistribution(
            mean=float(np.mean(arr)),
            std_dev=float(np.std(arr)),
            min=float(arr[0]),
            max=float(arr[-1]),
            count=n,
            percentiles=percentiles,
        )

    def get_analytics(self) -> dict[str, Any]:
        """Learning health summary over the cached records."""
        distribution = self.get_q_value_distribution()
        records = list(self._records.values())

        top = sorted(records, key=lambda r: r.q_value, reverse=True)[:10]
        stable = sum(1 for r in records if abs(r.q_value - distribution.mean) < STABLE_DISTANCE)

        return {
            "distribution": distribution.to_dict(),
            "top_performers": [
                {
                    "memory_id": r.memory_id,
                    "q_value": r.q_value,
                    "update_count": len(r.history),
                }
                for r in top
            ],
            "is_converging": distribution.count > 0 and distribution.std_dev < CONVERGENCE_STD_DEV,
            "stable_memory_count": stable,
            "total_updates": sum(len(r.history) for r in records),
        }
