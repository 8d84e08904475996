"""Persistence boundary for memory utility records.

The Q-value store is a write-back cache in front of a Persister. The
storage technology lives outside this package; anything implementing
the protocol can be injected.
"""

from __future__ import annotations

import copy
from abc import abstractmethod
from typing import Any, Protocol


class Persister(Protocol):
    """Protocol for utility record persistence.

    Implementations:
    - NullPersister: In-memory-only mode, nothing is stored
    - InMemoryPersister: Dict-backed store for tests and local runs
    """

    @abstractmethod
    async def save_utility(self, memory_id: str, update: dict[str, Any]) -> None:
        """Write a partial utility sub-document for a memory.

        Args:
            memory_id: Memory the utility record belongs to
            update: Fields to merge (q_value, q_value_history,
                last_reward_at, success_count, failure_count)
        """
        ...

    @abstractmethod
    async def load_utility(self, memory_id: str) -> dict[str, Any] | None:
        """Load the stored utility sub-document for a memory.

        Args:
            memory_id: Memory to load

        Returns:
            Stored fields, or None if nothing is stored
        """
        ...


class NullPersister:
    """Persister that stores nothing."""

    async def save_utility(self, memory_id: str, update: dict[str, Any]) -> None:
        return None

    async def load_utility(self, memory_id: str) -> dict[str, Any] | None:
        return None


class InMemoryPersister:
    """Dict-backed persister.

    History entries are appended rather than replaced so the stored
    document accumulates the full update trail.
    """

    def __init__(self, history_limit: int = 100):
        self.records: dict[str, dict[str, Any]] = {}
        self.save_count = 0
        self._history_limit = history_limit

    async def save_utility(self, memory_id: str, update: dict[str, Any]) -> None:
        record = self.records.setdefault(memory_id, {})
        for key, value in update.items():
            if key == "q_value_history":
                history = record.setdefault("q_value_history", [])
                history.extend(copy.deepcopy(value))
                record["q_value_history"] = history[-self._history_limit:]
            else:
                record[key] = value
        self.save_count += 1

    async def load_utility(self, memory_id: str) -> dict[str, Any] | None:
        record = self.records.get(memory_id)
        return copy.deepcopy(record) if record is not None else None
