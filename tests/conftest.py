"""Pytest configuration and fixtures for ORPAR memory tests."""

from __future__ import annotations

import random

import pytest

from orpar.config import (
    MemoryStrataConfig,
    OrparMemoryConfig,
    QValueConfig,
)
from orpar.events import EventBus
from orpar.memory.qvalues import QValueStore
from orpar.memory.strata import MemoryStrataStore
from orpar.memory.types import (
    MemoryEntry,
    MemoryImportance,
    MemoryStratum,
)
from orpar.persistence import InMemoryPersister
from orpar.runtime import RuntimeConfig, create_runtime


@pytest.fixture
def events():
    """Fresh event bus."""
    return EventBus()


@pytest.fixture
def strata_store():
    """Strata store with seeded decay randomness."""
    return MemoryStrataStore(MemoryStrataConfig(), rng=random.Random(42))


@pytest.fixture
def q_config():
    """Q-value config with learning enabled."""
    return QValueConfig(enabled=True)


@pytest.fixture
def persister():
    """Dict-backed utility persister."""
    return InMemoryPersister()


@pytest.fixture
def q_store(q_config, persister, events):
    """Enabled Q-value store writing back to an in-memory persister."""
    return QValueStore(q_config, persister=persister, events=events)


@pytest.fixture
def orpar_config():
    """Integration config with the integration enabled."""
    return OrparMemoryConfig(enabled=True)


@pytest.fixture
def runtime(persister, events):
    """Fully wired runtime with every feature enabled."""
    config = RuntimeConfig(
        orpar=OrparMemoryConfig(enabled=True),
        q_values=QValueConfig(enabled=True),
        strata=MemoryStrataConfig(),
    )
    return create_runtime(config, persister=persister, events=events, rng=random.Random(7))


@pytest.fixture
def make_entry():
    """Factory for memory entries."""

    def _make(
        content: str = "deploy the service to staging",
        stratum: MemoryStratum = MemoryStratum.WORKING,
        importance: MemoryImportance = MemoryImportance.MEDIUM,
        tags: set[str] | None = None,
    ) -> MemoryEntry:
        return MemoryEntry(
            content=content,
            stratum=stratum,
            importance=importance,
            tags=tags or set(),
        )

    return _make

