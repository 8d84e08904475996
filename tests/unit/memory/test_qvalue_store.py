"""Tests for the Q-value store and its write-back cache."""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from orpar.events import EventBus, MemoryUtilityEvent
from orpar.memory.config import CacheConfig, QValueConfig
from orpar.memory.qvalues import QValueStore, QValueUpdate, clamp01
from orpar.persistence import InMemoryPersister


class TestReads:
    """Test cached reads and read-through loading."""

    def test_miss_returns_default_without_caching(self, q_store):
        """A cache miss should not create a record."""
        assert q_store.get_q_value("m1") == 0.5
        assert q_store.get_cache_stats()["size"] == 0
        assert q_store.get_cache_stats()["misses"] == 1

    def test_disabled_store_returns_default(self):
        """Disabled learning always answers with the default Q-value."""
        store = QValueStore(QValueConfig(enabled=False, default_q_value=0.3))

        assert store.get_q_value("m1") == 0.3

    @pytest.mark.asyncio
    async def test_load_reads_through_to_persister(self, q_store, persister):
        """A miss should be filled from the persister."""
        persister.records["m1"] = {
            "q_value": 0.9,
            "q_value_history": [{"value": 0.9, "reward": 1.0}],
            "success_count": 4,
            "failure_count": 1,
        }

        value = await q_store.load_q_value("m1")

        assert value == 0.9
        assert q_store.get_q_value("m1") == 0.9
        assert q_store.get_success_count("m1") == 4
        assert q_store.get_failure_count("m1") == 1
        assert len(q_store.get_q_value_history("m1")) == 1

    @pytest.mark.asyncio
    async def test_load_with_nothing_stored_returns_default(self, q_store):
        """An empty persister falls back to the default Q-value."""
        assert await q_store.load_q_value("unknown") == 0.5

    @pytest.mark.asyncio
    async def test_load_failure_falls_back(self, q_config, events):
        """Persister errors should be logged and not raised."""
        persister = InMemoryPersister()
        persister.load_utility = AsyncMock(side_effect=RuntimeError("db down"))
        store = QValueStore(q_config, persister=persister, events=events)

        assert await store.load_q_value("m1") == 0.5

    @pytest.mark.asyncio
    async def test_fresh_record_is_not_reloaded(self, q_store, persister):
        """Records inside the TTL should be served from cache."""
        await q_store.set_q_value_in_cache("m1", 0.2)
        persister.records["m1"] = {"q_value": 0.9}

        assert await q_store.load_q_value("m1") == 0.2

    @pytest.mark.asyncio
    async def test_stale_record_is_reloaded(self, q_store, persister):
        """Records older than the TTL should be reloaded."""
        await q_store.set_q_value_in_cache("m1", 0.2)
        q_store._records["m1"].loaded_at = datetime.now() - timedelta(minutes=5)
        persister.records["m1"] = {"q_value": 0.9}

        assert await q_store.load_q_value("m1") == 0.9

    @pytest.mark.asyncio
    async def test_dirty_record_is_never_reloaded(self, q_store, persister):
        """Unwritten local changes must not be overwritten by a reload."""
        persister.save_utility = AsyncMock(side_effect=RuntimeError("db down"))
        await q_store.update_q_value("m1", reward=1.0)
        q_store.record_outcome("m1", success=True)
        q_store._records["m1"].loaded_at = datetime.now() - timedelta(minutes=5)
        persister.records["m1"] = {"q_value": 0.9, "success_count": 7}

        assert await q_store.load_q_value("m1") == pytest.approx(0.55)
        assert q_store.get_success_count("m1") == 1

    @pytest.mark.asyncio
    async def test_reload_keeps_local_counters(self, q_store, persister):
        """Counters tracked in-process win over persisted counters."""
        q_store.record_outcome("m1", success=True)
        persister.records["m1"] = {"q_value": 0.9, "success_count": 7}

        assert await q_store.load_q_value("m1") == 0.9
        assert q_store.get_success_count("m1") == 1


class TestUpdateQValue:
    """Test the EMA update rule and its side effects."""

    @pytest.mark.asyncio
    async def test_update_moves_toward_reward(self, q_store):
        """new_q = old_q + rate * (reward - old_q)."""
        new_value = await q_store.update_q_value("m1", reward=1.0)

        assert new_value == pytest.approx(0.55)
        assert q_store.get_q_value("m1") == pytest.approx(0.55)

    @pytest.mark.asyncio
    async def test_explicit_learning_rate(self, q_store):
        """A per-call learning rate should override the configured one."""
        new_value = await q_store.update_q_value("m1", reward=0.0, learning_rate=0.5)

        assert new_value == pytest.approx(0.25)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reward", [-1.0, 5.0, -50.0, 1.0, 0.0])
    async def test_q_value_stays_in_unit_interval(self, q_store, reward):
        """Repeated extreme rewards never push Q outside [0, 1]."""
        for _ in range(30):
            value = await q_store.update_q_value("m1", reward=reward, learning_rate=1.0)
            assert 0.0 <= value <= 1.0

    @pytest.mark.asyncio
    async def test_update_writes_back_and_emits(self, q_store, persister, events):
        """Each update should persist immediately and emit an event."""
        received = []
        events.subscribe(MemoryUtilityEvent.QVALUE_UPDATED, received.append)

        await q_store.update_q_value("m1", reward=1.0, agent_id="agent-1")

        stored = persister.records["m1"]
        assert stored["q_value"] == pytest.approx(0.55)
        assert len(stored["q_value_history"]) == 1
        assert stored["last_reward_at"] is not None
        assert not q_store._records["m1"].dirty

        assert len(received) == 1
        payload = received[0].payload
        assert payload["memory_id"] == "m1"
        assert payload["old_value"] == 0.5
        assert payload["delta"] == pytest.approx(0.05)
        assert received[0].agent_id == "agent-1"

    @pytest.mark.asyncio
    async def test_write_back_failure_keeps_record_dirty(self, q_config, events):
        """A failed save should leave the record dirty with pending history."""
        persister = InMemoryPersister()
        persister.save_utility = AsyncMock(side_effect=RuntimeError("db down"))
        store = QValueStore(q_config, persister=persister, events=events)

        value = await store.update_q_value("m1", reward=1.0)

        assert value == pytest.approx(0.55)
        record = store._records["m1"]
        assert record.dirty
        assert len(record.pending_history) == 1

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, events):
        """History should keep only the most recent entries."""
        config = QValueConfig(enabled=True, q_value_history_limit=3)
        store = QValueStore(config, events=events)

        for _ in range(5):
            await store.update_q_value("m1", reward=1.0)

        assert len(store.get_q_value_history("m1")) == 3

    @pytest.mark.asyncio
    async def test_update_when_disabled_is_noop(self, persister):
        """Disabled learning should not touch the cache or persister."""
        store = QValueStore(QValueConfig(enabled=False), persister=persister)

        assert await store.update_q_value("m1", reward=1.0) == 0.5
        assert persister.save_count == 0


class TestBatchUpdate:
    """Test concurrent batch updates."""

    @pytest.mark.asyncio
    async def test_batch_counts_updates(self, q_store, events):
        """All updates in a batch should be applied and reported."""
        received = []
        events.subscribe(MemoryUtilityEvent.QVALUE_BATCH_UPDATED, received.append)

        result = await q_store.batch_update_q_values(
            [QValueUpdate("m1", 1.0), QValueUpdate("m2", 0.0), QValueUpdate("m3", 1.0, 0.5)]
        )

        assert result.updated == 3
        assert result.failed == 0
        assert q_store.get_q_value("m3") == pytest.approx(0.75)
        assert received[0].payload["count"] == 3

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, q_store):
        """One failing update should not abort the others."""
        original = q_store.update_q_value

        async def flaky(memory_id, reward, **kwargs):
            if memory_id == "bad":
                raise RuntimeError("boom")
            return await original(memory_id, reward, **kwargs)

        q_store.update_q_value = flaky

        result = await q_store.batch_update_q_values(
            [QValueUpdate("good", 1.0), QValueUpdate("bad", 1.0)]
        )

        assert result.updated == 1
        assert result.failed == 1
        assert result.errors == [{"memory_id": "bad", "error": "boom"}]

    @pytest.mark.asyncio
    async def test_empty_batch(self, q_store, events):
        """An empty batch should do nothing and emit nothing."""
        result = await q_store.batch_update_q_values([])

        assert (result.updated, result.failed) == (0, 0)
        assert events.get_history() == []


class TestCountersAndEviction:
    """Test outcome counters and cache eviction."""

    def test_record_outcome_counts(self, q_store):
        """Success and failure counters are tracked per memory."""
        q_store.record_outcome("m1", success=True)
        q_store.record_outcome("m1", success=True)
        q_store.record_outcome("m1", success=False)

        assert q_store.get_success_count("m1") == 2
        assert q_store.get_failure_count("m1") == 1
        assert q_store.get_success_count("other") == 0

    def test_record_outcome_does_not_grow_cache(self, q_store):
        """Counting outcomes should not add records to the LRU cache."""
        for i in range(5):
            q_store.record_outcome(f"m{i}", success=True)

        assert q_store.get_cache_stats()["size"] == 0
        assert q_store.get_success_count("m4") == 1

    def test_evict_record_drops_counters(self, q_store):
        """Archiving a memory should discard its counters."""
        q_store.record_outcome("m1", success=True)

        assert q_store.evict_record("m1") is True
        assert q_store.get_success_count("m1") == 0
        assert q_store.evict_record("m1") is False

    @pytest.mark.asyncio
    async def test_lru_eviction_writes_back_dirty_records(self, persister, events):
        """Dirty records are persisted before being dropped from the cache."""
        config = QValueConfig(enabled=True, cache=CacheConfig(max_size=2))
        store = QValueStore(config, persister=persister, events=events)
        save = persister.save_utility
        failures = ["m1"]

        async def flaky_save(memory_id, update):
            if memory_id in failures:
                failures.remove(memory_id)
                raise RuntimeError("db down")
            await save(memory_id, update)

        persister.save_utility = flaky_save
        store.record_outcome("m1", success=True)
        await store.update_q_value("m1", reward=1.0)
        await store.update_q_value("m2", reward=1.0)
        await store.update_q_value("m3", reward=1.0)

        assert store.get_cache_stats()["size"] == 2
        assert persister.records["m1"]["q_value"] == pytest.approx(0.55)
        assert persister.records["m1"]["success_count"] == 1

    @pytest.mark.asyncio
    async def test_counters_survive_lru_eviction(self, events):
        """Counters stay readable after their record leaves the cache."""
        config = QValueConfig(enabled=True, cache=CacheConfig(max_size=2))
        store = QValueStore(config, events=events)

        for cycle in range(3):
            store.record_outcome("m1", success=True)
            await store.update_q_value("m1", reward=1.0)
            await store.update_q_value(f"other-{cycle}-a", reward=0.5)
            await store.update_q_value(f"other-{cycle}-b", reward=0.5)

        assert store.get_q_value("m1") == 0.5
        assert store.get_success_count("m1") == 3
        assert store.get_failure_count("m1") == 0

    @pytest.mark.asyncio
    async def test_clear_cache_keeps_counters(self, q_store):
        """Only archival drops counters."""
        q_store.record_outcome("m1", success=False)
        await q_store.update_q_value("m1", reward=0.0)

        q_store.clear_cache()

        assert q_store.get_failure_count("m1") == 1

    @pytest.mark.asyncio
    async def test_recently_read_records_survive_eviction(self, events):
        """Reads refresh recency."""
        config = QValueConfig(enabled=True, cache=CacheConfig(max_size=2))
        store = QValueStore(config, events=events)

        await store.set_q_value_in_cache("m1", 0.9)
        await store.set_q_value_in_cache("m2", 0.8)
        store.get_q_value("m1")
        await store.set_q_value_in_cache("m3", 0.7)

        assert store.get_q_value("m1") == 0.9
        assert store.get_q_value("m2") == 0.5

    @pytest.mark.asyncio
    async def test_flush_writes_dirty_records(self, q_store, persister):
        """flush should persist outstanding counter changes."""
        q_store.record_outcome("m1", success=False)

        written = await q_store.flush()

        assert written == 1
        assert persister.records["m1"]["failure_count"] == 1
        assert await q_store.flush() == 0

    @pytest.mark.asyncio
    async def test_clear_cache_resets_stats(self, q_store):
        """clear_cache should empty the cache and hit counters."""
        await q_store.set_q_value_in_cache("m1", 0.7)
        q_store.get_q_value("m1")

        q_store.clear_cache()

        stats = q_store.get_cache_stats()
        assert stats["size"] == 0
        assert stats["hits"] == 0


class TestAnalytics:
    """Test distribution and learning-health summaries."""

    @pytest.mark.asyncio
    async def test_distribution_percentiles(self, q_store):
        """Percentiles use floor(p/100 * n) indexing."""
        for i, value in enumerate([0.1, 0.2, 0.3, 0.4]):
            await q_store.set_q_value_in_cache(f"m{i}", value)

        dist = q_store.get_q_value_distribution()

        assert dist.count == 4
        assert dist.mean == pytest.approx(0.25)
        assert dist.min == 0.1
        assert dist.max == 0.4
        assert dist.percentiles[25] == 0.2
        assert dist.percentiles[50] == 0.3
        assert dist.percentiles[99] == 0.4

    def test_empty_distribution(self, q_store):
        """No records means an all-zero distribution."""
        dist = q_store.get_q_value_distribution()

        assert dist.count == 0
        assert dist.percentiles[50] == 0.0

    @pytest.mark.asyncio
    async def test_analytics_convergence(self, q_store):
        """Tightly clustered values count as converging."""
        for i in range(5):
            await q_store.set_q_value_in_cache(f"m{i}", 0.6 + i * 0.01)

        analytics = q_store.get_analytics()

        assert analytics["is_converging"] is True
        assert analytics["stable_memory_count"] == 5
        assert len(analytics["top_performers"]) == 5
        assert analytics["top_performers"][0]["memory_id"] == "m4"

    def test_analytics_empty_not_converging(self, q_store):
        """An empty cache is not converging."""
        assert q_store.get_analytics()["is_converging"] is False

    @pytest.mark.asyncio
    async def test_normalized_q_values(self, q_store):
        """Normalization should use the requested method."""
        await q_store.set_q_value_in_cache("m1", 0.2)
        await q_store.set_q_value_in_cache("m2", 0.6)

        normalized = q_store.get_normalized_q_values(["m1", "m2"], method="min-max")

        assert normalized == {"m1": 0.0, "m2": 1.0}


class TestConfigUpdates:
    """Test runtime configuration changes."""

    def test_update_config_applies_and_validates(self, q_store):
        """Valid overrides apply; invalid ones raise."""
        q_store.update_config(learning_rate=0.3)
        assert q_store.config.learning_rate == 0.3

        with pytest.raises(ValueError):
            q_store.update_config(learning_rate=1.5)

        with pytest.raises(ValueError):
            q_store.update_config(not_a_field=1)


def test_clamp01():
    """clamp01 bounds values to the unit interval."""
    assert clamp01(-0.5) == 0.0
    assert clamp01(1.5) == 1.0
    assert clamp01(0.4) == 0.4


def test_default_bus_when_none_injected():
    """A store without an injected bus gets its own."""
    store = QValueStore(QValueConfig(enabled=True))

    assert isinstance(store.events, EventBus)
