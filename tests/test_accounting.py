"""
Tests for traffic accounting.

Covers delta computation, cache seeding, counter resets, status healing and
usage resets.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from bandwidth_guard.core.accounting import SampleCache, TrafficAccumulator, compute_delta
from bandwidth_guard.core.batcher import PersistenceBatcher
from bandwidth_guard.core.enforcement import EnforcementPolicy
from bandwidth_guard.runtime.base import RuntimeUnavailable
from bandwidth_guard.runtime.docker_runtime import DockerRuntime
from bandwidth_guard.storage.models import AuditAction, Entity, EntityStatus


@pytest.fixture
def accumulator(repo, runtime, clock):
    cache = SampleCache()
    batcher = PersistenceBatcher(repo, cache)
    enforcement = EnforcementPolicy(repo, runtime, clock=clock)
    return TrafficAccumulator(repo, runtime, cache, batcher, enforcement, clock=clock)


class TestComputeDelta:
    """Test delta computation between counter samples."""

    def test_normal_growth(self):
        assert compute_delta(1000, 500, 1500, 700) == (500, 200, False)

    def test_no_traffic(self):
        assert compute_delta(1000, 500, 1000, 500) == (0, 0, False)

    def test_counter_reset_uses_current_values(self):
        """A counter that went backwards is treated as restarted from zero."""
        assert compute_delta(1000, 500, 100, 50) == (100, 50, True)

    def test_single_counter_reset(self):
        assert compute_delta(1000, 500, 1200, 40) == (1200, 40, True)


class TestSampleCache:

    def test_retain_drops_unknown(self, clock):
        cache = SampleCache()
        cache.seed("a", 0, 0, 0, clock())
        cache.seed("b", 0, 0, 0, clock())

        assert cache.retain({"a"}) == ["b"]
        assert "a" in cache
        assert len(cache) == 1

    def test_reset_keeps_counters(self, clock):
        cache = SampleCache()
        cache.seed("a", 100, 50, 999, clock())
        cache.reset("a", at=clock())

        entry = cache.get("a")
        assert entry.accumulated == 0
        assert (entry.rx_bytes, entry.tx_bytes) == (100, 50)
        assert entry.last_reset_at == clock()


class TestTrafficAccumulator:
    """Test per-container sampling."""

    async def test_first_sample_seeds_without_delta(self, repo, runtime, accumulator):
        """The first observation is a baseline, not traffic."""
        repo.create(Entity(id="abc123", name="web", usage=700))
        runtime.add("abc123", "web", rx=5000, tx=3000)

        deltas = await accumulator.sample_once()

        assert deltas == []
        assert accumulator.cache.accumulated("abc123") == 700
        assert accumulator.batcher.pending == 0

    async def test_accumulated_equals_baseline_plus_deltas(self, repo, runtime, accumulator, clock):
        repo.create(Entity(id="abc123", name="web", usage=700))
        runtime.add("abc123", "web", rx=5000, tx=3000)
        await accumulator.sample_once()

        runtime.counters["abc123"] = (5400, 3100)
        clock.now += timedelta(seconds=1)
        first = await accumulator.sample_once()
        runtime.counters["abc123"] = (6000, 3300)
        clock.now += timedelta(seconds=1)
        second = await accumulator.sample_once()

        assert [d.total_bytes for d in first + second] == [500, 800]
        assert (first[0].rx_bytes, first[0].tx_bytes) == (400, 100)
        assert accumulator.cache.accumulated("abc123") == 700 + 500 + 800
        assert accumulator.batcher.pending == 2

    async def test_counter_reset_adds_current_values(self, repo, runtime, accumulator):
        repo.create(Entity(id="abc123", name="web"))
        runtime.add("abc123", "web", rx=1000, tx=500)
        await accumulator.sample_once()

        runtime.counters["abc123"] = (100, 50)
        deltas = await accumulator.sample_once()

        assert deltas[0].total_bytes == 150
        assert accumulator.cache.accumulated("abc123") == 150

    async def test_stopped_container_not_sampled(self, repo, runtime, accumulator):
        repo.create(Entity(id="abc123", name="web"))
        runtime.add("abc123", "web", running=False)

        assert await accumulator.sample_once() == []
        assert "abc123" not in accumulator.cache

    async def test_stopped_container_seen_running_becomes_active(self, repo, runtime, accumulator):
        """A container started out of band is marked active again."""
        repo.create(Entity(id="abc123", name="web", status=EntityStatus.STOPPED))
        runtime.add("abc123", "web", running=True)

        await accumulator.sample_once()

        assert repo.find_by_id("abc123").status == EntityStatus.ACTIVE

    async def test_not_running_container_status_untouched(self, repo, runtime, accumulator):
        repo.create(Entity(id="abc123", name="web"))
        runtime.add("abc123", "web", running=False)

        await accumulator.sample_once()

        assert repo.find_by_id("abc123").status == EntityStatus.ACTIVE

    async def test_unreachable_runtime_keeps_status(self, repo, accumulator):
        """A Docker outage never marks active containers as stopped."""
        client = MagicMock()
        client.inspect_container.side_effect = requests.exceptions.ConnectionError("refused")
        accumulator.runtime = DockerRuntime(client=client)
        repo.create(Entity(id="abc123", name="web", quota=1000))

        assert await accumulator.sample_once() == []

        assert repo.find_by_id("abc123").status == EntityStatus.ACTIVE
        assert repo.find_audit() == []

    async def test_expired_status_never_healed(self, repo, runtime, accumulator):
        repo.create(Entity(id="abc123", name="web", status=EntityStatus.EXPIRED))
        runtime.add("abc123", "web", running=True)

        await accumulator.sample_once()

        assert repo.find_by_id("abc123").status == EntityStatus.EXPIRED

    async def test_failing_container_does_not_block_others(self, repo, runtime, accumulator):
        repo.create(Entity(id="bad", name="bad"))
        repo.create(Entity(id="good", name="good"))
        runtime.add("good", "good", rx=10, tx=10)
        runtime.running["bad"] = True

        await accumulator.sample_once()
        runtime.counters["good"] = (20, 20)
        deltas = await accumulator.sample_once()

        assert [d.entity_id for d in deltas] == ["good"]

    async def test_sample_entity_propagates_errors(self, repo, runtime, accumulator):
        entity = repo.create(Entity(id="abc123", name="web"))
        runtime.running["abc123"] = True

        async def unavailable(entity_id):
            raise RuntimeUnavailable("socket gone")
        runtime.get_stats = unavailable

        with pytest.raises(RuntimeUnavailable):
            await accumulator.sample_entity(entity)

    async def test_removed_container_dropped_from_cache(self, repo, runtime, accumulator):
        repo.create(Entity(id="abc123", name="web"))
        runtime.add("abc123", "web")
        await accumulator.sample_once()

        repo.delete("abc123")
        await accumulator.sample_once()

        assert "abc123" not in accumulator.cache


class TestUsageReset:
    """Test resets through the accumulator and from other processes."""

    async def test_reset_entity_zeroes_store_and_cache(self, repo, runtime, accumulator, clock):
        repo.create(Entity(id="abc123", name="web", usage=900))
        runtime.add("abc123", "web", rx=100, tx=100)
        await accumulator.sample_once()

        await accumulator.reset_entity("abc123")

        assert accumulator.cache.accumulated("abc123") == 0
        assert repo.find_by_id("abc123").usage == 0
        audit = repo.find_audit(entity_id="abc123", action=AuditAction.RESET)
        assert audit[0].details == "Bandwidth manually reset"

    async def test_reset_drops_allowance_back_to_quota(self, repo, runtime, accumulator):
        """Extra quota only lasts until the next reset."""
        repo.create(Entity(id="abc123", name="web", quota=1000, extra_quota=500, usage=900))
        runtime.add("abc123", "web", rx=100, tx=100)
        await accumulator.sample_once()

        await accumulator.reset_entity("abc123")

        entity = repo.find_by_id("abc123")
        assert (entity.usage, entity.extra_quota) == (0, 0)
        assert entity.allowance == 1000

    async def test_usage_after_reset_counts_only_new_traffic(self, repo, runtime, accumulator, clock):
        repo.create(Entity(id="abc123", name="web", usage=900))
        runtime.add("abc123", "web", rx=100, tx=100)
        await accumulator.sample_once()
        await accumulator.reset_entity("abc123")

        runtime.counters["abc123"] = (150, 100)
        await accumulator.sample_once()
        await accumulator.batcher.flush()

        assert repo.find_by_id("abc123").usage == 50

    async def test_reset_from_another_process_is_picked_up(self, repo, runtime, accumulator, clock):
        """A reset written straight to the store zeroes live usage on the next sample."""
        repo.create(Entity(id="abc123", name="web", usage=900))
        runtime.add("abc123", "web", rx=100, tx=100)
        await accumulator.sample_once()

        repo.reset_usage("abc123", clock() + timedelta(minutes=5))
        runtime.counters["abc123"] = (130, 100)
        await accumulator.sample_once()

        assert accumulator.cache.accumulated("abc123") == 30
        await accumulator.batcher.flush()
        assert repo.find_by_id("abc123").usage == 30
