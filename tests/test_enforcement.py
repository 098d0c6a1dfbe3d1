"""
Tests for quota enforcement.
"""

import json

import pytest

from bandwidth_guard.core.accounting import SampleCache, TrafficAccumulator
from bandwidth_guard.core.batcher import PersistenceBatcher
from bandwidth_guard.core.enforcement import (
    EnforcementActionFailed,
    EnforcementPolicy,
    evaluate_quota,
)
from bandwidth_guard.runtime.base import RuntimeQueryError
from bandwidth_guard.storage.models import AuditAction, Entity, EntityStatus

TEN_GIB = 10737418240


class TestEvaluateQuota:
    """Test the allowance check."""

    def test_unlimited_never_exceeded(self):
        decision = evaluate_quota(Entity(id="a", name="a"), 10 ** 15)
        assert decision.allowance is None
        assert not decision.exceeded
        assert not decision.should_stop

    def test_equal_to_allowance_is_within_quota(self):
        decision = evaluate_quota(Entity(id="a", name="a", quota=TEN_GIB), TEN_GIB)
        assert not decision.exceeded

    def test_one_byte_over_is_exceeded(self):
        decision = evaluate_quota(Entity(id="a", name="a", quota=TEN_GIB), TEN_GIB + 1)
        assert decision.exceeded
        assert decision.should_stop

    def test_extra_quota_extends_allowance(self):
        entity = Entity(id="a", name="a", quota=1000, extra_quota=500)
        assert not evaluate_quota(entity, 1400).exceeded
        assert evaluate_quota(entity, 1501).exceeded

    def test_inactive_container_not_stopped(self):
        entity = Entity(id="a", name="a", quota=1000, status=EntityStatus.STOPPED)
        decision = evaluate_quota(entity, 5000)
        assert decision.exceeded
        assert not decision.should_stop


class TestEnforcementPolicy:
    """Test stop, status change and audit on breach."""

    async def test_breach_stops_and_audits(self, repo, runtime, clock):
        entity = repo.create(Entity(id="abc123", name="web", quota=1000))
        runtime.add("abc123", "web")
        policy = EnforcementPolicy(repo, runtime, clock=clock)

        await policy.enforce(entity, 1001)

        assert runtime.stop_calls == ["abc123"]
        assert repo.find_by_id("abc123").status == EntityStatus.STOPPED
        audit = repo.find_audit(action=AuditAction.LIMIT_EXCEEDED)
        assert json.loads(audit[0].details) == {"used": 1001, "limit": 1000}
        assert audit[0].timestamp == clock()

    async def test_failed_stop_leaves_status(self, repo, runtime, clock):
        entity = repo.create(Entity(id="abc123", name="web", quota=1000))
        runtime.add("abc123", "web")
        runtime.stop_error = RuntimeQueryError("daemon said no")
        policy = EnforcementPolicy(repo, runtime, clock=clock)

        with pytest.raises(EnforcementActionFailed) as exc_info:
            await policy.enforce(entity, 2000)

        assert exc_info.value.entity_id == "abc123"
        assert repo.find_by_id("abc123").status == EntityStatus.ACTIVE
        assert repo.find_audit(action=AuditAction.LIMIT_EXCEEDED) == []

    async def test_within_quota_does_nothing(self, repo, runtime, clock):
        entity = repo.create(Entity(id="abc123", name="web", quota=1000))
        policy = EnforcementPolicy(repo, runtime, clock=clock)

        decision = await policy.enforce(entity, 1000)

        assert not decision.exceeded
        assert runtime.stop_calls == []


class TestQuotaScenario:
    """End to end: a container crossing 10 GiB is stopped exactly once."""

    async def test_stopped_once_when_crossing_quota(self, repo, runtime, clock):
        repo.create(Entity(id="abc123", name="web", quota=TEN_GIB, usage=TEN_GIB - 1000))
        runtime.add("abc123", "web", rx=5000, tx=5000)
        cache = SampleCache()
        accumulator = TrafficAccumulator(
            repo, runtime, cache, PersistenceBatcher(repo, cache),
            EnforcementPolicy(repo, runtime, clock=clock), clock=clock,
        )

        await accumulator.sample_once()
        runtime.counters["abc123"] = (5600, 5401)
        await accumulator.sample_once()
        await accumulator.sample_once()

        assert runtime.stop_calls == ["abc123"]
        assert repo.find_by_id("abc123").status == EntityStatus.STOPPED
        audit = repo.find_audit(action=AuditAction.LIMIT_EXCEEDED)
        assert len(audit) == 1
        assert json.loads(audit[0].details) == {"used": TEN_GIB + 1, "limit": TEN_GIB}

    async def test_failed_stop_retried_next_tick(self, repo, runtime, clock):
        repo.create(Entity(id="abc123", name="web", quota=100))
        runtime.add("abc123", "web")
        runtime.stop_error = RuntimeQueryError("busy")
        cache = SampleCache()
        accumulator = TrafficAccumulator(
            repo, runtime, cache, PersistenceBatcher(repo, cache),
            EnforcementPolicy(repo, runtime, clock=clock), clock=clock,
        )

        await accumulator.sample_once()
        runtime.counters["abc123"] = (500, 0)
        await accumulator.sample_once()
        assert repo.find_by_id("abc123").status == EntityStatus.ACTIVE

        runtime.stop_error = None
        await accumulator.sample_once()

        assert runtime.stop_calls == ["abc123", "abc123"]
        assert repo.find_by_id("abc123").status == EntityStatus.STOPPED
