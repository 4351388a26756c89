"""Tests for the leader lease and assignment plan record."""

import pytest

from common.exceptions import PlanVersionConflictError


class TestLease:
    """Test lease acquisition, renewal and release."""

    @pytest.mark.asyncio
    async def test_empty_record(self, metadata_store):
        plan = await metadata_store.get_plan()

        assert plan.version == 0
        assert plan.shard_assignments == {}
        assert plan.lease.leader_id is None

    @pytest.mark.asyncio
    async def test_acquire_absent_lease(self, metadata_store, clock):
        expiry = await metadata_store.try_acquire_lease("w1", 30)

        assert expiry == clock() + 30
        lease = await metadata_store.get_lease()
        assert lease.leader_id == "w1"
        assert lease.lease_expiry == expiry

    @pytest.mark.asyncio
    async def test_valid_lease_blocks_others(self, metadata_store, clock):
        await metadata_store.try_acquire_lease("w1", 30)
        clock.advance(29)

        assert await metadata_store.try_acquire_lease("w2", 30, clock_skew_tolerance=1) is None
        assert (await metadata_store.get_lease()).leader_id == "w1"

    @pytest.mark.asyncio
    async def test_takeover_waits_for_skew_tolerance(self, metadata_store, clock):
        await metadata_store.try_acquire_lease("w1", 30)

        clock.advance(31)
        assert await metadata_store.try_acquire_lease("w2", 30, clock_skew_tolerance=1) is None

        clock.advance(0.5)
        assert await metadata_store.try_acquire_lease("w2", 30, clock_skew_tolerance=1) is not None
        assert (await metadata_store.get_lease()).leader_id == "w2"

    @pytest.mark.asyncio
    async def test_holder_can_reacquire(self, metadata_store, clock):
        await metadata_store.try_acquire_lease("w1", 30)
        clock.advance(10)

        assert await metadata_store.try_acquire_lease("w1", 30) == clock() + 30

    @pytest.mark.asyncio
    async def test_renew_by_holder(self, metadata_store, clock):
        await metadata_store.try_acquire_lease("w1", 30)
        clock.advance(10)

        expiry = await metadata_store.renew_lease("w1", 30)

        assert expiry == clock() + 30
        assert (await metadata_store.get_lease()).lease_expiry == expiry

    @pytest.mark.asyncio
    async def test_renew_by_non_holder_rejected(self, metadata_store):
        await metadata_store.try_acquire_lease("w1", 30)

        assert await metadata_store.renew_lease("w2", 30) is None
        assert (await metadata_store.get_lease()).leader_id == "w1"

    @pytest.mark.asyncio
    async def test_release_lets_follower_take_over_immediately(self, metadata_store):
        await metadata_store.try_acquire_lease("w1", 30)

        assert await metadata_store.release_lease("w1") is True
        assert await metadata_store.try_acquire_lease("w2", 30) is not None

    @pytest.mark.asyncio
    async def test_release_by_non_holder_is_noop(self, metadata_store):
        await metadata_store.try_acquire_lease("w1", 30)

        assert await metadata_store.release_lease("w2") is False
        assert (await metadata_store.get_lease()).leader_id == "w1"


class TestPlanPublication:
    """Test versioned plan writes."""

    @pytest.mark.asyncio
    async def test_versions_increase_by_one(self, metadata_store):
        await metadata_store.try_acquire_lease("w1", 30)

        first = await metadata_store.publish_plan("w1", 0, {"s1": "w1"})
        second = await metadata_store.publish_plan("w1", first.version, {"s1": "w1", "s2": "w1"})

        assert first.version == 1
        assert second.version == 2
        stored = await metadata_store.get_plan()
        assert stored.shard_assignments == {"s1": "w1", "s2": "w1"}
        assert stored.leader_id == "w1"

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, metadata_store):
        await metadata_store.try_acquire_lease("w1", 30)
        await metadata_store.publish_plan("w1", 0, {"s1": "w1"})

        with pytest.raises(PlanVersionConflictError):
            await metadata_store.publish_plan("w1", 0, {"s1": "w2"})

        assert (await metadata_store.get_plan()).shard_assignments == {"s1": "w1"}

    @pytest.mark.asyncio
    async def test_non_leader_cannot_publish(self, metadata_store):
        await metadata_store.try_acquire_lease("w1", 30)

        with pytest.raises(PlanVersionConflictError):
            await metadata_store.publish_plan("w2", 0, {"s1": "w2"})

        assert (await metadata_store.get_plan()).version == 0

    @pytest.mark.asyncio
    async def test_publish_keeps_lease(self, metadata_store):
        expiry = await metadata_store.try_acquire_lease("w1", 30)

        await metadata_store.publish_plan("w1", 0, {"s1": "w1"})

        lease = await metadata_store.get_lease()
        assert lease.leader_id == "w1"
        assert lease.lease_expiry == expiry
