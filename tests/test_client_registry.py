"""Tests for worker registration, heartbeats and dead worker cleanup."""

from unittest.mock import AsyncMock, patch

import pytest

from common.exceptions import StoreUnavailableError


class TestRegistration:
    """Test register / deregister."""

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, registry, clock):
        first = await registry.register("w1")
        clock.advance(3)
        second = await registry.register("w1")

        workers = await registry.list_all()
        assert [w.worker_id for w in workers] == ["w1"]
        assert second.registered_at == first.registered_at
        assert second.last_heartbeat_at == first.last_heartbeat_at + 3

    @pytest.mark.asyncio
    async def test_deregister_removes_record(self, registry):
        await registry.register("w1")

        assert await registry.deregister("w1") is True
        assert await registry.get("w1") is None

    @pytest.mark.asyncio
    async def test_deregister_is_best_effort(self, registry):
        with patch.object(registry.table, "delete", AsyncMock(side_effect=StoreUnavailableError("locked"))):
            assert await registry.deregister("w1") is False


class TestHeartbeat:
    """Test heartbeat updates and liveness."""

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_timestamp(self, registry, clock):
        await registry.register("w1")
        clock.advance(5)

        assert await registry.heartbeat("w1") is True

        record = await registry.get("w1")
        assert record.last_heartbeat_at == clock()

    @pytest.mark.asyncio
    async def test_heartbeat_without_record_reports_eviction(self, registry):
        assert await registry.heartbeat("ghost") is False
        assert await registry.get("ghost") is None

    @pytest.mark.asyncio
    async def test_list_live_and_dead(self, registry, clock):
        await registry.register("old")
        clock.advance(20)
        await registry.register("young")
        clock.advance(15)

        live = await registry.list_live(30)
        dead = await registry.list_dead(30)

        assert [w.worker_id for w in live] == ["young"]
        assert [w.worker_id for w in dead] == ["old"]


class TestDeadWorkerCleanup:
    """Test leader-side garbage collection."""

    @pytest.mark.asyncio
    async def test_remove_dead_only_removes_stale_workers(self, registry, clock):
        await registry.register("dead")
        clock.advance(31)
        await registry.register("alive")

        removed = await registry.remove_dead(30)

        assert removed == ["dead"]
        assert [w.worker_id for w in await registry.list_all()] == ["alive"]

    @pytest.mark.asyncio
    async def test_worker_heartbeating_during_cleanup_survives(self, registry, clock):
        await registry.register("w1")
        clock.advance(31)
        stale = await registry.list_dead(30)
        assert [w.worker_id for w in stale] == ["w1"]

        await registry.heartbeat("w1")

        with patch.object(registry, "list_dead", AsyncMock(return_value=stale)):
            removed = await registry.remove_dead(30)

        assert removed == []
        assert await registry.get("w1") is not None

    @pytest.mark.asyncio
    async def test_evicted_worker_can_register_again(self, registry, clock):
        await registry.register("w1")
        clock.advance(31)
        await registry.remove_dead(30)

        assert await registry.heartbeat("w1") is False
        await registry.register("w1")

        assert [w.worker_id for w in await registry.list_live(30)] == ["w1"]
