"""Tests for checkpoint monotonicity and sequence number ordering."""

import asyncio
import random

import pytest

from common.exceptions import CheckpointRegressionError
from common.types import compare_sequence_numbers


class TestSequenceNumberOrdering:
    """Test the opaque token comparison rule."""

    def test_decimal_tokens_compare_numerically(self):
        assert compare_sequence_numbers("9", "10") == -1
        assert compare_sequence_numbers("100", "100") == 0
        assert compare_sequence_numbers("49590338271490256608559692538361571095921575989136588898", "2") == 1

    def test_other_tokens_compare_lexicographically(self):
        assert compare_sequence_numbers("b", "a") == 1
        assert compare_sequence_numbers("a9", "a10") == 1


class TestCheckpoint:
    """Test checkpoint writes."""

    @pytest.mark.asyncio
    async def test_first_checkpoint_creates_record(self, checkpoint_store, clock):
        record = await checkpoint_store.checkpoint("shard-1", "5", "w1")

        stored = await checkpoint_store.get("shard-1")
        assert stored == record
        assert stored.sequence_number == "5"
        assert stored.owner_worker_id == "w1"
        assert stored.updated_at == clock()
        assert stored.finished is False

    @pytest.mark.asyncio
    async def test_checkpoint_advances(self, checkpoint_store):
        await checkpoint_store.checkpoint("shard-1", "9", "w1")
        await checkpoint_store.checkpoint("shard-1", "10", "w2")

        stored = await checkpoint_store.get("shard-1")
        assert stored.sequence_number == "10"
        assert stored.owner_worker_id == "w2"

    @pytest.mark.asyncio
    async def test_same_sequence_is_accepted(self, checkpoint_store):
        await checkpoint_store.checkpoint("shard-1", "10", "w1")
        await checkpoint_store.checkpoint("shard-1", "10", "w1")

        assert (await checkpoint_store.get("shard-1")).sequence_number == "10"

    @pytest.mark.asyncio
    async def test_regression_rejected_and_existing_kept(self, checkpoint_store):
        await checkpoint_store.checkpoint("shard-1", "100", "w1")

        with pytest.raises(CheckpointRegressionError) as exc_info:
            await checkpoint_store.checkpoint("shard-1", "99", "w2")

        assert exc_info.value.current == "100"
        assert exc_info.value.attempted == "99"
        stored = await checkpoint_store.get("shard-1")
        assert stored.sequence_number == "100"
        assert stored.owner_worker_id == "w1"

    @pytest.mark.asyncio
    async def test_mark_finished_keeps_sequence(self, checkpoint_store):
        await checkpoint_store.checkpoint("shard-1", "42", "w1")

        await checkpoint_store.mark_finished("shard-1", "w1")

        stored = await checkpoint_store.get("shard-1")
        assert stored.finished is True
        assert stored.sequence_number == "42"

    @pytest.mark.asyncio
    async def test_finished_flag_survives_later_writes(self, checkpoint_store):
        await checkpoint_store.mark_finished("shard-1", "w1")
        await checkpoint_store.checkpoint("shard-1", "3", "w1")

        assert (await checkpoint_store.get("shard-1")).finished is True

    @pytest.mark.asyncio
    async def test_get_many(self, checkpoint_store):
        await checkpoint_store.checkpoint("a", "1", "w1")
        await checkpoint_store.checkpoint("b", "2", "w1")
        await checkpoint_store.checkpoint("c", "3", "w1")

        found = await checkpoint_store.get_many(["a", "c", "missing"])

        assert sorted(found) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_concurrent_writers_never_move_backwards(self, checkpoint_store):
        sequences = [str(n) for n in range(1, 21)]
        random.Random(7).shuffle(sequences)

        results = await asyncio.gather(
            *(checkpoint_store.checkpoint("shard-1", seq, f"w{seq}") for seq in sequences),
            return_exceptions=True
        )

        written = [r.sequence_number for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert written
        assert all(isinstance(e, CheckpointRegressionError) for e in errors)
        stored = await checkpoint_store.get("shard-1")
        assert stored.sequence_number == max(written, key=int)
