"""Tests for balanced, sticky shard assignment."""

import random
from collections import Counter

import pytest

from coordinator.assignment import compute_assignment, compute_capacities, count_moves


def shard_ids(n):
    return [f"shardId-{i:012d}" for i in range(n)]


def assert_balanced(assignments, shards, workers):
    assert sorted(assignments) == sorted(shards)
    assert set(assignments.values()) <= set(workers)
    loads = Counter(assignments.values())
    counts = [loads.get(w, 0) for w in workers]
    assert max(counts) - min(counts) <= 1


class TestComputeAssignment:
    """Test shard placement."""

    def test_three_workers_eight_shards(self):
        shards = shard_ids(8)
        workers = ["w1", "w2", "w3"]

        assignments = compute_assignment(shards, workers)

        assert_balanced(assignments, shards, workers)
        assert sorted(Counter(assignments.values()).values()) == [2, 3, 3]

    def test_deterministic(self):
        shards = shard_ids(11)
        workers = ["b", "a", "c"]

        assert compute_assignment(shards, workers) == compute_assignment(list(reversed(shards)), sorted(workers))

    def test_unchanged_inputs_keep_plan(self):
        shards = shard_ids(8)
        workers = ["w1", "w2", "w3"]
        first = compute_assignment(shards, workers)

        assert compute_assignment(shards, workers, first) == first

    def test_new_worker_takes_only_what_balance_needs(self):
        shards = shard_ids(8)
        before = compute_assignment(shards, ["w1", "w2"])

        after = compute_assignment(shards, ["w1", "w2", "w3"], before)

        assert_balanced(after, shards, ["w1", "w2", "w3"])
        assert count_moves(before, after) == 2
        assert Counter(after.values())["w3"] == 2

    def test_survivors_keep_their_shards(self):
        shards = shard_ids(8)
        before = compute_assignment(shards, ["w1", "w2", "w3"])

        after = compute_assignment(shards, ["w1", "w3"], before)

        assert_balanced(after, shards, ["w1", "w3"])
        for shard_id, owner in before.items():
            if owner != "w2":
                assert after[shard_id] == owner

    def test_previous_owner_no_longer_live_is_ignored(self):
        shards = shard_ids(4)

        after = compute_assignment(shards, ["w1"], {s: "gone" for s in shards})

        assert set(after.values()) == {"w1"}

    def test_new_shards_are_placed(self):
        before = compute_assignment(shard_ids(4), ["w1", "w2"])

        after = compute_assignment(shard_ids(6), ["w1", "w2"], before)

        assert_balanced(after, shard_ids(6), ["w1", "w2"])
        assert count_moves(before, after) == 0

    def test_no_workers_gives_empty_plan(self):
        assert compute_assignment(shard_ids(4), []) == {}

    def test_no_shards_gives_empty_plan(self):
        assert compute_assignment([], ["w1"]) == {}

    def test_more_workers_than_shards(self):
        shards = shard_ids(2)
        workers = ["w1", "w2", "w3", "w4"]

        assignments = compute_assignment(shards, workers)

        assert_balanced(assignments, shards, workers)
        assert len(set(assignments.values())) == 2

    @pytest.mark.parametrize("seed", range(10))
    def test_random_membership_changes_stay_balanced(self, seed):
        rng = random.Random(seed)
        pool = [f"w{i}" for i in range(8)]
        plan = {}
        for _ in range(20):
            workers = rng.sample(pool, rng.randint(1, len(pool)))
            shards = shard_ids(rng.randint(1, 30))

            plan = compute_assignment(shards, workers, plan)

            assert_balanced(plan, shards, workers)


class TestCapacities:
    """Test per-worker capacity."""

    def test_extra_slots_go_to_busiest_workers(self):
        capacities = compute_capacities(["a", "b", "c"], 8, {"c": 3, "b": 3})

        assert capacities == {"a": 2, "b": 3, "c": 3}

    def test_ties_broken_by_worker_id(self):
        capacities = compute_capacities(["a", "b", "c"], 7, {})

        assert capacities == {"a": 3, "b": 2, "c": 2}


class TestCountMoves:
    """Test hand-off counting."""

    def test_only_reassigned_shards_count(self):
        before = {"s1": "w1", "s2": "w1"}
        after = {"s1": "w1", "s2": "w2", "s3": "w2"}

        assert count_moves(before, after) == 1
