"""Shard-to-worker assignment with balanced, sticky placement."""

from typing import Dict, Iterable, List, Mapping, Optional


def compute_capacities(worker_ids: List[str], shard_count: int, current_load: Mapping[str, int]) -> Dict[str, int]:
    """
    Number of shards each worker should own.

    Every worker gets floor(n/m) shards; the n % m extra slots go to the
    workers currently holding the most shards (ties broken by worker ID) so
    that a balanced plan stays untouched.
    """
    base, extra = divmod(shard_count, len(worker_ids))
    ranked = sorted(worker_ids, key=lambda w: (-current_load.get(w, 0), w))
    return {w: base + (1 if i < extra else 0) for i, w in enumerate(ranked)}


def compute_assignment(
    shard_ids: Iterable[str],
    worker_ids: Iterable[str],
    previous: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Partition shards across workers as evenly as possible.

    Deterministic for the same inputs. Shards keep their previous owner
    while that owner is still live and under capacity, which keeps hand-offs
    to the minimum needed for balance. Remaining shards fill workers in
    worker-ID order.

    Args:
        shard_ids: Shards that must be owned by someone
        worker_ids: Live workers eligible to own shards
        previous: Last published shard -> worker mapping

    Returns:
        Mapping shard_id -> worker_id covering every shard exactly once,
        or an empty mapping when there are no workers
    """
    shards = sorted(set(shard_ids))
    workers = sorted(set(worker_ids))
    if not workers or not shards:
        return {}

    previous = previous or {}
    held: Dict[str, List[str]] = {w: [] for w in workers}
    for shard_id in shards:
        owner = previous.get(shard_id)
        if owner in held:
            held[owner].append(shard_id)

    capacity = compute_capacities(workers, len(shards), {w: len(s) for w, s in held.items()})

    assignments: Dict[str, str] = {}
    load = {w: 0 for w in workers}
    for worker_id in workers:
        for shard_id in held[worker_id][:capacity[worker_id]]:
            assignments[shard_id] = worker_id
            load[worker_id] += 1

    pending = [s for s in shards if s not in assignments]
    for shard_id in pending:
        for worker_id in workers:
            if load[worker_id] < capacity[worker_id]:
                assignments[shard_id] = worker_id
                load[worker_id] += 1
                break

    return assignments


def count_moves(before: Mapping[str, str], after: Mapping[str, str]) -> int:
    """Shards whose owner differs between two plans (new shards excluded)."""
    return sum(1 for shard_id, owner in after.items() if shard_id in before and before[shard_id] != owner)
