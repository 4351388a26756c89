"""Shard topology reader with split/merge awareness."""

from dataclasses import dataclass
from typing import Dict, List

from common.logging_config import get_logger
from common.types import ShardInfo
from coordinator.checkpoint_store import CheckpointStore
from stream.client import StreamClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class TopologySnapshot:
    """
    Shards of the stream at one instant. Never persisted.
    """
    shards: List[ShardInfo]

    @property
    def by_id(self) -> Dict[str, ShardInfo]:
        return {s.shard_id: s for s in self.shards}

    @property
    def open_shard_ids(self) -> List[str]:
        return sorted(s.shard_id for s in self.shards if s.is_open)

    @property
    def closed_shard_ids(self) -> List[str]:
        return sorted(s.shard_id for s in self.shards if not s.is_open)


class ShardTopologyReader:
    """
    Reads the stream's shard list and decides which shards need an owner.

    A shard needs an owner while it is open, or while it is closed but not
    yet read to its end (no finished checkpoint). Closed and finished
    shards drop out of the assignment; their checkpoints stay.
    """

    def __init__(self, stream: StreamClient, checkpoint_store: CheckpointStore):
        self.stream = stream
        self.checkpoint_store = checkpoint_store

    async def snapshot(self) -> TopologySnapshot:
        return TopologySnapshot(shards=await self.stream.list_shards())

    async def assignable_shards(self, snapshot: TopologySnapshot = None) -> List[str]:
        """
        Sorted IDs of shards that must appear in the next assignment plan.
        """
        if snapshot is None:
            snapshot = await self.snapshot()

        closed = snapshot.closed_shard_ids
        finished = set()
        if closed:
            checkpoints = await self.checkpoint_store.get_many(closed)
            finished = {shard_id for shard_id, cp in checkpoints.items() if cp.finished}

        assignable = snapshot.open_shard_ids + [s for s in closed if s not in finished]
        logger.debug(
            f"Topology: {len(snapshot.shards)} shards, {len(snapshot.open_shard_ids)} open, "
            f"{len(finished)} finished, {len(assignable)} assignable"
        )
        return sorted(assignable)
