"""Per-runtime worker state."""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Optional

from coordinator.leader_election import LeaderRole
from worker.shard_reader import ShardReader


@dataclass
class ReaderHandle:
    reader: ShardReader
    task: asyncio.Task


@dataclass
class WorkerState:
    """
    Everything one worker knows about itself.

    Owned by a single WorkerRuntime; nothing here is shared between runtimes.
    """
    worker_id: str
    registered: bool = False
    last_heartbeat_ok_at: Optional[float] = None
    role: LeaderRole = LeaderRole.FOLLOWER
    plan_version: int = 0
    readers: Dict[str, ReaderHandle] = field(default_factory=dict)
    failed_shards: Dict[str, str] = field(default_factory=dict)
    records_processed: int = 0
    stopping: bool = False

    @property
    def owned_shards(self):
        return sorted(self.readers)

    def heartbeat_fresh(self, now: float, tolerance: float) -> bool:
        return (
            self.registered
            and self.last_heartbeat_ok_at is not None
            and now - self.last_heartbeat_ok_at <= tolerance
        )
