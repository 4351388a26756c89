"""Shared data type definitions (WorkerRecord, CheckpointRecord, AssignmentPlan, etc.)."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def compare_sequence_numbers(left: str, right: str) -> int:
    """
    Compare two opaque sequence numbers.

    Decimal tokens compare numerically, anything else lexicographically.

    Returns:
        -1, 0 or 1 like a classic cmp()
    """
    if left.isdigit() and right.isdigit():
        a, b = int(left), int(right)
    else:
        a, b = left, right
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


@dataclass(frozen=True)
class WorkerRecord:
    """
    Liveness record of one worker in the client registry.
    """
    worker_id: str
    last_heartbeat_at: float
    registered_at: float

    def is_alive(self, now: float, dead_worker_timeout: float) -> bool:
        return now - self.last_heartbeat_at <= dead_worker_timeout

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "last_heartbeat_at": self.last_heartbeat_at,
            "registered_at": self.registered_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerRecord":
        return cls(
            worker_id=data["worker_id"],
            last_heartbeat_at=float(data["last_heartbeat_at"]),
            registered_at=float(data.get("registered_at", data["last_heartbeat_at"])),
        )


@dataclass(frozen=True)
class CheckpointRecord:
    """
    Durable "last successfully processed" position of a shard.
    """
    shard_id: str
    sequence_number: Optional[str]
    owner_worker_id: str
    updated_at: float
    finished: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shard_id": self.shard_id,
            "sequence_number": self.sequence_number,
            "owner_worker_id": self.owner_worker_id,
            "updated_at": self.updated_at,
            "finished": self.finished,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointRecord":
        return cls(
            shard_id=data["shard_id"],
            sequence_number=data.get("sequence_number"),
            owner_worker_id=data.get("owner_worker_id", ""),
            updated_at=float(data.get("updated_at", 0.0)),
            finished=bool(data.get("finished", False)),
        )


@dataclass(frozen=True)
class LeaderLease:
    """
    Leader identity and lease expiry as stored in the metadata record.
    """
    leader_id: Optional[str]
    lease_expiry: Optional[float]

    def is_held_by(self, worker_id: str) -> bool:
        return self.leader_id == worker_id

    def is_expired(self, now: float, clock_skew_tolerance: float = 0.0) -> bool:
        """A lease nobody holds counts as expired."""
        if self.leader_id is None or self.lease_expiry is None:
            return True
        return now > self.lease_expiry + clock_skew_tolerance


@dataclass(frozen=True)
class AssignmentPlan:
    """
    Versioned snapshot of the shard -> worker assignment.

    Plans are immutable values handed around explicitly; a fresh one is
    read from the metadata store on every refresh.
    """
    version: int
    generated_at: Optional[float]
    leader_id: Optional[str]
    leader_lease_expiry: Optional[float]
    shard_assignments: Dict[str, str] = field(default_factory=dict)

    @property
    def lease(self) -> LeaderLease:
        return LeaderLease(leader_id=self.leader_id, lease_expiry=self.leader_lease_expiry)

    def shards_for(self, worker_id: str) -> List[str]:
        """Sorted shard IDs assigned to a worker."""
        return sorted(s for s, w in self.shard_assignments.items() if w == worker_id)

    def owners(self) -> List[str]:
        return sorted(set(self.shard_assignments.values()))

    @classmethod
    def empty(cls) -> "AssignmentPlan":
        return cls(version=0, generated_at=None, leader_id=None, leader_lease_expiry=None)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AssignmentPlan":
        if not data:
            return cls.empty()
        return cls(
            version=int(data.get("version", 0)),
            generated_at=data.get("generated_at"),
            leader_id=data.get("leader_id"),
            leader_lease_expiry=data.get("leader_lease_expiry"),
            shard_assignments=dict(data.get("shard_assignments") or {}),
        )


@dataclass(frozen=True)
class ShardInfo:
    """
    One shard of the topology snapshot, as reported by the stream service.
    """
    shard_id: str
    parent_shard_id: Optional[str] = None
    adjacent_parent_shard_id: Optional[str] = None
    is_open: bool = True


@dataclass(frozen=True)
class StreamRecord:
    """
    A single record read from a shard.
    """
    shard_id: str
    sequence_number: str
    data: bytes
    partition_key: str = ""
    arrival_timestamp: float = 0.0


@dataclass(frozen=True)
class GetRecordsResult:
    """
    Result of one get-records call.

    next_iterator is None once the shard is closed and fully drained.
    """
    records: List[StreamRecord]
    next_iterator: Optional[str]
    millis_behind_latest: int = 0
