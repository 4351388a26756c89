"""Single metadata record holding the leader lease and the assignment plan."""

import time
from typing import Callable, Dict, Optional

from common.constants import ASSIGNMENT_PLAN_KEY
from common.exceptions import ConditionalCheckFailedError, PlanVersionConflictError
from common.logging_config import get_logger
from common.types import AssignmentPlan, LeaderLease
from coordinator.store import DocumentTable

logger = get_logger(__name__)


class MetadataStore:
    """
    Reads and conditionally writes the shared metadata record.

    Lease writes are compare-and-swap on leader_id/leader_lease_expiry, plan
    writes are compare-and-swap on version/leader_id. Both are single atomic
    updates of the record, so a failed write leaves the previous plan intact.
    """

    def __init__(
        self,
        table: DocumentTable,
        clock: Callable[[], float] = time.time,
        key: str = ASSIGNMENT_PLAN_KEY
    ):
        self.table = table
        self.clock = clock
        self.key = key

    async def get_plan(self) -> AssignmentPlan:
        """Fresh snapshot of the record; an empty plan (version 0) if none exists yet."""
        return AssignmentPlan.from_dict(await self.table.get(self.key))

    async def get_lease(self) -> LeaderLease:
        return (await self.get_plan()).lease

    async def try_acquire_lease(
        self,
        worker_id: str,
        lease_duration: float,
        clock_skew_tolerance: float = 0.0
    ) -> Optional[float]:
        """
        Claim the leader lease if it is absent, expired, or already ours.

        Returns:
            The new lease expiry on success, None if another worker holds a
            valid lease or won the race
        """
        now = self.clock()
        lease = await self.get_lease()

        if not lease.is_held_by(worker_id) and not lease.is_expired(now, clock_skew_tolerance):
            return None

        expiry = now + lease_duration
        try:
            await self.table.update(
                self.key,
                {"leader_id": worker_id, "leader_lease_expiry": expiry},
                expected={"leader_id": lease.leader_id, "leader_lease_expiry": lease.lease_expiry}
            )
        except ConditionalCheckFailedError as e:
            logger.debug(f"Lost leader lease race [worker_id={worker_id}]: {e}")
            return None

        if lease.leader_id and lease.leader_id != worker_id:
            logger.info(f"Took over expired leader lease from {lease.leader_id} [worker_id={worker_id}]")
        return expiry

    async def renew_lease(self, worker_id: str, lease_duration: float) -> Optional[float]:
        """
        Extend our own lease.

        Returns:
            The new expiry, or None if the lease now belongs to someone else
        """
        expiry = self.clock() + lease_duration
        try:
            await self.table.update(
                self.key,
                {"leader_lease_expiry": expiry},
                expected={"leader_id": worker_id}
            )
        except ConditionalCheckFailedError as e:
            logger.warning(f"Lease renewal rejected [worker_id={worker_id}]: {e}")
            return None
        return expiry

    async def release_lease(self, worker_id: str) -> bool:
        """Give up our lease so a follower can take over without waiting for expiry."""
        try:
            await self.table.update(
                self.key,
                {"leader_id": None, "leader_lease_expiry": None},
                expected={"leader_id": worker_id}
            )
        except ConditionalCheckFailedError:
            return False
        logger.info(f"Released leader lease [worker_id={worker_id}]")
        return True

    async def publish_plan(
        self,
        leader_id: str,
        expected_version: int,
        shard_assignments: Dict[str, str]
    ) -> AssignmentPlan:
        """
        Atomically replace the assignment with version expected_version + 1.

        Raises:
            PlanVersionConflictError: If the stored version moved or another worker holds the lease
        """
        expected = {"leader_id": leader_id}
        # version 0 means no plan was ever published
        expected["version"] = expected_version if expected_version > 0 else None

        changes = {
            "version": expected_version + 1,
            "generated_at": self.clock(),
            "shard_assignments": dict(shard_assignments),
        }
        try:
            document = await self.table.update(self.key, changes, expected=expected)
        except ConditionalCheckFailedError as e:
            raise PlanVersionConflictError(
                f"Plan publish by {leader_id} at version {expected_version} rejected: {e}"
            ) from e

        plan = AssignmentPlan.from_dict(document)
        logger.info(
            f"Published assignment plan version {plan.version} "
            f"({len(plan.shard_assignments)} shards, {len(plan.owners())} workers)"
        )
        return plan
