"""Lease-based leader election over the metadata record."""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from common.exceptions import StoreUnavailableError
from common.logging_config import get_logger
from coordinator.metadata_store import MetadataStore

logger = get_logger(__name__)

LeaderChangeCallback = Callable[[bool], Awaitable[None]]


class LeaderRole(Enum):
    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"


class LeaderElector:
    """
    Per-worker election state machine: FOLLOWER -> CANDIDATE -> LEADER,
    and back to FOLLOWER on lease loss.

    Mutual exclusion rests entirely on the conditional lease write in the
    metadata store. Two leaders can overlap for at most one cycle under
    clock skew; a redundant rebalance on the same inputs yields the same plan.
    """

    def __init__(
        self,
        worker_id: str,
        metadata_store: MetadataStore,
        lease_duration: float,
        renewal_interval: float,
        clock_skew_tolerance: float = 0.0,
        clock: Callable[[], float] = time.time,
        on_change: Optional[LeaderChangeCallback] = None
    ):
        """
        Args:
            worker_id: Identity written into the lease
            metadata_store: Store holding the lease record
            lease_duration: Seconds a lease stays valid after each write
            renewal_interval: Seconds between renewals (and between acquisition attempts)
            clock_skew_tolerance: Extra seconds an expired lease is respected before takeover
            clock: Time source
            on_change: Awaited with True on election and False on demotion
        """
        self.worker_id = worker_id
        self.metadata_store = metadata_store
        self.lease_duration = lease_duration
        self.renewal_interval = renewal_interval
        self.clock_skew_tolerance = clock_skew_tolerance
        self.clock = clock
        self.on_change = on_change

        self.role = LeaderRole.FOLLOWER
        self.lease_expiry: Optional[float] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_leader(self) -> bool:
        """Leader only while our own view of the lease has not run out."""
        return (
            self.role == LeaderRole.LEADER
            and self.lease_expiry is not None
            and self.clock() < self.lease_expiry
        )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Leader election started (lease={self.lease_duration}s, renew every {self.renewal_interval}s)"
        )

    async def stop(self, release: bool = True) -> None:
        """Stop the election loop; a leader gives its lease back unless release=False."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if release and self.role == LeaderRole.LEADER:
            try:
                await self.metadata_store.release_lease(self.worker_id)
            except StoreUnavailableError as e:
                logger.warning(f"Could not release leader lease, it will expire: {e}")
            await self._demote("shutting down")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Leader election error: {e}", exc_info=True)
            await asyncio.sleep(self.renewal_interval)

    async def tick(self) -> LeaderRole:
        """
        Run one election step: renew when leading, otherwise try to acquire.

        Returns:
            Role after the step
        """
        if self.role == LeaderRole.LEADER:
            await self._renew()
        else:
            await self._campaign()
        return self.role

    async def _campaign(self) -> None:
        self.role = LeaderRole.CANDIDATE
        try:
            expiry = await self.metadata_store.try_acquire_lease(
                self.worker_id, self.lease_duration, self.clock_skew_tolerance
            )
        except StoreUnavailableError as e:
            logger.warning(f"Lease acquisition deferred, store unavailable: {e}")
            self.role = LeaderRole.FOLLOWER
            return

        if expiry is None:
            self.role = LeaderRole.FOLLOWER
            return

        self.lease_expiry = expiry
        self.role = LeaderRole.LEADER
        logger.info(f"Became leader [worker_id={self.worker_id}] [lease_expiry={expiry:.3f}]")
        if self.on_change:
            await self.on_change(True)

    async def _renew(self) -> None:
        try:
            expiry = await self.metadata_store.renew_lease(self.worker_id, self.lease_duration)
        except StoreUnavailableError as e:
            if self.lease_expiry is None or self.clock() >= self.lease_expiry:
                await self._demote(f"lease expired while store unavailable: {e}")
            else:
                logger.warning(
                    f"Lease renewal failed, {self.lease_expiry - self.clock():.1f}s of lease left: {e}"
                )
            return

        if expiry is None:
            await self._demote("lease taken by another worker")
            return

        self.lease_expiry = expiry

    async def _demote(self, reason: str) -> None:
        was_leader = self.role == LeaderRole.LEADER
        self.role = LeaderRole.FOLLOWER
        self.lease_expiry = None
        if was_leader:
            logger.warning(f"Lost leadership [worker_id={self.worker_id}]: {reason}")
            if self.on_change:
                await self.on_change(False)
