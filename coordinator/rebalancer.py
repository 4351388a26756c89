"""Leader-only periodic recomputation and publication of the assignment plan."""

import asyncio
import time
from typing import Callable, List, Optional, Tuple

from common.exceptions import PlanVersionConflictError, StoreUnavailableError, StreamUnavailableError
from common.logging_config import get_logger
from common.retry import retry_with_backoff
from common.types import AssignmentPlan
from coordinator.assignment import compute_assignment, count_moves
from coordinator.client_registry import ClientRegistry
from coordinator.leader_election import LeaderElector
from coordinator.metadata_store import MetadataStore
from stream.topology import ShardTopologyReader

logger = get_logger(__name__)

MAX_CONFLICT_RETRIES = 3


class Rebalancer:
    """
    Recomputes the shard -> worker plan while this worker leads.

    Runs every rebalance_interval, and sooner when the live worker set or
    the set of shards needing an owner changed since the last publish, or
    when request_rebalance() was called. Cycles run one at a time.
    """

    def __init__(
        self,
        worker_id: str,
        elector: LeaderElector,
        registry: ClientRegistry,
        metadata_store: MetadataStore,
        topology: ShardTopologyReader,
        rebalance_interval: float,
        dead_worker_timeout: float,
        check_interval: float,
        store_max_retries: int = 3,
        clock: Callable[[], float] = time.time
    ):
        self.worker_id = worker_id
        self.elector = elector
        self.registry = registry
        self.metadata_store = metadata_store
        self.topology = topology
        self.rebalance_interval = rebalance_interval
        self.dead_worker_timeout = dead_worker_timeout
        self.check_interval = check_interval
        self.store_max_retries = store_max_retries
        self.clock = clock

        self.last_inputs: Optional[Tuple[Tuple[str, ...], Tuple[str, ...]]] = None
        self.last_cycle_at: Optional[float] = None
        self._cycle_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def request_rebalance(self) -> None:
        """Ask for a cycle at the next check (e.g. a shard was read to its end)."""
        self._wakeup.set()

    def reset(self) -> None:
        """Forget previous inputs so the next cycle publishes unconditionally."""
        self.last_inputs = None
        self.last_cycle_at = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Rebalancer started (interval={self.rebalance_interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Rebalancer stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                if self.elector.is_leader:
                    await self.maybe_rebalance()
                else:
                    self._wakeup.clear()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Rebalance error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass

    async def _read_inputs(self) -> Tuple[List[str], List[str]]:
        live = await self.registry.list_live(self.dead_worker_timeout)
        shards = await self.topology.assignable_shards()
        return sorted(shards), sorted(w.worker_id for w in live)

    async def maybe_rebalance(self) -> Optional[AssignmentPlan]:
        """
        Run a cycle if one is due or the inputs changed.

        Returns:
            The published plan, or None when nothing was due
        """
        forced = self._wakeup.is_set()
        self._wakeup.clear()

        due = (
            forced
            or self.last_cycle_at is None
            or self.clock() - self.last_cycle_at >= self.rebalance_interval
        )
        if not due:
            try:
                shards, workers = await self._read_inputs()
            except (StoreUnavailableError, StreamUnavailableError) as e:
                logger.warning(f"Membership check deferred: {e}")
                return None
            if (tuple(shards), tuple(workers)) == self.last_inputs:
                return None
            logger.info("Membership or topology changed, rebalancing early")

        return await self.run_cycle()

    async def run_cycle(self) -> Optional[AssignmentPlan]:
        """
        One full rebalance: read, collect dead workers, assign, publish.

        Version conflicts restart the cycle from a fresh read. Store errors
        defer the cycle and leave the previous plan in effect.

        Returns:
            The published plan, or None if the cycle was deferred or leadership was lost
        """
        async with self._cycle_lock:
            for attempt in range(MAX_CONFLICT_RETRIES):
                if not self.elector.is_leader:
                    logger.info("No longer leader, skipping rebalance")
                    return None
                try:
                    return await self._cycle()
                except PlanVersionConflictError as e:
                    logger.info(f"Plan version conflict, retrying from fresh read ({attempt + 1}/{MAX_CONFLICT_RETRIES}): {e}")
                except (StoreUnavailableError, StreamUnavailableError) as e:
                    logger.warning(f"Rebalance cycle deferred, previous plan stays in effect: {e}")
                    return None
            logger.warning(f"Gave up rebalancing after {MAX_CONFLICT_RETRIES} version conflicts")
            return None

    async def _cycle(self) -> AssignmentPlan:
        plan = await retry_with_backoff(
            self.metadata_store.get_plan,
            max_retries=self.store_max_retries,
            description="plan read"
        )

        await retry_with_backoff(
            self.registry.remove_dead,
            self.dead_worker_timeout,
            max_retries=self.store_max_retries,
            description="dead worker cleanup"
        )

        shards, workers = await retry_with_backoff(
            self._read_inputs,
            max_retries=self.store_max_retries,
            description="membership and topology read"
        )

        assignments = compute_assignment(shards, workers, plan.shard_assignments)
        if workers and len(assignments) != len(shards):
            raise RuntimeError(f"Assignment covers {len(assignments)} of {len(shards)} shards")

        moves = count_moves(plan.shard_assignments, assignments)
        published = await self.metadata_store.publish_plan(self.worker_id, plan.version, assignments)

        self.last_inputs = (tuple(shards), tuple(workers))
        self.last_cycle_at = self.clock()
        if not workers:
            logger.warning("No live workers, published an empty plan")
        logger.info(
            f"Rebalanced {len(shards)} shards over {len(workers)} workers "
            f"[version={published.version}] [moved={moves}]"
        )
        return published
