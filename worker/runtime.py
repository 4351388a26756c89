"""
Worker runtime: wires registry, election, rebalancer and shard readers
together and keeps the local readers in line with the published plan.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

from common.exceptions import ShardConsumptionError, StoreUnavailableError
from common.logging_config import get_logger
from common.retry import retry_with_backoff
from coordinator.checkpoint_store import CheckpointStore
from coordinator.client_registry import ClientRegistry
from coordinator.config import CoordinatorConfig
from coordinator.database import Database
from coordinator.leader_election import LeaderElector
from coordinator.metadata_store import MetadataStore
from coordinator.rebalancer import Rebalancer
from coordinator.store import DocumentTable
from stream.client import SqliteStreamClient, StreamClient
from stream.topology import ShardTopologyReader
from worker.heartbeat_service import HeartbeatService
from worker.shard_reader import RecordCallback, ShardReader
from worker.state import ReaderHandle, WorkerState
from worker.stats import StatsReceiver

logger = get_logger(__name__)

FATAL_SHARD_ERRORS = (ShardConsumptionError,)


class WorkerRuntime:
    """
    One coordinated consumer process.

    Every worker heartbeats, competes for the leader lease and follows the
    published assignment plan. Only the current leader rebalances.
    """

    def __init__(
        self,
        config: CoordinatorConfig,
        callback: RecordCallback,
        stream: Optional[StreamClient] = None,
        database: Optional[Database] = None,
        clock=time.time,
        stats: Optional[StatsReceiver] = None
    ):
        """
        Args:
            config: Worker configuration
            callback: Called once per record, plain function or coroutine
            stream: Stream client; a SqliteStreamClient on config.stream_database_path when omitted
            database: Coordination database; opened from config.database_path when omitted
            clock: Time source shared by every component
            stats: Receiver of consumption statistics
        """
        self.config = config
        self.callback = callback
        self.clock = clock
        self.stats = stats or StatsReceiver()
        self.state = WorkerState(worker_id=config.worker_id)

        self._owns_stream = stream is None
        self.stream = stream or SqliteStreamClient(config.stream_database_path, config.stream_name, clock)
        self.database = database or Database(config.database_path)

        self.registry = ClientRegistry(DocumentTable(self.database, config.clients_table, clock), clock)
        self.checkpoints = CheckpointStore(DocumentTable(self.database, config.checkpoints_table, clock), clock)
        self.metadata = MetadataStore(DocumentTable(self.database, config.metadata_table, clock), clock)
        self.topology = ShardTopologyReader(self.stream, self.checkpoints)

        self.heartbeat = HeartbeatService(
            registry=self.registry,
            state=self.state,
            interval=config.heartbeat_interval,
            grace_period=config.dead_worker_timeout,
            clock=clock
        )
        self.elector = LeaderElector(
            worker_id=config.worker_id,
            metadata_store=self.metadata,
            lease_duration=config.lease_duration,
            renewal_interval=config.renewal_interval,
            clock_skew_tolerance=config.clock_skew_tolerance,
            clock=clock,
            on_change=self._on_leadership_change
        )
        self.rebalancer = Rebalancer(
            worker_id=config.worker_id,
            elector=self.elector,
            registry=self.registry,
            metadata_store=self.metadata,
            topology=self.topology,
            rebalance_interval=config.rebalance_interval,
            dead_worker_timeout=config.dead_worker_timeout,
            check_interval=config.heartbeat_interval,
            store_max_retries=config.store_max_retries,
            clock=clock
        )

        self._running = False
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def worker_id(self) -> str:
        return self.state.worker_id

    async def start(self) -> None:
        """
        Register, then start heartbeat, election, rebalance and plan refresh loops.

        Raises:
            StoreUnavailableError: If registration keeps failing
        """
        if self._running:
            return
        logger.info(f"Starting worker [worker_id={self.worker_id}] [application={self.config.application_name}]")

        await asyncio.to_thread(self.database.init_tables, self.config.table_names.values())
        if isinstance(self.stream, SqliteStreamClient):
            await asyncio.to_thread(self.stream.init_schema)

        await retry_with_backoff(
            self.heartbeat.register,
            max_retries=self.config.store_max_retries,
            description="registration"
        )
        logger.info(f"Registered worker [worker_id={self.worker_id}]")

        self._running = True
        await self.heartbeat.start()
        await self.elector.start()
        await self.rebalancer.start()
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """
        Graceful shutdown: readers flush and stop, the lease is released and
        the registry record removed.
        """
        if self.state.stopping:
            return
        self.state.stopping = True
        self._running = False
        logger.info(f"Stopping worker [worker_id={self.worker_id}]")

        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

        await asyncio.gather(*(self._stop_reader(shard_id) for shard_id in list(self.state.readers)))

        await self.rebalancer.stop()
        await self.elector.stop(release=True)
        self.state.role = self.elector.role
        await self.heartbeat.stop()

        await self.registry.deregister(self.worker_id)
        self.state.registered = False

        if self._owns_stream:
            await self.stream.close()
        logger.info(f"Worker stopped [worker_id={self.worker_id}] [records={self.records_processed}]")

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await self.refresh_assignments()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Plan refresh error: {e}", exc_info=True)
            await asyncio.sleep(self.config.plan_refresh_interval)

    async def refresh_assignments(self) -> List[str]:
        """
        Align running readers with the latest published plan.

        Returns:
            Shards this worker reads after the refresh
        """
        if self.state.stopping:
            return self.state.owned_shards

        self._collect_finished_readers()
        self.state.role = self.elector.role

        try:
            plan = await retry_with_backoff(
                self.metadata.get_plan,
                max_retries=self.config.store_max_retries,
                description="plan read"
            )
        except StoreUnavailableError as e:
            logger.warning(f"Plan refresh deferred, keeping current readers: {e}")
            return self.state.owned_shards

        if plan.version < self.state.plan_version:
            logger.warning(f"Ignoring older plan [version={plan.version}] [current={self.state.plan_version}]")
            return self.state.owned_shards
        self.state.plan_version = plan.version

        owned = set(plan.shards_for(self.worker_id))

        for shard_id in list(self.state.failed_shards):
            if shard_id not in owned:
                del self.state.failed_shards[shard_id]
                logger.info(f"Failed shard {shard_id} reassigned away, clearing failure")

        to_stop = sorted(s for s in self.state.readers if s not in owned)
        to_start = sorted(
            s for s in owned
            if s not in self.state.readers and s not in self.state.failed_shards
        )

        if to_stop:
            logger.info(f"Releasing shards {to_stop} [plan_version={plan.version}]")
            await asyncio.gather(*(self._stop_reader(shard_id) for shard_id in to_stop))

        for shard_id in to_start:
            self._start_reader(shard_id)
        if to_start:
            logger.info(f"Acquired shards {to_start} [plan_version={plan.version}]")

        return self.state.owned_shards

    def _start_reader(self, shard_id: str) -> ShardReader:
        reader = ShardReader(
            shard_id=shard_id,
            worker_id=self.worker_id,
            stream=self.stream,
            checkpoint_store=self.checkpoints,
            callback=self.callback,
            config=self.config,
            stats=self.stats,
            on_shard_closed=self._on_shard_closed,
            clock=self.clock
        )
        task = asyncio.create_task(reader.run(), name=f"shard-reader-{shard_id}")
        self.state.readers[shard_id] = ReaderHandle(reader=reader, task=task)
        return reader

    async def _stop_reader(self, shard_id: str) -> None:
        """
        Let the reader finish its batch and flush; cancel it after the grace period.

        The handle stays in state.readers until its task is done, so a stop
        interrupted here is picked up again by stop().
        """
        handle = self.state.readers.get(shard_id)
        if handle is None:
            return

        handle.reader.request_stop()
        try:
            done, _ = await asyncio.wait({handle.task}, timeout=self.config.shutdown_grace_period)
            if not done:
                logger.warning(
                    f"Reader for shard {shard_id} did not stop within "
                    f"{self.config.shutdown_grace_period}s, cancelling"
                )
                handle.task.cancel()
                await asyncio.wait({handle.task})
        finally:
            if handle.task.done() and self.state.readers.get(shard_id) is handle:
                del self.state.readers[shard_id]
                self._record_outcome(shard_id, handle, track_failure=False)

    def _collect_finished_readers(self) -> None:
        for shard_id, handle in list(self.state.readers.items()):
            if handle.task.done():
                del self.state.readers[shard_id]
                self._record_outcome(shard_id, handle, track_failure=True)

    def _record_outcome(self, shard_id: str, handle: ReaderHandle, track_failure: bool) -> None:
        self.state.records_processed += handle.reader.records_processed
        if handle.task.cancelled():
            return

        error = handle.task.exception()
        if error is None:
            return

        if isinstance(error, FATAL_SHARD_ERRORS):
            if track_failure:
                self.state.failed_shards[shard_id] = str(error)
                logger.error(f"Shard {shard_id} stopped until reassigned: {error}")
            else:
                logger.error(f"Shard {shard_id} failed while being released: {error}")
        else:
            logger.error(
                f"Reader for shard {shard_id} crashed, restarting on next refresh: {error}",
                exc_info=error
            )

    def _on_shard_closed(self, shard_id: str) -> None:
        logger.info(f"Shard {shard_id} finished, asking for a rebalance")
        self.rebalancer.request_rebalance()

    async def _on_leadership_change(self, is_leader: bool) -> None:
        self.state.role = self.elector.role
        if is_leader:
            self.rebalancer.reset()
            self.rebalancer.request_rebalance()

    @property
    def records_processed(self) -> int:
        active = sum(handle.reader.records_processed for handle in self.state.readers.values())
        return self.state.records_processed + active

    def is_healthy(self) -> bool:
        """Registered, with a successful heartbeat within dead_worker_timeout."""
        return self.state.heartbeat_fresh(self.clock(), self.config.dead_worker_timeout)

    def status(self) -> Dict[str, Any]:
        self.state.role = self.elector.role
        return {
            "worker_id": self.worker_id,
            "healthy": self.is_healthy(),
            "registered": self.state.registered,
            "role": self.state.role.value,
            "is_leader": self.elector.is_leader,
            "plan_version": self.state.plan_version,
            "owned_shards": self.state.owned_shards,
            "failed_shards": dict(self.state.failed_shards),
            "records_processed": self.records_processed,
            "last_heartbeat_ok_at": self.state.last_heartbeat_ok_at,
            "stopping": self.state.stopping,
        }
