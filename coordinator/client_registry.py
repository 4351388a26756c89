"""Registry for tracking live workers and their heartbeats."""

import time
from typing import Callable, List, Optional

from common.exceptions import ConditionalCheckFailedError
from common.logging_config import get_logger
from common.types import WorkerRecord
from coordinator.store import DocumentTable

logger = get_logger(__name__)


class ClientRegistry:
    """Durable set of workers keyed by worker ID, with heartbeat timestamps"""

    def __init__(self, table: DocumentTable, clock: Callable[[], float] = time.time):
        self.table = table
        self.clock = clock

    async def register(self, worker_id: str) -> WorkerRecord:
        """
        Insert or refresh the worker's record. Idempotent.
        """
        now = self.clock()
        existing = await self.table.get(worker_id)
        registered_at = existing.get("registered_at", now) if existing else now
        record = WorkerRecord(worker_id=worker_id, last_heartbeat_at=now, registered_at=registered_at)
        await self.table.put(worker_id, record.to_dict())
        logger.info(f"Registered worker [worker_id={worker_id}]")
        return record

    async def heartbeat(self, worker_id: str) -> bool:
        """
        Update last_heartbeat_at to now.

        Returns:
            False if the record no longer exists (collected as dead), True otherwise
        """
        try:
            await self.table.update(
                worker_id,
                {"last_heartbeat_at": self.clock()},
                expected={"worker_id": worker_id}
            )
        except ConditionalCheckFailedError:
            logger.warning(f"Heartbeat found no registry record [worker_id={worker_id}]")
            return False
        return True

    async def get(self, worker_id: str) -> Optional[WorkerRecord]:
        document = await self.table.get(worker_id)
        return WorkerRecord.from_dict(document) if document else None

    async def list_all(self) -> List[WorkerRecord]:
        """Get all workers, including dead ones"""
        return [WorkerRecord.from_dict(doc) for doc in await self.table.scan()]

    async def list_live(self, dead_worker_timeout: float) -> List[WorkerRecord]:
        """
        Workers whose heartbeat is within dead_worker_timeout.

        Eventually consistent: a worker that just died may still be listed
        until its record ages out.
        """
        now = self.clock()
        return [r for r in await self.list_all() if r.is_alive(now, dead_worker_timeout)]

    async def list_dead(self, dead_worker_timeout: float) -> List[WorkerRecord]:
        now = self.clock()
        return [r for r in await self.list_all() if not r.is_alive(now, dead_worker_timeout)]

    async def remove_dead(self, dead_worker_timeout: float) -> List[str]:
        """
        Remove workers that haven't sent a heartbeat within the timeout.

        Each delete is conditional on the heartbeat observed, so a worker
        that heartbeated in the meantime is kept.

        Returns:
            IDs of removed workers
        """
        removed = []
        for record in await self.list_dead(dead_worker_timeout):
            try:
                deleted = await self.table.delete(
                    record.worker_id,
                    expected={"last_heartbeat_at": record.last_heartbeat_at}
                )
            except ConditionalCheckFailedError:
                logger.debug(f"Worker heartbeated during cleanup, keeping [worker_id={record.worker_id}]")
                continue
            if deleted:
                removed.append(record.worker_id)

        if removed:
            logger.info(f"Cleaned up {len(removed)} dead workers: {removed}")
        return removed

    async def deregister(self, worker_id: str) -> bool:
        """
        Best-effort delete on graceful shutdown.
        """
        try:
            deleted = await self.table.delete(worker_id)
        except Exception as e:
            logger.warning(f"Failed to deregister worker [worker_id={worker_id}]: {e}")
            return False
        if deleted:
            logger.info(f"Deregistered worker [worker_id={worker_id}]")
        return deleted
