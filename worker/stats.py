"""Consumption statistics hooks and the processed-record counter."""

import asyncio
import threading
from typing import Dict, Optional

from common.logging_config import get_logger

logger = get_logger(__name__)


class StatsReceiver:
    """
    Hooks called by shard readers. The base class ignores everything.
    """

    def checkpoint(self, shard_id: str, sequence_number: Optional[str]) -> None:
        pass

    def events_from_stream(self, count: int, shard_id: str, millis_behind_latest: int) -> None:
        pass

    def event_to_client(self, shard_id: str, inserted_at: float, retrieved_at: float) -> None:
        pass

    def shard_failed(self, shard_id: str, error: Exception) -> None:
        pass


class LoggingStatsReceiver(StatsReceiver):
    """Logs each hook at DEBUG, lagging batches at INFO."""

    def checkpoint(self, shard_id: str, sequence_number: Optional[str]) -> None:
        logger.debug(f"Checkpoint passed [shard={shard_id}] [sequence={sequence_number}]")

    def events_from_stream(self, count: int, shard_id: str, millis_behind_latest: int) -> None:
        if millis_behind_latest > 0:
            logger.info(f"Fetched {count} records [shard={shard_id}] [lag={millis_behind_latest}ms]")

    def event_to_client(self, shard_id: str, inserted_at: float, retrieved_at: float) -> None:
        logger.debug(f"Delivered record [shard={shard_id}] inserted={inserted_at:.3f} retrieved={retrieved_at:.3f}")

    def shard_failed(self, shard_id: str, error: Exception) -> None:
        logger.error(f"Shard consumption stopped [shard={shard_id}]: {error}")


class RecordCounter(StatsReceiver):
    """
    Counts records delivered to the consumption callback, per shard and in total.
    """

    def __init__(self, delegate: Optional[StatsReceiver] = None):
        self.delegate = delegate
        self._lock = threading.Lock()
        self._total = 0
        self._per_shard: Dict[str, int] = {}

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    def per_shard(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._per_shard)

    def checkpoint(self, shard_id: str, sequence_number: Optional[str]) -> None:
        if self.delegate:
            self.delegate.checkpoint(shard_id, sequence_number)

    def events_from_stream(self, count: int, shard_id: str, millis_behind_latest: int) -> None:
        if self.delegate:
            self.delegate.events_from_stream(count, shard_id, millis_behind_latest)

    def event_to_client(self, shard_id: str, inserted_at: float, retrieved_at: float) -> None:
        with self._lock:
            self._total += 1
            self._per_shard[shard_id] = self._per_shard.get(shard_id, 0) + 1
        if self.delegate:
            self.delegate.event_to_client(shard_id, inserted_at, retrieved_at)

    def shard_failed(self, shard_id: str, error: Exception) -> None:
        if self.delegate:
            self.delegate.shard_failed(shard_id, error)


async def report_record_counts(counter: RecordCounter, worker_id: str, interval: float) -> None:
    """
    Periodically log the number of records processed by this worker.
    """
    while True:
        try:
            await asyncio.sleep(interval)
            logger.info(f"Total number of records of {worker_id}: {counter.total}")
        except asyncio.CancelledError:
            logger.info(f"Total number of records: {counter.total}")
            raise
