"""Reads one shard, hands records to the consumption callback and checkpoints progress."""

import asyncio
import inspect
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from common.constants import POSITION_AFTER_SEQUENCE_NUMBER, POSITION_LATEST, POSITION_TRIM_HORIZON
from common.exceptions import (
    CheckpointRegressionError,
    ShardConsumptionError,
    StoreUnavailableError,
    StreamUnavailableError,
)
from common.logging_config import get_logger
from common.retry import backoff_delay, retry_with_backoff
from common.types import CheckpointRecord, StreamRecord
from coordinator.checkpoint_store import CheckpointStore
from coordinator.config import CoordinatorConfig
from stream.client import StreamClient
from worker.stats import StatsReceiver

logger = get_logger(__name__)

RecordCallback = Callable[[StreamRecord], Union[None, Awaitable[None]]]
ShardClosedCallback = Callable[[str], None]


class ReaderStatus(Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FINISHED = "finished"
    FAILED = "failed"


class ShardReader:
    """
    Consumer of a single shard.

    Starts after the stored checkpoint, or at the configured initial
    position when the shard was never checkpointed. Records are delivered
    in stream order and never skipped: a record whose callback keeps
    failing stops this reader with ShardConsumptionError. The checkpoint
    advances after every delivered batch and is flushed once more on every
    exit path.
    """

    def __init__(
        self,
        shard_id: str,
        worker_id: str,
        stream: StreamClient,
        checkpoint_store: CheckpointStore,
        callback: RecordCallback,
        config: CoordinatorConfig,
        stats: Optional[StatsReceiver] = None,
        on_shard_closed: Optional[ShardClosedCallback] = None,
        clock: Callable[[], float] = time.time
    ):
        self.shard_id = shard_id
        self.worker_id = worker_id
        self.stream = stream
        self.checkpoint_store = checkpoint_store
        self.callback = callback
        self.config = config
        self.stats = stats or StatsReceiver()
        self.on_shard_closed = on_shard_closed
        self.clock = clock

        self.status = ReaderStatus.STARTING
        self.error: Optional[Exception] = None
        self.last_processed: Optional[str] = None
        self.last_checkpointed: Optional[str] = None
        self.records_processed = 0
        self._stop_event = asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """Finish the in-flight batch, flush the checkpoint and exit."""
        self._stop_event.set()

    async def run(self) -> None:
        """
        Read the shard until stopped, closed, or failed.

        A checkpoint that another worker already moved further ahead is not
        an error here: the reader skips to the stored position and goes on.

        Raises:
            ShardConsumptionError: Callback retries exhausted
        """
        try:
            iterator = await self._starting_iterator()
            if iterator is None:
                self.status = ReaderStatus.FINISHED
                logger.info(f"Shard {self.shard_id} already read to its end")
                return

            self.status = ReaderStatus.RUNNING
            logger.info(f"Started reading shard {self.shard_id} [after={self.last_checkpointed or self.config.initial_position}]")

            while not self.stop_requested:
                try:
                    result = await retry_with_backoff(
                        self.stream.get_records,
                        iterator,
                        self.config.max_records_per_fetch,
                        max_retries=self.config.store_max_retries,
                        description=f"get_records({self.shard_id})"
                    )
                except StreamUnavailableError as e:
                    logger.warning(f"Stream unavailable, pausing shard {self.shard_id}: {e}")
                    await self._pause(self.config.poll_interval)
                    continue

                if result.records:
                    self.stats.events_from_stream(len(result.records), self.shard_id, result.millis_behind_latest)
                    await self._deliver(result.records)
                    try:
                        await self._flush_checkpoint()
                    except CheckpointRegressionError as e:
                        iterator = await self._resume_after_stored(e)
                        if iterator is None:
                            return
                        continue

                if result.next_iterator is None:
                    await self._finish()
                    return

                iterator = result.next_iterator
                if not result.records:
                    await self._pause(self.config.poll_interval)

            self.status = ReaderStatus.STOPPED

        except ShardConsumptionError as e:
            self.status = ReaderStatus.FAILED
            self.error = e
            self.stats.shard_failed(self.shard_id, e)
            raise
        except asyncio.CancelledError:
            self.status = ReaderStatus.STOPPED
            logger.warning(f"Reader for shard {self.shard_id} cancelled")
            raise
        finally:
            await self._final_flush()

    async def _read_checkpoint(self) -> Optional[CheckpointRecord]:
        return await retry_with_backoff(
            self.checkpoint_store.get,
            self.shard_id,
            max_retries=self.config.store_max_retries,
            description=f"checkpoint read({self.shard_id})"
        )

    async def _pin_latest(self) -> Optional[CheckpointRecord]:
        """
        Store the current end of the shard as its checkpoint, so a later
        owner starts where this reader did. An empty shard gets a checkpoint
        without a sequence number, read as the beginning of the shard.
        """
        latest = await retry_with_backoff(
            self.stream.get_latest_sequence_number,
            self.shard_id,
            max_retries=self.config.store_max_retries,
            description=f"latest sequence({self.shard_id})"
        )
        try:
            return await retry_with_backoff(
                self.checkpoint_store.checkpoint,
                self.shard_id,
                latest,
                self.worker_id,
                max_retries=self.config.store_max_retries,
                description=f"checkpoint({self.shard_id})"
            )
        except CheckpointRegressionError:
            return await self._read_checkpoint()

    async def _starting_iterator(self) -> Optional[str]:
        checkpoint = await self._read_checkpoint()
        if checkpoint is None and self.config.initial_position == POSITION_LATEST:
            checkpoint = await self._pin_latest()
        if checkpoint and checkpoint.finished:
            return None

        if checkpoint and checkpoint.sequence_number:
            self.last_checkpointed = checkpoint.sequence_number
            self.last_processed = checkpoint.sequence_number
            position, sequence_number = POSITION_AFTER_SEQUENCE_NUMBER, checkpoint.sequence_number
        elif checkpoint:
            position, sequence_number = POSITION_TRIM_HORIZON, None
        else:
            position, sequence_number = self.config.initial_position, None

        return await retry_with_backoff(
            self.stream.get_shard_iterator,
            self.shard_id,
            position,
            sequence_number,
            max_retries=self.config.store_max_retries,
            description=f"get_shard_iterator({self.shard_id})"
        )

    async def _resume_after_stored(self, error: CheckpointRegressionError) -> Optional[str]:
        """
        Continue after the checkpoint another worker stored.

        Returns:
            Iterator after the stored sequence number, None if the shard was finished meanwhile
        """
        logger.warning(
            f"Shard {self.shard_id} was checkpointed ahead by another worker, "
            f"resuming after {error.current} [processed={self.last_processed}]"
        )
        iterator = await self._starting_iterator()
        if iterator is None:
            self.status = ReaderStatus.FINISHED
            logger.info(f"Shard {self.shard_id} finished by another worker")
        return iterator

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _deliver(self, records: List[StreamRecord]) -> None:
        for record in records:
            await self._deliver_one(record)
            self.last_processed = record.sequence_number
            self.records_processed += 1
            self.stats.event_to_client(self.shard_id, record.arrival_timestamp, self.clock())

    async def _deliver_one(self, record: StreamRecord) -> None:
        attempts = self.config.callback_max_retries + 1
        for attempt in range(attempts):
            try:
                result = self.callback(record)
                if inspect.isawaitable(result):
                    await result
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt == attempts - 1:
                    logger.error(
                        f"Callback failed {attempts} times on shard {self.shard_id} "
                        f"at sequence {record.sequence_number}, stopping shard: {e}",
                        exc_info=True
                    )
                    raise ShardConsumptionError(self.shard_id, record.sequence_number, e) from e
                delay = backoff_delay(attempt, self.config.callback_backoff_base, self.config.callback_backoff_max)
                logger.warning(
                    f"Callback failed on shard {self.shard_id} at sequence {record.sequence_number}, "
                    f"retrying in {delay:.2f}s (attempt {attempt + 1}/{attempts}): {e}"
                )
                await asyncio.sleep(delay)

    async def _flush_checkpoint(self) -> bool:
        """
        Persist last_processed if it moved.

        Returns:
            True if the stored checkpoint is up to date
        """
        if self.last_processed is None or self.last_processed == self.last_checkpointed:
            return True
        sequence_number = self.last_processed
        try:
            await retry_with_backoff(
                self.checkpoint_store.checkpoint,
                self.shard_id,
                sequence_number,
                self.worker_id,
                max_retries=self.config.store_max_retries,
                description=f"checkpoint({self.shard_id})"
            )
        except StoreUnavailableError as e:
            logger.warning(f"Checkpoint of shard {self.shard_id} at {sequence_number} deferred: {e}")
            return False
        self.last_checkpointed = sequence_number
        self.stats.checkpoint(self.shard_id, sequence_number)
        return True

    async def _final_flush(self) -> None:
        try:
            await self._flush_checkpoint()
        except CheckpointRegressionError:
            logger.error(f"Final checkpoint of shard {self.shard_id} rejected, another worker is ahead")
        except Exception as e:
            logger.error(f"Final checkpoint flush failed for shard {self.shard_id}: {e}", exc_info=True)

    async def _finish(self) -> None:
        await self._flush_checkpoint()
        await retry_with_backoff(
            self.checkpoint_store.mark_finished,
            self.shard_id,
            self.worker_id,
            max_retries=self.config.store_max_retries,
            description=f"finish({self.shard_id})"
        )
        self.status = ReaderStatus.FINISHED
        logger.info(f"Shard {self.shard_id} closed and fully read [last={self.last_processed}]")
        if self.on_shard_closed:
            self.on_shard_closed(self.shard_id)
