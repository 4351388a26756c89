"""Durable per-shard read progress."""

import time
from typing import Callable, Dict, List, Optional

from common.exceptions import CheckpointRegressionError, ConditionalCheckFailedError
from common.logging_config import get_logger
from common.types import CheckpointRecord, compare_sequence_numbers
from coordinator.store import DocumentTable

logger = get_logger(__name__)

MAX_CAS_ATTEMPTS = 5


class CheckpointStore:
    """
    Checkpoint records keyed by shard ID.

    Sequence numbers only move forward; a write that would move one back is
    rejected and the stored checkpoint kept.
    """

    def __init__(self, table: DocumentTable, clock: Callable[[], float] = time.time):
        self.table = table
        self.clock = clock

    async def get(self, shard_id: str) -> Optional[CheckpointRecord]:
        document = await self.table.get(shard_id)
        return CheckpointRecord.from_dict(document) if document else None

    async def list_all(self) -> List[CheckpointRecord]:
        return [CheckpointRecord.from_dict(doc) for doc in await self.table.scan()]

    async def get_many(self, shard_ids: List[str]) -> Dict[str, CheckpointRecord]:
        wanted = set(shard_ids)
        return {cp.shard_id: cp for cp in await self.list_all() if cp.shard_id in wanted}

    async def checkpoint(
        self,
        shard_id: str,
        sequence_number: Optional[str],
        worker_id: str,
        finished: bool = False
    ) -> CheckpointRecord:
        """
        Record sequence_number as the last processed position of shard_id.

        The write is a compare-and-swap on the sequence number read just
        before, retried when a concurrent writer slipped in between.

        Args:
            shard_id: Shard being checkpointed
            sequence_number: Last processed sequence number, None if nothing was read yet
            worker_id: Worker that owns the shard
            finished: Mark the shard as read to its end

        Returns:
            The checkpoint as stored

        Raises:
            CheckpointRegressionError: If sequence_number is lower than the stored one
        """
        requested = sequence_number
        for _ in range(MAX_CAS_ATTEMPTS):
            current = await self.get(shard_id)
            expected = {"sequence_number": current.sequence_number if current else None}
            sequence_number = requested

            if current is not None:
                if current.sequence_number is not None:
                    if sequence_number is None:
                        sequence_number = current.sequence_number
                    elif compare_sequence_numbers(sequence_number, current.sequence_number) < 0:
                        logger.critical(
                            f"Checkpoint regression rejected: shard {shard_id} is at "
                            f"{current.sequence_number}, worker {worker_id} tried {sequence_number} "
                            f"(previous owner {current.owner_worker_id})"
                        )
                        raise CheckpointRegressionError(shard_id, current.sequence_number, sequence_number)
                is_finished = finished or current.finished
            else:
                is_finished = finished

            record = CheckpointRecord(
                shard_id=shard_id,
                sequence_number=sequence_number,
                owner_worker_id=worker_id,
                updated_at=self.clock(),
                finished=is_finished,
            )
            try:
                await self.table.conditional_put(shard_id, record.to_dict(), expected)
            except ConditionalCheckFailedError:
                logger.debug(f"Concurrent checkpoint write on shard {shard_id}, re-reading")
                continue

            logger.debug(
                f"Checkpointed shard {shard_id} at {sequence_number} "
                f"[worker_id={worker_id}] [finished={is_finished}]"
            )
            return record

        raise CheckpointRegressionError(
            shard_id, "unknown", f"{sequence_number} (lost {MAX_CAS_ATTEMPTS} concurrent writes)"
        )

    async def mark_finished(self, shard_id: str, worker_id: str) -> CheckpointRecord:
        """Mark a closed shard as fully read, keeping its last sequence number."""
        return await self.checkpoint(shard_id, None, worker_id, finished=True)
