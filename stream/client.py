"""Stream service clients: shard listing, shard iterators and record batches."""

import asyncio
import re
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, List, Optional, Tuple

from common.constants import (
    POSITION_AFTER_SEQUENCE_NUMBER,
    POSITION_LATEST,
    POSITION_TRIM_HORIZON,
)
from common.exceptions import (
    InvalidIteratorError,
    ShardNotFoundError,
    StreamUnavailableError,
)
from common.logging_config import get_logger
from common.types import GetRecordsResult, ShardInfo, StreamRecord

logger = get_logger(__name__)

SHARD_ID_FORMAT = "shardId-{:012d}"
_ITERATOR_PATTERN = re.compile(r'^(?P<shard>[^|]+)\|(?P<after>\d+)$')


class StreamClient(ABC):
    """
    What the coordinator needs from a sharded stream service.
    """

    @abstractmethod
    async def list_shards(self) -> List[ShardInfo]:
        """Current shards, open and closed, with parent links."""

    @abstractmethod
    async def get_shard_iterator(
        self,
        shard_id: str,
        position: str,
        sequence_number: Optional[str] = None
    ) -> str:
        """
        Opaque token for reading shard_id from a starting position.

        Args:
            shard_id: Shard to read
            position: TRIM_HORIZON, LATEST or AFTER_SEQUENCE_NUMBER
            sequence_number: Required with AFTER_SEQUENCE_NUMBER
        """

    @abstractmethod
    async def get_records(self, iterator: str, limit: int) -> GetRecordsResult:
        """
        Next batch of records, in stream order, plus the iterator to continue with.
        """

    @abstractmethod
    async def get_latest_sequence_number(self, shard_id: str) -> Optional[str]:
        """Sequence number of the newest record in shard_id, None if it holds none."""

    async def close(self) -> None:
        """Release client resources."""


def encode_iterator(shard_id: str, after_sequence: int) -> str:
    return f"{shard_id}|{after_sequence}"


def decode_iterator(iterator: str) -> Tuple[str, int]:
    match = _ITERATOR_PATTERN.match(iterator or "")
    if not match:
        raise InvalidIteratorError(f"Malformed shard iterator: {iterator!r}")
    return match.group("shard"), int(match.group("after"))


class SqliteStreamClient(StreamClient):
    """
    Durable local stream stored in a SQLite file.

    Sequence numbers are decimal strings drawn from one counter per stream,
    so records of child shards always sort after records of their parents.
    Besides the consumer side it offers the producer and resharding
    operations used by development setups and tests.
    """

    def __init__(self, path: str, stream_name: str, clock: Callable[[], float] = time.time):
        self.path = path
        self.stream_name = stream_name
        self.clock = clock

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(self.path, timeout=5.0, isolation_level=None)
        except sqlite3.OperationalError as e:
            raise StreamUnavailableError(f"Cannot open stream database {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise StreamUnavailableError(f"Stream operation failed [stream={self.stream_name}]: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def init_schema(self) -> None:
        """
        Create stream tables if they don't exist.
        """
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stream_shards (
                    stream_name TEXT NOT NULL,
                    shard_id TEXT NOT NULL,
                    parent_shard_id TEXT,
                    adjacent_parent_shard_id TEXT,
                    is_open INTEGER NOT NULL DEFAULT 1,
                    created_at REAL NOT NULL,
                    PRIMARY KEY(stream_name, shard_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stream_records (
                    sequence_number INTEGER PRIMARY KEY AUTOINCREMENT,
                    stream_name TEXT NOT NULL,
                    shard_id TEXT NOT NULL,
                    partition_key TEXT NOT NULL,
                    data BLOB NOT NULL,
                    arrival_timestamp REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_shard
                ON stream_records(stream_name, shard_id, sequence_number)
            """)

    # Producer and resharding side

    def _next_shard_id(self, conn) -> str:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM stream_shards WHERE stream_name = ?",
            (self.stream_name,)
        ).fetchone()
        return SHARD_ID_FORMAT.format(row["n"])

    def _insert_shard(self, conn, parent: Optional[str] = None, adjacent: Optional[str] = None) -> str:
        shard_id = self._next_shard_id(conn)
        conn.execute("""
            INSERT INTO stream_shards
            (stream_name, shard_id, parent_shard_id, adjacent_parent_shard_id, is_open, created_at)
            VALUES (?, ?, ?, ?, 1, ?)
        """, (self.stream_name, shard_id, parent, adjacent, self.clock()))
        return shard_id

    def _require_open(self, conn, shard_id: str) -> None:
        row = conn.execute(
            "SELECT is_open FROM stream_shards WHERE stream_name = ? AND shard_id = ?",
            (self.stream_name, shard_id)
        ).fetchone()
        if row is None:
            raise ShardNotFoundError(f"Unknown shard {shard_id} in stream {self.stream_name}")
        if not row["is_open"]:
            raise ShardNotFoundError(f"Shard {shard_id} is closed")

    def _close(self, conn, shard_id: str) -> None:
        conn.execute(
            "UPDATE stream_shards SET is_open = 0 WHERE stream_name = ? AND shard_id = ?",
            (self.stream_name, shard_id)
        )

    def create_stream(self, shard_count: int) -> List[str]:
        """
        Create the stream with shard_count open shards if it has no shards yet.

        Returns:
            IDs of all shards of the stream
        """
        self.init_schema()
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT shard_id FROM stream_shards WHERE stream_name = ? ORDER BY shard_id",
                (self.stream_name,)
            ).fetchall()
            if existing:
                return [row["shard_id"] for row in existing]
            created = [self._insert_shard(conn) for _ in range(shard_count)]
        logger.info(f"Created stream {self.stream_name} with {shard_count} shards")
        return created

    def put_record(self, shard_id: str, data: bytes, partition_key: str = "") -> str:
        """
        Append a record to an open shard.

        Returns:
            Sequence number of the new record
        """
        with self._transaction() as conn:
            self._require_open(conn, shard_id)
            cursor = conn.execute("""
                INSERT INTO stream_records (stream_name, shard_id, partition_key, data, arrival_timestamp)
                VALUES (?, ?, ?, ?, ?)
            """, (self.stream_name, shard_id, partition_key, data, self.clock()))
            return str(cursor.lastrowid)

    def split_shard(self, shard_id: str) -> Tuple[str, str]:
        """Close shard_id and open two children in its place."""
        with self._transaction() as conn:
            self._require_open(conn, shard_id)
            self._close(conn, shard_id)
            children = (self._insert_shard(conn, parent=shard_id), self._insert_shard(conn, parent=shard_id))
        logger.info(f"Split shard {shard_id} into {children[0]}, {children[1]}")
        return children

    def merge_shards(self, shard_id: str, adjacent_shard_id: str) -> str:
        """Close two shards and open one child with both as parents."""
        with self._transaction() as conn:
            self._require_open(conn, shard_id)
            self._require_open(conn, adjacent_shard_id)
            self._close(conn, shard_id)
            self._close(conn, adjacent_shard_id)
            child = self._insert_shard(conn, parent=shard_id, adjacent=adjacent_shard_id)
        logger.info(f"Merged shards {shard_id} and {adjacent_shard_id} into {child}")
        return child

    def close_shard(self, shard_id: str) -> None:
        with self._transaction() as conn:
            self._require_open(conn, shard_id)
            self._close(conn, shard_id)

    # Consumer side

    def _list_shards_sync(self) -> List[ShardInfo]:
        with self._connection() as conn:
            rows = conn.execute("""
                SELECT shard_id, parent_shard_id, adjacent_parent_shard_id, is_open
                FROM stream_shards
                WHERE stream_name = ?
                ORDER BY shard_id
            """, (self.stream_name,)).fetchall()
            return [
                ShardInfo(
                    shard_id=row["shard_id"],
                    parent_shard_id=row["parent_shard_id"],
                    adjacent_parent_shard_id=row["adjacent_parent_shard_id"],
                    is_open=bool(row["is_open"]),
                )
                for row in rows
            ]

    def _get_shard_iterator_sync(self, shard_id: str, position: str, sequence_number: Optional[str]) -> str:
        with self._connection() as conn:
            shard = conn.execute(
                "SELECT shard_id FROM stream_shards WHERE stream_name = ? AND shard_id = ?",
                (self.stream_name, shard_id)
            ).fetchone()
            if shard is None:
                raise ShardNotFoundError(f"Unknown shard {shard_id} in stream {self.stream_name}")

            if position == POSITION_TRIM_HORIZON:
                return encode_iterator(shard_id, 0)
            if position == POSITION_LATEST:
                row = conn.execute(
                    "SELECT COALESCE(MAX(sequence_number), 0) AS latest FROM stream_records "
                    "WHERE stream_name = ? AND shard_id = ?",
                    (self.stream_name, shard_id)
                ).fetchone()
                return encode_iterator(shard_id, row["latest"])
            if position == POSITION_AFTER_SEQUENCE_NUMBER:
                if sequence_number is None or not str(sequence_number).isdigit():
                    raise InvalidIteratorError(f"Invalid sequence number {sequence_number!r}")
                return encode_iterator(shard_id, int(sequence_number))
            raise InvalidIteratorError(f"Unknown starting position {position!r}")

    def _get_latest_sequence_number_sync(self, shard_id: str) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT MAX(sequence_number) AS latest FROM stream_records "
                "WHERE stream_name = ? AND shard_id = ?",
                (self.stream_name, shard_id)
            ).fetchone()
        return None if row["latest"] is None else str(row["latest"])

    def _get_records_sync(self, iterator: str, limit: int) -> GetRecordsResult:
        shard_id, after = decode_iterator(iterator)
        with self._connection() as conn:
            shard = conn.execute(
                "SELECT is_open FROM stream_shards WHERE stream_name = ? AND shard_id = ?",
                (self.stream_name, shard_id)
            ).fetchone()
            if shard is None:
                raise ShardNotFoundError(f"Unknown shard {shard_id} in stream {self.stream_name}")

            rows = conn.execute("""
                SELECT sequence_number, partition_key, data, arrival_timestamp
                FROM stream_records
                WHERE stream_name = ? AND shard_id = ? AND sequence_number > ?
                ORDER BY sequence_number
                LIMIT ?
            """, (self.stream_name, shard_id, after, limit)).fetchall()

            records = [
                StreamRecord(
                    shard_id=shard_id,
                    sequence_number=str(row["sequence_number"]),
                    data=bytes(row["data"]),
                    partition_key=row["partition_key"],
                    arrival_timestamp=row["arrival_timestamp"],
                )
                for row in rows
            ]
            last = int(records[-1].sequence_number) if records else after

            if not shard["is_open"] and len(records) < limit:
                # closed and drained
                next_iterator = None
            else:
                next_iterator = encode_iterator(shard_id, last)

        behind = 0
        if records:
            behind = max(0, int((self.clock() - records[-1].arrival_timestamp) * 1000))
        return GetRecordsResult(records=records, next_iterator=next_iterator, millis_behind_latest=behind)

    async def list_shards(self) -> List[ShardInfo]:
        return await asyncio.to_thread(self._list_shards_sync)

    async def get_shard_iterator(
        self,
        shard_id: str,
        position: str,
        sequence_number: Optional[str] = None
    ) -> str:
        return await asyncio.to_thread(self._get_shard_iterator_sync, shard_id, position, sequence_number)

    async def get_records(self, iterator: str, limit: int) -> GetRecordsResult:
        return await asyncio.to_thread(self._get_records_sync, iterator, limit)

    async def get_latest_sequence_number(self, shard_id: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_latest_sequence_number_sync, shard_id)
