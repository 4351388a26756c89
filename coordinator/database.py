"""Database schema and connection management for SQLite."""

import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterable

from common.exceptions import ConfigurationError, StoreUnavailableError
from common.logging_config import get_logger

logger = get_logger(__name__)

_TABLE_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_\-]*$')

BUSY_TIMEOUT_SECONDS = 5.0


def quote_table_name(table_name: str) -> str:
    """
    Validate and quote a table name for interpolation into SQL.

    Table names come from configuration, never from records.
    """
    if not _TABLE_NAME_PATTERN.match(table_name):
        raise ConfigurationError(f"Invalid table name: {table_name!r}")
    return f'"{table_name}"'


class Database:
    """
    A SQLite file shared by every worker process.

    Each logical store is one table of JSON documents keyed by string.
    """

    def __init__(self, path: str, busy_timeout: float = BUSY_TIMEOUT_SECONDS):
        self.path = path
        self.busy_timeout = busy_timeout

    def init_tables(self, table_names: Iterable[str]) -> None:
        """
        Create document tables if they don't exist.
        """
        table_names = list(table_names)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for table_name in table_names:
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {quote_table_name(table_name)} (
                        key TEXT PRIMARY KEY,
                        document TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
            conn.commit()
        logger.debug(f"Initialized tables {list(table_names)} [path={self.path}]")

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        sqlite3.OperationalError (locked, busy, unreadable file) surfaces as
        StoreUnavailableError so callers can treat it as transient.
        """
        try:
            conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Cannot open database {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Database operation failed [path={self.path}]: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Write transaction holding the database write lock from the first statement.

        BEGIN IMMEDIATE makes read-compare-write sequences atomic across processes.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
