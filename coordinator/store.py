"""Document table with conditional writes on top of the shared SQLite database."""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional

from common.exceptions import ConditionalCheckFailedError
from common.logging_config import get_logger
from coordinator.database import Database, quote_table_name

logger = get_logger(__name__)

_MISSING = object()


class DocumentTable:
    """
    One durable table of JSON documents keyed by string.

    Supports the store primitives the coordinator relies on: get, put,
    conditional put/update (compare-and-swap on one or more fields),
    delete and scan. `expected` maps field names to the value they must
    currently hold; a None value expects the field (or the whole record)
    to be absent.
    """

    def __init__(self, database: Database, table_name: str, clock: Callable[[], float] = time.time):
        self.database = database
        self.table_name = table_name
        self._table = quote_table_name(table_name)
        self.clock = clock

    def _load(self, conn, key: str) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            f"SELECT document FROM {self._table} WHERE key = ?",
            (key,)
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["document"])

    def _store(self, conn, key: str, document: Dict[str, Any]) -> None:
        conn.execute(
            f"INSERT OR REPLACE INTO {self._table} (key, document, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(document, sort_keys=True), self.clock())
        )

    def _check(self, key: str, current: Optional[Dict[str, Any]], expected: Optional[Dict[str, Any]]) -> None:
        if not expected:
            return
        for field, value in expected.items():
            actual = _MISSING if current is None else current.get(field, _MISSING)
            if value is None:
                if actual is not _MISSING and actual is not None:
                    raise ConditionalCheckFailedError(key, field, None, actual)
            elif actual is _MISSING or actual != value:
                raise ConditionalCheckFailedError(
                    key, field, value, None if actual is _MISSING else actual
                )

    def _get_sync(self, key: str) -> Optional[Dict[str, Any]]:
        with self.database.connection() as conn:
            return self._load(conn, key)

    def _put_sync(self, key: str, document: Dict[str, Any], expected: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        with self.database.transaction() as conn:
            self._check(key, self._load(conn, key), expected)
            self._store(conn, key, document)
        return document

    def _update_sync(self, key: str, changes: Dict[str, Any], expected: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        with self.database.transaction() as conn:
            current = self._load(conn, key)
            self._check(key, current, expected)
            document = dict(current or {})
            document.update(changes)
            self._store(conn, key, document)
        return document

    def _delete_sync(self, key: str, expected: Optional[Dict[str, Any]]) -> bool:
        with self.database.transaction() as conn:
            current = self._load(conn, key)
            if current is None:
                return False
            self._check(key, current, expected)
            conn.execute(f"DELETE FROM {self._table} WHERE key = ?", (key,))
        return True

    def _scan_sync(self) -> List[Dict[str, Any]]:
        with self.database.connection() as conn:
            rows = conn.execute(f"SELECT document FROM {self._table} ORDER BY key").fetchall()
            return [json.loads(row["document"]) for row in rows]

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the document stored under key, or None."""
        return await asyncio.to_thread(self._get_sync, key)

    async def put(self, key: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Unconditionally replace the document stored under key."""
        return await asyncio.to_thread(self._put_sync, key, document, None)

    async def conditional_put(
        self,
        key: str,
        document: Dict[str, Any],
        expected: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Replace the document only if every expected field matches.

        Raises:
            ConditionalCheckFailedError: If any expected field differs
        """
        return await asyncio.to_thread(self._put_sync, key, document, expected)

    async def update(
        self,
        key: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Atomically merge changes into the current document (creating it if absent).

        Returns:
            The document as written

        Raises:
            ConditionalCheckFailedError: If any expected field differs
        """
        return await asyncio.to_thread(self._update_sync, key, changes, expected)

    async def delete(self, key: str, expected: Optional[Dict[str, Any]] = None) -> bool:
        """
        Delete a document.

        Returns:
            True if a document was deleted, False if none existed
        """
        return await asyncio.to_thread(self._delete_sync, key, expected)

    async def scan(self) -> List[Dict[str, Any]]:
        """Return every document in the table, ordered by key."""
        return await asyncio.to_thread(self._scan_sync)
