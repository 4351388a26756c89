"""Tests for the SQLite document table and its conditional writes."""

import pytest

from common.exceptions import ConditionalCheckFailedError, ConfigurationError, StoreUnavailableError
from coordinator.database import Database, quote_table_name
from coordinator.store import DocumentTable


@pytest.fixture
def table(database, clock):
    return DocumentTable(database, "metadata", clock)


class TestBasicOperations:
    """Test unconditional reads and writes."""

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, table):
        assert await table.get("nope") is None

    @pytest.mark.asyncio
    async def test_put_then_get(self, table):
        await table.put("k", {"a": 1, "b": "two"})

        assert await table.get("k") == {"a": 1, "b": "two"}

    @pytest.mark.asyncio
    async def test_put_replaces_whole_document(self, table):
        await table.put("k", {"a": 1, "b": 2})
        await table.put("k", {"c": 3})

        assert await table.get("k") == {"c": 3}

    @pytest.mark.asyncio
    async def test_scan_is_ordered_by_key(self, table):
        await table.put("b", {"id": "b"})
        await table.put("a", {"id": "a"})
        await table.put("c", {"id": "c"})

        assert [doc["id"] for doc in await table.scan()] == ["a", "b", "c"]


class TestConditionalWrites:
    """Test compare-and-swap semantics."""

    @pytest.mark.asyncio
    async def test_conditional_put_expecting_absent_record(self, table):
        await table.conditional_put("k", {"v": 1}, expected={"v": None})

        with pytest.raises(ConditionalCheckFailedError) as exc_info:
            await table.conditional_put("k", {"v": 2}, expected={"v": None})

        assert exc_info.value.field == "v"
        assert exc_info.value.actual == 1
        assert await table.get("k") == {"v": 1}

    @pytest.mark.asyncio
    async def test_conditional_put_matching_value(self, table):
        await table.put("k", {"v": 1})

        await table.conditional_put("k", {"v": 2}, expected={"v": 1})

        assert await table.get("k") == {"v": 2}

    @pytest.mark.asyncio
    async def test_update_merges_and_creates(self, table):
        await table.update("k", {"a": 1})
        written = await table.update("k", {"b": 2})

        assert written == {"a": 1, "b": 2}
        assert await table.get("k") == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_failed_update_leaves_document_unchanged(self, table):
        await table.put("k", {"owner": "w1", "n": 1})

        with pytest.raises(ConditionalCheckFailedError):
            await table.update("k", {"n": 2}, expected={"owner": "w2"})

        assert await table.get("k") == {"owner": "w1", "n": 1}

    @pytest.mark.asyncio
    async def test_expected_value_on_missing_record_fails(self, table):
        with pytest.raises(ConditionalCheckFailedError):
            await table.update("k", {"n": 1}, expected={"owner": "w1"})

        assert await table.get("k") is None

    @pytest.mark.asyncio
    async def test_delete(self, table):
        await table.put("k", {"v": 1})

        assert await table.delete("k") is True
        assert await table.delete("k") is False
        assert await table.get("k") is None

    @pytest.mark.asyncio
    async def test_conditional_delete_mismatch(self, table):
        await table.put("k", {"v": 1})

        with pytest.raises(ConditionalCheckFailedError):
            await table.delete("k", expected={"v": 2})

        assert await table.get("k") == {"v": 1}


class TestDatabase:
    """Test table name validation and unavailability mapping."""

    def test_quote_table_name(self):
        assert quote_table_name("shard-coordinator_clients") == '"shard-coordinator_clients"'

    @pytest.mark.parametrize("name", ["", "1abc", 'x"; DROP TABLE y; --', "a b"])
    def test_invalid_table_names_rejected(self, name):
        with pytest.raises(ConfigurationError):
            quote_table_name(name)

    @pytest.mark.asyncio
    async def test_unreachable_database_is_store_unavailable(self, tmp_path, clock):
        database = Database(str(tmp_path / "missing-dir" / "coordination.db"))
        table = DocumentTable(database, "clients", clock)

        with pytest.raises(StoreUnavailableError):
            await table.get("k")

    @pytest.mark.asyncio
    async def test_missing_table_is_store_unavailable(self, tmp_path, clock):
        database = Database(str(tmp_path / "coordination.db"))
        database.init_tables(["clients"])
        table = DocumentTable(database, "checkpoints", clock)

        with pytest.raises(StoreUnavailableError):
            await table.get("k")
