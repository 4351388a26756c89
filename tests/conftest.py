"""Shared pytest fixtures for all tests."""

import pytest

from coordinator.checkpoint_store import CheckpointStore
from coordinator.client_registry import ClientRegistry
from coordinator.config import CoordinatorConfig
from coordinator.database import Database
from coordinator.metadata_store import MetadataStore
from coordinator.store import DocumentTable
from stream.client import SqliteStreamClient


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    """
    Coordination database with the three document tables created.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Initialized Database
    """
    db = Database(str(tmp_path / "coordination.db"))
    db.init_tables(["clients", "checkpoints", "metadata"])
    return db


@pytest.fixture
def registry(database, clock):
    return ClientRegistry(DocumentTable(database, "clients", clock), clock)


@pytest.fixture
def checkpoint_store(database, clock):
    return CheckpointStore(DocumentTable(database, "checkpoints", clock), clock)


@pytest.fixture
def metadata_store(database, clock):
    return MetadataStore(DocumentTable(database, "metadata", clock), clock)


@pytest.fixture
def stream(tmp_path):
    """
    Local stream with its schema created and no shards.
    """
    client = SqliteStreamClient(str(tmp_path / "stream.db"), "events")
    client.init_schema()
    return client


@pytest.fixture
def config(tmp_path):
    """
    Worker configuration with short intervals, pointing at tmp_path databases.
    """
    return CoordinatorConfig(
        worker_id="worker-a",
        database_path=str(tmp_path / "coordination.db"),
        stream_database_path=str(tmp_path / "stream.db"),
        heartbeat_interval=0.05,
        dead_worker_timeout=2.0,
        lease_duration=0.9,
        clock_skew_tolerance=0.05,
        rebalance_interval=0.5,
        plan_refresh_interval=0.05,
        poll_interval=0.02,
        max_records_per_fetch=40,
        callback_max_retries=2,
        callback_backoff_base=0.0,
        callback_backoff_max=0.0,
        store_max_retries=1,
        shutdown_grace_period=2.0,
    )
