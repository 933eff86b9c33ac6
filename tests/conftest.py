"""
Shared Test Fixtures

Every test gets its own SQLite database in a temporary directory.
"""

import pytest

from src.core.database.adapter import DatabaseAdapter, DatabaseConfig
from src.core.outbox.config import OutboxConfig
from src.core.outbox.store import EventStore
from tests.fakes import FakeClock


@pytest.fixture
async def db(tmp_path):
    """Connected SQLite adapter with the outbox schema."""
    adapter = DatabaseAdapter(DatabaseConfig(backend="sqlite", sqlite_path=str(tmp_path / "outbox.db")))
    await adapter.connect()
    await EventStore(adapter).ensure_schema()
    yield adapter
    await adapter.disconnect()


@pytest.fixture
def store(db) -> EventStore:
    return EventStore(db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> OutboxConfig:
    """Fast settings, independent of the environment's OUTBOX_* variables."""
    return OutboxConfig(
        poll_interval=0.01,
        batch_size=100,
        worker_count=1,
        delivery_concurrency=10,
        delivery_timeout=1.0,
        default_max_retries=3,
        backoff_base=5.0,
        backoff_multiplier=2.0,
        backoff_cap=900.0,
        reclaim_after=None,
        stale_after=300.0,
        delivery_mode="http",
        delivery_url=None,
        delivery_routes={},
    )
