"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `botstorage` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 120


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """
    Apply a default per-test timeout to non-integration tests.

    This relies on `pytest-timeout` when installed; if it isn't installed, the
    marker is inert but still documents the intent.
    """
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


@pytest.fixture(scope="module")
def anyio_backend():
    """The adapters are built on asyncio primitives; run AnyIO tests on asyncio."""
    return "asyncio"


@pytest.fixture()
def mongo_client():
    import mongomock

    client = mongomock.MongoClient()
    yield client
    client.close()


@pytest.fixture()
def threshold_reports() -> list:
    """Reports passed to the health monitor's threshold action."""
    return []


@pytest.fixture()
def monitor(threshold_reports):
    # Import lazily so `pytest_configure()` can prepend the local src/ directory
    # before any `botstorage` modules are loaded.
    from botstorage.core.health import HealthMonitor, HealthMonitorConfig

    return HealthMonitor(
        HealthMonitorConfig(failure_threshold=2, interval_seconds=60, grace_seconds=0),
        on_threshold=threshold_reports.append,
    )


def _database(mongo_client, monitor, dialect):
    from botstorage.integrations.mongodb.database import MongoDatabase

    # One worker keeps driver calls serialized for the in-memory double while
    # coroutines still interleave between round trips.
    return MongoDatabase(
        mongo_client["botstorage_test"],
        dialect=dialect,
        monitor=monitor,
        max_workers=1,
        client=mongo_client,
    )


@pytest.fixture()
def database(mongo_client, monitor):
    from botstorage.integrations.mongodb.dialect import MONGODB

    db = _database(mongo_client, monitor, MONGODB)
    yield db
    db.close()


@pytest.fixture()
def cosmos_database(mongo_client, monitor):
    from botstorage.integrations.mongodb.dialect import COSMOS

    db = _database(mongo_client, monitor, COSMOS)
    yield db
    db.close()


@pytest.fixture()
def raw_db(mongo_client):
    """Direct handle on the in-memory database, for seeding and inspection."""
    return mongo_client["botstorage_test"]


@pytest.fixture()
def no_unique_indexes(monkeypatch):
    """Make the in-memory engine reject unique index creation."""
    import mongomock
    from pymongo.errors import OperationFailure

    original = mongomock.Collection.create_index

    def create_index(self, key_or_list, *args, **kwargs):
        if kwargs.get("unique"):
            raise OperationFailure("unique indexes are not supported")
        return original(self, key_or_list, *args, **kwargs)

    monkeypatch.setattr(mongomock.Collection, "create_index", create_index)
