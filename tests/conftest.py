"""Shared test configuration for sqlbridge-mcp tests.

Provides:
- File-backed SQLite descriptors and pools (no external database needed)
- A seeded pool with a small ``users`` table
- Log capture defaults
"""

import logging
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from sqlbridge_mcp.engine.dsn import ConnectionDescriptor, parse_dsn
from sqlbridge_mcp.engine.sql import PoolHandle, PoolSettings, create_pool_handle

SEED_SQL = [
    "CREATE TABLE users ("
    " id INTEGER PRIMARY KEY,"
    " name TEXT NOT NULL,"
    " email TEXT UNIQUE,"
    " score REAL DEFAULT 0)",
    "CREATE INDEX idx_users_name ON users (name)",
    "INSERT INTO users (id, name, email, score) VALUES (1, 'alice', 'alice@example.com', 9.5)",
    "INSERT INTO users (id, name, email, score) VALUES (2, 'bob', 'bob@example.com', 7.0)",
    "INSERT INTO users (id, name, email, score) VALUES (3, 'carol', NULL, 8.25)",
]


@pytest.fixture(autouse=True)
def _debug_logging(caplog: pytest.LogCaptureFixture) -> None:
    """Capture debug output from the engine for assertions on log records."""
    caplog.set_level(logging.DEBUG, logger="sqlbridge_mcp")


@pytest.fixture
def pool_settings() -> PoolSettings:
    """Small pool with short timeouts so exhaustion tests finish quickly."""
    return PoolSettings(min_connections=1, max_connections=3, acquire_timeout=2.0)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "app.db"


@pytest.fixture
def sqlite_descriptor(db_path: Path, pool_settings: PoolSettings) -> ConnectionDescriptor:
    """Descriptor for a file database under the test's temp directory."""
    return parse_dsn(f"sqlite://{db_path}", pool=pool_settings)


@pytest.fixture
async def sqlite_pool(sqlite_descriptor: ConnectionDescriptor) -> AsyncIterator[PoolHandle]:
    """Opened SQLite pool; closed after the test."""
    handle = create_pool_handle(sqlite_descriptor)
    await handle.open()
    yield handle
    await handle.close()


@pytest.fixture
async def seeded_pool(sqlite_pool: PoolHandle) -> PoolHandle:
    """SQLite pool whose database holds the ``users`` table."""
    async with sqlite_pool.acquire() as conn:
        for statement in SEED_SQL:
            await conn.run(statement)
    return sqlite_pool
