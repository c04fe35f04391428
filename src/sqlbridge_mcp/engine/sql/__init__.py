"""Backend-polymorphic pool module.

This module provides one pool contract over SQLite, PostgreSQL and
MySQL/MariaDB. The concrete handle class is looked up once from the
descriptor's engine tag; drivers for the network engines are imported only
when their handle opens a pool.

Usage:
    from sqlbridge_mcp.engine.dsn import parse_dsn
    from sqlbridge_mcp.engine.sql import create_pool_handle

    handle = create_pool_handle(parse_dsn("postgres://app:secret@db/app"))
    await handle.open()
    async with handle.acquire() as conn:
        result = await conn.run("SELECT 1")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .backend import (
    DatabaseEngine,
    Params,
    PooledConnection,
    PoolHandle,
    PoolSettings,
    PoolStats,
    QueryResult,
)
from .mariadb_backend import MariaDBPoolHandle
from .param_converter import ParamConverter, convert_sql_for_engine
from .postgres_backend import PostgresPoolHandle
from .sqlite_backend import SqlitePoolHandle

if TYPE_CHECKING:
    from ..dsn import ConnectionDescriptor
    from ..tunnel import SSHTunnel

POOL_HANDLES: dict[DatabaseEngine, type[PoolHandle]] = {
    DatabaseEngine.POSTGRES: PostgresPoolHandle,
    DatabaseEngine.MYSQL: MariaDBPoolHandle,
    DatabaseEngine.MARIADB: MariaDBPoolHandle,
    DatabaseEngine.SQLITE: SqlitePoolHandle,
}


def create_pool_handle(
    descriptor: ConnectionDescriptor, tunnel: SSHTunnel | None = None
) -> PoolHandle:
    """Build the (unopened) pool handle for a descriptor's engine."""
    return POOL_HANDLES[descriptor.engine](descriptor, tunnel=tunnel)


__all__ = [
    # Core types
    "DatabaseEngine",
    "Params",
    "PooledConnection",
    "PoolHandle",
    "PoolSettings",
    "PoolStats",
    "QueryResult",
    # Parameter conversion
    "ParamConverter",
    "convert_sql_for_engine",
    # Handles
    "MariaDBPoolHandle",
    "PostgresPoolHandle",
    "SqlitePoolHandle",
    "POOL_HANDLES",
    "create_pool_handle",
]
