"""PostgreSQL pool implementation.

This module provides the PostgreSQL pool handle, using asyncpg for native
async operation with connection pooling.

Features:
    - Native async driver (asyncpg)
    - Idle retirement via max_inactive_connection_lifetime
    - Lifetime retirement tracked per backend process id
    - SSL/TLS through the DSN's sslmode parameter
    - Read-only transactions for read-only batches

Note:
    Requires the 'asyncpg' package: pip install sqlbridge-mcp[postgresql]
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from .backend import Params, PooledConnection, PoolHandle, QueryResult

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")


def _import_asyncpg() -> Any:
    """Import asyncpg with helpful error message if not installed."""
    try:
        import asyncpg

        return asyncpg
    except ImportError as e:
        raise ImportError(
            "PostgreSQL backend requires 'asyncpg' package. "
            "Install with: pip install sqlbridge-mcp[postgresql]"
        ) from e


def _parse_affected_rows(status: str | None) -> int:
    """Parse affected row count from a PostgreSQL command tag.

    Tag format: "COMMAND [OID] COUNT"
    Examples:
        - "INSERT 0 1" -> 1
        - "UPDATE 5" -> 5
        - "SELECT 3" -> 3
        - "CREATE TABLE" -> 0
    """
    if not status:
        return 0

    parts = status.split()
    if len(parts) >= 2:
        try:
            return int(parts[-1])
        except ValueError:
            pass
    return 0


class PostgresConnection(PooledConnection):
    """Lease over one asyncpg pool connection."""

    async def _run(self, sql: str, params: Params, max_rows: int | None) -> QueryResult:
        args = _normalize_params(params)
        statement = await self.raw.prepare(sql)
        columns = [attr.name for attr in statement.get_attributes()]

        if not columns:
            await statement.fetch(*args)
            affected = _parse_affected_rows(statement.get_statusmsg())
            return QueryResult(
                row_count=affected,
                affected_rows=affected,
                status=statement.get_statusmsg(),
            )

        records = await statement.fetch(*args)
        if max_rows is not None:
            records = records[: max_rows + 1]
        status = statement.get_statusmsg()
        is_select = bool(status) and status.split()[0] in ("SELECT", "FETCH", "SHOW", "EXPLAIN")
        return QueryResult(
            rows=[dict(record.items()) for record in records],
            row_count=len(records),
            columns=columns,
            affected_rows=0 if is_select else _parse_affected_rows(status),
            status=status,
        )

    async def _begin(self, readonly: bool) -> None:
        await self.raw.execute("BEGIN READ ONLY" if readonly else "BEGIN")

    async def _commit(self) -> None:
        await self.raw.execute("COMMIT")

    async def _rollback(self) -> None:
        await self.raw.execute("ROLLBACK")


class PostgresPoolHandle(PoolHandle):
    """PostgreSQL pool handle backed by ``asyncpg.Pool``.

    Example:
        handle = PostgresPoolHandle(parse_dsn("postgres://app:secret@db:5432/app"))
        await handle.open()
        async with handle.acquire() as conn:
            result = await conn.run("SELECT * FROM users WHERE id = $1", (42,))
        await handle.close()
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._pool: asyncpg.Pool | None = None
        # Backend pid -> monotonic time the connection was opened
        self._births: dict[int, float] = {}

    async def _init_connection(self, conn: Any) -> None:
        self._births[conn.get_server_pid()] = time.monotonic()

    def _ssl(self) -> str | None:
        mode = self.descriptor.option_map.get("sslmode")
        if mode in SSL_MODES:
            return mode
        return None

    async def _create_pool(self) -> None:
        asyncpg = _import_asyncpg()
        descriptor = self.descriptor
        settings = self.settings

        self._pool = await asyncpg.create_pool(
            host=descriptor.host,
            port=descriptor.port,
            database=descriptor.database,
            user=descriptor.username,
            password=descriptor.get_password(),
            ssl=self._ssl(),
            min_size=settings.min_connections,
            max_size=settings.max_connections,
            max_inactive_connection_lifetime=settings.idle_timeout,
            timeout=settings.connect_timeout,
            init=self._init_connection,
        )
        logger.debug(f"Created PostgreSQL pool: {descriptor.safe_dsn}")

    async def _close_pool(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._births.clear()

    async def _acquire_raw(self) -> Any:
        assert self._pool is not None
        return await self._pool.acquire()

    async def _release_raw(self, raw: Any, discard: bool) -> None:
        if self._pool is None:
            return
        if discard:
            self._births.pop(raw.get_server_pid(), None)
            # The pool replaces a terminated connection on its next acquire
            raw.terminate()
        await self._pool.release(raw)

    def _wrap(self, raw: Any) -> PostgresConnection:
        return PostgresConnection(raw)

    def _is_expired(self, raw: Any) -> bool:
        return self._age(self._births.get(raw.get_server_pid())) > self.settings.max_lifetime

    def _counts(self) -> tuple[int, int]:
        if self._pool is None:
            return 0, 0
        size = self._pool.get_size()
        idle = self._pool.get_idle_size()
        return size - idle, idle


def _normalize_params(params: Params) -> tuple[Any, ...]:
    """Normalize parameters to asyncpg's positional *args."""
    if params is None:
        return ()
    if isinstance(params, dict):
        return tuple(params.values())
    if isinstance(params, list):
        return tuple(params)
    return params
