"""MySQL/MariaDB pool implementation.

This module provides the pool handle shared by the mysql and mariadb engine
tags, using aiomysql for native async operation with connection pooling.

Features:
    - Native async driver (aiomysql)
    - Idle retirement via pool_recycle
    - Lifetime retirement tracked per connection
    - SSL/TLS through the DSN's ssl-mode parameter
    - Compatible with MySQL 5.7+ and MariaDB 10.2+

Note:
    Requires the 'aiomysql' package: pip install sqlbridge-mcp[mysql]
"""

from __future__ import annotations

import logging
import ssl
import time
import weakref
from typing import TYPE_CHECKING, Any

from .backend import Params, PooledConnection, PoolHandle, QueryResult

if TYPE_CHECKING:
    import aiomysql  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)


def _import_aiomysql() -> Any:
    """Import aiomysql with helpful error message if not installed."""
    try:
        import aiomysql

        return aiomysql
    except ImportError as e:
        raise ImportError(
            "MySQL/MariaDB backend requires 'aiomysql' package. "
            "Install with: pip install sqlbridge-mcp[mysql]"
        ) from e


def build_ssl_context(options: dict[str, str]) -> ssl.SSLContext | None:
    """Translate ``ssl-mode`` / ``ssl`` DSN options into an SSL context.

    ``REQUIRED`` encrypts without verifying the server certificate;
    ``VERIFY_CA`` and ``VERIFY_IDENTITY`` verify it.
    """
    mode = (options.get("ssl-mode") or options.get("ssl_mode") or "").upper()
    if not mode and options.get("ssl", "").lower() in ("1", "true", "yes"):
        mode = "REQUIRED"

    if mode in ("", "DISABLED", "PREFERRED"):
        return None

    context = ssl.create_default_context()
    if mode == "REQUIRED":
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    elif mode == "VERIFY_CA":
        context.check_hostname = False
    return context


class MariaDBConnection(PooledConnection):
    """Lease over one aiomysql pool connection."""

    async def _run(self, sql: str, params: Params, max_rows: int | None) -> QueryResult:
        async with self.raw.cursor() as cursor:
            await cursor.execute(sql, _normalize_params(params))
            if cursor.description is None:
                return QueryResult(
                    row_count=cursor.rowcount,
                    affected_rows=cursor.rowcount,
                    last_insert_id=cursor.lastrowid or None,
                )

            columns = [desc[0] for desc in cursor.description]
            if max_rows is None:
                fetched = await cursor.fetchall()
            else:
                fetched = await cursor.fetchmany(max_rows + 1)
            rows = [dict(zip(columns, row, strict=True)) for row in fetched]
            return QueryResult(rows=rows, row_count=len(rows), columns=columns)

    async def _begin(self, readonly: bool) -> None:
        async with self.raw.cursor() as cursor:
            await cursor.execute(
                "START TRANSACTION READ ONLY" if readonly else "START TRANSACTION"
            )

    async def _commit(self) -> None:
        await self.raw.commit()

    async def _rollback(self) -> None:
        await self.raw.rollback()


class MariaDBPoolHandle(PoolHandle):
    """MySQL/MariaDB pool handle backed by ``aiomysql.Pool``.

    Example:
        handle = MariaDBPoolHandle(parse_dsn("mysql://app:secret@db:3306/app"))
        await handle.open()
        async with handle.acquire() as conn:
            result = await conn.run("SELECT * FROM users WHERE id = %s", (42,))
        await handle.close()
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._pool: aiomysql.Pool | None = None
        self._births: weakref.WeakKeyDictionary[Any, float] = weakref.WeakKeyDictionary()

    async def _create_pool(self) -> None:
        aiomysql = _import_aiomysql()
        descriptor = self.descriptor
        settings = self.settings

        self._pool = await aiomysql.create_pool(
            host=descriptor.host,
            port=descriptor.port or 3306,
            db=descriptor.database,
            user=descriptor.username,
            password=descriptor.get_password() or "",
            ssl=build_ssl_context(descriptor.option_map),
            minsize=settings.min_connections,
            maxsize=settings.max_connections,
            pool_recycle=int(settings.idle_timeout),
            connect_timeout=settings.connect_timeout,
            autocommit=True,  # Explicit transactions override
        )
        logger.debug(f"Created {descriptor.engine.value} pool: {descriptor.safe_dsn}")

    async def _close_pool(self) -> None:
        if self._pool is not None:
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None

    async def _acquire_raw(self) -> Any:
        assert self._pool is not None
        conn = await self._pool.acquire()
        self._births.setdefault(conn, time.monotonic())
        return conn

    async def _release_raw(self, raw: Any, discard: bool) -> None:
        if self._pool is None:
            return
        if discard:
            self._births.pop(raw, None)
            raw.close()
        self._pool.release(raw)

    def _wrap(self, raw: Any) -> MariaDBConnection:
        return MariaDBConnection(raw)

    def _is_expired(self, raw: Any) -> bool:
        return self._age(self._births.get(raw)) > self.settings.max_lifetime

    def _counts(self) -> tuple[int, int]:
        if self._pool is None:
            return 0, 0
        idle = self._pool.freesize
        return self._pool.size - idle, idle


def _normalize_params(params: Params) -> tuple[Any, ...] | dict[str, Any] | None:
    """Normalize parameters to PyMySQL's format."""
    if params is None:
        return None
    if isinstance(params, list):
        return tuple(params)
    return params
