"""SQLite pool implementation.

This module provides the SQLite pool handle, using the stdlib sqlite3 module
with a dedicated thread pool for async operation.

Features:
    - WAL mode by default for concurrent reads
    - Automatic busy_timeout for lock contention handling
    - Foreign key enforcement enabled
    - Parent directory creation for file databases
    - Shared-cache URI for ``:memory:`` so every pooled connection sees one database
    - Idle and lifetime retirement handled by the pool itself
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import sqlite3
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from .backend import Params, PooledConnection, PoolHandle, QueryResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _SqliteSlot:
    """Bookkeeping for one pooled sqlite3 connection."""

    conn: sqlite3.Connection
    born: float
    last_used: float
    pending: concurrent.futures.Future[Any] | None = None


class SqliteConnection(PooledConnection):
    """Lease over one sqlite3 connection.

    Every call runs on the pool's worker threads. The future of the call in
    progress is kept on the slot so a discarded connection can be interrupted
    and waited for before it is closed.
    """

    raw: _SqliteSlot

    def __init__(self, raw: _SqliteSlot, handle: SqlitePoolHandle) -> None:
        super().__init__(raw)
        self._handle = handle

    async def _call(self, fn: Callable[[], T]) -> T:
        future = self._handle.submit(fn)
        self.raw.pending = future
        return await asyncio.wrap_future(future)

    async def _run(self, sql: str, params: Params, max_rows: int | None) -> QueryResult:
        conn = self.raw.conn

        def _execute() -> QueryResult:
            cursor = conn.execute(sql, _normalize_params(params))
            try:
                if cursor.description is None:
                    return QueryResult(
                        row_count=max(cursor.rowcount, 0),
                        affected_rows=max(cursor.rowcount, 0),
                        last_insert_id=cursor.lastrowid or None,
                    )

                columns = [desc[0] for desc in cursor.description]
                if max_rows is None:
                    fetched = cursor.fetchall()
                else:
                    fetched = cursor.fetchmany(max_rows + 1)
                rows = [dict(zip(columns, row, strict=True)) for row in fetched]
                return QueryResult(
                    rows=rows,
                    row_count=len(rows),
                    columns=columns,
                    # INSERT ... RETURNING reports both rows and a rowcount
                    affected_rows=max(cursor.rowcount, 0),
                    last_insert_id=cursor.lastrowid or None,
                )
            finally:
                cursor.close()

        return await self._call(_execute)

    async def _begin(self, readonly: bool) -> None:
        conn = self.raw.conn

        def _begin_tx() -> None:
            if readonly:
                conn.execute("PRAGMA query_only = ON")
            conn.execute("BEGIN")

        await self._call(_begin_tx)

    async def _commit(self) -> None:
        conn = self.raw.conn
        readonly = self.readonly

        def _commit_tx() -> None:
            conn.execute("COMMIT")
            if readonly:
                conn.execute("PRAGMA query_only = OFF")

        await self._call(_commit_tx)

    async def _rollback(self) -> None:
        conn = self.raw.conn
        readonly = self.readonly

        def _rollback_tx() -> None:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if readonly:
                conn.execute("PRAGMA query_only = OFF")

        await self._call(_rollback_tx)


class SqlitePoolHandle(PoolHandle):
    """SQLite pool over stdlib sqlite3.

    sqlite3 has no pool of its own, so this handle keeps one: a semaphore
    bounds concurrent leases to ``max_connections`` and released connections
    wait in an idle queue stamped with their last use.

    Example:
        handle = SqlitePoolHandle(parse_dsn("sqlite:///data/app.db"))
        await handle.open()
        async with handle.acquire() as conn:
            result = await conn.run("SELECT * FROM users WHERE id = ?", (42,))
        await handle.close()
    """

    DEFAULT_PRAGMAS: dict[str, str | int] = {
        "journal_mode": "WAL",
        "busy_timeout": 30000,
        "synchronous": "NORMAL",
        "foreign_keys": "ON",
    }

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._slots: asyncio.Semaphore | None = None
        # Held while a connection is opened so idle + active never passes max_connections
        self._grow_lock: asyncio.Lock | None = None
        self._idle: deque[_SqliteSlot] = deque()
        self._active: list[_SqliteSlot] = []
        self._anchor: sqlite3.Connection | None = None
        self._target, self._uri = self._resolve_target()

    def _resolve_target(self) -> tuple[str, bool]:
        database = self.descriptor.database or ""
        if self.descriptor.is_memory:
            # A named shared-cache database lives as long as one connection is open
            return f"file:sqlbridge-{uuid.uuid4().hex}?mode=memory&cache=shared", True
        if database.startswith("file:"):
            return database, True
        return database, False

    def submit(self, fn: Callable[[], T]) -> concurrent.futures.Future[T]:
        if self._executor is None:
            raise RuntimeError("SQLite pool is not open")
        return self._executor.submit(fn)

    def _connect(self) -> sqlite3.Connection:
        if not self._uri:
            Path(self._target).parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode; transactions are opened explicitly with BEGIN
        conn = sqlite3.connect(
            self._target,
            uri=self._uri,
            timeout=self.settings.connect_timeout,
            check_same_thread=False,
            isolation_level=None,
        )

        pragmas = {**self.DEFAULT_PRAGMAS}
        if self.descriptor.is_memory:
            pragmas.pop("journal_mode")
        for pragma, value in pragmas.items():
            try:
                conn.execute(f"PRAGMA {pragma}={value}")
            except sqlite3.Error as e:
                logger.warning(f"Failed to set PRAGMA {pragma}={value}: {e}")
        return conn

    async def _new_slot(self) -> _SqliteSlot:
        conn = await asyncio.wrap_future(self.submit(self._connect))
        now = time.monotonic()
        return _SqliteSlot(conn=conn, born=now, last_used=now)

    async def _create_pool(self) -> None:
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.max_connections + 1,
            thread_name_prefix="sqlbridge-sqlite",
        )
        self._slots = asyncio.Semaphore(self.settings.max_connections)
        self._grow_lock = asyncio.Lock()
        if self._uri and self.descriptor.is_memory:
            self._anchor = await asyncio.wrap_future(self.submit(self._connect))
        logger.debug(f"Created SQLite pool for {self.descriptor.safe_dsn}")

    async def _close_pool(self) -> None:
        slots = [*self._idle, *self._active]
        self._idle.clear()
        self._active.clear()
        for slot in slots:
            await self._close_slot(slot)
        if self._anchor is not None:
            await asyncio.wrap_future(self.submit(self._anchor.close))
            self._anchor = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def _acquire_raw(self) -> _SqliteSlot:
        assert self._slots is not None and self._grow_lock is not None
        await self._slots.acquire()
        try:
            slot = await self._take_idle()
            if slot is None:
                async with self._grow_lock:
                    # Replenishment may have refilled the pool while we waited
                    slot = await self._take_idle()
                    if slot is None:
                        slot = await self._new_slot()
        except BaseException:
            self._slots.release()
            raise
        self._active.append(slot)
        return slot

    async def _take_idle(self) -> _SqliteSlot | None:
        while self._idle:
            slot = self._idle.popleft()
            if time.monotonic() - slot.last_used > self.settings.idle_timeout:
                logger.debug("Retiring idle SQLite connection")
                await self._close_slot(slot)
                continue
            return slot
        return None

    async def _release_raw(self, raw: _SqliteSlot, discard: bool) -> None:
        assert self._slots is not None
        if raw in self._active:
            self._active.remove(raw)
        try:
            if discard or self._closed:
                await self._close_slot(raw)
            else:
                raw.last_used = time.monotonic()
                raw.pending = None
                self._idle.append(raw)
        finally:
            self._slots.release()
        if not self._closed:
            await self._replenish()

    async def _replenish(self) -> None:
        """Top the pool back up to ``min_connections`` after retirements."""
        assert self._grow_lock is not None
        async with self._grow_lock:
            while not self._closed and self._total() < self.settings.min_connections:
                self._idle.append(await self._new_slot())

    def _total(self) -> int:
        return len(self._idle) + len(self._active)

    async def _close_slot(self, slot: _SqliteSlot) -> None:
        pending = slot.pending
        if pending is not None and not pending.done():
            # Abort the statement still running on the worker thread, then
            # wait for the thread to let go of the connection.
            slot.conn.interrupt()
            try:
                await asyncio.wrap_future(pending)
            except (sqlite3.Error, concurrent.futures.CancelledError) as e:
                logger.debug(f"Interrupted SQLite statement finished with: {e}")
        slot.pending = None
        if self._executor is not None:
            await asyncio.wrap_future(self.submit(slot.conn.close))
        else:
            slot.conn.close()

    def _wrap(self, raw: _SqliteSlot) -> SqliteConnection:
        return SqliteConnection(raw, self)

    def _is_expired(self, raw: _SqliteSlot) -> bool:
        return self._age(raw.born) > self.settings.max_lifetime

    def _counts(self) -> tuple[int, int]:
        return len(self._active), len(self._idle)


def _normalize_params(params: Params) -> tuple[Any, ...] | dict[str, Any]:
    """Normalize parameters to sqlite3-compatible format."""
    if params is None:
        return ()
    if isinstance(params, dict):
        return params
    if isinstance(params, list):
        return tuple(params)
    return params
