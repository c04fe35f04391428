"""Backend-polymorphic pool contract and shared data classes.

Every engine is reached through a ``PoolHandle`` subclass that owns the
engine's native pool and hands out ``PooledConnection`` leases. The handle
class is chosen once, from the descriptor's engine tag, and is fixed for the
handle's lifetime.

The base class implements everything the engines have in common:
acquire timeouts, wait-queue accounting, lifetime retirement, tunnel gating
and discarding connections whose last command never confirmed completion.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..exceptions import AcquireTimeoutError, PoolClosedError, TunnelError

if TYPE_CHECKING:
    from ..dsn import ConnectionDescriptor
    from ..tunnel import SSHTunnel

logger = logging.getLogger(__name__)


class DatabaseEngine(Enum):
    """Supported database engines."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    SQLITE = "sqlite"

    @property
    def sqlglot_dialect(self) -> str:
        """Dialect name understood by sqlglot."""
        if self is DatabaseEngine.POSTGRES:
            return "postgres"
        if self is DatabaseEngine.SQLITE:
            return "sqlite"
        return "mysql"

    @property
    def is_mysql_family(self) -> bool:
        return self in (DatabaseEngine.MYSQL, DatabaseEngine.MARIADB)

    @property
    def default_port(self) -> int | None:
        if self is DatabaseEngine.POSTGRES:
            return 5432
        if self.is_mysql_family:
            return 3306
        return None


@dataclass(frozen=True)
class PoolSettings:
    """Pool sizing and retirement policy.

    Attributes:
        min_connections: Connections opened at warmup and kept alive
        max_connections: Hard cap on concurrently open connections
        acquire_timeout: Seconds acquire() may block before failing
        idle_timeout: Seconds an idle connection may sit before it is retired
        max_lifetime: Seconds after which a connection is retired regardless of use
        connect_timeout: Seconds allowed for opening one connection
    """

    min_connections: int = 2
    max_connections: int = 10
    acquire_timeout: float = 30.0
    idle_timeout: float = 600.0
    max_lifetime: float = 1800.0
    connect_timeout: float = 10.0

    def __post_init__(self) -> None:
        """Validate sizing and timeouts."""
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        if self.min_connections < 0:
            raise ValueError("min_connections must not be negative")
        if self.min_connections > self.max_connections:
            raise ValueError(
                f"min_connections ({self.min_connections}) exceeds "
                f"max_connections ({self.max_connections})"
            )
        for name in ("acquire_timeout", "idle_timeout", "max_lifetime", "connect_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


@dataclass
class QueryResult:
    """Unified result of one statement across backends.

    Attributes:
        rows: Result rows as list of dicts (empty for statements without a result set)
        row_count: Number of rows returned, or affected when there is no result set
        columns: Column names from the result set
        last_insert_id: Last inserted row ID where the engine reports one
        affected_rows: Number of rows affected by INSERT/UPDATE/DELETE
        status: Backend status tag (e.g. "INSERT 0 1") where the engine reports one
    """

    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    columns: list[str] = field(default_factory=list)
    last_insert_id: int | None = None
    affected_rows: int = 0
    status: str | None = None


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time pool occupancy."""

    active: int
    idle: int
    max: int
    min: int
    waiting: int

    @property
    def size(self) -> int:
        return self.active + self.idle


# Type alias for query parameters
Params = tuple[Any, ...] | list[Any] | dict[str, Any] | None


class PooledConnection(ABC):
    """A leased connection.

    A lease is only valid inside ``PoolHandle.acquire()``. While a command is
    running the lease is marked in flight; if the lease is returned in that
    state (the awaiting task was cancelled or timed out), or with a
    transaction still open, the pool discards the underlying connection
    instead of reusing it.
    """

    def __init__(self, raw: Any) -> None:
        self.raw = raw
        self.in_flight = False
        self.broken = False
        self.readonly = False
        self.in_transaction = False

    @property
    def unsafe(self) -> bool:
        """True when the connection must not be handed out again."""
        return self.in_flight or self.broken or self.in_transaction

    async def run(
        self, sql: str, params: Params = None, max_rows: int | None = None
    ) -> QueryResult:
        """Execute one statement and collect its result.

        Args:
            sql: Single SQL statement
            params: Positional parameters in the engine's placeholder style
            max_rows: When given, fetch at most ``max_rows + 1`` rows so the caller
                can tell whether more rows existed

        Returns:
            QueryResult with rows (if the statement produced a result set) and counts
        """
        self.in_flight = True
        try:
            result = await self._run(sql, params, max_rows)
        except (ConnectionError, OSError):
            self.broken = True
            raise
        except Exception:
            # The backend answered, so the connection is still in a known state
            self.in_flight = False
            raise
        self.in_flight = False
        return result

    async def begin(self, readonly: bool = False) -> None:
        """Open a transaction, optionally enforcing read-only at the session level."""
        self.in_flight = True
        await self._begin(readonly)
        self.readonly = readonly
        self.in_transaction = True
        self.in_flight = False

    async def commit(self) -> None:
        self.in_flight = True
        await self._commit()
        self.readonly = False
        self.in_transaction = False
        self.in_flight = False

    async def rollback(self) -> None:
        self.in_flight = True
        await self._rollback()
        self.readonly = False
        self.in_transaction = False
        self.in_flight = False

    @abstractmethod
    async def _run(self, sql: str, params: Params, max_rows: int | None) -> QueryResult:
        pass

    @abstractmethod
    async def _begin(self, readonly: bool) -> None:
        pass

    @abstractmethod
    async def _commit(self) -> None:
        pass

    @abstractmethod
    async def _rollback(self) -> None:
        pass


class PoolHandle(ABC):
    """Engine-independent pool contract.

    Subclasses wrap one native pool and implement the raw acquire/release
    primitives. Callers only use ``open``, ``acquire``, ``stats`` and ``close``.

    Example:
        handle = create_pool_handle(descriptor)
        await handle.open()
        async with handle.acquire() as conn:
            result = await conn.run("SELECT 1")
        await handle.close()
    """

    def __init__(self, descriptor: ConnectionDescriptor, tunnel: SSHTunnel | None = None) -> None:
        self.descriptor = descriptor
        self.settings = descriptor.pool
        self.tunnel = tunnel
        self._waiting = 0
        self._opened = False
        self._closed = False

    @property
    def engine(self) -> DatabaseEngine:
        return self.descriptor.engine

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    async def open(self) -> None:
        """Create the native pool and warm it up to ``min_connections``."""
        if self._opened:
            return
        self._check_tunnel()
        await self._create_pool()
        self._opened = True
        try:
            await self.warmup()
        except BaseException:
            await self.close()
            raise
        logger.info(
            f"Opened {self.engine.value} pool for {self.descriptor.safe_dsn} "
            f"(min={self.settings.min_connections}, max={self.settings.max_connections})"
        )

    async def warmup(self) -> None:
        """Open and probe ``min_connections`` connections at once."""
        async with AsyncExitStack() as stack:
            for _ in range(self.settings.min_connections):
                conn = await stack.enter_async_context(self.acquire())
                await conn.run("SELECT 1")

    async def close(self) -> None:
        """Close the native pool. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        if self._opened:
            await self._close_pool()
        logger.info(f"Closed {self.engine.value} pool for {self.descriptor.safe_dsn}")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[PooledConnection]:
        """Lease a connection for the duration of the ``async with`` block.

        Raises:
            TunnelError: The pool is bound to a tunnel that is not established
            PoolClosedError: The pool is closed
            AcquireTimeoutError: No connection became free within ``acquire_timeout``
        """
        conn = await self._checkout()
        try:
            yield conn
        finally:
            await self._checkin(conn)

    def stats(self) -> PoolStats:
        """Occupancy snapshot; never blocks."""
        active, idle = self._counts()
        return PoolStats(
            active=active,
            idle=idle,
            max=self.settings.max_connections,
            min=self.settings.min_connections,
            waiting=self._waiting,
        )

    async def _checkout(self) -> PooledConnection:
        if self._closed or not self._opened:
            raise PoolClosedError(f"Pool for {self.descriptor.safe_dsn} is closed")
        self._check_tunnel()

        loop = asyncio.get_running_loop()
        timeout = self.settings.acquire_timeout
        deadline = loop.time() + timeout
        self._waiting += 1
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise AcquireTimeoutError(timeout, self.settings.max_connections)
                try:
                    raw = await asyncio.wait_for(self._acquire_raw(), remaining)
                except TimeoutError:
                    raise AcquireTimeoutError(timeout, self.settings.max_connections) from None

                if self._is_expired(raw):
                    logger.debug("Retiring connection past its maximum lifetime")
                    await self._release_raw(raw, discard=True)
                    continue
                return self._wrap(raw)
        finally:
            self._waiting -= 1

    async def _checkin(self, conn: PooledConnection) -> None:
        discard = conn.unsafe or self._is_expired(conn.raw)
        if conn.in_flight:
            logger.warning(
                "Discarding connection whose last command did not confirm completion"
            )
        await self._release_raw(conn.raw, discard=discard)

    def _check_tunnel(self) -> None:
        if self.tunnel is not None and not self.tunnel.is_established:
            raise TunnelError(
                f"SSH tunnel is not established (state={self.tunnel.state.value}); "
                "new connections are refused until it is re-established"
            )

    def _age(self, born: float | None) -> float:
        if born is None:
            return 0.0
        return time.monotonic() - born

    @abstractmethod
    async def _create_pool(self) -> None:
        """Create the native pool."""

    @abstractmethod
    async def _close_pool(self) -> None:
        """Close the native pool and every connection it holds."""

    @abstractmethod
    async def _acquire_raw(self) -> Any:
        """Take one native connection, blocking while the pool is at capacity."""

    @abstractmethod
    async def _release_raw(self, raw: Any, discard: bool) -> None:
        """Return a native connection, closing it first when ``discard`` is set."""

    @abstractmethod
    def _wrap(self, raw: Any) -> PooledConnection:
        """Build the lease object for a native connection."""

    @abstractmethod
    def _is_expired(self, raw: Any) -> bool:
        """True when the connection has outlived ``max_lifetime``."""

    @abstractmethod
    def _counts(self) -> tuple[int, int]:
        """Return ``(active, idle)``."""
