"""
Pool registry for sharing one pool per effective connection target.

Two descriptors with the same engine, host, port, database, user and
credentials map to the same opened PoolHandle, so
concurrent callers never create duplicate pools for one target.

Example:
    registry = PoolRegistry()
    handle = await registry.get_or_create(descriptor)
    ...
    await registry.close_all()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .sql import create_pool_handle

if TYPE_CHECKING:
    from .dsn import ConnectionDescriptor
    from .sql.backend import PoolHandle
    from .tunnel import SSHTunnel

logger = logging.getLogger(__name__)


class PoolRegistry:
    """Process-wide map from descriptor identity to opened pool handle."""

    def __init__(self) -> None:
        self._pools: dict[tuple[Any, ...], PoolHandle] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._pools)

    async def get_or_create(
        self, descriptor: ConnectionDescriptor, tunnel: SSHTunnel | None = None
    ) -> PoolHandle:
        """
        Return the open pool for ``descriptor``, creating and warming it if needed.

        Creation happens under a lock so concurrent first calls share one pool.
        A pool that fails to open is not registered.
        """
        key = descriptor.pool_key
        async with self._lock:
            handle = self._pools.get(key)
            if handle is not None and handle.is_open:
                return handle

            handle = create_pool_handle(descriptor, tunnel=tunnel)
            await handle.open()
            self._pools[key] = handle
            logger.info(f"Registered pool for {descriptor.safe_dsn}")
            return handle

    def get(self, descriptor: ConnectionDescriptor) -> PoolHandle | None:
        return self._pools.get(descriptor.pool_key)

    def list_all(self) -> list[PoolHandle]:
        return list(self._pools.values())

    async def close_all(self) -> None:
        """Close every registered pool; errors are logged so the rest still close."""
        async with self._lock:
            handles = list(self._pools.values())
            self._pools.clear()

        for handle in handles:
            try:
                await handle.close()
            except Exception as e:
                logger.error(
                    f"Failed to close pool for {handle.descriptor.safe_dsn}: "
                    f"{type(e).__name__}: {e}"
                )
