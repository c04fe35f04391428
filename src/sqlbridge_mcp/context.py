"""Shared context types for MCP server.

This module contains context types used across server and tools modules,
separated to avoid circular imports.
"""

from dataclasses import dataclass

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession

from .config import ServerConfig
from .engine.dsn import ConnectionDescriptor
from .engine.executor import QueryExecutor
from .engine.introspection import Introspector
from .engine.pool_registry import PoolRegistry
from .engine.sql.backend import PoolHandle
from .engine.tunnel import SSHTunnel


@dataclass
class AppContext:
    """Application context containing shared resources for MCP tools.

    Created once during server startup. The descriptor is the effective one
    (already rewritten to the tunnel endpoint when a tunnel is configured).
    """

    config: ServerConfig
    descriptor: ConnectionDescriptor
    registry: PoolRegistry
    pool: PoolHandle
    executor: QueryExecutor
    introspector: Introspector
    tunnel: SSHTunnel | None = None  # Only when the SSH group is configured


# Type alias for MCP tool context parameter
AppContextType = Context[ServerSession, AppContext]


__all__ = ["AppContext", "AppContextType"]
