"""FastMCP server initialization for sqlbridge-mcp.

This module initializes the MCP server and manages shared resources via lifespan context.
All tool implementations are in the tools module.

Startup order:
1. Load configuration (YAML + environment)
2. Parse the DSN into a connection descriptor
3. Establish the SSH tunnel, if configured, and rewrite the descriptor
4. Open and warm up the pool for the effective descriptor
5. Yield AppContext to tools

Shutdown closes every pool first, then the tunnel.
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from .config import ConfigLoader, ServerConfig
from .context import AppContext, AppContextType
from .engine.executor import QueryExecutor
from .engine.introspection import Introspector
from .engine.pool_registry import PoolRegistry
from .engine.redactor import SecretRedactor
from .engine.tunnel import SSHConnector, SSHTunnel

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV_VAR = "SQLBRIDGE_LOG_LEVEL"

# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


@asynccontextmanager
async def open_resources(
    config: ServerConfig, ssh_connector: SSHConnector | None = None
) -> AsyncIterator[AppContext]:
    """Build the tunnel, pool, executor and introspector for one configuration.

    Args:
        config: Validated server configuration
        ssh_connector: Override for opening the SSH session (tests)

    Yields:
        AppContext with initialized resources

    Raises:
        MalformedDSNError: The configured DSN cannot be parsed
        TunnelError: The SSH tunnel could not be established
    """
    descriptor = config.descriptor()
    logger.info(f"Target database: {descriptor.safe_dsn}")

    tunnel: SSHTunnel | None = None
    registry = PoolRegistry()
    try:
        if config.ssh is not None:
            tunnel = SSHTunnel(config.ssh.to_tunnel_settings(descriptor), connector=ssh_connector)
            local_port = await tunnel.start()
            descriptor = descriptor.rewrite_for_tunnel(local_port)
            logger.info(f"Connecting through tunnel: {descriptor.safe_dsn}")

        pool = await registry.get_or_create(descriptor, tunnel=tunnel)

        redactor = SecretRedactor.for_descriptor(descriptor)
        if config.ssh is not None:
            if config.ssh.password is not None:
                redactor.add_secret("ssh_password", config.ssh.password.get_secret_value())
            if config.ssh.key_passphrase is not None:
                redactor.add_secret(
                    "ssh_key_passphrase", config.ssh.key_passphrase.get_secret_value()
                )

        policy = config.query.retry_policy()
        executor = QueryExecutor(
            pool,
            policy,
            query_timeout=config.query.db_query_timeout_secs,
            default_max_rows=config.query.max_rows,
            max_rows_ceiling=config.query.max_rows_ceiling,
            force_readonly=config.query.readonly,
            redactor=redactor,
        )
        introspector = Introspector(
            pool, policy, timeout=config.query.db_query_timeout_secs, redactor=redactor
        )

        yield AppContext(
            config=config,
            descriptor=descriptor,
            registry=registry,
            pool=pool,
            executor=executor,
            introspector=introspector,
            tunnel=tunnel,
        )
    finally:
        # Pools first: their connections ride on the tunnel
        await registry.close_all()
        if tunnel is not None:
            await tunnel.close()


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle with resource initialization and cleanup.

    Environment Variables:
        DATABASE_DSN: Connection string (default: in-memory SQLite)
        SQLBRIDGE_CONFIG: Optional YAML config file
        SSH_*: Optional SSH tunnel group

    Args:
        _server: FastMCP server instance (unused, required by FastMCP signature)

    Yields:
        AppContext with initialized resources
    """
    logger.info("Initializing MCP server resources...")

    config = ConfigLoader().load_config()

    async with open_resources(config) as app_context:
        try:
            yield app_context
        finally:
            logger.info("Shutting down MCP server...")


# Initialize MCP server with lifespan management
# Following Python MCP naming convention: {service}_mcp
mcp = FastMCP("sqlbridge_mcp", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Entry point for running the MCP server.

    This function is called when the server is run directly via:
    - python -m sqlbridge_mcp
    - sqlbridge-mcp (console script)

    Defaults to stdio transport for MCP protocol communication.
    """
    # Get log level from environment variable, default to INFO
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv(LOG_LEVEL_ENV_VAR, "INFO").upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid {LOG_LEVEL_ENV_VAR} '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(valid_log_levels))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    log_level = getattr(logging, log_level_str)

    # Configure logging to stderr (MCP requirement)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info("Starting MCP server (press Ctrl+C to stop)...")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        # Configuration, DSN and tunnel failures at startup end up here
        logger.exception(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "mcp",
    "main",
    "AppContext",
    "AppContextType",
    "open_resources",
]
