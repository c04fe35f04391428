"""MCP tool implementations for database access.

This module contains all MCP tool function implementations that expose
SQL execution, catalog introspection and pool statistics via the MCP protocol.

Following official Anthropic MCP Python SDK patterns:
- Tool functions decorated with @mcp.tool()
- Flat parameter signatures with Annotated types for validation
- Async functions for all tools
- Clear docstrings (become tool descriptions)

Query and introspection failures are returned, never raised.
"""

import logging
from collections.abc import Awaitable
from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field

from .context import AppContextType
from .engine.exceptions import SqlBridgeError
from .engine.health import pool_report
from .formatting import (
    format_error_markdown,
    format_outcome_markdown,
    format_pool_stats_markdown,
    format_records_markdown,
)
from .server import mcp

logger = logging.getLogger(__name__)

OutputFormat = Annotated[
    Literal["json", "markdown"],
    Field(description="Output format"),
]

SchemaName = Annotated[
    str | None,
    Field(
        description=(
            "Schema (PostgreSQL), database (MySQL/MariaDB) or attached database (SQLite). "
            "Defaults to public, the current database, or main."
        ),
        max_length=128,
    ),
]

TableName = Annotated[
    str,
    Field(description="Table name", min_length=1, max_length=128),
]


async def _introspect(
    key: str,
    title: str,
    call: Awaitable[list[dict[str, Any]]],
    format: str,  # noqa: A002
) -> dict[str, Any] | str:
    """Await one introspection call and shape the response."""
    try:
        records = await call
    except SqlBridgeError as e:
        logger.warning(f"{key} failed: {e.kind.value}: {e.message}")
        if format == "markdown":
            return format_error_markdown(e.to_dict())
        return {"status": "failure", "error": e.to_dict()}

    if format == "markdown":
        return format_records_markdown(title, records)
    return {key: records}


# =============================================================================
# MCP Tools (following official SDK decorator pattern)
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Execute SQL",
        readOnlyHint=False,
        destructiveHint=True,  # Writes and DDL are allowed unless readonly
        idempotentHint=False,
        openWorldHint=True,
    )
)
async def execute_sql(
    sql: Annotated[
        str,
        Field(
            description="One or more SQL statements separated by semicolons",
            min_length=1,
        ),
    ],
    readonly: Annotated[
        bool,
        Field(description="Reject anything that is not a read, before running any statement"),
    ] = False,
    max_rows: Annotated[
        int | None,
        Field(description="Row cap per statement (clamped to the server ceiling)", ge=1),
    ] = None,
    timeout_secs: Annotated[
        float | None,
        Field(description="Per-attempt timeout in seconds", gt=0, le=3600),
    ] = None,
    format: OutputFormat = "json",  # noqa: A002
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Run SQL. Required: sql. Optional: readonly, max_rows, timeout_secs, format."""
    app_ctx = ctx.request_context.lifespan_context

    outcome = await app_ctx.executor.execute(
        sql, readonly=readonly, max_rows=max_rows, timeout=timeout_secs
    )
    result = outcome.to_dict()

    if format == "markdown":
        return format_outcome_markdown(result)
    return result


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Schemas",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def list_schemas(
    format: OutputFormat = "json",  # noqa: A002
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """List schemas (or databases) excluding system ones. Optional: format."""
    app_ctx = ctx.request_context.lifespan_context
    return await _introspect(
        "schemas", "Schemas", app_ctx.introspector.list_schemas(), format
    )


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Tables",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def list_tables(
    schema: SchemaName = None,
    format: OutputFormat = "json",  # noqa: A002
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """List tables and views in a schema. Optional: schema, format."""
    app_ctx = ctx.request_context.lifespan_context
    title = f"Tables in {schema}" if schema else "Tables"
    return await _introspect(
        "tables", title, app_ctx.introspector.list_tables(schema), format
    )


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Table Schema",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def get_table_schema(
    table: TableName,
    schema: SchemaName = None,
    format: OutputFormat = "json",  # noqa: A002
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get column definitions of a table. Required: table. Optional: schema, format."""
    app_ctx = ctx.request_context.lifespan_context
    return await _introspect(
        "columns",
        f"Columns of {table}",
        app_ctx.introspector.table_schema(table, schema),
        format,
    )


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Table Indexes",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def get_table_indexes(
    table: TableName,
    schema: SchemaName = None,
    format: OutputFormat = "json",  # noqa: A002
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get indexes of a table with their columns. Required: table. Optional: schema, format."""
    app_ctx = ctx.request_context.lifespan_context
    return await _introspect(
        "indexes",
        f"Indexes of {table}",
        app_ctx.introspector.table_indexes(table, schema),
        format,
    )


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Stored Procedures",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def get_stored_procedures(
    schema: SchemaName = None,
    format: OutputFormat = "json",  # noqa: A002
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """List stored procedures and functions (empty on SQLite). Optional: schema, format."""
    app_ctx = ctx.request_context.lifespan_context
    return await _introspect(
        "procedures",
        "Stored procedures",
        app_ctx.introspector.stored_procedures(schema),
        format,
    )


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Pool Stats",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_pool_stats(
    format: OutputFormat = "json",  # noqa: A002
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get connection pool occupancy and health. Optional: format."""
    app_ctx = ctx.request_context.lifespan_context
    stats = pool_report(app_ctx.pool)

    if format == "markdown":
        return format_pool_stats_markdown(stats)
    return stats
