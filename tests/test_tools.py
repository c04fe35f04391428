"""Tests for the MCP tools and the server lifespan resources.

Tools are called directly with a mock context whose lifespan_context is the
AppContext built by open_resources, backed by a file SQLite database.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from sqlbridge_mcp.config import ServerConfig
from sqlbridge_mcp.context import AppContext
from sqlbridge_mcp.engine.exceptions import TunnelError
from sqlbridge_mcp.engine.tunnel import TunnelSettings
from sqlbridge_mcp.server import open_resources
from sqlbridge_mcp.tools import (
    execute_sql,
    get_pool_stats,
    get_stored_procedures,
    get_table_indexes,
    get_table_schema,
    list_schemas,
    list_tables,
)

SETUP_SQL = """
CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL);
INSERT INTO items (name) VALUES ('anvil');
INSERT INTO items (name) VALUES ('bolt');
"""


@pytest.fixture
def server_config(tmp_path: Path) -> ServerConfig:
    return ServerConfig.from_flat(
        {
            "database_dsn": f"sqlite://{tmp_path / 'tools.db'}",
            "db_min_connections": 1,
            "db_max_connections": 2,
            "db_max_retries": 0,
        }
    )


@pytest.fixture
async def app_context(server_config: ServerConfig) -> AsyncIterator[AppContext]:
    async with open_resources(server_config) as context:
        yield context


@pytest.fixture
async def mock_context(app_context: AppContext) -> Any:
    """Mock MCP context with the AppContext as lifespan_context, items table seeded."""
    mock_ctx = MagicMock()
    mock_ctx.request_context.lifespan_context = app_context
    outcome = await app_context.executor.execute(SETUP_SQL)
    assert outcome.success
    return mock_ctx


# =============================================================================
# Lifespan Resources
# =============================================================================


class TestOpenResources:
    @pytest.mark.asyncio
    async def test_resources_built_and_released(self, server_config: ServerConfig) -> None:
        async with open_resources(server_config) as context:
            assert context.tunnel is None
            assert context.pool.is_open
            assert context.registry.get(context.descriptor) is context.pool
            assert context.executor.pool is context.pool
            pool = context.pool

        assert not pool.is_open
        assert len(context.registry) == 0

    @pytest.mark.asyncio
    async def test_tunnel_failure_aborts_startup(self) -> None:
        """A tunnel that cannot be established stops startup before any pool opens."""
        config = ServerConfig.from_flat(
            {
                "database_dsn": "postgres://app:pw@10.0.0.5:5432/app",
                "ssh": {"host": "bastion", "user": "deploy", "password": "ssh-pass"},
            }
        )

        async def refuse(_settings: TunnelSettings) -> None:
            raise ConnectionRefusedError("Connection refused")

        with pytest.raises(TunnelError, match="failed"):
            async with open_resources(config, ssh_connector=refuse):
                pytest.fail("resources must not be yielded")

    @pytest.mark.asyncio
    async def test_tunnel_target_defaults_to_dsn_endpoint(self) -> None:
        config = ServerConfig.from_flat(
            {
                "database_dsn": "mysql://root:pw@10.0.0.6/shop",
                "ssh": {"host": "bastion", "user": "deploy", "password": "ssh-pass"},
            }
        )
        seen: list[TunnelSettings] = []

        async def refuse(settings: TunnelSettings) -> None:
            seen.append(settings)
            raise PermissionError("Permission denied")

        with pytest.raises(TunnelError):
            async with open_resources(config, ssh_connector=refuse):
                pass

        assert seen[0].target == "10.0.0.6:3306"


# =============================================================================
# execute_sql
# =============================================================================


class TestExecuteSqlTool:
    @pytest.mark.asyncio
    async def test_select_json(self, mock_context: Any) -> None:
        result = await execute_sql(sql="SELECT id, name FROM items ORDER BY id", ctx=mock_context)

        assert result["success"] is True
        assert result["transaction"] == "none"
        statement = result["results"][0]
        assert statement["kind"] == "read"
        assert statement["columns"] == ["id", "name"]
        assert statement["rows"] == [{"id": 1, "name": "anvil"}, {"id": 2, "name": "bolt"}]
        assert statement["truncated"] is False

    @pytest.mark.asyncio
    async def test_row_cap(self, mock_context: Any) -> None:
        result = await execute_sql(
            sql="SELECT name FROM items ORDER BY id", max_rows=1, ctx=mock_context
        )

        statement = result["results"][0]
        assert statement["rows"] == [{"name": "anvil"}]
        assert statement["applied_limit"] == 1
        assert statement["truncated"] is True

    @pytest.mark.asyncio
    async def test_readonly_rejects_writes(self, mock_context: Any) -> None:
        result = await execute_sql(
            sql="SELECT 1; DELETE FROM items", readonly=True, ctx=mock_context
        )

        assert result["success"] is False
        assert result["attempts"] == 0
        assert result["error"]["kind"] == "readonly_violation"
        assert result["error"]["statement_index"] == 1

        remaining = await execute_sql(sql="SELECT COUNT(*) AS n FROM items", ctx=mock_context)
        assert remaining["results"][0]["rows"] == [{"n": 2}]

    @pytest.mark.asyncio
    async def test_failure_returned_not_raised(self, mock_context: Any) -> None:
        result = await execute_sql(sql="SELECT * FROM missing_table", ctx=mock_context)

        assert result["success"] is False
        assert result["error"]["kind"] == "syntax_error"
        assert "missing_table" in result["error"]["message"]

    @pytest.mark.asyncio
    async def test_markdown(self, mock_context: Any) -> None:
        text = await execute_sql(
            sql="SELECT id, name FROM items ORDER BY id", format="markdown", ctx=mock_context
        )

        assert text.startswith("# Query Succeeded")
        assert "## Statement 1 (read)" in text
        assert "| id | name |" in text
        assert "| 2 | bolt |" in text
        assert "2 row(s)" in text

    @pytest.mark.asyncio
    async def test_markdown_error(self, mock_context: Any) -> None:
        text = await execute_sql(sql="SELEC 1", format="markdown", ctx=mock_context)

        assert text.startswith("# Query Failed")
        assert "## Error: syntax_error" in text
        assert "- **Retryable**: no" in text


# =============================================================================
# Introspection and Pool Tools
# =============================================================================


class TestCatalogTools:
    @pytest.mark.asyncio
    async def test_list_schemas(self, mock_context: Any) -> None:
        assert await list_schemas(ctx=mock_context) == {
            "schemas": [{"name": "main", "type": "database"}]
        }

    @pytest.mark.asyncio
    async def test_list_tables(self, mock_context: Any) -> None:
        result = await list_tables(ctx=mock_context)
        assert result == {"tables": [{"name": "items", "type": "table"}]}

    @pytest.mark.asyncio
    async def test_table_schema(self, mock_context: Any) -> None:
        result = await get_table_schema(table="items", ctx=mock_context)

        assert [column["name"] for column in result["columns"]] == ["id", "name"]
        assert result["columns"][1]["nullable"] is False

    @pytest.mark.asyncio
    async def test_table_indexes(self, mock_context: Any) -> None:
        result = await get_table_indexes(table="items", ctx=mock_context)
        assert result["indexes"] == [
            {"name": "PRIMARY", "columns": ["id"], "unique": True, "primary": True}
        ]

    @pytest.mark.asyncio
    async def test_stored_procedures(self, mock_context: Any) -> None:
        assert await get_stored_procedures(ctx=mock_context) == {"procedures": []}

    @pytest.mark.asyncio
    async def test_invalid_identifier_is_failure_payload(self, mock_context: Any) -> None:
        result = await get_table_schema(table="items; DROP TABLE items", ctx=mock_context)

        assert result["status"] == "failure"
        assert result["error"]["kind"] == "query_error"
        assert result["error"]["retryable"] is False

    @pytest.mark.asyncio
    async def test_markdown_records(self, mock_context: Any) -> None:
        text = await list_tables(format="markdown", ctx=mock_context)

        assert text.startswith("## Tables (1)")
        assert "| name | type |" in text
        assert "| items | table |" in text

    @pytest.mark.asyncio
    async def test_pool_stats(self, mock_context: Any) -> None:
        stats = await get_pool_stats(ctx=mock_context)

        assert stats["engine"] == "sqlite"
        assert stats["active_connections"] == 0
        assert stats["max_connections"] == 2
        assert stats["health"] == "HEALTHY"
        assert stats["dsn"].startswith("sqlite:///")

    @pytest.mark.asyncio
    async def test_pool_stats_markdown(self, mock_context: Any) -> None:
        text = await get_pool_stats(format="markdown", ctx=mock_context)

        assert text.startswith("## Pool: sqlite (HEALTHY)")
        assert "- **Limits**: min 1, max 2" in text

