"""
Catalog introspection across engines.

Every operation returns normalized records, whatever the engine:

    list_schemas()                -> [{name, type}]
    list_tables(schema)           -> [{name, type}]
    table_schema(table, schema)   -> [{name, data_type, nullable, default}]
    table_indexes(table, schema)  -> [{name, columns, unique, primary}]
    stored_procedures(schema)     -> [{name, schema, type, return_type, language}]

PostgreSQL and MySQL/MariaDB read information_schema (plus pg_catalog for
index columns). SQLite reads sqlite_master and PRAGMAs; PRAGMA arguments
cannot be bound as parameters, so identifiers are validated before they are
interpolated. Catalog queries are written with ``?`` placeholders and
translated per engine.

Each operation acquires one connection and runs through the same retry and
timeout policy as statement execution.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .error_classification import classify_error
from .exceptions import QueryError
from .redactor import SecretRedactor
from .retry import RetryPolicy, retry_async
from .sql.backend import DatabaseEngine, PooledConnection, PoolHandle
from .sql.param_converter import ParamConverter

logger = logging.getLogger(__name__)

T = TypeVar("T")

SQLITE_DEFAULT_SCHEMA = "main"
POSTGRES_DEFAULT_SCHEMA = "public"

MAX_IDENTIFIER_LENGTH = 64
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
RESERVED_IDENTIFIERS = frozenset(
    {
        "SELECT",
        "INSERT",
        "UPDATE",
        "DELETE",
        "DROP",
        "CREATE",
        "ALTER",
        "TABLE",
        "INDEX",
        "VIEW",
        "TRIGGER",
        "PRAGMA",
        "ATTACH",
        "DETACH",
        "BEGIN",
        "COMMIT",
        "ROLLBACK",
        "VACUUM",
        "ANALYZE",
    }
)

# Catalog query text. PostgreSQL and MySQL variants use ? placeholders.
PG_SCHEMAS = """
    SELECT schema_name AS name
    FROM information_schema.schemata
    WHERE schema_name NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
      AND schema_name NOT LIKE 'pg_temp_%'
      AND schema_name NOT LIKE 'pg_toast_temp_%'
    ORDER BY schema_name
"""

MYSQL_SCHEMAS = """
    SELECT schema_name AS name
    FROM information_schema.schemata
    WHERE schema_name NOT IN ('information_schema', 'mysql', 'performance_schema', 'sys')
    ORDER BY schema_name
"""

INFORMATION_SCHEMA_TABLES = """
    SELECT table_name AS name, table_type AS type
    FROM information_schema.tables
    WHERE table_schema = ?
    ORDER BY table_name
"""

INFORMATION_SCHEMA_COLUMNS = """
    SELECT column_name AS name,
           data_type AS data_type,
           is_nullable AS is_nullable,
           column_default AS column_default
    FROM information_schema.columns
    WHERE table_schema = ? AND table_name = ?
    ORDER BY ordinal_position
"""

PG_INDEXES = """
    SELECT i.relname AS name,
           array_agg(a.attname::text ORDER BY array_position(ix.indkey::int2[], a.attnum))
               AS columns,
           ix.indisunique AS is_unique,
           ix.indisprimary AS is_primary
    FROM pg_index ix
    JOIN pg_class t ON t.oid = ix.indrelid
    JOIN pg_class i ON i.oid = ix.indexrelid
    JOIN pg_namespace ns ON ns.oid = t.relnamespace
    JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
    WHERE ns.nspname = ? AND t.relname = ?
    GROUP BY i.relname, ix.indisunique, ix.indisprimary
    ORDER BY i.relname
"""

# One row per index column; grouped client-side to avoid GROUP_CONCAT truncation
MYSQL_INDEXES = """
    SELECT index_name AS name,
           column_name AS column_name,
           seq_in_index AS seq_in_index,
           non_unique AS non_unique
    FROM information_schema.statistics
    WHERE table_schema = ? AND table_name = ?
    ORDER BY index_name, seq_in_index
"""

INFORMATION_SCHEMA_ROUTINES = """
    SELECT routine_name AS name,
           routine_schema AS routine_schema,
           routine_type AS routine_type,
           data_type AS return_type,
           external_language AS language
    FROM information_schema.routines
    WHERE routine_schema = ?
    ORDER BY routine_name
"""

MYSQL_CURRENT_DATABASE = "SELECT DATABASE() AS name"

SQLITE_TABLES = """
    SELECT name, type
    FROM {schema}.sqlite_master
    WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%'
    ORDER BY name
"""


def validate_sqlite_identifier(name: str) -> str:
    """
    Check an identifier before it is interpolated into a PRAGMA.

    Stricter than SQLite's own identifier rules: 1-64 characters, letters,
    digits and underscore only, not starting with a digit, and not a
    reserved keyword.

    Returns:
        The identifier unchanged

    Raises:
        QueryError: If the identifier is rejected
    """
    if not name:
        raise QueryError("Identifier cannot be empty")
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise QueryError(
            f"Identifier too long: {len(name)} characters (max {MAX_IDENTIFIER_LENGTH})"
        )
    if not IDENTIFIER_PATTERN.match(name):
        raise QueryError(
            f"Invalid identifier: {name!r}. Only letters, digits and underscore are allowed, "
            "and it cannot start with a digit"
        )
    if name.upper() in RESERVED_IDENTIFIERS:
        raise QueryError(f"Identifier cannot be a reserved keyword: {name!r}")
    return name


def _table_type(raw: Any) -> str:  # noqa: ANN401
    """Map information_schema/sqlite_master table types onto table|view."""
    text = str(raw or "").upper()
    if "VIEW" in text:
        return "view"
    return "table"


def _as_bool(value: Any) -> bool:  # noqa: ANN401
    if isinstance(value, str):
        return value.strip().upper() in ("YES", "TRUE", "1", "T")
    return bool(value)


def _text(value: Any) -> str | None:  # noqa: ANN401
    if value is None:
        return None
    if isinstance(value, bytes | bytearray):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _lower_keys(row: dict[str, Any]) -> dict[str, Any]:
    """MySQL returns information_schema aliases in the server's case."""
    return {key.lower(): value for key, value in row.items()}


class Introspector:
    """
    Runs catalog queries against one pool.

    Example:
        introspector = Introspector(handle, RetryPolicy(), timeout=60)
        tables = await introspector.list_tables("public")
    """

    def __init__(
        self,
        pool: PoolHandle,
        policy: RetryPolicy | None = None,
        timeout: float = 60.0,
        redactor: SecretRedactor | None = None,
    ) -> None:
        self.pool = pool
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.redactor = redactor or SecretRedactor.for_descriptor(pool.descriptor)
        self._converter = ParamConverter(pool.engine)

    @property
    def engine(self) -> DatabaseEngine:
        return self.pool.engine

    async def list_schemas(self) -> list[dict[str, Any]]:
        async def operation(conn: PooledConnection) -> list[dict[str, Any]]:
            if self.engine is DatabaseEngine.SQLITE:
                rows = await self._query(conn, "PRAGMA database_list")
                return [{"name": row["name"], "type": "database"} for row in rows]

            if self.engine is DatabaseEngine.POSTGRES:
                rows = await self._query(conn, PG_SCHEMAS)
                kind = "schema"
            else:
                rows = await self._query(conn, MYSQL_SCHEMAS)
                kind = "database"
            return [{"name": _text(_lower_keys(row)["name"]), "type": kind} for row in rows]

        return await self._run("list_schemas", operation)

    async def list_tables(self, schema: str | None = None) -> list[dict[str, Any]]:
        async def operation(conn: PooledConnection) -> list[dict[str, Any]]:
            if self.engine is DatabaseEngine.SQLITE:
                name = validate_sqlite_identifier(schema or SQLITE_DEFAULT_SCHEMA)
                rows = await self._query(conn, SQLITE_TABLES.format(schema=name))
            else:
                resolved = await self._resolve_schema(conn, schema)
                rows = await self._query(conn, INFORMATION_SCHEMA_TABLES, [resolved])
            return [
                {"name": _text(row["name"]), "type": _table_type(row["type"])}
                for row in map(_lower_keys, rows)
            ]

        return await self._run("list_tables", operation)

    async def table_schema(self, table: str, schema: str | None = None) -> list[dict[str, Any]]:
        async def operation(conn: PooledConnection) -> list[dict[str, Any]]:
            if self.engine is DatabaseEngine.SQLITE:
                rows = await self._pragma(conn, "table_info", table, schema)
                return [
                    {
                        "name": row["name"],
                        "data_type": row["type"],
                        "nullable": not row["notnull"],
                        "default": row["dflt_value"],
                    }
                    for row in rows
                ]

            resolved = await self._resolve_schema(conn, schema)
            rows = await self._query(conn, INFORMATION_SCHEMA_COLUMNS, [resolved, table])
            return [
                {
                    "name": _text(row["name"]),
                    "data_type": _text(row["data_type"]),
                    "nullable": _as_bool(row["is_nullable"]),
                    "default": _text(row["column_default"]),
                }
                for row in map(_lower_keys, rows)
            ]

        return await self._run("table_schema", operation)

    async def table_indexes(self, table: str, schema: str | None = None) -> list[dict[str, Any]]:
        async def operation(conn: PooledConnection) -> list[dict[str, Any]]:
            if self.engine is DatabaseEngine.SQLITE:
                return await self._sqlite_indexes(conn, table, schema)

            resolved = await self._resolve_schema(conn, schema)
            if self.engine is DatabaseEngine.POSTGRES:
                rows = await self._query(conn, PG_INDEXES, [resolved, table])
                return [
                    {
                        "name": row["name"],
                        "columns": list(row["columns"] or []),
                        "unique": bool(row["is_unique"]),
                        "primary": bool(row["is_primary"]),
                    }
                    for row in rows
                ]

            rows = await self._query(conn, MYSQL_INDEXES, [resolved, table])
            indexes: dict[str, dict[str, Any]] = {}
            for row in map(_lower_keys, rows):
                name = _text(row["name"]) or ""
                index = indexes.setdefault(
                    name,
                    {
                        "name": name,
                        "columns": [],
                        "unique": not _as_bool(row["non_unique"]),
                        "primary": name == "PRIMARY",
                    },
                )
                index["columns"].append(_text(row["column_name"]))
            return list(indexes.values())

        return await self._run("table_indexes", operation)

    async def stored_procedures(self, schema: str | None = None) -> list[dict[str, Any]]:
        if self.engine is DatabaseEngine.SQLITE:
            return []

        async def operation(conn: PooledConnection) -> list[dict[str, Any]]:
            resolved = await self._resolve_schema(conn, schema)
            rows = await self._query(conn, INFORMATION_SCHEMA_ROUTINES, [resolved])
            return [
                {
                    "name": _text(row["name"]),
                    "schema": _text(row["routine_schema"]),
                    "type": (_text(row["routine_type"]) or "function").lower(),
                    "return_type": _text(row["return_type"]),
                    "language": _text(row["language"]),
                }
                for row in map(_lower_keys, rows)
            ]

        return await self._run("stored_procedures", operation)

    async def _sqlite_indexes(
        self, conn: PooledConnection, table: str, schema: str | None
    ) -> list[dict[str, Any]]:
        indexes = []
        has_primary = False
        for row in await self._pragma(conn, "index_list", table, schema):
            name = row["name"]
            primary = row.get("origin") == "pk"
            has_primary = has_primary or primary
            info = await self._pragma(conn, "index_info", name, schema)
            indexes.append(
                {
                    "name": name,
                    "columns": [col["name"] for col in sorted(info, key=lambda c: c["seqno"])],
                    "unique": bool(row["unique"]),
                    "primary": primary,
                }
            )

        if not has_primary:
            # INTEGER PRIMARY KEY aliases rowid and has no index_list entry
            columns = await self._pragma(conn, "table_info", table, schema)
            pk_columns = sorted((c for c in columns if c["pk"]), key=lambda c: c["pk"])
            if pk_columns:
                indexes.insert(
                    0,
                    {
                        "name": "PRIMARY",
                        "columns": [c["name"] for c in pk_columns],
                        "unique": True,
                        "primary": True,
                    },
                )
        return indexes

    async def _pragma(
        self, conn: PooledConnection, pragma: str, argument: str, schema: str | None
    ) -> list[dict[str, Any]]:
        prefix = validate_sqlite_identifier(schema or SQLITE_DEFAULT_SCHEMA)
        name = validate_sqlite_identifier(argument)
        return await self._query(conn, f"PRAGMA {prefix}.{pragma}({name})")

    async def _resolve_schema(self, conn: PooledConnection, schema: str | None) -> str:
        if schema:
            return schema
        if self.engine is DatabaseEngine.POSTGRES:
            return POSTGRES_DEFAULT_SCHEMA
        rows = await self._query(conn, MYSQL_CURRENT_DATABASE)
        current = _text(_lower_keys(rows[0])["name"]) if rows else None
        if not current:
            raise QueryError("No schema given and the connection has no current database")
        return current

    async def _query(
        self, conn: PooledConnection, sql: str, params: list[Any] | None = None
    ) -> list[dict[str, Any]]:
        if params:
            sql = self._converter.convert(sql)
        result = await conn.run(sql, self._converter.convert_params(params) or None)
        return result.rows

    async def _run(
        self, name: str, operation: Callable[[PooledConnection], Awaitable[T]]
    ) -> T:
        async def attempt() -> T:
            async with self.pool.acquire() as conn:
                return await operation(conn)

        logger.debug(f"Introspection {name} on {self.pool.descriptor.safe_dsn}")
        return await retry_async(
            attempt,
            self.policy,
            self.timeout,
            classify=lambda e: classify_error(self.engine, e, self.redactor),
            description=name,
        )
