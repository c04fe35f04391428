"""Tests for statement classification and read-only enforcement."""

from __future__ import annotations

import pytest

from sqlbridge_mcp.engine.exceptions import ErrorKind, ReadOnlyViolationError
from sqlbridge_mcp.engine.readonly import (
    StatementKind,
    classify_statement,
    is_transaction_control,
    validate_read_only,
)
from sqlbridge_mcp.engine.splitter import split_statements
from sqlbridge_mcp.engine.sql import DatabaseEngine

PG = DatabaseEngine.POSTGRES
MYSQL = DatabaseEngine.MYSQL
SQLITE = DatabaseEngine.SQLITE


def classify(sql: str, engine: DatabaseEngine = PG) -> StatementKind:
    statement = split_statements(sql, engine)[0]
    return classify_statement(statement, engine)


# ============================================================================
# Classification
# ============================================================================


class TestReadStatements:
    """Statements that only read."""

    @pytest.mark.parametrize(
        ("sql", "engine"),
        [
            ("SELECT * FROM users", PG),
            ("select id from users where name = 'DELETE'", PG),
            ("WITH recent AS (SELECT 1 AS a) SELECT * FROM recent", PG),
            ("SHOW TABLES", MYSQL),
            ("DESCRIBE users", MYSQL),
            ("EXPLAIN SELECT * FROM users", PG),
            ("EXPLAIN ANALYZE SELECT 1", PG),
            ("VALUES (1), (2)", PG),
            ("PRAGMA table_info(users)", SQLITE),
            ("PRAGMA main.index_list(users)", SQLITE),
            ("PRAGMA journal_mode", SQLITE),
        ],
    )
    def test_read(self, sql: str, engine: DatabaseEngine) -> None:
        assert classify(sql, engine) is StatementKind.READ


class TestWriteStatements:
    """Statements that modify data, including writes in read-shaped statements."""

    @pytest.mark.parametrize(
        ("sql", "engine"),
        [
            ("INSERT INTO users (name) VALUES ('x')", PG),
            ("UPDATE users SET name = 'y'", PG),
            ("DELETE FROM users", PG),
            ("REPLACE INTO users VALUES (1, 'z')", MYSQL),
            ("CALL refresh_stats()", MYSQL),
            ("SELECT * INTO backup FROM users", PG),
            ("SELECT * FROM users FOR UPDATE", PG),
            ("SELECT * FROM users LOCK IN SHARE MODE", MYSQL),
            ("WITH gone AS (DELETE FROM users RETURNING *) SELECT * FROM gone", PG),
            ("WITH src AS (SELECT 1 AS a) INSERT INTO t SELECT a FROM src", PG),
            ("EXPLAIN ANALYZE DELETE FROM users", PG),
            ("EXPLAIN (ANALYZE, BUFFERS) UPDATE users SET name = 'x'", PG),
            ("PRAGMA journal_mode = WAL", SQLITE),
            ("PRAGMA optimize", SQLITE),
        ],
    )
    def test_write(self, sql: str, engine: DatabaseEngine) -> None:
        assert classify(sql, engine) is StatementKind.WRITE


class TestDDLStatements:
    @pytest.mark.parametrize(
        "sql",
        [
            "CREATE TABLE t (a int)",
            "DROP TABLE users",
            "ALTER TABLE users ADD COLUMN age int",
            "TRUNCATE users",
            "GRANT SELECT ON users TO reporting",
            "CREATE INDEX idx ON users (name)",
        ],
    )
    def test_ddl(self, sql: str) -> None:
        assert classify(sql) is StatementKind.DDL


class TestUnknownStatements:
    """Statements the validator cannot prove harmless."""

    @pytest.mark.parametrize(
        ("sql", "engine"),
        [
            ("SET search_path = reporting", PG),
            ("USE shop", MYSQL),
            ("BEGIN", PG),
            ("/*!40101 SET NAMES utf8 */", MYSQL),
            ("SELECT /*!50000 1 */", MYSQL),
            ("WITH x AS (SELECT 1)", PG),
        ],
    )
    def test_unknown(self, sql: str, engine: DatabaseEngine) -> None:
        assert classify(sql, engine) is StatementKind.UNKNOWN


class TestTransactionControl:
    @pytest.mark.parametrize("sql", ["BEGIN", "START TRANSACTION", "COMMIT", "ROLLBACK"])
    def test_transaction_control(self, sql: str) -> None:
        statement = split_statements(sql, MYSQL)[0]
        assert is_transaction_control(statement) is True

    @pytest.mark.parametrize("sql", ["SELECT 1", "START SLAVE", "UPDATE t SET a = 1"])
    def test_not_transaction_control(self, sql: str) -> None:
        statement = split_statements(sql, MYSQL)[0]
        assert is_transaction_control(statement) is False


# ============================================================================
# Enforcement
# ============================================================================


class TestValidateReadOnly:
    """Tests for whole-batch validation."""

    def test_all_reads_pass(self) -> None:
        statements = split_statements("SELECT 1; SHOW TABLES; EXPLAIN SELECT 2", MYSQL)
        kinds = [classify_statement(s, MYSQL) for s in statements]
        validate_read_only(statements, kinds)

    def test_first_offender_reported(self) -> None:
        """The error names the first non-read statement and its index."""
        statements = split_statements("SELECT 1; DELETE FROM t; DROP TABLE t", PG)
        kinds = [classify_statement(s, PG) for s in statements]

        with pytest.raises(ReadOnlyViolationError) as exc_info:
            validate_read_only(statements, kinds)

        error = exc_info.value
        assert error.statement_index == 1
        assert error.statement == "DELETE FROM t"
        assert error.classification == "write"
        assert error.kind is ErrorKind.READONLY_VIOLATION
        assert error.retryable is False
        assert "#2" in error.message

    def test_unknown_rejected(self) -> None:
        """Read-only mode does not give unknown statements the benefit of the doubt."""
        statements = split_statements("SET search_path = x; SELECT 1", PG)
        kinds = [classify_statement(s, PG) for s in statements]

        with pytest.raises(ReadOnlyViolationError) as exc_info:
            validate_read_only(statements, kinds)
        assert exc_info.value.classification == "unknown"
        assert exc_info.value.statement_index == 0
