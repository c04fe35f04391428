"""Tests for placeholder translation and JSON-safe row conversion."""

from __future__ import annotations

import datetime
import decimal
import uuid

from sqlbridge_mcp.engine.row_converter import convert_row, convert_value, encode_binary
from sqlbridge_mcp.engine.sql import DatabaseEngine, ParamConverter, convert_sql_for_engine

# ============================================================================
# ParamConverter Tests
# ============================================================================


class TestParamConverter:
    """Tests for SQL parameter placeholder conversion."""

    def test_qmark_to_numeric(self) -> None:
        """Convert ? placeholders to $1, $2 for PostgreSQL."""
        converter = ParamConverter(DatabaseEngine.POSTGRES)
        sql = "SELECT * FROM users WHERE id = ? AND status = ?"
        result = converter.convert(sql)
        assert result == "SELECT * FROM users WHERE id = $1 AND status = $2"

    def test_qmark_to_format(self) -> None:
        """Convert ? placeholders to %s for MySQL and MariaDB."""
        for engine in (DatabaseEngine.MYSQL, DatabaseEngine.MARIADB):
            converter = ParamConverter(engine)
            result = converter.convert("SELECT * FROM users WHERE id = ? AND status = ?")
            assert result == "SELECT * FROM users WHERE id = %s AND status = %s"

    def test_sqlite_unchanged(self) -> None:
        """SQLite uses ? natively."""
        sql = "SELECT * FROM users WHERE id = ?"
        assert ParamConverter(DatabaseEngine.SQLITE).convert(sql) == sql

    def test_literal_question_mark_preserved(self) -> None:
        """A ? inside a quoted literal is data, not a placeholder."""
        converter = ParamConverter(DatabaseEngine.POSTGRES)
        sql = "SELECT 'what?' AS q, name FROM users WHERE id = ?"
        assert converter.convert(sql) == "SELECT 'what?' AS q, name FROM users WHERE id = $1"
        assert converter.placeholder_count(sql) == 1

    def test_convert_params(self) -> None:
        converter = ParamConverter(DatabaseEngine.POSTGRES)
        assert converter.convert_params(None) == ()
        assert converter.convert_params(["public", "users"]) == ("public", "users")

    def test_convenience_function(self) -> None:
        result = convert_sql_for_engine("SELECT * FROM t WHERE a = ?", DatabaseEngine.MYSQL)
        assert result == "SELECT * FROM t WHERE a = %s"


# ============================================================================
# Row Conversion Tests
# ============================================================================


class TestConvertValue:
    """Tests for converting driver values into JSON-safe values."""

    def test_scalars_unchanged(self) -> None:
        for value in (None, True, 42, "text", 1.5):
            assert convert_value(value) == value

    def test_non_finite_floats(self) -> None:
        assert convert_value(float("nan")) == "nan"
        assert convert_value(float("inf")) == "inf"

    def test_binary(self) -> None:
        """Binary values are tagged base64 objects, whatever the buffer type."""
        expected = {"type": "base64", "data": "AAH/"}
        assert convert_value(b"\x00\x01\xff") == expected
        assert convert_value(bytearray(b"\x00\x01\xff")) == expected
        assert convert_value(memoryview(b"\x00\x01\xff")) == expected
        assert encode_binary(b"") == {"type": "base64", "data": ""}

    def test_decimal_keeps_precision(self) -> None:
        assert convert_value(decimal.Decimal("12345678901234567890.10")) == (
            "12345678901234567890.10"
        )

    def test_temporal_values(self) -> None:
        assert convert_value(datetime.datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05"
        assert convert_value(datetime.date(2024, 1, 2)) == "2024-01-02"
        assert convert_value(datetime.time(13, 30)) == "13:30:00"
        assert convert_value(datetime.timedelta(minutes=1, seconds=30)) == 90.0

    def test_containers(self) -> None:
        """JSON/array columns are converted recursively."""
        value = {"tags": ("a", "b"), "blob": b"\x01", 3: decimal.Decimal("1.5")}
        assert convert_value(value) == {
            "tags": ["a", "b"],
            "blob": {"type": "base64", "data": "AQ=="},
            "3": "1.5",
        }

    def test_unknown_types_stringified(self) -> None:
        identifier = uuid.UUID("12345678-1234-5678-1234-567812345678")
        assert convert_value(identifier) == "12345678-1234-5678-1234-567812345678"

    def test_convert_row(self) -> None:
        row = {"id": 1, "price": decimal.Decimal("9.99"), "photo": None}
        assert convert_row(row) == {"id": 1, "price": "9.99", "photo": None}
