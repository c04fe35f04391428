"""Parameter placeholder translation for engine-specific query text.

Catalog queries are written once with ``?`` placeholders and translated to
each engine's native style before they run:

    - ? (qmark) - SQLite native format
    - $1, $2, ... (numeric) - PostgreSQL native format
    - %s (format) - MySQL/MariaDB native format

Placeholders inside single-quoted literals are left alone.
"""

from __future__ import annotations

import re
from typing import Any

from .backend import DatabaseEngine

# A quoted literal (kept as-is) or a bare ? placeholder
QMARK_PATTERN = re.compile(r"'(?:[^']|'')*'|(?<![:%$?])\?(?!\?)")


class ParamConverter:
    """Converts ``?`` placeholders to the target engine's native format.

    Example:
        converter = ParamConverter(DatabaseEngine.POSTGRES)
        converter.convert("SELECT * FROM t WHERE a = ? AND b = ?")
        # Result: "SELECT * FROM t WHERE a = $1 AND b = $2"
    """

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    def convert(self, sql: str) -> str:
        """Rewrite every ``?`` placeholder outside string literals."""
        if self.engine is DatabaseEngine.SQLITE:
            return sql

        counter = 0

        def replace(match: re.Match[str]) -> str:
            nonlocal counter
            text = match.group(0)
            if text != "?":
                return text
            counter += 1
            if self.engine is DatabaseEngine.POSTGRES:
                return f"${counter}"
            return "%s"

        return QMARK_PATTERN.sub(replace, sql)

    def convert_params(self, params: list[Any] | tuple[Any, ...] | None) -> tuple[Any, ...]:
        """Positional parameters as the tuple every driver accepts."""
        if params is None:
            return ()
        return tuple(params)

    def placeholder_count(self, sql: str) -> int:
        return sum(1 for match in QMARK_PATTERN.finditer(sql) if match.group(0) == "?")


def convert_sql_for_engine(sql: str, engine: DatabaseEngine) -> str:
    """Convenience function to convert ``?`` placeholders for an engine.

    Example:
        >>> convert_sql_for_engine("SELECT * FROM users WHERE id = ?", DatabaseEngine.MYSQL)
        'SELECT * FROM users WHERE id = %s'
    """
    return ParamConverter(engine).convert(sql)
