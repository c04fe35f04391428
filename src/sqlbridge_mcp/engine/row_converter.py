"""Convert driver row values into JSON-safe values.

Binary values are wrapped as ``{"type": "base64", "data": "..."}`` so every
engine's binary types survive a text-only channel. Decimals become strings
(no precision loss), temporal values become ISO 8601 strings, intervals become
seconds, and anything else unknown falls back to ``str()``.
"""

from __future__ import annotations

import base64
import datetime
import decimal
import math
from typing import Any


def encode_binary(value: bytes | bytearray | memoryview) -> dict[str, str]:
    return {"type": "base64", "data": base64.b64encode(bytes(value)).decode("ascii")}


def convert_value(value: Any) -> Any:  # noqa: ANN401
    """Convert a single column value."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        # NaN and infinities are not valid JSON numbers
        return value if math.isfinite(value) else str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return encode_binary(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    if isinstance(value, dict):
        return {str(key): convert_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [convert_value(item) for item in value]
    return str(value)


def convert_row(row: dict[str, Any]) -> dict[str, Any]:
    return {column: convert_value(value) for column, value in row.items()}


def convert_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [convert_row(row) for row in rows]
