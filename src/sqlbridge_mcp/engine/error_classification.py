"""Map driver exceptions onto the error taxonomy.

Each driver reports failures differently:

    asyncpg   ``sqlstate`` attribute (five-character SQLSTATE code)
    PyMySQL   ``args[0]`` numeric server/client error code
    sqlite3   exception class plus message text

The engine-specific rules run first. Exceptions that no rule recognizes
(OS-level socket errors, pool internals) fall back to type and message
matching. Every message is redacted before it leaves this module.
"""

from __future__ import annotations

import logging
import sqlite3

from .exceptions import (
    ConnectionLostError,
    ConstraintViolationError,
    DeadlineExceededError,
    QueryError,
    ReadOnlyViolationError,
    SerializationConflictError,
    SqlBridgeError,
    SqlSyntaxError,
)
from .redactor import SecretRedactor
from .sql.backend import DatabaseEngine

logger = logging.getLogger(__name__)

CONNECTION_MARKERS = ("connection", "broken pipe", "reset by peer", "closed")

MYSQL_CONSTRAINT_CODES = frozenset({1048, 1062, 1216, 1217, 1364, 1451, 1452, 1557, 3819})
MYSQL_SYNTAX_CODES = frozenset({1054, 1064, 1109, 1146, 1149})
MYSQL_CONFLICT_CODES = frozenset({1205, 1213})
MYSQL_CONNECTION_CODES = frozenset({2002, 2003, 2006, 2013, 2014, 2055})
MYSQL_DEADLINE_CODES = frozenset({1317, 3024})
MYSQL_READ_ONLY_CODES = frozenset({1792})

PG_CONFLICT_STATES = frozenset({"40001", "40P01", "55P03"})
PG_CONNECTION_STATES = frozenset({"57P01", "57P02", "57P03"})


def classify_error(
    engine: DatabaseEngine,
    exc: BaseException,
    redactor: SecretRedactor | None = None,
    statement: str | None = None,
) -> SqlBridgeError:
    """Translate ``exc`` into a SqlBridgeError with a redacted message.

    Args:
        engine: Engine the failing operation ran against
        exc: Exception raised by the driver or the pool
        redactor: Redactor holding the connection secrets
        statement: Statement being executed, used to name read-only violations

    Returns:
        The taxonomy error; ``exc`` itself when it already is one
    """
    if isinstance(exc, SqlBridgeError):
        return exc

    message = _message(exc, redactor)

    if isinstance(exc, sqlite3.Error):
        error = _classify_sqlite(exc, message, statement)
    elif hasattr(exc, "sqlstate") or type(exc).__module__.startswith("asyncpg"):
        error = _classify_postgres(exc, message, statement)
    elif type(exc).__module__.startswith(("pymysql", "aiomysql")):
        error = _classify_mysql(exc, message, statement)
    else:
        error = None

    if error is None:
        error = _classify_generic(exc, message)

    logger.debug(f"Classified {type(exc).__name__} on {engine.value} as {error.kind.value}")
    return error


def _message(exc: BaseException, redactor: SecretRedactor | None) -> str:
    text = str(exc) or type(exc).__name__
    if redactor is None:
        redactor = SecretRedactor()
    return redactor.redact(text)


def _read_only(message: str, statement: str | None) -> SqlBridgeError:
    if statement is None:
        return QueryError(message)
    return ReadOnlyViolationError(statement, classification="write")


def _classify_postgres(
    exc: BaseException, message: str, statement: str | None
) -> SqlBridgeError | None:
    sqlstate = getattr(exc, "sqlstate", None)
    if not sqlstate:
        # InterfaceError, ConnectionDoesNotExistError and friends
        if "connection" in type(exc).__name__.lower() or _has_connection_marker(message):
            return ConnectionLostError(message)
        return None

    if sqlstate == "25006":
        return _read_only(message, statement)
    if sqlstate in PG_CONFLICT_STATES:
        return SerializationConflictError(message)
    if sqlstate == "57014":
        return DeadlineExceededError(message)
    if sqlstate.startswith("08") or sqlstate in PG_CONNECTION_STATES:
        return ConnectionLostError(message)
    if sqlstate.startswith("23"):
        return ConstraintViolationError(message)
    if sqlstate.startswith("42"):
        return SqlSyntaxError(message)
    return QueryError(message)


def _classify_mysql(
    exc: BaseException, message: str, statement: str | None
) -> SqlBridgeError | None:
    code = exc.args[0] if exc.args and isinstance(exc.args[0], int) else None
    name = type(exc).__name__

    if code in MYSQL_READ_ONLY_CODES:
        return _read_only(message, statement)
    if code in MYSQL_CONFLICT_CODES:
        return SerializationConflictError(message)
    if code in MYSQL_CONNECTION_CODES:
        return ConnectionLostError(message)
    if code in MYSQL_DEADLINE_CODES:
        return DeadlineExceededError(message)
    if code in MYSQL_CONSTRAINT_CODES or name == "IntegrityError":
        return ConstraintViolationError(message)
    if code in MYSQL_SYNTAX_CODES or name == "ProgrammingError":
        return SqlSyntaxError(message)
    if code is None and (name == "InterfaceError" or _has_connection_marker(message)):
        return ConnectionLostError(message)
    return QueryError(message)


def _classify_sqlite(
    exc: sqlite3.Error, message: str, statement: str | None
) -> SqlBridgeError:
    lowered = message.lower()

    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintViolationError(message)
    if isinstance(exc, sqlite3.OperationalError):
        if "interrupted" in lowered:
            return DeadlineExceededError(message)
        if "locked" in lowered or "busy" in lowered:
            return SerializationConflictError(message)
        if "readonly database" in lowered or "read-only" in lowered:
            return _read_only(message, statement)
        if any(
            marker in lowered
            for marker in ("syntax error", "no such", "unrecognized token", "incomplete input")
        ):
            return SqlSyntaxError(message)
        return QueryError(message)
    if isinstance(exc, sqlite3.ProgrammingError) and "closed" in lowered:
        return ConnectionLostError(message)
    return QueryError(message)


def _classify_generic(exc: BaseException, message: str) -> SqlBridgeError:
    if isinstance(exc, TimeoutError):
        return DeadlineExceededError(message)
    if isinstance(exc, (ConnectionError, OSError)) or _has_connection_marker(message):
        return ConnectionLostError(message)
    return QueryError(message)


def _has_connection_marker(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in CONNECTION_MARKERS)
