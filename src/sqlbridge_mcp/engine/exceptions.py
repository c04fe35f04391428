"""Exception hierarchy for the database access layer.

Every failure surfaced to a caller is one of the classes below. Each class
carries a discriminated ``kind`` and a ``retryable`` flag so the executor can
decide whether another attempt is allowed and the tool layer can report a
stable error code.

Exception Hierarchy:
    SqlBridgeError (base)
    ├── MalformedDSNError (unparseable connection string)
    ├── TunnelError (SSH tunnel could not be established or was lost)
    ├── PoolExhaustedError (no connection available)
    │   ├── PoolClosedError (pool already closed; not retryable)
    │   └── AcquireTimeoutError (acquire waited past its timeout)
    ├── SqlParseError (unterminated quote or comment)
    ├── ReadOnlyViolationError (write/ddl statement in read-only mode)
    ├── DeadlineExceededError (attempt timed out)
    ├── ConstraintViolationError (backend integrity error)
    ├── SqlSyntaxError (backend rejected the statement text)
    ├── ConnectionLostError (connection dropped mid-operation)
    ├── SerializationConflictError (deadlock or serialization failure)
    └── QueryError (any other backend failure)

Example:
    >>> try:
    ...     outcome = await executor.execute("DELETE FROM t", readonly=True)
    ... except ReadOnlyViolationError as e:
    ...     print(f"{e.kind}: {e.statement}")
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error codes reported to callers."""

    MALFORMED_DSN = "malformed_dsn"
    TUNNEL_FAILURE = "tunnel_failure"
    POOL_EXHAUSTED = "pool_exhausted"
    ACQUIRE_TIMEOUT = "acquire_timeout"
    SQL_PARSE_ERROR = "sql_parse_error"
    READONLY_VIOLATION = "readonly_violation"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CONSTRAINT_VIOLATION = "constraint_violation"
    SYNTAX_ERROR = "syntax_error"
    CONNECTION_LOST = "connection_lost"
    SERIALIZATION_CONFLICT = "serialization_conflict"
    QUERY_ERROR = "query_error"


class SqlBridgeError(Exception):
    """Base exception for all database access errors.

    Attributes:
        kind: Discriminated error code
        retryable: Whether the executor may retry the attempt that raised it
        message: Human-readable message, free of credentials
    """

    kind: ErrorKind = ErrorKind.QUERY_ERROR
    retryable: bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"

    def to_dict(self) -> dict[str, object]:
        """Serializable view used in tool responses."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


class MalformedDSNError(SqlBridgeError):
    """Raised when a connection string cannot be parsed.

    Attributes:
        reason: What was wrong with the DSN
        dsn: Redacted rendering of the offending DSN (never the raw text)

    Example:
        >>> raise MalformedDSNError("unsupported scheme 'oracle'", dsn="oracle://u:***@h/db")
    """

    kind = ErrorKind.MALFORMED_DSN

    def __init__(self, reason: str, dsn: str | None = None) -> None:
        self.reason = reason
        self.dsn = dsn

        message = f"Malformed DSN: {reason}"
        if dsn:
            message += f" ({dsn})"

        super().__init__(message)


class TunnelError(SqlBridgeError):
    """Raised when the SSH tunnel cannot be established or is not usable."""

    kind = ErrorKind.TUNNEL_FAILURE


class PoolExhaustedError(SqlBridgeError):
    """Raised when the pool has no connection to hand out."""

    kind = ErrorKind.POOL_EXHAUSTED
    retryable = True


class PoolClosedError(PoolExhaustedError):
    """Raised when a lease is requested from a pool that has been closed.

    A closed pool never reopens, so retrying the attempt cannot succeed.
    """

    retryable = False


class AcquireTimeoutError(PoolExhaustedError):
    """Raised when acquire() blocked for longer than the acquire timeout.

    Attributes:
        timeout: Seconds waited before giving up
    """

    kind = ErrorKind.ACQUIRE_TIMEOUT

    def __init__(self, timeout: float, max_connections: int) -> None:
        self.timeout = timeout
        self.max_connections = max_connections
        super().__init__(
            f"Timed out after {timeout:g}s waiting for a connection "
            f"(all {max_connections} connections in use)"
        )


class SqlParseError(SqlBridgeError):
    """Raised when a SQL payload cannot be split safely.

    Attributes:
        position: Character offset where the unterminated construct starts
    """

    kind = ErrorKind.SQL_PARSE_ERROR

    def __init__(self, message: str, position: int | None = None) -> None:
        self.position = position
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)


class ReadOnlyViolationError(SqlBridgeError):
    """Raised when read-only mode rejects a statement.

    Attributes:
        statement: The offending statement text
        statement_index: Position of the statement in the split sequence
        classification: How the statement was classified (write, ddl, unknown)
    """

    kind = ErrorKind.READONLY_VIOLATION

    def __init__(
        self, statement: str, statement_index: int = 0, classification: str = "write"
    ) -> None:
        self.statement = statement
        self.statement_index = statement_index
        self.classification = classification
        super().__init__(
            f"Read-only mode rejects {classification} statement #{statement_index + 1}: {statement}"
        )


class DeadlineExceededError(SqlBridgeError):
    """Raised when a single attempt runs past its timeout."""

    kind = ErrorKind.DEADLINE_EXCEEDED
    retryable = True


class ConstraintViolationError(SqlBridgeError):
    """Backend rejected the statement with an integrity constraint error."""

    kind = ErrorKind.CONSTRAINT_VIOLATION


class SqlSyntaxError(SqlBridgeError):
    """Backend rejected the statement text."""

    kind = ErrorKind.SYNTAX_ERROR


class ConnectionLostError(SqlBridgeError):
    """The backend connection dropped; the connection is replaced on retry."""

    kind = ErrorKind.CONNECTION_LOST
    retryable = True


class SerializationConflictError(SqlBridgeError):
    """Deadlock, serialization failure or lock contention."""

    kind = ErrorKind.SERIALIZATION_CONFLICT
    retryable = True


class QueryError(SqlBridgeError):
    """Any backend failure that has no more specific classification."""

    kind = ErrorKind.QUERY_ERROR
