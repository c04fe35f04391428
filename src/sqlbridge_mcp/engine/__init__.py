"""Database access engine.

Key Components:

- ConnectionDescriptor / parse_dsn: Secret-bearing, immutable connection target
- SSHTunnel: Local port forward through an SSH bastion
- PoolHandle: One pool contract over PostgreSQL, MySQL/MariaDB and SQLite
- PoolRegistry: One shared pool per effective descriptor
- split_statements: Dialect-aware statement splitter
- classify_statement / validate_read_only: Read-only validator
- plan_row_limit: Row limiter (native LIMIT or client-side truncation)
- QueryExecutor: Transactional, retrying executor producing an Outcome
- Introspector: Normalized catalog queries
- pool_report: Pool health snapshot

Flow:
    descriptor -> (tunnel rewrite) -> pool -> split -> classify/validate
    -> limit -> execute with retry -> Outcome
"""

from .dsn import ConnectionDescriptor, parse_dsn, redact_dsn
from .exceptions import (
    AcquireTimeoutError,
    ConnectionLostError,
    ConstraintViolationError,
    DeadlineExceededError,
    ErrorKind,
    MalformedDSNError,
    PoolClosedError,
    PoolExhaustedError,
    QueryError,
    ReadOnlyViolationError,
    SerializationConflictError,
    SqlBridgeError,
    SqlParseError,
    SqlSyntaxError,
    TunnelError,
)
from .executor import QueryExecutor
from .health import PoolHealth, pool_health, pool_report
from .introspection import Introspector, validate_sqlite_identifier
from .limiter import LimitMode, LimitPlan, effective_cap, plan_row_limit
from .models import ExecutionError, Outcome, StatementResult
from .pool_registry import PoolRegistry
from .readonly import StatementKind, classify_statement, validate_read_only
from .redactor import SecretRedactor
from .retry import RetryPolicy, retry_async
from .splitter import Statement, join_statements, split_statements
from .sql import DatabaseEngine, PoolHandle, PoolSettings, PoolStats, create_pool_handle
from .tunnel import SSHTunnel, TunnelSettings, TunnelState

__all__ = [
    # Descriptor
    "ConnectionDescriptor",
    "parse_dsn",
    "redact_dsn",
    # Errors
    "AcquireTimeoutError",
    "ConnectionLostError",
    "ConstraintViolationError",
    "DeadlineExceededError",
    "ErrorKind",
    "MalformedDSNError",
    "PoolClosedError",
    "PoolExhaustedError",
    "QueryError",
    "ReadOnlyViolationError",
    "SerializationConflictError",
    "SqlBridgeError",
    "SqlParseError",
    "SqlSyntaxError",
    "TunnelError",
    # Pools
    "DatabaseEngine",
    "PoolHandle",
    "PoolRegistry",
    "PoolSettings",
    "PoolStats",
    "create_pool_handle",
    # Tunnel
    "SSHTunnel",
    "TunnelSettings",
    "TunnelState",
    # Safety
    "Statement",
    "StatementKind",
    "classify_statement",
    "join_statements",
    "split_statements",
    "validate_read_only",
    "LimitMode",
    "LimitPlan",
    "effective_cap",
    "plan_row_limit",
    # Execution
    "ExecutionError",
    "Outcome",
    "QueryExecutor",
    "RetryPolicy",
    "SecretRedactor",
    "StatementResult",
    "retry_async",
    # Introspection and health
    "Introspector",
    "PoolHealth",
    "pool_health",
    "pool_report",
    "validate_sqlite_identifier",
]
