"""Read-only statement classification and enforcement.

Statements are classified by leading keyword and structural shape:

    read     SELECT, WITH ... SELECT, SHOW, DESCRIBE, EXPLAIN, VALUES, TABLE,
             and query-only PRAGMA forms
    write    INSERT, UPDATE, DELETE, MERGE, REPLACE, COPY, CALL, ... and read
             forms that write or lock (SELECT ... INTO, SELECT ... FOR UPDATE,
             data-modifying CTEs, EXPLAIN ANALYZE of a write)
    ddl      CREATE, DROP, ALTER, TRUNCATE, GRANT, REVOKE, ...
    unknown  everything else (SET, USE, transaction control, MySQL
             executable comments)

Read-shaped statements are additionally parsed with sqlglot and their AST is
walked for mutation nodes; when sqlglot cannot parse the statement the lexical
verdict stands. In read-only mode everything that is not ``read`` is rejected,
and the whole batch is validated before any statement runs.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from .exceptions import ReadOnlyViolationError
from .splitter import Statement, Token, TokenKind
from .sql.backend import DatabaseEngine

logger = logging.getLogger(__name__)


class StatementKind(str, Enum):
    """Classification of one statement."""

    READ = "read"
    WRITE = "write"
    DDL = "ddl"
    UNKNOWN = "unknown"


READ_LEADERS = frozenset(
    {"SELECT", "WITH", "SHOW", "EXPLAIN", "DESCRIBE", "DESC", "VALUES", "TABLE", "PRAGMA"}
)
WRITE_LEADERS = frozenset(
    {
        "INSERT",
        "UPDATE",
        "DELETE",
        "MERGE",
        "REPLACE",
        "UPSERT",
        "COPY",
        "LOAD",
        "CALL",
        "EXEC",
        "EXECUTE",
        "DO",
        "HANDLER",
        "LOCK",
        "UNLOCK",
        "NOTIFY",
    }
)
DDL_LEADERS = frozenset(
    {
        "CREATE",
        "DROP",
        "ALTER",
        "TRUNCATE",
        "GRANT",
        "REVOKE",
        "RENAME",
        "COMMENT",
        "REINDEX",
        "VACUUM",
        "ANALYZE",
        "ANALYSE",
        "CLUSTER",
        "REFRESH",
        "ATTACH",
        "DETACH",
        "SECURITY",
        "IMPORT",
        "OPTIMIZE",
        "REPAIR",
    }
)
TRANSACTION_CONTROL = frozenset(
    {"BEGIN", "START", "COMMIT", "ROLLBACK", "END", "SAVEPOINT", "RELEASE", "ABORT"}
)

DML_KEYWORDS = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE"})

# Main verbs that may follow a WITH clause
_CTE_MAIN_VERBS = frozenset({"SELECT", "VALUES", "TABLE"}) | DML_KEYWORDS | {"REPLACE"}

# PRAGMAs that take an argument but only report
QUERY_ONLY_PRAGMAS = frozenset(
    {
        "table_info",
        "table_xinfo",
        "table_list",
        "index_list",
        "index_info",
        "index_xinfo",
        "foreign_key_list",
        "foreign_key_check",
        "integrity_check",
        "quick_check",
        "function_list",
        "pragma_list",
        "database_list",
        "collation_list",
        "compile_options",
        "module_list",
    }
)
# Bare PRAGMAs that act on the database
SIDE_EFFECT_PRAGMAS = frozenset(
    {"optimize", "shrink_memory", "wal_checkpoint", "incremental_vacuum", "vacuum"}
)

_EXPLAIN_OPTIONS = frozenset(
    {"ANALYZE", "ANALYSE", "VERBOSE", "QUERY", "PLAN", "EXTENDED", "PARTITIONS", "FORMAT"}
)


def _mutation_nodes() -> tuple[type[exp.Expression], ...]:
    names = ("Insert", "Update", "Delete", "Merge", "Drop", "Alter", "AlterTable", "Create")
    names += ("Grant", "TruncateTable", "Into")
    return tuple(getattr(exp, name) for name in names if hasattr(exp, name))


_MUTATION_NODES = _mutation_nodes()


def classify_statement(statement: Statement, engine: DatabaseEngine) -> StatementKind:
    """Classify one statement as read, write, ddl or unknown."""
    tokens = statement.tokens
    if any(token.kind is TokenKind.EXECUTABLE_COMMENT for token in tokens):
        return StatementKind.UNKNOWN
    kind = _classify_tokens(tokens)
    if kind is StatementKind.READ and statement.first_keyword in ("SELECT", "WITH"):
        kind = _confirm_with_ast(statement.text, engine)
    return kind


def _classify_tokens(tokens: Sequence[Token]) -> StatementKind:
    if not tokens or tokens[0].kind is not TokenKind.WORD:
        return StatementKind.UNKNOWN

    leader = tokens[0].upper
    if leader in DDL_LEADERS:
        return StatementKind.DDL
    if leader in WRITE_LEADERS:
        return StatementKind.WRITE
    if leader not in READ_LEADERS:
        return StatementKind.UNKNOWN

    if leader == "PRAGMA":
        return _classify_pragma(tokens)
    if leader == "EXPLAIN":
        return _classify_explain(tokens)
    if leader in ("SHOW", "DESCRIBE", "DESC"):
        return StatementKind.READ

    if leader == "WITH":
        main_verb = next(
            (t.upper for t in tokens[1:] if t.depth == 0 and t.is_word(*_CTE_MAIN_VERBS)),
            None,
        )
        if main_verb is None:
            return StatementKind.UNKNOWN
        if main_verb in DML_KEYWORDS or main_verb == "REPLACE":
            return StatementKind.WRITE

    if _writes_or_locks(tokens):
        return StatementKind.WRITE
    return StatementKind.READ


def _writes_or_locks(tokens: Sequence[Token]) -> bool:
    """Detect writes hidden inside read-shaped statements."""
    for position, token in enumerate(tokens):
        if token.kind is not TokenKind.WORD:
            continue
        previous = tokens[position - 1] if position > 0 else None
        following = tokens[position + 1] if position + 1 < len(tokens) else None

        # SELECT ... INTO table / OUTFILE / @var
        if token.upper == "INTO":
            return True
        # Data-modifying CTE or subquery: ( DELETE ... RETURNING ...)
        if token.upper in DML_KEYWORDS and previous is not None and previous.text == "(":
            return True
        # FOR UPDATE / FOR SHARE / FOR NO KEY UPDATE / FOR KEY SHARE
        if (
            token.upper == "FOR"
            and following is not None
            and following.is_word("UPDATE", "SHARE", "NO", "KEY")
        ):
            return True
        # LOCK IN SHARE MODE
        if token.upper == "LOCK" and following is not None and following.is_word("IN"):
            return True
    return False


def _classify_pragma(tokens: Sequence[Token]) -> StatementKind:
    words = [t for t in tokens[1:] if t.kind in (TokenKind.WORD, TokenKind.IDENTIFIER)]
    if not words:
        return StatementKind.UNKNOWN

    # PRAGMA schema.name -> name
    name_index = 1
    if len(tokens) > 3 and tokens[2].text == ".":
        name_index = 3
    name = tokens[name_index].text.strip('"`[]').lower()

    rest = tokens[name_index + 1 :]
    if any(t.text == "=" for t in rest):
        return StatementKind.WRITE
    if name in SIDE_EFFECT_PRAGMAS:
        return StatementKind.WRITE
    if any(t.text == "(" for t in rest) and name not in QUERY_ONLY_PRAGMAS:
        return StatementKind.WRITE
    return StatementKind.READ


def _classify_explain(tokens: Sequence[Token]) -> StatementKind:
    analyze = False
    position = 1
    while position < len(tokens):
        token = tokens[position]
        if token.text == "(" and token.depth == 0:
            # EXPLAIN (ANALYZE, BUFFERS) ...
            close = position + 1
            while close < len(tokens):
                inner = tokens[close]
                if inner.text == ")" and inner.depth == 0:
                    break
                if inner.is_word("ANALYZE", "ANALYSE"):
                    analyze = True
                close += 1
            position = close + 1
            continue
        if token.is_word(*_EXPLAIN_OPTIONS):
            analyze = analyze or token.is_word("ANALYZE", "ANALYSE")
            position += 1
            continue
        if token.text == "=" or (
            position > 1 and tokens[position - 1].text == "=" and token.kind is TokenKind.WORD
        ):
            # FORMAT=JSON
            position += 1
            continue
        break

    if not analyze:
        return StatementKind.READ
    inner = _classify_tokens(tokens[position:])
    # EXPLAIN ANALYZE runs the statement
    return inner if inner is not StatementKind.UNKNOWN else StatementKind.READ


def _confirm_with_ast(sql: str, engine: DatabaseEngine) -> StatementKind:
    try:
        expression = sqlglot.parse_one(sql, read=engine.sqlglot_dialect)
    except SqlglotError as e:
        logger.debug(f"sqlglot could not parse statement, keeping lexical verdict: {e}")
        return StatementKind.READ

    if expression is None or isinstance(expression, exp.Command):
        return StatementKind.READ
    for node in expression.walk():
        if isinstance(node, _MUTATION_NODES):
            return StatementKind.WRITE
    return StatementKind.READ


def is_transaction_control(statement: Statement) -> bool:
    """True for statements that open or close a transaction themselves."""
    keyword = statement.first_keyword
    if keyword == "START":
        return len(statement.tokens) > 1 and statement.tokens[1].is_word("TRANSACTION")
    return keyword in TRANSACTION_CONTROL


def validate_read_only(
    statements: Sequence[Statement], kinds: Sequence[StatementKind]
) -> None:
    """Reject the batch if any statement is not a read.

    Runs over the entire sequence before anything executes.

    Raises:
        ReadOnlyViolationError: Naming the first offending statement
    """
    for statement, kind in zip(statements, kinds, strict=True):
        if kind is not StatementKind.READ:
            logger.info(
                f"Read-only mode rejected {kind.value} statement #{statement.index + 1}"
            )
            raise ReadOnlyViolationError(
                statement.text, statement_index=statement.index, classification=kind.value
            )
