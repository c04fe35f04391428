"""Row limiting for result-producing statements.

The cap for a call is ``min(requested, ceiling)``. It is enforced in one of
two ways:

    native  SELECT (and WITH ... SELECT) statements get a top-level LIMIT
            clause: an existing LIMIT/FETCH FIRST count is clamped to the cap,
            and a statement without one has ``LIMIT <cap>`` appended.
    fetch   Everything else that may return rows (SHOW, EXPLAIN, PRAGMA,
            CALL, INSERT ... RETURNING, a LIMIT given as a parameter) is
            fetched with at most ``cap + 1`` rows and truncated.

Applying the limiter to its own output changes nothing, so the effective cap
is stable. With a native limit, a result that has exactly ``cap`` rows is
reported as possibly truncated: without an extra probe an exact-size result
looks the same as a cut-off one.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .readonly import StatementKind
from .splitter import Statement, Token, TokenKind


class LimitMode(str, Enum):
    NATIVE = "native"
    FETCH = "fetch"


@dataclass(frozen=True)
class LimitPlan:
    """How a statement is bounded.

    Attributes:
        sql: Statement text to execute (rewritten for native limits)
        limit: Effective row cap
        mode: NATIVE when the SQL carries the cap, FETCH when rows are cut client-side
        enforced: True when the cap, not a smaller limit written by the caller,
            is the binding bound
    """

    sql: str
    limit: int
    mode: LimitMode
    enforced: bool = True

    def is_truncated(self, fetched_rows: int) -> bool:
        """Whether ``fetched_rows`` rows (before client-side truncation) means rows were cut."""
        if fetched_rows > self.limit:
            return True
        return self.mode is LimitMode.NATIVE and self.enforced and fetched_rows == self.limit


def effective_cap(requested: int | None, ceiling: int) -> int:
    """Clamp a caller's row limit to the deployment ceiling.

    Raises:
        ValueError: If the requested or ceiling value is not positive
    """
    if ceiling < 1:
        raise ValueError(f"Row ceiling must be positive, got {ceiling}")
    if requested is None:
        return ceiling
    if requested < 1:
        raise ValueError(f"max_rows must be positive, got {requested}")
    return min(requested, ceiling)


def plan_row_limit(statement: Statement, kind: StatementKind, cap: int) -> LimitPlan:
    """Choose the least invasive way to bound ``statement`` to ``cap`` rows."""
    if kind is not StatementKind.READ or statement.first_keyword not in ("SELECT", "WITH"):
        return LimitPlan(statement.text, cap, LimitMode.FETCH)
    return _native_limit(statement, cap)


@dataclass(frozen=True)
class _LimitClause:
    """A top-level LIMIT / FETCH FIRST clause found in a statement.

    Attributes:
        rows: Row count written in the clause; None when it is not a literal
        span: Text span of the count, for in-place rewriting
    """

    rows: float | None
    span: tuple[int, int] | None


def _native_limit(statement: Statement, cap: int) -> LimitPlan:
    text = statement.text
    clause = _find_limit_clause([t for t in statement.tokens if t.depth == 0])

    if clause is None:
        return LimitPlan(f"{text} LIMIT {cap}", cap, LimitMode.NATIVE)
    if clause.rows is None:
        # LIMIT given as a parameter or expression
        return LimitPlan(text, cap, LimitMode.FETCH)
    if clause.rows < cap:
        return LimitPlan(text, cap, LimitMode.NATIVE, enforced=False)
    if clause.span is None:
        return LimitPlan(text, cap, LimitMode.NATIVE)

    start, end = clause.span
    return LimitPlan(f"{text[:start]}{cap}{text[end:]}", cap, LimitMode.NATIVE)


def _literal(token: Token) -> _LimitClause:
    if token.kind is TokenKind.NUMBER and token.text.isdigit():
        return _LimitClause(rows=int(token.text), span=(token.start, token.end))
    return _LimitClause(rows=None, span=None)


def _find_limit_clause(tokens: list[Token]) -> _LimitClause | None:
    """Locate the last top-level LIMIT or FETCH FIRST clause."""
    for position in range(len(tokens) - 1, -1, -1):
        token = tokens[position]
        following = tokens[position + 1 :]

        if token.is_word("LIMIT"):
            if not following:
                return _LimitClause(rows=None, span=None)
            count = following[0]
            if count.is_word("ALL"):
                return _LimitClause(rows=float("inf"), span=(count.start, count.end))
            # MySQL LIMIT offset, count
            if len(following) >= 3 and following[1].text == ",":
                return _literal(following[2])
            return _literal(count)

        if token.is_word("FETCH") and following and following[0].is_word("FIRST", "NEXT"):
            if len(following) > 1 and following[1].is_word("ROW", "ROWS"):
                return _LimitClause(rows=1, span=None)
            if len(following) > 1:
                return _literal(following[1])
            return _LimitClause(rows=None, span=None)
    return None
