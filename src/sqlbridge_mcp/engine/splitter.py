"""Dialect-aware SQL statement splitter.

Splits one payload into individually executable statements. A statement
terminator (``;``) only counts when it appears outside:

    - single-quoted strings ('' escapes everywhere, backslash escapes on
      MySQL/MariaDB and in PostgreSQL E'...' strings)
    - double-quoted identifiers (strings on MySQL/MariaDB)
    - backtick identifiers (MySQL/MariaDB, SQLite) and [bracket] identifiers (SQLite)
    - PostgreSQL dollar-quoted bodies ($$...$$, $tag$...$tag$)
    - line comments (--, and # on MySQL/MariaDB) and block comments
      (nested on PostgreSQL)
    - BEGIN ... END bodies of CREATE TRIGGER/PROCEDURE/FUNCTION statements

Each statement keeps the text between its first and last significant token,
so joining statements with ``;`` and splitting again yields the same sequence.
Unterminated quotes, identifiers, dollar quotes and block comments raise
``SqlParseError`` instead of being guessed at.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from .exceptions import SqlParseError
from .sql.backend import DatabaseEngine

logger = logging.getLogger(__name__)


class TokenKind(str, Enum):
    """Lexical classes the scanner distinguishes."""

    WORD = "word"
    NUMBER = "number"
    STRING = "string"
    IDENTIFIER = "identifier"
    PUNCT = "punct"
    TERMINATOR = "terminator"
    # MySQL /*! ... */ comments, which the server executes
    EXECUTABLE_COMMENT = "executable_comment"


@dataclass(frozen=True)
class Token:
    """One significant token; offsets are relative to the text it was scanned from."""

    kind: TokenKind
    text: str
    start: int
    end: int
    depth: int

    @property
    def upper(self) -> str:
        return self.text.upper()

    def is_word(self, *words: str) -> bool:
        return self.kind is TokenKind.WORD and self.text.upper() in words

    def shifted(self, offset: int) -> Token:
        return Token(self.kind, self.text, self.start - offset, self.end - offset, self.depth)


@dataclass(frozen=True)
class Statement:
    """A single statement and its tokens.

    Attributes:
        text: Statement text without the terminator or surrounding comments
        index: Position in the split sequence
        tokens: Significant tokens with offsets relative to ``text``
    """

    text: str
    index: int
    tokens: tuple[Token, ...] = field(default=(), repr=False)

    @property
    def first_keyword(self) -> str | None:
        first = self.tokens[0] if self.tokens else None
        if first is None or first.kind is not TokenKind.WORD:
            return None
        return first.upper


_WORD_START = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_")
_DIGITS = frozenset("0123456789")

# MySQL compound statements that nest inside CREATE ... BEGIN ... END bodies
_MYSQL_BLOCK_OPENERS = frozenset({"IF", "LOOP", "WHILE", "REPEAT", "CASE"})
# Words after which a MySQL statement starts
_STATEMENT_LEADERS = frozenset({"BEGIN", "DO", "LOOP", "REPEAT"})
# CASE ... END used as an expression rather than a statement
_CASE_EXPRESSION = "CASE_EXPRESSION"


class SqlScanner:
    """Single-pass tokenizer for one dialect.

    Example:
        >>> tokens = list(SqlScanner(DatabaseEngine.POSTGRES).scan("SELECT 'a;b'; SELECT 2"))
        >>> [t.text for t in tokens]
        ['SELECT', "'a;b'", ';', 'SELECT', '2']
    """

    def __init__(self, engine: DatabaseEngine) -> None:
        self.engine = engine
        self.mysql = engine.is_mysql_family
        self.postgres = engine is DatabaseEngine.POSTGRES
        self.sqlite = engine is DatabaseEngine.SQLITE

    def scan(self, sql: str) -> Iterator[Token]:
        """Yield significant tokens; comments and whitespace are skipped.

        Raises:
            SqlParseError: On any unterminated quote, identifier or comment
        """
        pos = 0
        depth = 0
        length = len(sql)

        while pos < length:
            char = sql[pos]
            nxt = sql[pos + 1] if pos + 1 < length else ""

            if char.isspace():
                pos += 1
                continue

            if char == "-" and nxt == "-" and self._is_line_comment(sql, pos):
                pos = self._skip_line(sql, pos)
                continue

            if char == "#" and self.mysql:
                pos = self._skip_line(sql, pos)
                continue

            if char == "/" and nxt == "*":
                end = self._skip_block_comment(sql, pos)
                if self.mysql and sql.startswith("/*!", pos):
                    yield Token(TokenKind.EXECUTABLE_COMMENT, sql[pos:end], pos, end, depth)
                pos = end
                continue

            if char == "'":
                end = self._skip_quoted(sql, pos, "'", backslash=self.mysql)
                yield Token(TokenKind.STRING, sql[pos:end], pos, end, depth)
                pos = end
                continue

            if char == '"':
                end = self._skip_quoted(sql, pos, '"', backslash=self.mysql)
                kind = TokenKind.STRING if self.mysql else TokenKind.IDENTIFIER
                yield Token(kind, sql[pos:end], pos, end, depth)
                pos = end
                continue

            if char == "`" and not self.postgres:
                end = self._skip_quoted(sql, pos, "`", backslash=False)
                yield Token(TokenKind.IDENTIFIER, sql[pos:end], pos, end, depth)
                pos = end
                continue

            if char == "[" and self.sqlite:
                close = sql.find("]", pos + 1)
                if close == -1:
                    raise SqlParseError("Unterminated bracket identifier", position=pos)
                yield Token(TokenKind.IDENTIFIER, sql[pos : close + 1], pos, close + 1, depth)
                pos = close + 1
                continue

            if char == "$" and self.postgres:
                tag = self._dollar_tag(sql, pos)
                if tag is not None:
                    close = sql.find(tag, pos + len(tag))
                    if close == -1:
                        raise SqlParseError("Unterminated dollar-quoted string", position=pos)
                    end = close + len(tag)
                    yield Token(TokenKind.STRING, sql[pos:end], pos, end, depth)
                    pos = end
                    continue

            if char in _WORD_START or (char.isalpha() and not char.isascii()):
                end = pos + 1
                while end < length and (sql[end].isalnum() or sql[end] in "_$"):
                    end += 1
                word = sql[pos:end]
                if end < length and sql[end] == "'" and self._is_string_prefix(word):
                    # E'...', X'...', N'...', B'...', _utf8'...'
                    backslash = self.mysql or word.upper() == "E"
                    close = self._skip_quoted(sql, end, "'", backslash=backslash)
                    yield Token(TokenKind.STRING, sql[pos:close], pos, close, depth)
                    pos = close
                    continue
                yield Token(TokenKind.WORD, word, pos, end, depth)
                pos = end
                continue

            if char in _DIGITS or (char == "." and nxt in _DIGITS):
                end = pos + 1
                while end < length and (sql[end].isalnum() or sql[end] in "._"):
                    if sql[end] in "eE" and end + 1 < length and sql[end + 1] in "+-":
                        end += 1
                    end += 1
                yield Token(TokenKind.NUMBER, sql[pos:end], pos, end, depth)
                pos = end
                continue

            if char == ";":
                yield Token(TokenKind.TERMINATOR, char, pos, pos + 1, depth)
                pos += 1
                continue

            if char == "(":
                yield Token(TokenKind.PUNCT, char, pos, pos + 1, depth)
                depth += 1
                pos += 1
                continue

            if char == ")":
                depth = max(depth - 1, 0)
                yield Token(TokenKind.PUNCT, char, pos, pos + 1, depth)
                pos += 1
                continue

            yield Token(TokenKind.PUNCT, char, pos, pos + 1, depth)
            pos += 1

    def _is_line_comment(self, sql: str, pos: int) -> bool:
        if not self.mysql:
            return True
        # MySQL needs whitespace (or end of input) after the double dash
        follow = sql[pos + 2 : pos + 3]
        return follow == "" or follow.isspace()

    @staticmethod
    def _skip_line(sql: str, pos: int) -> int:
        newline = sql.find("\n", pos)
        return len(sql) if newline == -1 else newline + 1

    def _skip_block_comment(self, sql: str, pos: int) -> int:
        level = 0
        index = pos
        length = len(sql)
        while index < length:
            if sql.startswith("/*", index) and (level == 0 or self.postgres):
                level += 1
                index += 2
            elif sql.startswith("*/", index):
                level -= 1
                index += 2
                if level == 0:
                    return index
            else:
                index += 1
        raise SqlParseError("Unterminated block comment", position=pos)

    @staticmethod
    def _skip_quoted(sql: str, pos: int, quote: str, backslash: bool) -> int:
        """Return the index just past the closing quote that matches ``sql[pos]``."""
        index = pos + 1
        length = len(sql)
        while index < length:
            char = sql[index]
            if backslash and char == "\\":
                index += 2
                continue
            if char == quote:
                if index + 1 < length and sql[index + 1] == quote:
                    index += 2
                    continue
                return index + 1
            index += 1

        if quote == "'":
            raise SqlParseError("Unterminated single-quoted string", position=pos)
        raise SqlParseError(f"Unterminated {quote}-quoted identifier or string", position=pos)

    @staticmethod
    def _dollar_tag(sql: str, pos: int) -> str | None:
        """Return ``$tag$`` when a dollar quote opens at ``pos``."""
        end = pos + 1
        length = len(sql)
        if end < length and sql[end] == "$":
            return "$$"
        if end >= length or not (sql[end] in _WORD_START or sql[end].isalpha()):
            return None
        while end < length and (sql[end].isalnum() or sql[end] == "_"):
            end += 1
        if end < length and sql[end] == "$":
            return sql[pos : end + 1]
        return None

    def _is_string_prefix(self, word: str) -> bool:
        upper = word.upper()
        if upper in ("E", "X", "N", "B"):
            return True
        # MySQL character set introducers: _utf8mb4'text'
        return self.mysql and upper.startswith("_")


def split_statements(sql: str, engine: DatabaseEngine) -> list[Statement]:
    """Split a payload into ordered, non-empty statements.

    Args:
        sql: SQL payload, possibly containing several statements
        engine: Engine whose quoting and comment rules apply

    Returns:
        Statements in payload order; empty segments are dropped

    Raises:
        SqlParseError: On unterminated quotes, identifiers or comments
    """
    statements: list[Statement] = []
    current: list[Token] = []

    def flush() -> None:
        if not current:
            return
        start, end = current[0].start, current[-1].end
        statements.append(
            Statement(
                text=sql[start:end],
                index=len(statements),
                tokens=tuple(token.shifted(start) for token in current),
            )
        )
        current.clear()

    # Openers of the BEGIN ... END body blocks enclosing the current token
    blocks: list[str] = []
    scanner = SqlScanner(engine)
    tokens = list(scanner.scan(sql))

    for position, token in enumerate(tokens):
        if token.kind is TokenKind.TERMINATOR and not blocks:
            flush()
            continue

        current.append(token)
        if not current[0].is_word("CREATE") or token.kind is not TokenKind.WORD:
            continue

        previous = tokens[position - 1] if position > 0 else None
        upper = token.upper

        if previous is not None and previous.is_word("END"):
            # END IF, END LOOP, END CASE ... close the block END already popped
            continue
        if upper == "BEGIN" and (blocks or token.depth == 0):
            blocks.append(upper)
        elif blocks and upper == "END":
            blocks.pop()
        elif blocks:
            opened = _opened_block(upper, previous, blocks[-1], scanner.mysql)
            if opened is not None:
                blocks.append(opened)

    flush()
    logger.debug(f"Split payload into {len(statements)} statement(s)")
    return statements


def _opened_block(upper: str, previous: Token | None, innermost: str, mysql: bool) -> str | None:
    """Return the block a body word opens, or None.

    IF, LOOP, WHILE, REPEAT and CASE open MySQL compound statements only at
    statement position; elsewhere they are functions (IF(...), REPEAT(...)),
    DDL guards (IF NOT EXISTS) or CASE expressions.
    """
    if upper == "CASE" and not mysql:
        return _CASE_EXPRESSION
    if not mysql or upper not in _MYSQL_BLOCK_OPENERS:
        return None
    if _starts_statement(previous, innermost):
        return upper
    return _CASE_EXPRESSION if upper == "CASE" else None


def _starts_statement(previous: Token | None, innermost: str) -> bool:
    if previous is None:
        return False
    # after a terminator or a label:
    if previous.kind is TokenKind.TERMINATOR or previous.text == ":":
        return True
    if previous.is_word("THEN", "ELSE"):
        return innermost != _CASE_EXPRESSION
    return previous.is_word(*_STATEMENT_LEADERS)


def join_statements(statements: list[Statement]) -> str:
    """Inverse of split_statements: rejoin statements with terminators."""
    return ";\n".join(statement.text for statement in statements)
