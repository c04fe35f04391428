"""Result models returned by the executor and the introspection layer."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .exceptions import SqlBridgeError
from .readonly import StatementKind


class StatementResult(BaseModel):
    """Result of one executed statement."""

    statement: str = Field(description="Statement text as executed (after row limiting)")
    kind: StatementKind = Field(description="Statement classification")

    # Query results
    columns: list[str] = Field(default_factory=list, description="Column names from result set")
    rows: list[dict[str, Any]] = Field(
        default_factory=list, description="Result rows as JSON-safe dicts"
    )

    # Counts
    row_count: int = Field(default=0, description="Rows returned, or affected without a result set")
    affected_rows: int = Field(default=0, description="Rows affected by INSERT/UPDATE/DELETE")
    last_insert_id: int | None = Field(
        default=None, description="Last inserted row ID (auto-increment)"
    )

    # Limiting
    truncated: bool = Field(
        default=False,
        description="Rows were cut at the limit (or possibly cut: row count equals the limit)",
    )
    applied_limit: int | None = Field(default=None, description="Row cap applied to the statement")


class ExecutionError(BaseModel):
    """Discriminated failure description; never contains credentials."""

    kind: str = Field(description="Error kind, e.g. syntax_error or readonly_violation")
    message: str
    retryable: bool
    statement_index: int | None = Field(
        default=None, description="0-based index of the failing statement"
    )
    statement: str | None = Field(default=None, description="Failing statement text")

    @classmethod
    def from_exception(
        cls, error: SqlBridgeError, index: int | None = None, statement: str | None = None
    ) -> ExecutionError:
        return cls(
            kind=error.kind.value,
            message=error.message,
            retryable=error.retryable,
            statement_index=index,
            statement=statement,
        )


class Outcome(BaseModel):
    """Aggregated result of executing one payload."""

    success: bool
    results: list[StatementResult] = Field(default_factory=list)
    error: ExecutionError | None = None

    transaction: Literal["none", "committed", "rolled_back"] = "none"
    executed_statements: int = Field(default=0, description="Statements that completed")
    total_statements: int = Field(default=0, description="Statements in the payload")
    partial: bool = Field(
        default=False,
        description=(
            "Statements with possible side effects completed outside a transaction "
            "before the failure; their effects were not rolled back"
        ),
    )
    attempts: int = Field(default=0, description="Attempts made, including retries")
    execution_time_ms: float = Field(default=0.0, description="Wall time in milliseconds")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
