"""Retrying statement executor.

``QueryExecutor.execute`` runs one payload end to end:

    1. split the payload into statements (SqlParseError aborts)
    2. classify every statement; in read-only mode reject the batch if any
       statement is not a read, before anything runs
    3. plan a row limit per statement
    4. run the sequence on one pooled connection, inside a transaction when
       there is more than one statement and none is DDL or transaction
       control (always inside a read-only transaction in read-only mode)
    5. wrap each attempt in a timeout and retry retryable failures with
       capped exponential backoff

A failed attempt is only retried when it cannot have left side effects
behind: it ran in a transaction that was rolled back, or only reads had run.
Otherwise the failure is reported with ``partial`` set.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from .error_classification import classify_error
from .exceptions import ConnectionLostError, DeadlineExceededError, SqlBridgeError
from .limiter import LimitPlan, effective_cap, plan_row_limit
from .models import ExecutionError, Outcome, StatementResult
from .readonly import StatementKind, classify_statement, is_transaction_control, validate_read_only
from .redactor import SecretRedactor
from .retry import RetryPolicy
from .row_converter import convert_rows
from .splitter import Statement, split_statements
from .sql.backend import DatabaseEngine, PooledConnection, PoolHandle

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 1000
DEFAULT_MAX_ROWS_CEILING = 10000


@dataclass
class _PlannedStatement:
    statement: Statement
    kind: StatementKind
    plan: LimitPlan


@dataclass
class _Progress:
    """What one attempt got done; survives cancellation of the attempt."""

    results: list[StatementResult] = field(default_factory=list)
    index: int | None = None
    transaction: bool = False
    side_effects: bool = False


class QueryExecutor:
    """Executes SQL payloads against one pool with safety and retry policy.

    Attributes:
        pool: Pool handle every attempt acquires from
        policy: Retry policy
        query_timeout: Default per-attempt timeout in seconds
        default_max_rows: Row cap used when the caller gives none
        max_rows_ceiling: Deployment ceiling for any caller-provided cap
        force_readonly: Run every payload in read-only mode

    Example:
        executor = QueryExecutor(handle, RetryPolicy(), query_timeout=60)
        outcome = await executor.execute("SELECT 1; SELECT 2;", readonly=True, max_rows=10)
    """

    def __init__(
        self,
        pool: PoolHandle,
        policy: RetryPolicy | None = None,
        query_timeout: float = 60.0,
        default_max_rows: int = DEFAULT_MAX_ROWS,
        max_rows_ceiling: int = DEFAULT_MAX_ROWS_CEILING,
        force_readonly: bool = False,
        redactor: SecretRedactor | None = None,
    ) -> None:
        self.pool = pool
        self.policy = policy or RetryPolicy()
        self.query_timeout = query_timeout
        self.default_max_rows = default_max_rows
        self.max_rows_ceiling = max_rows_ceiling
        self.force_readonly = force_readonly
        self.redactor = redactor or SecretRedactor.for_descriptor(pool.descriptor)

    @property
    def engine(self) -> DatabaseEngine:
        return self.pool.engine

    async def execute(
        self,
        sql: str,
        readonly: bool = False,
        max_rows: int | None = None,
        timeout: float | None = None,
    ) -> Outcome:
        """Execute a payload and aggregate the per-statement results.

        Args:
            sql: One or more statements separated by ``;``
            readonly: Reject anything that is not a read (cannot override
                a deployment-wide read-only setting)
            max_rows: Row cap per statement, clamped to the ceiling
            timeout: Per-attempt timeout in seconds (defaults to query_timeout)

        Returns:
            Outcome; failures are reported in it rather than raised
        """
        started = time.perf_counter()
        readonly = readonly or self.force_readonly
        timeout = timeout or self.query_timeout
        requested = self.default_max_rows if max_rows is None else max_rows
        cap = effective_cap(requested, self.max_rows_ceiling)

        try:
            statements = split_statements(sql, self.engine)
        except SqlBridgeError as e:
            return self._failure(e, started, total=0)

        kinds = [classify_statement(statement, self.engine) for statement in statements]
        if readonly:
            try:
                validate_read_only(statements, kinds)
            except SqlBridgeError as e:
                index = getattr(e, "statement_index", None)
                return self._failure(
                    e,
                    started,
                    total=len(statements),
                    index=index,
                    statement=statements[index].text if index is not None else None,
                )

        planned = [
            _PlannedStatement(statement, kind, plan_row_limit(statement, kind, cap))
            for statement, kind in zip(statements, kinds, strict=True)
        ]
        if not planned:
            return Outcome(
                success=True,
                execution_time_ms=self._elapsed_ms(started),
            )

        use_transaction = readonly or (
            len(planned) > 1
            and not any(p.kind is StatementKind.DDL for p in planned)
            and not any(is_transaction_control(p.statement) for p in planned)
        )

        attempt = 0
        while True:
            progress = _Progress()
            try:
                await asyncio.wait_for(
                    self._run_attempt(planned, use_transaction, readonly, progress), timeout
                )
            except TimeoutError:
                error: SqlBridgeError = DeadlineExceededError(
                    f"Attempt {attempt + 1} exceeded the {timeout:g}s query timeout"
                )
            except SqlBridgeError as e:
                error = e
            except Exception as e:
                error = classify_error(self.engine, e, self.redactor)
            else:
                return Outcome(
                    success=True,
                    results=progress.results,
                    transaction="committed" if use_transaction else "none",
                    executed_statements=len(progress.results),
                    total_statements=len(planned),
                    attempts=attempt + 1,
                    execution_time_ms=self._elapsed_ms(started),
                )

            replayable = progress.transaction or not progress.side_effects
            if replayable and self.policy.should_retry(error, attempt):
                logger.debug(
                    f"Retrying payload after {error.kind.value} "
                    f"(attempt {attempt + 1}/{self.policy.max_retries}, "
                    f"delay {self.policy.backoff_delay(attempt):g}s)"
                )
                await self.policy.sleep(attempt)
                attempt += 1
                continue

            index = progress.index
            return Outcome(
                success=False,
                results=[] if progress.transaction else progress.results,
                error=ExecutionError.from_exception(
                    error,
                    index=index,
                    statement=planned[index].plan.sql if index is not None else None,
                ),
                transaction="rolled_back" if progress.transaction else "none",
                executed_statements=len(progress.results),
                total_statements=len(planned),
                partial=not progress.transaction and progress.side_effects,
                attempts=attempt + 1,
                execution_time_ms=self._elapsed_ms(started),
            )

    async def _run_attempt(
        self,
        planned: list[_PlannedStatement],
        use_transaction: bool,
        readonly: bool,
        progress: _Progress,
    ) -> None:
        async with self.pool.acquire() as conn:
            if use_transaction:
                await conn.begin(readonly=readonly)
                progress.transaction = True
            try:
                for index, item in enumerate(planned):
                    progress.index = index
                    if item.kind is not StatementKind.READ:
                        progress.side_effects = True
                    progress.results.append(await self._run_statement(conn, item))
                progress.index = None
                if use_transaction:
                    await conn.commit()
            except BaseException:
                if use_transaction and not conn.in_flight:
                    await self._rollback(conn)
                raise

    async def _run_statement(
        self, conn: PooledConnection, item: _PlannedStatement
    ) -> StatementResult:
        plan = item.plan
        try:
            result = await conn.run(plan.sql, max_rows=plan.limit)
        except SqlBridgeError:
            raise
        except Exception as e:
            error = classify_error(self.engine, e, self.redactor, statement=item.statement.text)
            if isinstance(error, ConnectionLostError):
                conn.broken = True
            raise error from e

        rows = result.rows
        truncated = False
        applied_limit = None
        if result.columns:
            applied_limit = plan.limit
            truncated = plan.is_truncated(len(rows))
            rows = rows[: plan.limit]

        return StatementResult(
            statement=plan.sql,
            kind=item.kind,
            columns=result.columns,
            rows=convert_rows(rows),
            row_count=len(rows) if result.columns else result.row_count,
            affected_rows=result.affected_rows,
            last_insert_id=result.last_insert_id,
            truncated=truncated,
            applied_limit=applied_limit,
        )

    async def _rollback(self, conn: PooledConnection) -> None:
        try:
            await conn.rollback()
        except Exception as e:
            # The lease still holds an open transaction, so the pool discards it
            logger.warning(f"Rollback failed: {self.redactor.redact(str(e))}")

    def _failure(
        self,
        error: SqlBridgeError,
        started: float,
        total: int,
        index: int | None = None,
        statement: str | None = None,
    ) -> Outcome:
        return Outcome(
            success=False,
            error=ExecutionError.from_exception(error, index=index, statement=statement),
            total_statements=total,
            execution_time_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)
