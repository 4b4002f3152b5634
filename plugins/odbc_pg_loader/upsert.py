"""
Upsert Executor Module

Writes batches of converted rows to PostgreSQL with INSERT ... ON CONFLICT,
asynchronously with respect to the table scan that produces them. Each write
runs under a retry policy; a terminal finish() call waits for all outstanding
writes of the executor.
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type
import logging
import threading

import psycopg2
from psycopg2 import extensions as pg_extensions
from psycopg2 import sql
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from odbc_pg_loader.counters import RowCounter
from odbc_pg_loader.target_types import TablePath, TargetTable

logger = logging.getLogger(__name__)


# Connection drops, server restarts, serialization failures and deadlocks
RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    psycopg2.OperationalError,
    psycopg2.InterfaceError,
    pg_extensions.TransactionRollbackError,
)


class UpsertError(RuntimeError):
    """One or more batches could not be written after retries."""


class RetryPolicy:
    """
    Retry settings for target writes.

    Wraps a tenacity Retrying configuration: a fixed attempt budget,
    exponential backoff between attempts and the set of error classes that are
    worth retrying. Any other error fails the write immediately.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
        retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
    ):
        """
        Args:
            max_attempts: Total attempts per write, including the first
            backoff_seconds: Multiplier of the exponential backoff
            max_backoff_seconds: Upper bound of a single wait
            retry_on: Exception classes that trigger another attempt
        """
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.retry_on = retry_on

    def retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run fn under this policy; the last error is re-raised unchanged."""
        return self.retrying()(fn, *args, **kwargs)


def dedupe_by_key(
    columns: Sequence[str],
    key_columns: Sequence[str],
    rows: Sequence[Tuple[Any, ...]],
) -> List[Tuple[Any, ...]]:
    """
    Keep only the last row of each conflict key, in first-seen key order.

    One INSERT ... ON CONFLICT statement may not touch the same key twice.
    """
    key_positions = [list(columns).index(c) for c in key_columns]
    latest: Dict[Tuple[Any, ...], Tuple[Any, ...]] = {}
    for row in rows:
        latest[tuple(row[pos] for pos in key_positions)] = row
    if len(latest) < len(rows):
        logger.debug(f"Dropped {len(rows) - len(latest)} rows with duplicate keys {list(key_columns)}")
    return list(latest.values())


def upsert_rows(
    postgres_conn,
    path: TablePath,
    columns: Sequence[str],
    key_columns: Sequence[str],
    rows: Sequence[Tuple[Any, ...]],
) -> Tuple[int, int]:
    """
    Upsert rows using INSERT...ON CONFLICT DO UPDATE.

    The xmax system column tells inserted rows (xmax = 0) from updated ones.
    Tables without key columns get a plain INSERT.

    Args:
        postgres_conn: Active PostgreSQL connection
        path: Target table location
        columns: All target column names, in row order
        key_columns: Conflict target columns
        rows: Row tuples to write

    Returns:
        Tuple of (inserted_count, updated_count)
    """
    if not rows:
        return 0, 0

    missing_keys = set(key_columns) - set(columns)
    if missing_keys:
        raise ValueError(f"Key columns not in column list: {missing_keys}")

    if key_columns:
        rows = dedupe_by_key(columns, key_columns, rows)

    all_cols = sql.SQL(', ').join([sql.Identifier(c) for c in columns])
    row_placeholder = sql.SQL('({})').format(
        sql.SQL(', ').join([sql.Placeholder()] * len(columns))
    )
    values = sql.SQL(', ').join([row_placeholder] * len(rows))
    table = sql.SQL('{}.{}').format(sql.Identifier(path.schema), sql.Identifier(path.table))

    non_key_columns = [c for c in columns if c not in key_columns]

    if not key_columns:
        query = sql.SQL("""
            INSERT INTO {table} ({columns})
            VALUES {values}
            RETURNING true AS inserted
        """).format(table=table, columns=all_cols, values=values)
    elif non_key_columns:
        update_set = sql.SQL(', ').join([
            sql.SQL('{} = EXCLUDED.{}').format(sql.Identifier(c), sql.Identifier(c))
            for c in non_key_columns
        ])
        query = sql.SQL("""
            INSERT INTO {table} ({columns})
            VALUES {values}
            ON CONFLICT ({keys}) DO UPDATE SET {update_set}
            RETURNING (xmax = 0) AS inserted
        """).format(
            table=table,
            columns=all_cols,
            values=values,
            keys=sql.SQL(', ').join([sql.Identifier(c) for c in key_columns]),
            update_set=update_set,
        )
    else:
        # All columns are key columns - nothing to update on conflict
        query = sql.SQL("""
            INSERT INTO {table} ({columns})
            VALUES {values}
            ON CONFLICT ({keys}) DO NOTHING
            RETURNING (xmax = 0) AS inserted
        """).format(
            table=table,
            columns=all_cols,
            values=values,
            keys=sql.SQL(', ').join([sql.Identifier(c) for c in key_columns]),
        )

    params: List[Any] = []
    for row in rows:
        params.extend(row)

    with postgres_conn.cursor() as cursor:
        cursor.execute(query, params)
        results = cursor.fetchall()

    inserted_count = sum(1 for r in results if r[0])
    return inserted_count, len(results) - inserted_count


class UpsertExecutor:
    """
    Asynchronous batch writer owned by a single table load.

    start() hands a batch to a small thread pool and returns; it blocks only
    while max_in_flight batches are already being written. finish() waits for
    every outstanding batch and raises UpsertError if any of them failed.
    Instances are not shared between tables.
    """

    def __init__(self, target_pool, max_in_flight: int = 2):
        """
        Args:
            target_pool: TargetConnectionPool providing connections, the
                database prefix and the retry policy
            max_in_flight: Maximum concurrently running writes
        """
        self._target_pool = target_pool
        self._retry_policy: RetryPolicy = target_pool.retry_policy
        self._max_in_flight = max(1, max_in_flight)
        self._slots = threading.Semaphore(self._max_in_flight)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._failed = threading.Event()

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_in_flight, thread_name_prefix="upsert"
            )
        return self._executor

    def start(self, table: TargetTable, rows: Sequence[Tuple[Any, ...]], counter: RowCounter) -> None:
        """
        Submit one batch for writing.

        Args:
            table: Target table definition
            rows: Converted rows; copied, the caller may reuse its list
            counter: Row counter credited with the outcome of the write

        Raises:
            UpsertError: If an earlier batch of this executor already failed
        """
        if not rows:
            return

        path = table.path(self._target_pool.database)
        batch = list(rows)
        self._slots.acquire()
        if self._failed.is_set():
            self._slots.release()
            raise UpsertError(f"Earlier write to {table.full_name} failed, not submitting more batches")
        try:
            future = self._get_executor().submit(
                self._run, path, table.fields.names, table.fields.key_columns, batch, counter
            )
        except Exception:
            self._slots.release()
            raise
        self._futures.append(future)

    def _run(
        self,
        path: TablePath,
        columns: List[str],
        key_columns: Tuple[str, ...],
        rows: List[Tuple[Any, ...]],
        counter: RowCounter,
    ) -> int:
        try:
            self._retry_policy.call(self._write, path, columns, key_columns, rows)
            counter.add_success(len(rows))
            return len(rows)
        except Exception as e:
            logger.error(f"Error upserting {len(rows):,} rows to {path}: {e}")
            counter.add_failed(len(rows))
            self._failed.set()
            raise
        finally:
            self._slots.release()

    def _write(
        self,
        path: TablePath,
        columns: List[str],
        key_columns: Tuple[str, ...],
        rows: List[Tuple[Any, ...]],
    ) -> None:
        with self._target_pool.connection() as conn:
            inserted, updated = upsert_rows(conn, path, columns, key_columns, rows)
            conn.commit()
        logger.debug(f"Upserted into {path}: {inserted} inserted, {updated} updated")

    def finish(self) -> None:
        """
        Wait for all outstanding writes.

        Raises:
            UpsertError: If any batch failed after retries
        """
        futures, self._futures = self._futures, []
        if futures:
            wait(futures)
        self.close()

        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise UpsertError(
                f"{len(errors)} of {len(futures)} batches failed: {errors[0]}"
            ) from errors[0]

    def close(self) -> None:
        """Release the writer threads, letting running writes complete."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "UpsertExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
