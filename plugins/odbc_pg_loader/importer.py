"""
Load Phase Orchestration Module

Turns a list of 'schema.table' entries into TableJobs (source metadata plus
target table definitions), runs one LoadTask per job on a WorkerPool and
aggregates the outcomes.
"""

from typing import Dict, Iterable, List, Optional, Tuple
import json
import logging
import re

from odbc_pg_loader.config import LoaderSettings
from odbc_pg_loader.counters import ProgressCounter
from odbc_pg_loader.load_task import LoadOutcome, LoadState, LoadTask, TableJob
from odbc_pg_loader.source_metadata import read_table_metadata
from odbc_pg_loader.target_types import SYNTH_KEY_FIELD, TargetTable, blob_table, read_target_schema
from odbc_pg_loader.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def parse_schema_table(entry: str) -> Tuple[str, str]:
    """
    Parse single 'schema.table' entry.

    Handles:
    - Simple format: "dbo.Users" -> ("dbo", "Users")
    - Bracketed format: "[dbo].[My Table]" -> ("dbo", "My Table")

    Raises:
        ValueError: If format is invalid (no dot separator found)
    """
    entry = entry.strip()

    match = re.match(r'^\[([^\]]+)\]\.\[([^\]]+)\]$', entry)
    if match:
        return (match.group(1), match.group(2))

    parts = entry.split('.', 1)
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise ValueError(
            f"Invalid table format '{entry}': must be 'schema.table' or '[schema].[table]'"
        )
    return (parts[0].strip(), parts[1].strip())


def expand_include_tables_param(include_tables_raw) -> List[str]:
    """
    Normalize the include_tables DAG parameter.

    Accepts a list of strings, a JSON list string or a comma-separated string;
    list items may themselves be comma-separated.
    """
    if isinstance(include_tables_raw, str):
        include_tables_raw = include_tables_raw.strip()
        if not include_tables_raw:
            return []
        try:
            parsed = json.loads(include_tables_raw)
            include_tables_raw = parsed if isinstance(parsed, list) else [str(parsed)]
        except json.JSONDecodeError:
            include_tables_raw = [include_tables_raw]

    if not isinstance(include_tables_raw, list):
        logger.warning(
            f"Unsupported include_tables type {type(include_tables_raw).__name__}; no tables selected"
        )
        return []

    expanded = []
    for item in include_tables_raw:
        if isinstance(item, str):
            expanded.extend([t.strip() for t in item.split(',') if t.strip()])
    return expanded


def parse_include_tables(include_tables: Iterable[str]) -> List[Tuple[str, str]]:
    """
    Parse entries into unique (schema, table) pairs, keeping their order.

    Raises:
        ValueError: If the list is empty or an entry is malformed
    """
    result: List[Tuple[str, str]] = []
    for entry in include_tables:
        pair = parse_schema_table(entry)
        if pair not in result:
            result.append(pair)
    if not result:
        raise ValueError(
            "include_tables parameter is required and cannot be empty. "
            "Specify tables in 'schema.table' format, e.g., ['dbo.Users', 'dbo.Posts']"
        )
    return result


def blob_table_name(table_name: str, column_name: str) -> str:
    """Name of the auxiliary table holding the BLOB values of one column."""
    return f"{table_name}_{column_name}"


def _resolve_targets(
    job: TableJob,
    target_pool,
    target_schema: Optional[str],
) -> Tuple[TargetTable, Dict[str, TargetTable]]:
    schema_name = target_schema or target_pool.database
    blob_targets: Dict[str, TargetTable] = {}

    with target_pool.connection() as pg_conn:
        fields = read_target_schema(pg_conn, schema_name, job.table)
        if not fields.key_columns:
            # Plain INSERTs would duplicate rows on write retries and DAG reruns
            raise ValueError(
                f"Target table {schema_name}.{job.table} has neither a primary key "
                f"nor a {SYNTH_KEY_FIELD} column"
            )
        target = TargetTable(job.table, fields, target_schema)

        for column in job.metadata.blob_columns:
            aux_name = blob_table_name(job.table, column.name)
            try:
                read_target_schema(pg_conn, schema_name, aux_name)
            except ValueError as e:
                logger.warning(f"No aux table for BLOB column {column.name} of {job.full_name}: {e}")
                continue
            blob_targets[column.name] = blob_table(aux_name, target_schema)

    return target, blob_targets


def build_table_jobs(
    tables: Iterable[Tuple[str, str]],
    source_pool,
    target_pool,
    target_schema: Optional[str] = None,
    blob_as_object: bool = False,
) -> List[TableJob]:
    """
    Resolve source metadata and target definitions for each table.

    A table whose source metadata cannot be read is marked invalid and will
    be skipped. A table whose target cannot be resolved, or has no conflict
    key to upsert on, is marked failed.

    Args:
        tables: (source schema, table) pairs
        source_pool: SourceConnectionPool
        target_pool: TargetConnectionPool
        target_schema: Target schema; defaults to the pool's database prefix
        blob_as_object: Whether the source driver returns LOB objects

    Returns:
        One TableJob per table, in input order
    """
    jobs = []
    for schema_name, table_name in tables:
        job = TableJob(schema_name, table_name)
        jobs.append(job)

        try:
            with source_pool.connection() as conn:
                job.metadata = read_table_metadata(conn, schema_name, table_name, blob_as_object)
        except Exception as e:
            logger.warning(f"Cannot read metadata of source table {job.full_name}: {e}")
            job.valid = False
            continue

        try:
            job.target, job.blob_targets = _resolve_targets(job, target_pool, target_schema)
        except Exception as e:
            logger.error(f"Cannot resolve target table for {job.full_name}: {e}")
            job.failure = True

    logger.info(
        f"Prepared {len(jobs)} table jobs: "
        f"{sum(1 for j in jobs if j.valid and not j.failure)} ready"
    )
    return jobs


def load_tables(
    jobs: List[TableJob],
    source_pool,
    target_pool,
    settings: Optional[LoaderSettings] = None,
) -> List[LoadOutcome]:
    """
    Load the data of every job concurrently.

    Jobs already marked failed are not submitted. Tables failing during the
    load are marked failed on their job; the others are unaffected.

    Args:
        jobs: Table jobs from build_table_jobs()
        source_pool: SourceConnectionPool
        target_pool: TargetConnectionPool
        settings: Loader settings (default LoaderSettings())

    Returns:
        LoadOutcome per submitted job, in job order
    """
    settings = settings or LoaderSettings()
    pending = [job for job in jobs if not job.failure]
    if not pending:
        logger.warning("No valid tables to be loaded")
        return []

    outcomes: List[LoadOutcome] = []
    with ProgressCounter(settings.progress_log_interval) as progress:
        pool = WorkerPool(min(settings.worker_pool_size, len(pending)))
        finished = False
        try:
            futures = []
            for job in pending:
                task = LoadTask(
                    job,
                    source_pool,
                    target_pool,
                    progress=progress,
                    max_batch_rows=settings.max_batch_rows,
                    max_blob_rows=settings.max_blob_rows,
                    max_in_flight=settings.upsert_max_in_flight,
                )
                futures.append((job, pool.submit(task)))

            for job, future in futures:
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.error(f"Load task for {job.full_name} terminated: {e}")
                    job.failure = True
                    outcome = LoadOutcome(job, False, 0, LoadState.FAILED, str(e))
                outcomes.append(outcome)
            finished = True
        finally:
            pool.shutdown(wait=True, cancel_pending=not finished)

    completed = sum(1 for o in outcomes if o.success)
    total_rows = sum(o.rows_copied for o in outcomes)
    logger.info(f"Table data load completed {completed} of {len(pending)} tasks.")
    logger.info(
        f"Rows copied: {total_rows:,}, failed tables: "
        f"{sum(1 for o in outcomes if o.state is LoadState.FAILED)}"
    )
    return outcomes


def summarize_outcomes(jobs: List[TableJob], outcomes: List[LoadOutcome]) -> Dict[str, object]:
    """
    Build a JSON-serializable summary of a load run.

    Jobs that were never submitted count as failed tables.
    """
    loaded = {id(o.job) for o in outcomes}
    details = [
        {
            "table_name": o.job.full_name,
            "success": o.success,
            "state": o.state.value,
            "rows_copied": o.rows_copied,
            "elapsed_time_seconds": round(o.elapsed_time_seconds, 3),
            "error": o.error,
        }
        for o in outcomes
    ]
    for job in jobs:
        if id(job) not in loaded:
            details.append({
                "table_name": job.full_name,
                "success": False,
                "state": LoadState.FAILED.value,
                "rows_copied": 0,
                "elapsed_time_seconds": 0.0,
                "error": "table preparation failed",
            })

    failed = [d["table_name"] for d in details if d["state"] == LoadState.FAILED.value]
    skipped = [d["table_name"] for d in details if d["state"] == LoadState.SKIPPED.value]
    return {
        "status": "success" if not failed else "partial_failure",
        "tables_total": len(details),
        "tables_loaded": sum(1 for d in details if d["success"]),
        "tables_failed": failed,
        "tables_skipped": skipped,
        "total_rows": sum(d["rows_copied"] for d in details),
        "details": details,
    }
