"""
ODBC to PostgreSQL Table Load DAG

This DAG copies table data from an ODBC source database into existing
PostgreSQL tables:
1. Validate the table list
2. Read source column metadata and target table definitions
3. Load all tables concurrently, upserting rows in batches
4. Summarize the run, failing when any table failed

Requires:
- Target tables already exist, including the auxiliary tables of BLOB
  columns ({table}_{column} with id bigint primary key, data bytea)
- Tables without a primary key get a _synth_key column holding a hash of the row;
  target tables with neither are not loaded
"""

from airflow.decorators import dag, task
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import List, Dict, Any
import logging

from odbc_pg_loader.config import LoaderSettings
from odbc_pg_loader.importer import (
    build_table_jobs,
    expand_include_tables_param,
    load_tables,
    parse_include_tables,
    summarize_outcomes,
)

logger = logging.getLogger(__name__)


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Run manually or trigger via API
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 1,
        "retry_delay": timedelta(seconds=30),
    },
    params={
        "source_conn_id": Param(
            default="odbc_source",
            type="string",
            description="Source ODBC connection ID"
        ),
        "target_conn_id": Param(
            default="postgres_target",
            type="string",
            description="PostgreSQL connection ID"
        ),
        "include_tables": Param(
            default=[],
            type="array",
            description="Tables to load in 'schema.table' format"
        ),
        "target_schema": Param(
            default="public",
            type="string",
            description="Target schema in PostgreSQL"
        ),
        "blob_as_object": Param(
            default=False,
            type="boolean",
            description="Source driver returns BLOB values as LOB objects"
        ),
        "max_batch_rows": Param(
            default=1000,
            type="integer",
            minimum=1,
            maximum=100000,
            description="Rows per write batch"
        ),
        "max_blob_rows": Param(
            default=200,
            type="integer",
            minimum=1,
            maximum=10000,
            description="Rows per BLOB table write batch"
        ),
        "worker_pool_size": Param(
            default=4,
            type="integer",
            minimum=1,
            maximum=64,
            description="Number of tables loaded concurrently"
        ),
    },
    tags=["load", "odbc", "postgres", "etl"],
)
def odbc_to_postgres_load():
    """
    DAG loading table data from an ODBC source into PostgreSQL.
    """

    @task
    def prepare_tables(**context) -> List[str]:
        """
        Validate the include_tables parameter.

        Returns:
            Normalized list of 'schema.table' entries
        """
        params = context["params"]
        include_tables = expand_include_tables_param(params.get("include_tables", []))
        # Raises ValueError if empty or malformed
        parse_include_tables(include_tables)
        logger.info(f"Tables to load: {', '.join(include_tables)}")
        return include_tables

    @task
    def load_table_data(include_tables: List[str], **context) -> Dict[str, Any]:
        """
        Load the data of all tables.

        Returns:
            Load summary with per-table results
        """
        from odbc_pg_loader.connections import SourceConnectionPool, TargetConnectionPool
        from odbc_pg_loader.upsert import RetryPolicy

        params = context["params"]
        settings = LoaderSettings.from_env().with_overrides({
            "max_batch_rows": params.get("max_batch_rows"),
            "max_blob_rows": params.get("max_blob_rows"),
            "worker_pool_size": params.get("worker_pool_size"),
        })
        logger.info(f"Loader settings: {settings}")

        retry_policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            max_backoff_seconds=settings.retry_max_backoff_seconds,
        )
        source_pool = SourceConnectionPool.from_conn_id(
            params["source_conn_id"], max_conn=settings.source_connections
        )
        try:
            target_pool = TargetConnectionPool.from_conn_id(
                params["target_conn_id"],
                database=params["target_schema"],
                max_conn=settings.pg_connections,
                retry_policy=retry_policy,
            )
            try:
                jobs = build_table_jobs(
                    parse_include_tables(include_tables),
                    source_pool,
                    target_pool,
                    blob_as_object=params.get("blob_as_object", False),
                )
                outcomes = load_tables(jobs, source_pool, target_pool, settings)
            finally:
                target_pool.close()
        finally:
            source_pool.close()

        return summarize_outcomes(jobs, outcomes)

    @task
    def generate_load_summary(summary: Dict[str, Any]) -> Dict[str, Any]:
        """Log the run summary and fail the run if any table failed."""
        logger.info(
            f"Table load complete: {summary['tables_loaded']} of {summary['tables_total']} tables loaded, "
            f"{summary['total_rows']:,} rows copied"
        )
        for detail in summary["details"]:
            if detail["success"]:
                logger.info(f"✓ {detail['table_name']}: {detail['rows_copied']:,} rows")
            else:
                logger.error(f"✗ {detail['table_name']}: {detail['state']} {detail.get('error') or ''}")

        if summary["tables_skipped"]:
            logger.warning(f"Skipped tables: {', '.join(summary['tables_skipped'])}")
        if summary["tables_failed"]:
            raise RuntimeError(f"Failed tables: {', '.join(summary['tables_failed'])}")
        return summary

    tables = prepare_tables()
    summary = load_table_data(tables)
    generate_load_summary(summary)


# Instantiate the DAG
odbc_to_postgres_load()
