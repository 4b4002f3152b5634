"""
ODBC to PostgreSQL Table Loader

This package copies table data from an ODBC source into existing PostgreSQL
tables using Apache Airflow.

Modules:
- source_types: ODBC SQL type codes of source result set columns
- target_types: Target type model and PostgreSQL schema reader
- source_metadata: Source column metadata and the per-table SELECT
- conversion: Conversion mode resolution and value conversion
- synth_key: Synthetic key generation for tables without a natural key
- counters: Row and progress counters
- upsert: Batch upserts with retries
- blob_saver: Externalization of BLOB values into auxiliary tables
- load_task: Per-table load state machine
- worker_pool: Worker threads with per-worker BLOB id allocation
- importer: Job preparation and the concurrent load phase
- config: Loader settings from environment variables

Performance Options:
- MAX_BATCH_ROWS=N: Rows per write batch
- WORKER_POOL_SIZE=N: Concurrent table loads
- UPSERT_MAX_IN_FLIGHT=N: Concurrent writes per table
"""

__version__ = "1.0.0"

# Core modules
from odbc_pg_loader import source_types
from odbc_pg_loader import target_types
from odbc_pg_loader import source_metadata
from odbc_pg_loader import conversion
from odbc_pg_loader import synth_key
from odbc_pg_loader import counters
from odbc_pg_loader import upsert
from odbc_pg_loader import blob_saver
from odbc_pg_loader import load_task
from odbc_pg_loader import worker_pool
from odbc_pg_loader import importer
from odbc_pg_loader import config

# Optional: connection pools need pyodbc and Airflow (imported by the DAG)
# from odbc_pg_loader import connections

__all__ = [
    "source_types",
    "target_types",
    "source_metadata",
    "conversion",
    "synth_key",
    "counters",
    "upsert",
    "blob_saver",
    "load_task",
    "worker_pool",
    "importer",
    "config",
]
