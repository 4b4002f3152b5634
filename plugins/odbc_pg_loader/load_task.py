"""
Table Load Module

A LoadTask copies one source table into its target table: it binds result set
columns to target fields, streams the source rows, converts them, and hands
full batches to its own UpsertExecutor. BLOB columns go through the task's
BlobSaver and synthetic keys are computed per row when the target declares one.

Every table-level error is caught at the task boundary and turned into a
failed LoadOutcome carrying the rows copied so far; sibling tables are not
affected.
"""

from contextlib import closing, nullcontext
from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO, StringIO
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import time

from odbc_pg_loader.blob_saver import BlobIdAllocator, BlobSaver
from odbc_pg_loader.conversion import (
    BLOB_MODES,
    ColumnBinding,
    ConversionError,
    ConversionMode,
    choose_mode,
    convert_value,
)
from odbc_pg_loader.counters import ProgressCounter, RowCounter
from odbc_pg_loader.source_metadata import TableMetadata
from odbc_pg_loader.source_types import SourceType, to_source_type
from odbc_pg_loader.synth_key import calc_synth_key
from odbc_pg_loader.target_types import SYNTH_KEY_FIELD, TargetTable
from odbc_pg_loader.upsert import UpsertExecutor

logger = logging.getLogger(__name__)


class LoadState(Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TableJob:
    """
    One source table's load unit.

    Attributes:
        schema: Source schema
        table: Source table
        metadata: Resolved source column metadata
        target: Target table definition
        blob_targets: BLOB column name -> auxiliary target table
        valid: Metadata was resolved successfully
        failure: Some stage failed for this table
    """

    schema: str
    table: str
    metadata: Optional[TableMetadata] = None
    target: Optional[TargetTable] = None
    blob_targets: Dict[str, TargetTable] = field(default_factory=dict)
    valid: bool = True
    failure: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table}"


@dataclass
class LoadOutcome:
    """Result of one LoadTask."""

    job: TableJob
    success: bool
    rows_copied: int
    state: LoadState
    error: Optional[str] = None
    elapsed_time_seconds: float = 0.0


class LoadTask:
    """Copies the data of one table. Instances run once, on one worker."""

    def __init__(
        self,
        job: TableJob,
        source_pool,
        target_pool,
        progress: Optional[ProgressCounter] = None,
        max_batch_rows: int = 1000,
        max_blob_rows: int = 200,
        max_in_flight: int = 2,
    ):
        """
        Args:
            job: Table to load
            source_pool: SourceConnectionPool; one connection is held for the scan
            target_pool: TargetConnectionPool used by the task's UpsertExecutor
            progress: Shared progress counter
            max_batch_rows: Rows per main table write batch
            max_blob_rows: Rows per auxiliary table write batch
            max_in_flight: Concurrent writes of the task's UpsertExecutor
        """
        self.job = job
        self._source_pool = source_pool
        self._target_pool = target_pool
        self._max_batch_rows = max(1, max_batch_rows)
        self._max_blob_rows = max(1, max_blob_rows)
        self._max_in_flight = max_in_flight
        self.state = LoadState.PENDING
        self.counter = RowCounter(f"upsert to {job.target.full_name if job.target else job.full_name}", progress)

        self._bindings: Tuple[ColumnBinding, ...] = ()
        self._result_types: List[SourceType] = []
        self._blob_saver: Optional[BlobSaver] = None

    def __call__(self, worker) -> LoadOutcome:
        """Entry point for WorkerPool; takes the worker's context."""
        return self.run(worker.blob_ids)

    def run(self, blob_ids: BlobIdAllocator) -> LoadOutcome:
        """
        Load the table.

        Args:
            blob_ids: Id allocator of the worker running this task

        Returns:
            LoadOutcome with success flag and rows copied
        """
        job = self.job
        if not job.valid:
            logger.warning(f"Skipping incomplete source table {job.full_name}")
            self.state = LoadState.SKIPPED
            return LoadOutcome(job, False, 0, self.state)
        if job.failure:
            logger.warning(f"Skipping failed source table {job.full_name}")
            self.state = LoadState.SKIPPED
            return LoadOutcome(job, False, 0, self.state)

        logger.info(f"Loading data from source table {job.full_name}")
        self.state = LoadState.RUNNING
        start_time = time.time()
        try:
            with self._source_pool.connection() as conn:
                with closing(conn.cursor()) as cursor:
                    cursor.execute(job.metadata.basic_sql)
                    self._copy_data(cursor, blob_ids)
        except Exception as e:
            elapsed = time.time() - start_time
            logger.error(f"Failed to load data from table {job.full_name}: {e}")
            logger.debug("Load failure details", exc_info=True)
            self.state = LoadState.FAILED
            job.failure = True
            return LoadOutcome(job, False, self.counter.value, self.state, str(e), elapsed)

        elapsed = time.time() - start_time
        rows = self.counter.value
        rows_per_second = rows / elapsed if elapsed > 0 else 0
        logger.info(
            f"Copied {rows:,} rows from source table {job.full_name} "
            f"in {elapsed:.2f} seconds ({rows_per_second:,.0f} rows/sec)"
        )
        self.state = LoadState.COMPLETED
        return LoadOutcome(job, True, rows, self.state, None, elapsed)

    def _copy_data(self, cursor, blob_ids: BlobIdAllocator) -> None:
        """Read the source rows and write them in batches."""
        self._bind_columns(cursor.description)
        target = self.job.target

        with UpsertExecutor(self._target_pool, self._max_in_flight) as upsert_op:
            self._blob_saver = None
            if any(b.mode in BLOB_MODES for b in self._bindings):
                self._blob_saver = BlobSaver(blob_ids, self._max_blob_rows, upsert_op)

            batch: List[Tuple[Any, ...]] = []
            for row in cursor:
                batch.append(self.convert(row))
                if len(batch) >= self._max_batch_rows:
                    upsert_op.start(target, batch, self.counter)
                    batch = []

            # BLOB rows must be submitted before the rows referencing them
            if self._blob_saver is not None:
                self._blob_saver.flush()
            if batch:
                upsert_op.start(target, batch, self.counter)
            upsert_op.finish()

    def _bind_columns(self, description: Sequence[Sequence[Any]]) -> None:
        """
        Build the column bindings from the result set description.

        Target fields missing from the source metadata or from the result set
        are skipped with a warning, as are BLOB columns without an auxiliary
        table.

        Raises:
            ResolutionError: If a column has no applicable conversion
        """
        job = self.job
        metadata = job.metadata
        fields = job.target.fields

        source_columns: Dict[str, int] = {}
        result_types: List[SourceType] = []
        for ix, column in enumerate(description, start=1):
            name, type_code = column[0], column[1]
            source_columns[name] = ix
            # Declared catalog type first: drivers report long columns as plain str/bytes
            declared = metadata.find_column(name)
            if declared is not None:
                result_types.append(declared.source_type)
            else:
                result_types.append(to_source_type(type_code))

        bindings: List[ColumnBinding] = []
        for ix_target, (name, ttype) in enumerate(fields.fields):
            if name == SYNTH_KEY_FIELD:
                continue
            info = metadata.find_column(name)
            if info is None:
                logger.warning(f"Unexpected column {name} in the source table {job.full_name} - SKIPPED")
                continue
            ix_source = source_columns.get(name)
            if ix_source is None:
                logger.warning(f"Missing column {name} in the source table {job.full_name} - SKIPPED")
                continue

            if info.is_blob:
                blob_target = job.blob_targets.get(name)
                if blob_target is None:
                    logger.warning(
                        f"Missing aux target table for BLOB column {name} "
                        f"of source {job.full_name} - SKIPPED"
                    )
                    continue
                mode = ConversionMode.BLOB_OBJECT if info.blob_as_object else ConversionMode.BLOB_STREAM
                blob_path = blob_target.path(self._target_pool.database)
                bindings.append(ColumnBinding(ix_source, ix_target, mode, blob_path))
            else:
                mode = choose_mode(ttype, result_types[ix_source - 1])
                bindings.append(ColumnBinding(ix_source, ix_target, mode))

        self._bindings = tuple(bindings)
        self._result_types = result_types
        logger.debug(f"Bound {len(bindings)} of {len(fields)} target columns for {job.full_name}")

    @property
    def bindings(self) -> Tuple[ColumnBinding, ...]:
        return self._bindings

    def convert(self, row: Sequence[Any]) -> Tuple[Any, ...]:
        """
        Convert one source row into a target row.

        Raises:
            ConversionError: Naming the target column that failed
        """
        fields = self.job.target.fields
        members: List[Any] = [None] * len(fields)
        for binding in self._bindings:
            try:
                value = row[binding.source_index - 1]
                if binding.mode in BLOB_MODES:
                    members[binding.target_index] = self._convert_blob(value, binding)
                else:
                    members[binding.target_index] = convert_value(
                        value, binding.mode, fields.member_type(binding.target_index)
                    )
            except Exception as e:
                raise ConversionError(fields.member_name(binding.target_index), e) from e

        if fields.has_synth_key:
            members[fields.synth_key_pos] = calc_synth_key(row, self._result_types)
        return tuple(members)

    def _convert_blob(self, value: Any, binding: ColumnBinding) -> Optional[int]:
        if value is None:
            return None
        with self._open_stream(value, binding.mode) as stream:
            return self._blob_saver.save_blob(stream, binding.blob_path)

    @staticmethod
    def _open_stream(value: Any, mode: ConversionMode):
        # pyodbc hands out long columns as plain str/bytes even for LOB types
        if isinstance(value, str):
            return StringIO(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return BytesIO(bytes(value))
        if mode is ConversionMode.BLOB_OBJECT:
            if hasattr(value, "close"):
                return closing(value)
            return nullcontext(value)
        return BytesIO(bytes(value))
