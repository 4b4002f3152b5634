"""
BLOB Saver Module

Moves large column values into auxiliary tables. Each saved value becomes a
row (id, data) of its auxiliary table and the main row keeps only the id.

Ids come from a per-worker BlobIdAllocator. Worker i of a pool of P workers
hands out i, i + P, i + 2P, ... so savers running on different workers never
collide and no lock or shared counter is needed. An allocator, and the saver
using it, must stay on its own worker.
"""

from typing import Any, Dict, List, Tuple
import logging

from odbc_pg_loader.counters import RowCounter
from odbc_pg_loader.target_types import TablePath, TargetTable, blob_table

logger = logging.getLogger(__name__)


class BlobIdAllocator:
    """Strided id sequence owned by a single worker."""

    def __init__(self, offset: int, stride: int):
        """
        Args:
            offset: Worker position in pool creation order (0-based)
            stride: Number of workers in the pool
        """
        if stride < 1:
            raise ValueError(f"stride must be positive, got {stride}")
        if not 0 <= offset < stride:
            raise ValueError(f"offset {offset} outside [0, {stride})")
        self.offset = offset
        self.stride = stride
        self._next = offset

    def next_id(self) -> int:
        value = self._next
        self._next += self.stride
        return value


class BlobSaver:
    """
    Buffers externalized values per auxiliary table and writes them in batches.

    Buffered rows are submitted to the table's UpsertExecutor when a buffer
    reaches max_blob_rows, and by flush() at the end of the scan, before the
    last main batch that references them.
    """

    def __init__(self, allocator: BlobIdAllocator, max_blob_rows: int, upsert_op):
        """
        Args:
            allocator: Id allocator of the current worker
            max_blob_rows: Rows per auxiliary table write batch
            upsert_op: UpsertExecutor of the owning table load
        """
        self._allocator = allocator
        self._max_blob_rows = max(1, max_blob_rows)
        self._upsert_op = upsert_op
        self._buffers: Dict[TablePath, List[Tuple[int, bytes]]] = {}
        self._tables: Dict[TablePath, TargetTable] = {}
        self._counters: Dict[TablePath, RowCounter] = {}
        self.saved = 0

    def save_blob(self, stream: Any, path: TablePath) -> int:
        """
        Read a value stream completely and buffer it as an auxiliary row.

        The caller owns the stream and closes it.

        Args:
            stream: Readable binary or text stream positioned at the start
            path: Auxiliary table location

        Returns:
            The id referencing the saved value
        """
        data = stream.read()
        if isinstance(data, str):
            data = data.encode('utf-8')
        elif data is not None:
            data = bytes(data)

        blob_id = self._allocator.next_id()
        buffer = self._buffers.setdefault(path, [])
        buffer.append((blob_id, data))
        self.saved += 1
        if len(buffer) >= self._max_blob_rows:
            self._flush_table(path)
        return blob_id

    def _flush_table(self, path: TablePath) -> None:
        buffer = self._buffers.get(path)
        if not buffer:
            return
        if path not in self._tables:
            self._tables[path] = blob_table(path.table, path.schema)
            self._counters[path] = RowCounter(f"blob table {path}")
        self._upsert_op.start(self._tables[path], buffer, self._counters[path])
        self._buffers[path] = []

    def flush(self) -> None:
        """Submit every non-empty buffer."""
        for path in list(self._buffers):
            self._flush_table(path)
