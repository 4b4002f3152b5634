"""
Row and Progress Counters

One RowCounter per table tracks the rows written to (or failed for) that table
and forwards every increment to the shared ProgressCounter, which logs the
aggregate throughput periodically while the load phase runs.
"""

from typing import Dict, Optional
import logging
import threading
import time

logger = logging.getLogger(__name__)


class ProgressCounter:
    """
    Thread-safe aggregate of rows copied across all tables.

    Usage:
        with ProgressCounter(interval=30.0) as progress:
            counter = RowCounter("dbo.Users", progress)
            ...
    """

    def __init__(self, interval: float = 30.0):
        """
        Args:
            interval: Seconds between progress log lines; 0 disables the reporter
        """
        self._lock = threading.Lock()
        self._success = 0
        self._failed = 0
        self._started = time.time()
        self._interval = interval
        self._stop = threading.Event()
        self._reporter: Optional[threading.Thread] = None
        if interval > 0:
            self._reporter = threading.Thread(
                target=self._report_loop, name="progress-reporter", daemon=True
            )
            self._reporter.start()

    def add_success(self, rows: int) -> None:
        with self._lock:
            self._success += rows

    def add_failed(self, rows: int) -> None:
        with self._lock:
            self._failed += rows

    @property
    def success(self) -> int:
        with self._lock:
            return self._success

    @property
    def failed(self) -> int:
        with self._lock:
            return self._failed

    def snapshot(self) -> Dict[str, float]:
        """Get current totals and average rate."""
        with self._lock:
            success, failed = self._success, self._failed
        elapsed = time.time() - self._started
        return {
            "rows_copied": success,
            "rows_failed": failed,
            "elapsed_time_seconds": elapsed,
            "avg_rows_per_second": success / elapsed if elapsed > 0 else 0,
        }

    def log_progress(self) -> None:
        stats = self.snapshot()
        logger.info(
            f"Progress: {stats['rows_copied']:,} rows copied, "
            f"{stats['rows_failed']:,} rows failed "
            f"at {stats['avg_rows_per_second']:,.0f} rows/sec"
        )

    def _report_loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.log_progress()

    def close(self) -> None:
        """Stop the periodic reporter and log the final totals."""
        self._stop.set()
        if self._reporter is not None:
            self._reporter.join()
            self._reporter = None
        self.log_progress()

    def __enter__(self) -> "ProgressCounter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class RowCounter:
    """Per-table row totals feeding a shared ProgressCounter."""

    def __init__(self, name: str, progress: Optional[ProgressCounter] = None):
        self.name = name
        self._progress = progress
        self._lock = threading.Lock()
        self._success = 0
        self._failed = 0

    def add_success(self, rows: int) -> None:
        with self._lock:
            self._success += rows
        if self._progress is not None:
            self._progress.add_success(rows)

    def add_failed(self, rows: int) -> None:
        with self._lock:
            self._failed += rows
        if self._progress is not None:
            self._progress.add_failed(rows)
        logger.warning(f"{rows:,} rows failed for {self.name}")

    @property
    def value(self) -> int:
        """Rows written successfully so far."""
        with self._lock:
            return self._success

    @property
    def failed(self) -> int:
        with self._lock:
            return self._failed
