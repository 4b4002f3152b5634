"""
Worker Pool Module

Fixed-size pool of worker threads for table loads. Unlike ThreadPoolExecutor,
every worker carries a WorkerContext created with the pool, in creation order,
and passes it to each task it runs. The context holds the worker's BLOB id
allocator, so ids stay unique across workers without any shared state.
"""

from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, List
import logging
import queue
import threading

from odbc_pg_loader.blob_saver import BlobIdAllocator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerContext:
    """Per-worker state handed to every task the worker runs."""

    index: int
    blob_ids: BlobIdAllocator


class WorkerPool:
    """
    Runs submitted callables on a fixed set of threads.

    Usage:
        with WorkerPool(4) as pool:
            future = pool.submit(lambda worker: worker.index)
            future.result()
    """

    # Sentinel telling a worker to exit
    _STOP = object()

    def __init__(self, size: int, name_prefix: str = "loader-worker"):
        """
        Args:
            size: Number of worker threads
            name_prefix: Thread name prefix; threads are suffixed with their index
        """
        if size < 1:
            raise ValueError(f"Worker pool size must be positive, got {size}")
        self.size = size
        self._queue: queue.Queue = queue.Queue()
        self._shutdown = False
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []

        for index in range(size):
            context = WorkerContext(index, BlobIdAllocator(offset=index, stride=size))
            thread = threading.Thread(
                target=self._worker_loop,
                args=(context,),
                name=f"{name_prefix}-{index}",
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {size} workers")

    def _worker_loop(self, context: WorkerContext) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                break
            future, fn = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(context)
            except BaseException as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

    def submit(self, fn: Callable[[WorkerContext], Any]) -> Future:
        """
        Queue a task.

        Args:
            fn: Callable taking the WorkerContext of the worker that runs it

        Returns:
            Future resolving to the callable's result

        Raises:
            RuntimeError: If the pool has been shut down
        """
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Worker pool has been shut down")
            future: Future = Future()
            self._queue.put((future, fn))
        return future

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> int:
        """
        Stop the workers.

        Args:
            wait: Join the worker threads before returning
            cancel_pending: Abandon tasks not started yet; their futures are cancelled

        Returns:
            Number of abandoned tasks
        """
        abandoned = 0
        with self._lock:
            already_shut_down = self._shutdown
            self._shutdown = True
            stops = 0 if already_shut_down else len(self._threads)
            if cancel_pending:
                while True:
                    try:
                        item = self._queue.get_nowait()
                    except queue.Empty:
                        break
                    if item is self._STOP:
                        stops += 1
                        continue
                    future, _ = item
                    if future.cancel():
                        abandoned += 1
            for _ in range(stops):
                self._queue.put(self._STOP)

        if abandoned:
            logger.warning(f"Workers have been shut down with {abandoned} tasks pending")
        if wait:
            for thread in self._threads:
                thread.join()
        return abandoned

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True, cancel_pending=exc_type is not None)
