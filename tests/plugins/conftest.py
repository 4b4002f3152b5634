"""
Shared fakes for the loader tests.

The fakes stand in for the ODBC source and the PostgreSQL target so that
table loads can run end to end in memory.
"""

import contextlib
import threading
from unittest.mock import MagicMock

import pytest

from odbc_pg_loader.upsert import RetryPolicy


class FakeCursor:
    """Source cursor returning fixed rows with a pyodbc-like description."""

    def __init__(self, description, rows):
        self.description = description
        self._rows = list(rows)
        self.executed = []
        self.closed = False

    def execute(self, statement, *params):
        self.executed.append(statement)
        return self

    def __iter__(self):
        return iter(self._rows)

    def close(self):
        self.closed = True


class FakeSourcePool:
    """Source pool handing out connections whose cursors come from a factory."""

    def __init__(self, cursor_factory):
        self._cursor_factory = cursor_factory
        self.cursors = []
        self.acquired = 0
        self.released = 0

    @contextlib.contextmanager
    def connection(self):
        conn = MagicMock()

        def make_cursor():
            cursor = self._cursor_factory()
            self.cursors.append(cursor)
            return cursor

        conn.cursor.side_effect = make_cursor
        self.acquired += 1
        try:
            yield conn
        finally:
            self.released += 1


class FakeTargetPool:
    """Target pool with a mock connection per borrow."""

    def __init__(self, database='public', retry_policy=None):
        self.database = database
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, backoff_seconds=0)
        self.connections = []
        self._lock = threading.Lock()

    @contextlib.contextmanager
    def connection(self):
        conn = MagicMock()
        with self._lock:
            self.connections.append(conn)
        yield conn


class UpsertRecorder:
    """Replacement for upsert_rows recording every write in call order."""

    def __init__(self, fail_on_call=None, error=None):
        self.calls = []
        self._fail_on_call = fail_on_call
        self._error = error or ValueError("write rejected")
        self._lock = threading.Lock()

    def __call__(self, conn, path, columns, key_columns, rows):
        with self._lock:
            self.calls.append((path, list(columns), tuple(key_columns), list(rows)))
            call_number = len(self.calls)
        if self._fail_on_call is not None and call_number == self._fail_on_call:
            raise self._error
        return len(rows), 0

    def rows_for(self, table_name):
        return [row for path, _, _, rows in self.calls if path.table == table_name for row in rows]


@pytest.fixture
def target_pool():
    """Target pool fake with a fast retry policy."""
    return FakeTargetPool()


@pytest.fixture
def upsert_recorder(monkeypatch):
    """Patch upsert_rows with a recorder."""
    recorder = UpsertRecorder()
    monkeypatch.setattr('odbc_pg_loader.upsert.upsert_rows', recorder)
    return recorder


@pytest.fixture
def make_source_pool():
    """Factory of source pools serving one result set."""
    def factory(description, rows):
        return FakeSourcePool(lambda: FakeCursor(description, rows))
    return factory


@pytest.fixture
def failing_upsert(monkeypatch):
    """Install an upsert_rows recorder failing on the given call number."""
    def install(fail_on_call, error=None):
        recorder = UpsertRecorder(fail_on_call=fail_on_call, error=error)
        monkeypatch.setattr('odbc_pg_loader.upsert.upsert_rows', recorder)
        return recorder
    return install
