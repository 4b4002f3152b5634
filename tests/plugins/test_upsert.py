"""
Tests for Upsert Executor Module

These tests validate upsert statement generation, the retry policy and the
asynchronous batch executor.
"""

from unittest.mock import MagicMock, Mock

import psycopg2
import pytest

from odbc_pg_loader.counters import RowCounter
from odbc_pg_loader.target_types import TablePath, TargetKind, TargetSchema, TargetTable, TargetType
from odbc_pg_loader.upsert import RetryPolicy, UpsertError, UpsertExecutor, upsert_rows


def make_conn(results):
    """Mock connection whose cursor returns the given RETURNING rows."""
    conn = MagicMock()
    cursor = MagicMock()
    cursor.fetchall.return_value = results
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn, cursor


def make_table(keys=("id",)):
    fields = TargetSchema(
        [("id", TargetType(TargetKind.INT64, True)), ("name", TargetType(TargetKind.TEXT, True))],
        key_columns=keys,
    )
    return TargetTable("users", fields)


class TestUpsertRows:
    """Test the INSERT ... ON CONFLICT statement."""

    def test_counts_inserted_and_updated(self):
        """Test xmax based insert/update split."""
        conn, cursor = make_conn([(True,), (False,), (True,)])
        rows = [(1, "a"), (2, "b"), (3, "c")]

        inserted, updated = upsert_rows(conn, TablePath("public", "users"), ["id", "name"], ["id"], rows)

        assert (inserted, updated) == (2, 1)
        query, params = cursor.execute.call_args[0]
        assert params == [1, "a", 2, "b", 3, "c"]
        assert "DO UPDATE" in repr(query)

    def test_duplicate_keys_keep_last_row(self):
        """Test that a batch never touches the same conflict key twice."""
        conn, cursor = make_conn([(True,), (True,)])
        rows = [(b"k1", "dup"), (b"k2", "other"), (b"k1", "dup again")]

        upsert_rows(conn, TablePath("public", "plain"), ["_synth_key", "note"], ["_synth_key"], rows)

        _, params = cursor.execute.call_args[0]
        assert params == [b"k1", "dup again", b"k2", "other"]

    def test_identical_synth_key_rows_written_once(self):
        """Test identical rows of a keyless source table in one batch."""
        conn, cursor = make_conn([(True,)])
        rows = [(b"qaRx5GI", "dup"), (b"qaRx5GI", "dup")]

        inserted, updated = upsert_rows(conn, TablePath("public", "plain"), ["_synth_key", "note"], ["_synth_key"], rows)

        _, params = cursor.execute.call_args[0]
        assert params == [b"qaRx5GI", "dup"]
        assert (inserted, updated) == (1, 0)

    def test_all_key_columns_do_nothing(self):
        """Test that tables made only of keys skip updates on conflict."""
        conn, cursor = make_conn([(True,)])
        upsert_rows(conn, TablePath("public", "tags"), ["id"], ["id"], [(1,)])

        query, _ = cursor.execute.call_args[0]
        assert "DO NOTHING" in repr(query)

    def test_no_key_columns_plain_insert(self):
        """Test plain INSERT for tables without a key."""
        conn, cursor = make_conn([(True,), (True,)])
        inserted, updated = upsert_rows(conn, TablePath("public", "log"), ["msg"], [], [("a",), ("b",)])

        query, _ = cursor.execute.call_args[0]
        assert "ON CONFLICT" not in repr(query)
        assert (inserted, updated) == (2, 0)

    def test_empty_rows(self):
        """Test that nothing is executed for an empty batch."""
        conn, _ = make_conn([])
        assert upsert_rows(conn, TablePath("public", "users"), ["id"], ["id"], []) == (0, 0)
        conn.cursor.assert_not_called()

    def test_key_outside_columns_rejected(self):
        """Test validation of key columns."""
        conn, _ = make_conn([])
        with pytest.raises(ValueError, match="Key columns not in column list"):
            upsert_rows(conn, TablePath("public", "users"), ["name"], ["id"], [("a",)])


class TestRetryPolicy:
    """Test tenacity based write retries."""

    def test_retries_transient_errors(self):
        """Test that operational errors are retried until success."""
        fn = Mock(side_effect=[psycopg2.OperationalError("gone"), psycopg2.OperationalError("gone"), "ok"])
        policy = RetryPolicy(max_attempts=3, backoff_seconds=0)

        assert policy.call(fn, 1, key="v") == "ok"
        assert fn.call_count == 3
        fn.assert_called_with(1, key="v")

    def test_gives_up_after_max_attempts(self):
        """Test that the last error is re-raised unchanged."""
        fn = Mock(side_effect=psycopg2.OperationalError("still gone"))
        policy = RetryPolicy(max_attempts=2, backoff_seconds=0)

        with pytest.raises(psycopg2.OperationalError, match="still gone"):
            policy.call(fn)
        assert fn.call_count == 2

    def test_non_retryable_error_fails_immediately(self):
        """Test that data errors are not retried."""
        fn = Mock(side_effect=ValueError("bad row"))
        policy = RetryPolicy(max_attempts=5, backoff_seconds=0)

        with pytest.raises(ValueError):
            policy.call(fn)
        assert fn.call_count == 1

    def test_minimum_one_attempt(self):
        """Test attempt budget lower bound."""
        assert RetryPolicy(max_attempts=0).max_attempts == 1


class TestUpsertExecutor:
    """Test asynchronous batch writes."""

    def test_writes_all_batches(self, target_pool, upsert_recorder):
        """Test that finish() waits for every batch and credits the counter."""
        counter = RowCounter("users")
        with UpsertExecutor(target_pool, max_in_flight=2) as executor:
            executor.start(make_table(), [(1, "a"), (2, "b")], counter)
            executor.start(make_table(), [(3, "c")], counter)
            executor.finish()

        assert counter.value == 3
        assert sorted(len(rows) for _, _, _, rows in upsert_recorder.calls) == [1, 2]
        path, columns, keys, _ = upsert_recorder.calls[0]
        assert path == TablePath("public", "users")
        assert columns == ["id", "name"]
        assert keys == ("id",)
        for conn in target_pool.connections:
            conn.commit.assert_called_once()

    def test_rows_are_copied(self, target_pool, upsert_recorder):
        """Test that the caller may reuse its batch list."""
        counter = RowCounter("users")
        batch = [(1, "a")]
        executor = UpsertExecutor(target_pool, max_in_flight=1)
        executor.start(make_table(), batch, counter)
        batch.clear()
        executor.finish()

        assert upsert_recorder.calls[0][3] == [(1, "a")]

    def test_empty_batch_ignored(self, target_pool, upsert_recorder):
        """Test that empty batches are not written."""
        executor = UpsertExecutor(target_pool)
        executor.start(make_table(), [], RowCounter("users"))
        executor.finish()

        assert upsert_recorder.calls == []

    def test_retries_transient_write_errors(self, target_pool, monkeypatch):
        """Test that a transient failure is retried on a fresh connection."""
        outcomes = [psycopg2.OperationalError("reset"), (1, 0)]

        def flaky_upsert(conn, path, columns, key_columns, rows):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        monkeypatch.setattr('odbc_pg_loader.upsert.upsert_rows', flaky_upsert)
        counter = RowCounter("users")
        executor = UpsertExecutor(target_pool)
        executor.start(make_table(), [(1, "a")], counter)
        executor.finish()

        assert counter.value == 1
        assert len(target_pool.connections) == 2

    def test_failure_raised_by_finish(self, target_pool, monkeypatch):
        """Test that a failed batch surfaces as UpsertError."""
        monkeypatch.setattr(
            'odbc_pg_loader.upsert.upsert_rows',
            Mock(side_effect=ValueError("constraint violated")),
        )
        counter = RowCounter("users")
        executor = UpsertExecutor(target_pool)
        executor.start(make_table(), [(1, "a"), (2, "b")], counter)

        with pytest.raises(UpsertError, match="constraint violated"):
            executor.finish()
        assert counter.value == 0
        assert counter.failed == 2

    def test_no_new_batches_after_failure(self, target_pool, monkeypatch):
        """Test that start() fails fast once a batch has failed."""
        monkeypatch.setattr(
            'odbc_pg_loader.upsert.upsert_rows',
            Mock(side_effect=ValueError("constraint violated")),
        )
        executor = UpsertExecutor(target_pool, max_in_flight=1)
        executor.start(make_table(), [(1, "a")], RowCounter("users"))

        with pytest.raises(UpsertError, match="Earlier write"):
            executor.start(make_table(), [(2, "b")], RowCounter("users"))
        with pytest.raises(UpsertError):
            executor.finish()
