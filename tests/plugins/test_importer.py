"""
Tests for Load Phase Orchestration Module

These tests validate table list parsing, job preparation and the concurrent
load of several tables, including isolation of failing tables.
"""

import logging
from unittest.mock import patch

import pytest

from odbc_pg_loader.config import LoaderSettings
from odbc_pg_loader.importer import (
    blob_table_name,
    build_table_jobs,
    expand_include_tables_param,
    load_tables,
    parse_include_tables,
    parse_schema_table,
    summarize_outcomes,
)
from odbc_pg_loader.load_task import LoadState, TableJob
from odbc_pg_loader.source_metadata import ColumnInfo, TableMetadata
from odbc_pg_loader.source_types import SourceType
from odbc_pg_loader.target_types import SYNTH_KEY_FIELD, TargetKind, TargetSchema, TargetTable, TargetType


SETTINGS = LoaderSettings(progress_log_interval=0, worker_pool_size=2, upsert_max_in_flight=1)
DESCRIPTION = [("code", str, None, None, None, None, True)]


def make_job(name, kind):
    metadata = TableMetadata("dbo", name, [ColumnInfo("code", SourceType.VARCHAR)])
    target = TargetTable(name, TargetSchema([("code", TargetType(kind, True))], key_columns=["code"]))
    return TableJob("dbo", name, metadata=metadata, target=target)


class TestTableListParsing:
    """Test include_tables handling."""

    def test_parse_schema_table(self):
        """Test simple and bracketed entries."""
        assert parse_schema_table("dbo.Users") == ("dbo", "Users")
        assert parse_schema_table(" [dbo].[Order Lines] ") == ("dbo", "Order Lines")

    @pytest.mark.parametrize("entry", ["Users", ".Users", "dbo."])
    def test_parse_schema_table_invalid(self, entry):
        """Test rejection of entries without schema or table."""
        with pytest.raises(ValueError, match="Invalid table format"):
            parse_schema_table(entry)

    @pytest.mark.parametrize("raw,expected", [
        (["dbo.A", "dbo.B"], ["dbo.A", "dbo.B"]),
        ('["dbo.A", "sales.B"]', ["dbo.A", "sales.B"]),
        ("dbo.A, dbo.B", ["dbo.A", "dbo.B"]),
        (["dbo.A,dbo.B", "dbo.C"], ["dbo.A", "dbo.B", "dbo.C"]),
        ("", []),
        (None, []),
    ])
    def test_expand_include_tables(self, raw, expected):
        """Test the accepted parameter formats."""
        assert expand_include_tables_param(raw) == expected

    def test_parse_include_tables_dedupes(self):
        """Test ordered de-duplication."""
        assert parse_include_tables(["dbo.A", "dbo.B", "dbo.A"]) == [("dbo", "A"), ("dbo", "B")]

    def test_parse_include_tables_empty(self):
        """Test that an empty selection is rejected."""
        with pytest.raises(ValueError, match="required"):
            parse_include_tables([])

    def test_blob_table_name(self):
        """Test auxiliary table naming."""
        assert blob_table_name("docs", "body") == "docs_body"


class TestBuildTableJobs:
    """Test job preparation."""

    @pytest.fixture
    def pools(self, make_source_pool, target_pool):
        return make_source_pool(DESCRIPTION, []), target_pool

    def test_resolves_metadata_and_targets(self, pools):
        """Test a table with one BLOB column and its auxiliary table."""
        source_pool, target_pool = pools
        metadata = TableMetadata("dbo", "docs", [
            ColumnInfo("id", SourceType.INTEGER),
            ColumnInfo("body", SourceType.WLONGVARCHAR),
        ])
        main_schema = TargetSchema([("id", TargetType(TargetKind.INT32, True))], key_columns=["id"])

        with patch('odbc_pg_loader.importer.read_table_metadata', return_value=metadata), \
                patch('odbc_pg_loader.importer.read_target_schema', return_value=main_schema) as read_target:
            jobs = build_table_jobs([("dbo", "docs")], source_pool, target_pool)

        job = jobs[0]
        assert job.valid and not job.failure
        assert job.target.name == "docs"
        assert job.target.path(target_pool.database).schema == "public"
        assert job.blob_targets["body"].name == "docs_body"
        assert [c[0][1:] for c in read_target.call_args_list] == [
            ("public", "docs"),
            ("public", "docs_body"),
        ]

    def test_missing_aux_table_leaves_column_unmapped(self, pools):
        """Test that an absent auxiliary table is tolerated."""
        source_pool, target_pool = pools
        metadata = TableMetadata("dbo", "docs", [ColumnInfo("body", SourceType.WLONGVARCHAR)])
        main_schema = TargetSchema([("body", TargetType(TargetKind.INT64, True))], key_columns=["body"])

        with patch('odbc_pg_loader.importer.read_table_metadata', return_value=metadata), \
                patch('odbc_pg_loader.importer.read_target_schema',
                      side_effect=[main_schema, ValueError("does not exist")]):
            jobs = build_table_jobs([("dbo", "docs")], source_pool, target_pool, target_schema="stage")

        assert not jobs[0].failure
        assert jobs[0].blob_targets == {}
        assert jobs[0].target.schema == "stage"

    def test_source_metadata_error_marks_invalid(self, pools):
        """Test that unreadable source tables are marked invalid."""
        source_pool, target_pool = pools
        with patch('odbc_pg_loader.importer.read_table_metadata', side_effect=ValueError("not found")):
            jobs = build_table_jobs([("dbo", "ghost")], source_pool, target_pool)

        assert jobs[0].valid is False
        assert jobs[0].failure is False

    def test_target_error_marks_failure(self, pools):
        """Test that a missing target table fails the job."""
        source_pool, target_pool = pools
        metadata = TableMetadata("dbo", "users", [ColumnInfo("id", SourceType.INTEGER)])
        with patch('odbc_pg_loader.importer.read_table_metadata', return_value=metadata), \
                patch('odbc_pg_loader.importer.read_target_schema', side_effect=ValueError("does not exist")):
            jobs = build_table_jobs([("dbo", "users")], source_pool, target_pool)

        assert jobs[0].valid is True
        assert jobs[0].failure is True


    def test_keyless_target_marks_failure(self, pools):
        """Test that targets without primary key or synthetic key are refused."""
        source_pool, target_pool = pools
        metadata = TableMetadata("dbo", "audit", [ColumnInfo("msg", SourceType.VARCHAR)])
        keyless = TargetSchema([("msg", TargetType(TargetKind.TEXT, True))])
        with patch('odbc_pg_loader.importer.read_table_metadata', return_value=metadata), \
                patch('odbc_pg_loader.importer.read_target_schema', return_value=keyless):
            jobs = build_table_jobs([("dbo", "audit")], source_pool, target_pool)

        assert jobs[0].failure is True
        assert jobs[0].target is None

    def test_synth_key_target_accepted(self, pools):
        """Test that a synthetic key column serves as the conflict key."""
        source_pool, target_pool = pools
        metadata = TableMetadata("dbo", "audit", [ColumnInfo("msg", SourceType.VARCHAR)])
        keyed = TargetSchema([
            ("msg", TargetType(TargetKind.TEXT, True)),
            (SYNTH_KEY_FIELD, TargetType(TargetKind.BYTES, True)),
        ])
        with patch('odbc_pg_loader.importer.read_table_metadata', return_value=metadata), \
                patch('odbc_pg_loader.importer.read_target_schema', return_value=keyed):
            jobs = build_table_jobs([("dbo", "audit")], source_pool, target_pool)

        assert jobs[0].failure is False
        assert jobs[0].target.fields.key_columns == (SYNTH_KEY_FIELD,)


class TestLoadTables:
    """Test the concurrent load phase."""

    def test_sibling_tables_isolated(self, make_source_pool, target_pool, upsert_recorder):
        """Test that one failing table does not affect the others."""
        source_pool = make_source_pool(DESCRIPTION, [("abc",), ("def",)])
        good = make_job("good", TargetKind.TEXT)
        bad = make_job("bad", TargetKind.INT32)
        also_good = make_job("also_good", TargetKind.TEXT)

        outcomes = load_tables([good, bad, also_good], source_pool, target_pool, SETTINGS)

        assert [o.job for o in outcomes] == [good, bad, also_good]
        assert [o.state for o in outcomes] == [LoadState.COMPLETED, LoadState.FAILED, LoadState.COMPLETED]
        assert outcomes[0].rows_copied == 2
        assert outcomes[2].rows_copied == 2
        assert bad.failure is True
        assert upsert_recorder.rows_for("good") == [("abc",), ("def",)]
        assert upsert_recorder.rows_for("bad") == []

    def test_failed_jobs_not_submitted(self, make_source_pool, target_pool, upsert_recorder):
        """Test that jobs failed during preparation are left out."""
        source_pool = make_source_pool(DESCRIPTION, [("abc",)])
        failed = make_job("failed", TargetKind.TEXT)
        failed.failure = True
        ok = make_job("ok", TargetKind.TEXT)

        outcomes = load_tables([failed, ok], source_pool, target_pool, SETTINGS)

        assert [o.job for o in outcomes] == [ok]
        assert source_pool.acquired == 1

    def test_invalid_jobs_skipped(self, make_source_pool, target_pool, upsert_recorder):
        """Test that invalid jobs produce SKIPPED outcomes."""
        source_pool = make_source_pool(DESCRIPTION, [])
        invalid = TableJob("dbo", "ghost", valid=False)

        outcomes = load_tables([invalid], source_pool, target_pool, SETTINGS)

        assert outcomes[0].state is LoadState.SKIPPED
        assert source_pool.acquired == 0

    def test_nothing_to_load(self, make_source_pool, target_pool, caplog):
        """Test the empty run."""
        failed = make_job("failed", TargetKind.TEXT)
        failed.failure = True

        assert load_tables([failed], make_source_pool(DESCRIPTION, []), target_pool, SETTINGS) == []
        assert "No valid tables to be loaded" in caplog.text

    def test_completion_logged(self, make_source_pool, target_pool, upsert_recorder, caplog):
        """Test the completion summary line."""
        source_pool = make_source_pool(DESCRIPTION, [("abc",)])
        with caplog.at_level(logging.INFO, logger="odbc_pg_loader.importer"):
            load_tables(
                [make_job("a", TargetKind.TEXT), make_job("b", TargetKind.INT32)],
                source_pool, target_pool, SETTINGS,
            )

        assert "Table data load completed 1 of 2 tasks." in caplog.text


class TestSummarizeOutcomes:
    """Test the run summary."""

    def test_summary(self, make_source_pool, target_pool, upsert_recorder):
        """Test counts, failed tables and unsubmitted jobs."""
        source_pool = make_source_pool(DESCRIPTION, [("abc",)])
        ok = make_job("ok", TargetKind.TEXT)
        bad = make_job("bad", TargetKind.INT32)
        invalid = TableJob("dbo", "ghost", valid=False)
        unresolved = make_job("unresolved", TargetKind.TEXT)
        unresolved.failure = True
        jobs = [ok, bad, invalid, unresolved]

        summary = summarize_outcomes(jobs, load_tables(jobs, source_pool, target_pool, SETTINGS))

        assert summary["status"] == "partial_failure"
        assert summary["tables_total"] == 4
        assert summary["tables_loaded"] == 1
        assert summary["total_rows"] == 1
        assert sorted(summary["tables_failed"]) == ["dbo.bad", "dbo.unresolved"]
        assert summary["tables_skipped"] == ["dbo.ghost"]

    def test_all_loaded(self):
        """Test the success status."""
        assert summarize_outcomes([], [])["status"] == "success"
