"""
Tests for the ODBC to PostgreSQL Load DAG

These tests parse the DAG folder and check the DAG structure and parameters.
"""

import os

import pytest

pytest.importorskip("airflow")

from airflow.models import DagBag  # noqa: E402

DAG_FOLDER = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'dags'))


@pytest.fixture(scope="module")
def dag_bag():
    """Create a DagBag for testing."""
    return DagBag(dag_folder=DAG_FOLDER, include_examples=False)


class TestOdbcToPostgresLoadDag:
    """Test DAG definition."""

    def test_dag_loads_without_errors(self, dag_bag):
        """Test that the DAG file imports cleanly."""
        assert dag_bag.import_errors == {}
        assert "odbc_to_postgres_load" in dag_bag.dags

    def test_dag_has_expected_params(self, dag_bag):
        """Test DAG parameters."""
        dag = dag_bag.dags["odbc_to_postgres_load"]
        for param in [
            "source_conn_id",
            "target_conn_id",
            "include_tables",
            "target_schema",
            "max_batch_rows",
            "max_blob_rows",
            "worker_pool_size",
        ]:
            assert param in dag.params, f"Missing expected parameter: {param}"

    def test_task_order(self, dag_bag):
        """Test that tables are prepared, loaded, then summarized."""
        dag = dag_bag.dags["odbc_to_postgres_load"]
        prepare = dag.get_task("prepare_tables")
        load = dag.get_task("load_table_data")
        summary = dag.get_task("generate_load_summary")

        assert load.task_id in prepare.downstream_task_ids
        assert summary.task_id in load.downstream_task_ids
