"""
Source Metadata Module

Describes the columns of a source table as reported by the ODBC catalog, and
builds the statement that reads all of them.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from odbc_pg_loader.source_types import SourceType, is_blob, to_source_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnInfo:
    """
    One source column.

    Attributes:
        name: Column name
        sql_type: ODBC SQL type code declared in the catalog
        type_name: Driver specific type name (e.g. 'nvarchar')
        blob_as_object: Values arrive as LOB objects with a read() method
            rather than as complete bytes/str values
    """

    name: str
    sql_type: int
    type_name: str = ""
    blob_as_object: bool = False

    @property
    def source_type(self) -> SourceType:
        return to_source_type(self.sql_type)

    @property
    def is_blob(self) -> bool:
        return is_blob(self.sql_type)


@dataclass
class TableMetadata:
    """Ordered source columns of one table and the statement reading them."""

    schema: str
    table: str
    columns: List[ColumnInfo] = field(default_factory=list)
    quote_char: str = '"'

    def __post_init__(self):
        self._by_name: Dict[str, ColumnInfo] = {c.name: c for c in self.columns}

    def find_column(self, name: str) -> Optional[ColumnInfo]:
        return self._by_name.get(name)

    @property
    def blob_columns(self) -> List[ColumnInfo]:
        return [c for c in self.columns if c.is_blob]

    def _quote(self, identifier: str) -> str:
        q = self.quote_char
        return f"{q}{identifier.replace(q, q + q)}{q}"

    @property
    def basic_sql(self) -> str:
        """SELECT of every column, in catalog order."""
        if not self.columns:
            raise ValueError(f"No columns known for source table {self.schema}.{self.table}")
        cols = ', '.join(self._quote(c.name) for c in self.columns)
        return f"SELECT {cols} FROM {self._quote(self.schema)}.{self._quote(self.table)}"


def read_table_metadata(
    conn,
    schema_name: str,
    table_name: str,
    blob_as_object: bool = False,
) -> TableMetadata:
    """
    Read column metadata of a source table through the ODBC catalog.

    Args:
        conn: pyodbc connection
        schema_name: Source schema
        table_name: Source table
        blob_as_object: Whether the driver returns BLOB values as LOB objects

    Returns:
        TableMetadata with columns in ordinal order

    Raises:
        ValueError: If the table has no visible columns
    """
    import pyodbc

    quote_char = (conn.getinfo(pyodbc.SQL_IDENTIFIER_QUOTE_CHAR) or '"').strip() or '"'
    cursor = conn.cursor()
    try:
        rows = cursor.columns(table=table_name, schema=schema_name).fetchall()
    finally:
        cursor.close()

    if not rows:
        raise ValueError(f"Source table {schema_name}.{table_name} not found or has no columns")

    rows = sorted(rows, key=lambda r: r.ordinal_position)
    columns = []
    for row in rows:
        info = ColumnInfo(
            name=row.column_name,
            sql_type=row.data_type,
            type_name=row.type_name or "",
            blob_as_object=blob_as_object and is_blob(row.data_type),
        )
        columns.append(info)

    metadata = TableMetadata(schema_name, table_name, columns, quote_char)
    logger.info(
        f"Source table {schema_name}.{table_name}: {len(columns)} columns, "
        f"{len(metadata.blob_columns)} BLOB columns"
    )
    return metadata
