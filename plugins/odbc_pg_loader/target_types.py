"""
Target Type Model Module

This module describes the value types of the target PostgreSQL tables as a
closed set of kinds with an optional wrapper, the ordered field list of a target
table, and the mapping from PostgreSQL column metadata onto that model.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


# Reserved column name of the generated surrogate key
SYNTH_KEY_FIELD = "_synth_key"

# Auxiliary BLOB table layout
BLOB_ID_FIELD = "id"
BLOB_DATA_FIELD = "data"

DEFAULT_DECIMAL_PRECISION = 22
DEFAULT_DECIMAL_SCALE = 9


class TargetKind(Enum):
    """Value kinds of the target store."""

    BOOL = "bool"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT = "float"
    DOUBLE = "double"
    DECIMAL = "decimal"
    DATE = "date"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"
    INTERVAL = "interval"
    TEXT = "text"
    BYTES = "bytes"
    JSON = "json"
    UUID = "uuid"


@dataclass(frozen=True)
class TargetType:
    """
    A target column type: a kind plus the optionality wrapper.

    Precision and scale only apply to DECIMAL.
    """

    kind: TargetKind
    optional: bool = False
    precision: int = DEFAULT_DECIMAL_PRECISION
    scale: int = DEFAULT_DECIMAL_SCALE

    def make_optional(self) -> "TargetType":
        if self.optional:
            return self
        return TargetType(self.kind, True, self.precision, self.scale)

    def unwrap(self) -> "TargetType":
        if not self.optional:
            return self
        return TargetType(self.kind, False, self.precision, self.scale)

    def __str__(self) -> str:
        name = self.kind.value
        if self.kind is TargetKind.DECIMAL:
            name = f"decimal({self.precision},{self.scale})"
        return f"optional<{name}>" if self.optional else name


class TablePath(NamedTuple):
    """Fully qualified target table location."""

    schema: str
    table: str

    def __str__(self) -> str:
        return f"{self.schema}.{self.table}"


class TargetSchema:
    """
    Ordered field list of a target table.

    Immutable after creation. A field named SYNTH_KEY_FIELD marks the table as
    keyed by a generated hash of the row content.
    """

    def __init__(
        self,
        fields: Iterable[Tuple[str, TargetType]],
        key_columns: Optional[Iterable[str]] = None,
    ):
        """
        Args:
            fields: Ordered (column name, type) pairs
            key_columns: Columns forming the upsert conflict target. Defaults
                to the synthetic key field when one is declared.
        """
        self._fields: Tuple[Tuple[str, TargetType], ...] = tuple(fields)
        self._positions: Dict[str, int] = {}
        for pos, (name, _) in enumerate(self._fields):
            if name in self._positions:
                raise ValueError(f"Duplicate target field '{name}'")
            self._positions[name] = pos

        keys = tuple(key_columns or ())
        if not keys and SYNTH_KEY_FIELD in self._positions:
            keys = (SYNTH_KEY_FIELD,)
        for key in keys:
            if key not in self._positions:
                raise ValueError(f"Key column '{key}' is not a target field")
        self._key_columns = keys

    @property
    def fields(self) -> Tuple[Tuple[str, TargetType], ...]:
        return self._fields

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self._fields]

    @property
    def key_columns(self) -> Tuple[str, ...]:
        return self._key_columns

    def __len__(self) -> int:
        return len(self._fields)

    def member_name(self, pos: int) -> str:
        return self._fields[pos][0]

    def member_type(self, pos: int) -> TargetType:
        return self._fields[pos][1]

    def position(self, name: str) -> Optional[int]:
        return self._positions.get(name)

    @property
    def has_synth_key(self) -> bool:
        return SYNTH_KEY_FIELD in self._positions

    @property
    def synth_key_pos(self) -> Optional[int]:
        return self._positions.get(SYNTH_KEY_FIELD)

    def make_optional(self) -> "TargetSchema":
        """Return a copy with every field wrapped as optional."""
        return TargetSchema(
            [(name, ttype.make_optional()) for name, ttype in self._fields],
            self._key_columns,
        )


@dataclass
class TargetTable:
    """A target table: name, optional explicit schema and field list."""

    name: str
    fields: TargetSchema
    schema: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    def path(self, database: str) -> TablePath:
        """
        Resolve the table location under the target database prefix.

        Args:
            database: Default target schema from the target connection pool

        Returns:
            TablePath of this table
        """
        return TablePath(self.schema or database, self.name)

    @property
    def has_synth_key(self) -> bool:
        return self.fields.has_synth_key

    @property
    def synth_key_pos(self) -> Optional[int]:
        return self.fields.synth_key_pos


def blob_table(name: str, schema: Optional[str] = None) -> TargetTable:
    """
    Build the auxiliary table definition holding externalized values.

    Args:
        name: Auxiliary table name
        schema: Optional explicit schema

    Returns:
        TargetTable with (id int64 key, data bytes) layout
    """
    fields = TargetSchema(
        [
            (BLOB_ID_FIELD, TargetType(TargetKind.INT64)),
            (BLOB_DATA_FIELD, TargetType(TargetKind.BYTES, optional=True)),
        ],
        key_columns=[BLOB_ID_FIELD],
    )
    return TargetTable(name=name, fields=fields, schema=schema)


# PostgreSQL information_schema data_type -> target kind
PG_TYPE_MAPPING = {
    "boolean": TargetKind.BOOL,
    "smallint": TargetKind.INT16,
    "integer": TargetKind.INT32,
    "bigint": TargetKind.INT64,
    "real": TargetKind.FLOAT,
    "double precision": TargetKind.DOUBLE,
    "numeric": TargetKind.DECIMAL,
    "date": TargetKind.DATE,
    "timestamp without time zone": TargetKind.TIMESTAMP,
    "timestamp with time zone": TargetKind.TIMESTAMP,
    "interval": TargetKind.INTERVAL,
    "text": TargetKind.TEXT,
    "character varying": TargetKind.TEXT,
    "character": TargetKind.TEXT,
    "bytea": TargetKind.BYTES,
    "json": TargetKind.JSON,
    "jsonb": TargetKind.JSON,
    "uuid": TargetKind.UUID,
}


def map_pg_type(
    data_type: str,
    numeric_precision: Optional[int] = None,
    numeric_scale: Optional[int] = None,
    datetime_precision: Optional[int] = None,
) -> TargetType:
    """
    Map a PostgreSQL column type onto the target type model.

    Timestamps declared with zero fractional digits map to DATETIME (second
    precision), all other timestamps to TIMESTAMP.

    Args:
        data_type: information_schema.columns.data_type value
        numeric_precision: Declared precision for numeric columns
        numeric_scale: Declared scale for numeric columns
        datetime_precision: Declared fractional digits for timestamps

    Returns:
        The non-optional TargetType

    Raises:
        ValueError: If the PostgreSQL type has no target kind
    """
    pg_type = data_type.lower().strip()
    if pg_type not in PG_TYPE_MAPPING:
        raise ValueError(f"Unsupported PostgreSQL type '{data_type}'")

    kind = PG_TYPE_MAPPING[pg_type]
    if kind is TargetKind.TIMESTAMP and datetime_precision == 0:
        kind = TargetKind.DATETIME
    if kind is TargetKind.DECIMAL:
        return TargetType(
            kind,
            precision=numeric_precision or DEFAULT_DECIMAL_PRECISION,
            scale=numeric_scale if numeric_scale is not None else DEFAULT_DECIMAL_SCALE,
        )
    return TargetType(kind)


TARGET_COLUMNS_SQL = """
    SELECT column_name, data_type, numeric_precision, numeric_scale, datetime_precision
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position
"""

TARGET_PK_SQL = """
    SELECT kcu.column_name
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name
     AND tc.table_schema = kcu.table_schema
     AND tc.table_name = kcu.table_name
    WHERE tc.constraint_type = 'PRIMARY KEY'
      AND tc.table_schema = %s AND tc.table_name = %s
    ORDER BY kcu.ordinal_position
"""


def read_target_schema(postgres_conn, schema_name: str, table_name: str) -> TargetSchema:
    """
    Build the TargetSchema of an existing PostgreSQL table.

    Every field is widened to optional, so that NULLs coming from the source
    never fail a write on account of the local type model.

    Args:
        postgres_conn: Active psycopg2 connection
        schema_name: Target schema
        table_name: Target table

    Returns:
        TargetSchema with the table's columns and primary key

    Raises:
        ValueError: If the table does not exist or has an unsupported column
    """
    with postgres_conn.cursor() as cursor:
        cursor.execute(TARGET_COLUMNS_SQL, (schema_name, table_name))
        columns = cursor.fetchall()
        cursor.execute(TARGET_PK_SQL, (schema_name, table_name))
        pk_columns = [row[0] for row in cursor.fetchall()]

    if not columns:
        raise ValueError(f"Target table {schema_name}.{table_name} does not exist")

    fields = []
    for column_name, data_type, precision, scale, dt_precision in columns:
        ttype = map_pg_type(data_type, precision, scale, dt_precision)
        fields.append((column_name, ttype.make_optional()))

    logger.debug(
        f"Read target schema {schema_name}.{table_name}: "
        f"{len(fields)} columns, key {pk_columns or 'none'}"
    )
    return TargetSchema(fields, pk_columns)
