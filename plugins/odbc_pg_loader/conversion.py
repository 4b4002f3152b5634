"""
Value Conversion Module

Chooses how each source column is converted into its target column and applies
that conversion to individual values.

Resolution happens once per column per table (the result set column types are
stable for the duration of one query); conversion happens once per value.
"""

from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from decimal import Context, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional
import logging
import struct

from odbc_pg_loader.source_types import (
    CHARACTER_TYPES,
    DATE_TYPES,
    NUMERIC_TYPES,
    TIMESTAMP_TYPES,
    to_source_type,
)
from odbc_pg_loader.target_types import TablePath, TargetKind, TargetType

logger = logging.getLogger(__name__)


class ResolutionError(ValueError):
    """No conversion exists for a (target type, source type) pair."""


class ConversionError(ValueError):
    """A single field could not be converted; carries the target column name."""

    def __init__(self, column: str, cause: BaseException):
        super().__init__(f"Failed conversion for column {column}: {cause}")
        self.column = column


class ConversionMode(Enum):
    """All the supported source -> target conversions."""

    BLOB_STREAM = "blob_stream"
    BLOB_OBJECT = "blob_object"
    BINARY = "binary"
    BOOL = "bool"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT = "float"
    DOUBLE = "double"
    DECIMAL = "decimal"
    DATE = "date"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"
    TEXT = "text"

    DATE_INT32 = "date_int32"
    DATE_INT64 = "date_int64"
    DATE_UINT32 = "date_uint32"
    DATE_UINT64 = "date_uint64"
    DATE_STR = "date_str"

    TS_DATE = "ts_date"
    TS_INT64 = "ts_int64"
    TS_UINT64 = "ts_uint64"

    INT_TO_BOOL = "int_to_bool"
    STR_TO_BOOL = "str_to_bool"


BLOB_MODES = frozenset({ConversionMode.BLOB_STREAM, ConversionMode.BLOB_OBJECT})


@dataclass(frozen=True)
class ColumnBinding:
    """
    Conversion settings for one mapped column.

    Attributes:
        source_index: 1-based position in the source result set
        target_index: 0-based position in the target row
        mode: Conversion mode
        blob_path: Auxiliary table location, only for BLOB modes
    """

    source_index: int
    target_index: int
    mode: ConversionMode
    blob_path: Optional[TablePath] = None


def choose_mode(target_type: TargetType, source_type: Any) -> ConversionMode:
    """
    Decide which conversion applies to a column.

    Args:
        target_type: Declared target column type (optionality is ignored)
        source_type: Source wire type code (ODBC code or SourceType)

    Returns:
        The ConversionMode to use for every value of the column

    Raises:
        ResolutionError: If the target kind cannot be filled from any source
    """
    kind = target_type.unwrap().kind
    source = to_source_type(source_type)

    if kind is TargetKind.DECIMAL:
        return ConversionMode.DECIMAL
    if kind is TargetKind.BOOL:
        if source in NUMERIC_TYPES:
            return ConversionMode.INT_TO_BOOL
        if source in CHARACTER_TYPES:
            return ConversionMode.STR_TO_BOOL
        return ConversionMode.BOOL
    if kind is TargetKind.DATE:
        if source in TIMESTAMP_TYPES:
            return ConversionMode.TS_DATE
        return ConversionMode.DATE
    if kind is TargetKind.DATETIME:
        return ConversionMode.DATETIME
    if kind is TargetKind.TIMESTAMP:
        return ConversionMode.TIMESTAMP
    if kind is TargetKind.FLOAT:
        return ConversionMode.FLOAT
    if kind is TargetKind.DOUBLE:
        return ConversionMode.DOUBLE
    if kind is TargetKind.INT16:
        return ConversionMode.INT16
    if kind is TargetKind.INT32:
        if source in DATE_TYPES:
            return ConversionMode.DATE_INT32
        return ConversionMode.INT32
    if kind is TargetKind.INT64:
        if source in DATE_TYPES:
            return ConversionMode.DATE_INT64
        if source in TIMESTAMP_TYPES:
            return ConversionMode.TS_INT64
        return ConversionMode.INT64
    if kind is TargetKind.UINT32:
        if source in DATE_TYPES:
            return ConversionMode.DATE_UINT32
        return ConversionMode.UINT32
    if kind is TargetKind.UINT64:
        if source in DATE_TYPES:
            return ConversionMode.DATE_UINT64
        if source in TIMESTAMP_TYPES:
            return ConversionMode.TS_UINT64
        return ConversionMode.UINT64
    if kind is TargetKind.TEXT:
        if source in DATE_TYPES:
            return ConversionMode.DATE_STR
        return ConversionMode.TEXT
    if kind is TargetKind.BYTES:
        return ConversionMode.BINARY

    raise ResolutionError(
        f"Unsupported conversion: target type {target_type} from source type {source.name}"
    )


# Falsy first characters: N(o), 0, F(alse), Cyrillic Н(ет) and Л(ожь)
FALSE_CHARS = frozenset({"N", "0", "F", "Н", "Л"})


def str_to_bool(value: Optional[str]) -> bool:
    """
    Interpret a character value as a boolean.

    Empty or NULL strings are false; otherwise only the first character is
    examined, case-insensitively, against FALSE_CHARS.
    """
    if value is None:
        return False
    value = value.strip()
    if not value:
        return False
    return value[0].upper() not in FALSE_CHARS


def date_to_int(value: date) -> int:
    """Encode a date as the integer YYYYMMDD."""
    return value.year * 10000 + value.month * 100 + value.day


def date_to_str(value: date) -> str:
    """Encode a date as the text YYYY/MM/DD."""
    return f"{value.year}/{value.month:02d}/{value.day:02d}"


def value_text(value: Any) -> str:
    """
    Text representation of a source value.

    Byte strings are rendered as lowercase hex, NULL as the empty string.
    """
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


def _make_decimal(value: Any, precision: int, scale: int) -> Decimal:
    """Build a decimal of the declared precision/scale from a native number."""
    return Decimal(value).quantize(
        Decimal(1).scaleb(-scale), context=Context(prec=precision)
    )


def _make_decimal_from_text(value: Any, precision: int, scale: int) -> Decimal:
    """Build a decimal of the declared precision/scale from its text form."""
    return Decimal(value_text(value).strip()).quantize(
        Decimal(1).scaleb(-scale), context=Context(prec=precision)
    )


def _detect_decimal_issue() -> bool:
    try:
        return _make_decimal(Decimal(1), 22, 9).compare(Decimal(1)) != 0
    except InvalidOperation:
        return True


# Checked once: when native construction cannot round-trip 1, build from text
DECIMAL_LOSES_PRECISION = _detect_decimal_issue()
if DECIMAL_LOSES_PRECISION:
    logger.warning("Native decimal construction loses precision, using text representation")


INT16_RANGE = (-2 ** 15, 2 ** 15 - 1)
INT32_RANGE = (-2 ** 31, 2 ** 31 - 1)
INT64_RANGE = (-2 ** 63, 2 ** 63 - 1)
UINT32_RANGE = (0, 2 ** 32 - 1)
UINT64_RANGE = (0, 2 ** 64 - 1)

EPOCH = datetime(1970, 1, 1)


def _checked_int(value: Any, bounds) -> int:
    result = int(value)
    low, high = bounds
    if result < low or result > high:
        raise OverflowError(f"value {result} out of range [{low}, {high}]")
    return result


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise TypeError(f"cannot read {type(value).__name__} as a date")


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, dt_time())
    if isinstance(value, str):
        return datetime.fromisoformat(value.strip())
    raise TypeError(f"cannot read {type(value).__name__} as a timestamp")


def _epoch_millis(value: Any) -> int:
    """Milliseconds since the Unix epoch; naive timestamps are taken as UTC."""
    ts = _as_datetime(value)
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return (ts - EPOCH) // timedelta(milliseconds=1)


def _as_float32(value: Any) -> float:
    return struct.unpack('>f', struct.pack('>f', float(value)))[0]


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode('utf-8')
    raise TypeError(f"cannot read {type(value).__name__} as bytes")


def convert_value(value: Any, mode: ConversionMode, target_type: TargetType) -> Any:
    """
    Convert one raw source value into the target representation.

    Args:
        value: Raw value as fetched from the source cursor
        mode: Resolved conversion mode of the column
        target_type: Declared target type (used for decimal precision/scale)

    Returns:
        Target-typed Python value, or None for an absent source value

    Raises:
        ValueError: For BLOB modes, which are handled by the BlobSaver
        Exception: Whatever the individual conversion raises
    """
    if value is None:
        return None

    if mode is ConversionMode.BINARY:
        return _as_bytes(value)
    if mode is ConversionMode.BOOL:
        return bool(value)
    if mode is ConversionMode.INT_TO_BOOL:
        return int(value) != 0
    if mode is ConversionMode.STR_TO_BOOL:
        return str_to_bool(value_text(value))
    if mode is ConversionMode.DATE:
        return _as_date(value)
    if mode is ConversionMode.DATE_INT32:
        return _checked_int(date_to_int(_as_date(value)), INT32_RANGE)
    if mode is ConversionMode.DATE_UINT32:
        return _checked_int(date_to_int(_as_date(value)), UINT32_RANGE)
    if mode is ConversionMode.DATE_INT64:
        return _checked_int(date_to_int(_as_date(value)), INT64_RANGE)
    if mode is ConversionMode.DATE_UINT64:
        return _checked_int(date_to_int(_as_date(value)), UINT64_RANGE)
    if mode is ConversionMode.DATE_STR:
        return date_to_str(_as_date(value))
    if mode is ConversionMode.DATETIME:
        return _as_datetime(value).replace(microsecond=0)
    if mode is ConversionMode.TIMESTAMP:
        return _as_datetime(value)
    if mode is ConversionMode.TS_DATE:
        return _as_datetime(value).date()
    if mode is ConversionMode.TS_INT64:
        return _checked_int(_epoch_millis(value), INT64_RANGE)
    if mode is ConversionMode.TS_UINT64:
        return _checked_int(_epoch_millis(value), UINT64_RANGE)
    if mode is ConversionMode.FLOAT:
        return _as_float32(value)
    if mode is ConversionMode.DOUBLE:
        return float(value)
    if mode is ConversionMode.INT16:
        return _checked_int(value, INT16_RANGE)
    if mode is ConversionMode.INT32:
        return _checked_int(value, INT32_RANGE)
    if mode is ConversionMode.UINT32:
        return _checked_int(value, UINT32_RANGE)
    if mode is ConversionMode.INT64:
        return _checked_int(value, INT64_RANGE)
    if mode is ConversionMode.UINT64:
        return _checked_int(value, UINT64_RANGE)
    if mode is ConversionMode.TEXT:
        return value_text(value)
    if mode is ConversionMode.DECIMAL:
        ttype = target_type.unwrap()
        if DECIMAL_LOSES_PRECISION:
            return _make_decimal_from_text(value, ttype.precision, ttype.scale)
        return _make_decimal(value, ttype.precision, ttype.scale)

    raise ValueError(f"Unsupported conversion: {mode}")
