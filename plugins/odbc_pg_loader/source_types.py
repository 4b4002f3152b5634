"""
Source Wire Type Module

ODBC SQL type codes as reported by the source driver, plus the type groups the
conversion resolver and the synthetic key generator care about.
"""

from datetime import date, datetime, time as dt_time
from decimal import Decimal
from enum import IntEnum
from typing import Any, Optional
from uuid import UUID
import logging

logger = logging.getLogger(__name__)


class SourceType(IntEnum):
    """ODBC SQL data type codes (sql.h / sqlext.h)."""

    CHAR = 1
    NUMERIC = 2
    DECIMAL = 3
    INTEGER = 4
    SMALLINT = 5
    FLOAT = 6
    REAL = 7
    DOUBLE = 8
    DATETIME = 9
    VARCHAR = 12
    TYPE_DATE = 91
    TYPE_TIME = 92
    TYPE_TIMESTAMP = 93
    LONGVARCHAR = -1
    BINARY = -2
    VARBINARY = -3
    LONGVARBINARY = -4
    BIGINT = -5
    TINYINT = -6
    BIT = -7
    WCHAR = -8
    WVARCHAR = -9
    WLONGVARCHAR = -10
    GUID = -11
    SS_VARIANT = -150
    SS_XML = -152
    SS_TIME2 = -154
    SS_TIMESTAMPOFFSET = -155
    UNKNOWN = 0


# Types the resolver treats as numbers when the target is a boolean
NUMERIC_TYPES = frozenset({
    SourceType.SMALLINT,
    SourceType.INTEGER,
    SourceType.BIGINT,
    SourceType.DECIMAL,
    SourceType.NUMERIC,
    SourceType.FLOAT,
    SourceType.DOUBLE,
})

CHARACTER_TYPES = frozenset({
    SourceType.CHAR,
    SourceType.WCHAR,
    SourceType.VARCHAR,
    SourceType.WVARCHAR,
})

DATE_TYPES = frozenset({SourceType.TYPE_DATE})

TIMESTAMP_TYPES = frozenset({SourceType.TYPE_TIMESTAMP, SourceType.DATETIME})

# Unbounded character/binary columns are externalized to auxiliary tables
BLOB_TYPES = frozenset({
    SourceType.LONGVARCHAR,
    SourceType.WLONGVARCHAR,
    SourceType.LONGVARBINARY,
    SourceType.SS_XML,
})


# pyodbc reports result column types as Python classes in cursor.description
PYTHON_TYPE_MAPPING = {
    bool: SourceType.BIT,
    int: SourceType.BIGINT,
    float: SourceType.DOUBLE,
    Decimal: SourceType.DECIMAL,
    str: SourceType.WVARCHAR,
    bytes: SourceType.VARBINARY,
    bytearray: SourceType.VARBINARY,
    datetime: SourceType.TYPE_TIMESTAMP,
    date: SourceType.TYPE_DATE,
    dt_time: SourceType.TYPE_TIME,
    UUID: SourceType.GUID,
}


def to_source_type(code: Any) -> SourceType:
    """
    Normalize a driver-reported type code to a SourceType.

    Accepts ODBC integer codes (from catalog functions) and the Python classes
    pyodbc places in cursor.description.

    Args:
        code: Integer ODBC type code or Python type

    Returns:
        The matching SourceType, or SourceType.UNKNOWN
    """
    if isinstance(code, SourceType):
        return code
    if isinstance(code, int) and not isinstance(code, bool):
        try:
            return SourceType(code)
        except ValueError:
            logger.debug(f"Unknown ODBC type code {code}")
            return SourceType.UNKNOWN
    if isinstance(code, type):
        return PYTHON_TYPE_MAPPING.get(code, SourceType.UNKNOWN)
    return SourceType.UNKNOWN


def is_blob(sql_type: Optional[int]) -> bool:
    """Check whether a source type is externalized as a BLOB."""
    if sql_type is None:
        return False
    return to_source_type(sql_type) in BLOB_TYPES
