"""
Synthetic Key Module

Derives a deterministic surrogate key for target tables without a natural key,
as a hash over the row's non-BLOB column values.
"""

from typing import Any, Sequence
import base64
import hashlib

from odbc_pg_loader.conversion import value_text
from odbc_pg_loader.source_types import is_blob

# Separator appended after every column value
SEPARATOR = "\x02"


def calc_synth_key(row: Sequence[Any], column_types: Sequence[Any]) -> bytes:
    """
    Calculate the synthetic key of one source row.

    Iterates the result set columns in their natural order and skips columns
    whose source type is a BLOB type, so the key depends only on non-BLOB values
    and never on the order of the column bindings.

    Args:
        row: Source row values in result set order
        column_types: Source wire types of the result set columns

    Returns:
        URL-safe base64 of the SHA-256 digest, unpadded, as ASCII bytes
    """
    parts = []
    for value, sql_type in zip(row, column_types):
        if is_blob(sql_type):
            continue
        parts.append(value_text(value))
        parts.append(SEPARATOR)
    digest = hashlib.sha256("".join(parts).encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=")
