"""
Loader Configuration Module

Settings of the load phase, read from environment variables with defaults.
DAG params override individual values through LoaderSettings.with_overrides().

Environment variables:
- MAX_BATCH_ROWS: Rows per main table write batch (default 1000)
- MAX_BLOB_ROWS: Rows per auxiliary BLOB table write batch (default 200)
- WORKER_POOL_SIZE: Concurrent table loads (default 4)
- UPSERT_MAX_IN_FLIGHT: Concurrent writes per table load (default 2)
- RETRY_MAX_ATTEMPTS: Attempts per write (default 5)
- RETRY_BACKOFF_SECONDS: Exponential backoff multiplier (default 0.5)
- RETRY_MAX_BACKOFF_SECONDS: Longest single backoff (default 30)
- PROGRESS_LOG_INTERVAL: Seconds between progress log lines (default 30)
- MAX_SOURCE_CONNECTIONS: Source pool size (default: worker pool size)
- MAX_PG_CONNECTIONS: Target pool size (default: workers * writes in flight)
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional
import logging
import os

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got '{raw}'")
    return max(minimum, value)


def _env_optional_int(name: str, minimum: int = 1) -> Optional[int]:
    if not os.environ.get(name, '').strip():
        return None
    return _env_int(name, minimum, minimum)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got '{raw}'")
    return max(minimum, value)


@dataclass(frozen=True)
class LoaderSettings:
    """Knobs of the load phase."""

    max_batch_rows: int = 1000
    max_blob_rows: int = 200
    worker_pool_size: int = 4
    upsert_max_in_flight: int = 2
    retry_max_attempts: int = 5
    retry_backoff_seconds: float = 0.5
    retry_max_backoff_seconds: float = 30.0
    progress_log_interval: float = 30.0
    max_source_connections: Optional[int] = None
    max_pg_connections: Optional[int] = None

    @classmethod
    def from_env(cls) -> "LoaderSettings":
        """Build settings from environment variables."""
        settings = cls(
            max_batch_rows=_env_int('MAX_BATCH_ROWS', 1000),
            max_blob_rows=_env_int('MAX_BLOB_ROWS', 200),
            worker_pool_size=_env_int('WORKER_POOL_SIZE', 4),
            upsert_max_in_flight=_env_int('UPSERT_MAX_IN_FLIGHT', 2),
            retry_max_attempts=_env_int('RETRY_MAX_ATTEMPTS', 5),
            retry_backoff_seconds=_env_float('RETRY_BACKOFF_SECONDS', 0.5),
            retry_max_backoff_seconds=_env_float('RETRY_MAX_BACKOFF_SECONDS', 30.0),
            progress_log_interval=_env_float('PROGRESS_LOG_INTERVAL', 30.0),
            max_source_connections=_env_optional_int('MAX_SOURCE_CONNECTIONS'),
            max_pg_connections=_env_optional_int('MAX_PG_CONNECTIONS'),
        )
        logger.debug(f"Loader settings from environment: {settings}")
        return settings

    def with_overrides(self, overrides: Dict[str, Any]) -> "LoaderSettings":
        """
        Return a copy with the given fields replaced.

        Keys that are not settings fields, and None values, are ignored.
        """
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        return replace(self, **changes)

    @property
    def source_connections(self) -> int:
        return self.max_source_connections or self.worker_pool_size

    @property
    def pg_connections(self) -> int:
        return self.max_pg_connections or self.worker_pool_size * self.upsert_max_in_flight
