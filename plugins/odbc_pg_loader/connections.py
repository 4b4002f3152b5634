"""
Connection Pool Module

Source side: a bounded pool of pyodbc connections. pyodbc connections are not
thread-safe, so every connection is used by one thread at a time; a load task
holds one for the whole scan of its table.

Target side: a psycopg2 ThreadedConnectionPool, the default target schema
("database" prefix of table paths) and the retry policy for writes.

Both can be configured from Airflow connection ids.
"""

from typing import Any, Dict, List, Optional
import contextlib
import logging
import queue
import threading

import pyodbc
from airflow.hooks.base import BaseHook
from airflow.providers.postgres.hooks.postgres import PostgresHook
from psycopg2 import pool as pg_pool

from odbc_pg_loader.upsert import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_ODBC_DRIVER = '{ODBC Driver 18 for SQL Server}'


def odbc_config_from_connection(odbc_conn_id: str) -> Dict[str, str]:
    """
    Build ODBC connection keywords from an Airflow connection.

    The driver defaults to the SQL Server ODBC driver and can be overridden,
    together with any other ODBC keyword, through the connection extras
    (e.g. {"driver": "{PostgreSQL Unicode}"}).

    Args:
        odbc_conn_id: Airflow connection ID of the source database

    Returns:
        Dictionary of ODBC connection keywords
    """
    conn = BaseHook.get_connection(odbc_conn_id)
    extras = dict(conn.extra_dejson or {})

    port = conn.port
    server = f"{conn.host},{port}" if port and port != 1433 else conn.host

    config = {
        'DRIVER': extras.pop('driver', DEFAULT_ODBC_DRIVER),
        'SERVER': server,
        'DATABASE': conn.schema,
        'TrustServerCertificate': 'yes',
    }

    if conn.login:
        config['UID'] = conn.login
        config['PWD'] = conn.password or ''
        config['Trusted_Connection'] = 'no'
    else:
        # Windows Authentication (Kerberos)
        config['Trusted_Connection'] = 'yes'

    for key, value in extras.items():
        config[key] = str(value)
    return config


def build_connection_string(config: Dict[str, str]) -> str:
    """Join ODBC keywords into a connection string, skipping empty values."""
    return ';'.join([f"{k}={v}" for k, v in config.items() if v])


class SourceConnectionPool:
    """
    Thread-safe pool of source pyodbc connections.

    A semaphore limits the total number of connections and a queue holds the
    idle ones for reuse.

    Usage:
        pool = SourceConnectionPool(config, max_conn=4)
        with pool.connection() as conn:
            cursor = conn.cursor()
    """

    def __init__(
        self,
        odbc_config: Dict[str, str],
        max_conn: int = 4,
        acquire_timeout: float = 120.0,
        connect_timeout: int = 30,
    ):
        """
        Args:
            odbc_config: ODBC keyword dict (DRIVER, SERVER, DATABASE, UID, PWD, ...)
            max_conn: Maximum concurrent connections (hard limit)
            acquire_timeout: Seconds to wait when the pool is exhausted
            connect_timeout: Login timeout for new connections
        """
        self._config = odbc_config
        self._max_conn = max_conn
        self._acquire_timeout = acquire_timeout
        self._connect_timeout = connect_timeout

        self._available: queue.Queue = queue.Queue()
        self._semaphore = threading.Semaphore(max_conn)
        self._all_connections: List[pyodbc.Connection] = []
        self._lock = threading.Lock()
        self._closed = False

        logger.info(f"Initializing source connection pool: max={max_conn}")

    @classmethod
    def from_conn_id(cls, odbc_conn_id: str, max_conn: int = 4, **kwargs) -> "SourceConnectionPool":
        return cls(odbc_config_from_connection(odbc_conn_id), max_conn=max_conn, **kwargs)

    def _create_connection(self) -> pyodbc.Connection:
        conn = pyodbc.connect(build_connection_string(self._config), timeout=self._connect_timeout)
        with self._lock:
            self._all_connections.append(conn)
        logger.debug(f"Created new source connection (pool size: {len(self._all_connections)})")
        return conn

    def _validate_connection(self, conn: pyodbc.Connection) -> bool:
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            cursor.fetchone()
            cursor.close()
            return True
        except pyodbc.Error:
            return False

    def _close_connection(self, conn: pyodbc.Connection) -> None:
        try:
            conn.close()
        except pyodbc.Error as e:
            logger.debug(f"Error closing source connection: {e}")
        with self._lock:
            if conn in self._all_connections:
                self._all_connections.remove(conn)

    def acquire(self) -> pyodbc.Connection:
        """
        Acquire a connection, blocking while the pool is exhausted.

        Raises:
            TimeoutError: If no connection is available within acquire_timeout
            RuntimeError: If the pool has been closed
        """
        if self._closed:
            raise RuntimeError("Connection pool has been closed")

        if not self._semaphore.acquire(timeout=self._acquire_timeout):
            raise TimeoutError(
                f"Could not acquire source connection within {self._acquire_timeout}s "
                f"(pool max: {self._max_conn})"
            )

        try:
            try:
                conn = self._available.get_nowait()
            except queue.Empty:
                return self._create_connection()
            if self._validate_connection(conn):
                return conn
            # Stale connection, replace it
            self._close_connection(conn)
            return self._create_connection()
        except Exception:
            self._semaphore.release()
            raise

    def release(self, conn: Optional[pyodbc.Connection]) -> None:
        """Return a connection to the pool (None is ignored)."""
        if conn is None:
            return
        if self._closed:
            self._close_connection(conn)
        else:
            self._available.put(conn)
        self._semaphore.release()

    @contextlib.contextmanager
    def connection(self):
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def close(self) -> None:
        """Close all connections and shut down the pool."""
        self._closed = True
        while True:
            try:
                conn = self._available.get_nowait()
            except queue.Empty:
                break
            self._close_connection(conn)
        with self._lock:
            remaining = list(self._all_connections)
        for conn in remaining:
            self._close_connection(conn)
        logger.info("Source connection pool closed")


class TargetConnectionPool:
    """
    Pool of PostgreSQL connections for the write side.

    Attributes:
        database: Default schema of target tables without an explicit schema
        retry_policy: RetryPolicy applied to every batch write
    """

    def __init__(
        self,
        connect_kwargs: Dict[str, Any],
        database: str = 'public',
        min_conn: int = 1,
        max_conn: int = 8,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Args:
            connect_kwargs: psycopg2.connect keyword arguments
            database: Default target schema
            min_conn: Connections opened up front
            max_conn: Maximum concurrent connections
            retry_policy: Write retry policy (default RetryPolicy())
        """
        self.database = database
        self.retry_policy = retry_policy or RetryPolicy()
        self._max_conn = max_conn
        self._slots = threading.BoundedSemaphore(max_conn)
        self._pool = pg_pool.ThreadedConnectionPool(
            minconn=min(min_conn, max_conn), maxconn=max_conn, **connect_kwargs
        )
        logger.info(f"Created PostgreSQL pool: max={max_conn}, schema={database}")

    @classmethod
    def from_conn_id(
        cls,
        postgres_conn_id: str,
        database: str = 'public',
        max_conn: int = 8,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "TargetConnectionPool":
        pg_conn = PostgresHook(postgres_conn_id=postgres_conn_id).get_connection(postgres_conn_id)
        connect_kwargs = {
            'host': pg_conn.host,
            'port': pg_conn.port or 5432,
            'database': pg_conn.schema or pg_conn.login,
            'user': pg_conn.login,
            'password': pg_conn.password,
        }
        return cls(
            connect_kwargs,
            database=database,
            min_conn=max(1, max_conn // 4),
            max_conn=max_conn,
            retry_policy=retry_policy,
        )

    @contextlib.contextmanager
    def connection(self):
        """
        Borrow a connection.

        Uncommitted work is rolled back on release; broken connections are
        discarded instead of being returned to the pool.
        """
        self._slots.acquire()
        try:
            conn = self._pool.getconn()
        except Exception:
            self._slots.release()
            raise
        try:
            yield conn
        finally:
            if not conn.closed and getattr(conn, "autocommit", False) is False:
                try:
                    conn.rollback()
                except Exception:
                    logger.exception("Exception occurred during PostgreSQL connection rollback")
            self._pool.putconn(conn, close=bool(conn.closed))
            self._slots.release()

    def close(self) -> None:
        self._pool.closeall()
        logger.info("PostgreSQL connection pool closed")
