"""
PostgreSQL connection pool manager.

Provides thread-safe connection pooling with proper resource management.
"""
import logging
from contextlib import contextmanager
from typing import Optional

import psycopg2
from psycopg2 import pool

from common.config.settings import DatabaseConfig

logger = logging.getLogger(__name__)


class PostgresConnectionPool:
    """
    Thread-safe PostgreSQL connection pool.

    Features:
    - ThreadedConnectionPool over a single DSN (managed Postgres URL)
    - SSL mode / root certificate passthrough
    - Context manager support for safe connection handling
    """

    def __init__(
        self,
        dsn: str,
        sslmode: Optional[str] = None,
        sslrootcert: Optional[str] = None,
        min_conn: int = 1,
        max_conn: int = 4
    ):
        """
        Initialize connection pool.

        Args:
            dsn: libpq connection string or postgres:// URL
            sslmode: libpq sslmode (disable ... verify-full)
            sslrootcert: Path to the CA bundle for verify-ca/verify-full
            min_conn: Minimum connections in pool
            max_conn: Maximum connections in pool
        """
        self.dsn = dsn
        self.sslmode = sslmode
        self.min_conn = min_conn
        self.max_conn = max_conn

        connect_kwargs = {}
        if sslmode:
            connect_kwargs['sslmode'] = sslmode
        if sslrootcert:
            connect_kwargs['sslrootcert'] = sslrootcert

        try:
            self.pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=min_conn,
                maxconn=max_conn,
                dsn=dsn,
                **connect_kwargs
            )
            logger.info(f"Connection pool created (sslmode={sslmode}, min={min_conn}, max={max_conn})")
        except psycopg2.Error as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> 'PostgresConnectionPool':
        return cls(
            dsn=config.require_url(),
            sslmode=config.sslmode,
            sslrootcert=config.sslrootcert,
            min_conn=config.min_conn,
            max_conn=config.max_conn,
        )

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a connection from the pool.

        Automatically commits on success, rolls back on error, and returns
        the connection to the pool.

        Yields:
            psycopg2 connection object

        Example:
            with pool.get_connection() as conn:
                cur = conn.cursor()
                cur.execute("SELECT COUNT(*) FROM daily_prices_stage")
        """
        conn = self.pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error in connection context: {e}")
            raise
        finally:
            self.pool.putconn(conn)

    def close(self):
        """Close all connections in the pool."""
        if hasattr(self, 'pool') and self.pool:
            self.pool.closeall()
            logger.info("Connection pool closed")

    def __enter__(self):
        """Support using pool as context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Cleanup on context manager exit."""
        self.close()
        return False
