import logging
import random
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import duckdb
import pandas as pd

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"
_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DatabaseConnectionManager:
    """
    Manages DuckDB connections with retry logic and proper cleanup.
    Handles read-only vs read-write connections to avoid locking issues.
    """

    def __init__(self):
        self.lock = threading.Lock()

    def get_connection(
        self, db_path: str, read_only: bool = True, max_retries: int = 3
    ) -> duckdb.DuckDBPyConnection:
        """
        Get a database connection with retry logic.

        Args:
            db_path: Path to DuckDB file (or ":memory:")
            read_only: Whether to open in read-only mode (avoids locks)
            max_retries: Maximum number of connection attempts

        Returns:
            DuckDB connection
        """
        for attempt in range(max_retries):
            try:
                # Read-only needs an existing file; in-memory is always read-write
                if read_only and db_path != IN_MEMORY and Path(db_path).exists():
                    conn = duckdb.connect(db_path, read_only=True)
                    logger.debug(f"Opened read-only connection to {db_path}")
                else:
                    conn = duckdb.connect(db_path)
                    logger.debug(f"Opened read-write connection to {db_path}")

                return conn

            except duckdb.IOException as e:
                if "Conflicting lock" in str(e) and attempt < max_retries - 1:
                    # Exponential backoff with jitter
                    wait_time = (2**attempt) + random.uniform(0, 1)  # nosec B311
                    logger.warning(
                        f"Database locked, retrying in {wait_time:.2f}s (attempt {attempt + 1}/{max_retries})"
                    )
                    time.sleep(wait_time)
                    continue
                else:
                    logger.error(
                        f"Failed to connect to database after {max_retries} attempts: {e}"
                    )
                    raise

        raise RuntimeError(
            f"Could not establish database connection after {max_retries} attempts"
        )

    @contextmanager
    def get_temporary_connection(self, db_path: str, read_only: bool = True):
        """
        Context manager for temporary database connections that auto-cleanup.

        Yields:
            DuckDB connection
        """
        conn = None
        try:
            conn = self.get_connection(db_path, read_only)
            yield conn
        finally:
            if conn:
                try:
                    conn.close()
                    logger.debug(f"Closed temporary connection to {db_path}")
                except Exception as e:
                    logger.warning(f"Error closing connection: {e}")


# Global connection manager instance
_connection_manager = DatabaseConnectionManager()


def _check_table_name(table_name: str) -> str:
    if not _TABLE_NAME.match(table_name):
        raise ValueError(f"Invalid table name: {table_name!r}")
    return table_name


class ElectionDatabase:
    """
    DuckDB store for election options and ballots.
    Opens connections on demand and uses short-lived read-only connections
    for file-backed reads so a running web server never holds a write lock.
    """

    def __init__(self, db_path: Optional[str] = None, read_only: bool = True):
        """
        Initialize database connection manager.

        Args:
            db_path: Path to DuckDB file. If None, uses in-memory database.
            read_only: Whether to default to read-only connections
        """
        self.db_path = str(db_path) if db_path is not None else IN_MEMORY
        self.read_only = read_only
        self._conn = None  # Will be created on-demand

    @property
    def is_in_memory(self) -> bool:
        return self.db_path == IN_MEMORY

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get or create a database connection on-demand."""
        if self._conn is None:
            self._conn = _connection_manager.get_connection(self.db_path, self.read_only)
        return self._conn

    @contextmanager
    def _reader(self, use_temporary_connection: bool):
        # An in-memory database only exists on its own connection, and DuckDB
        # refuses a second configuration for a file this process already holds
        if use_temporary_connection and not self.is_in_memory and self._conn is None:
            with _connection_manager.get_temporary_connection(
                self.db_path, read_only=True
            ) as temp_conn:
                yield temp_conn
        else:
            yield self.conn

    def query(self, sql: str, params=None, use_temporary_connection: bool = False) -> pd.DataFrame:
        """
        Execute a SQL query and return results as DataFrame.

        Args:
            sql: SQL query to execute
            params: Optional positional parameters
            use_temporary_connection: If True, uses a temporary connection that auto-cleans up
        """
        with self._reader(use_temporary_connection) as conn:
            if params is None:
                return conn.execute(sql).fetchdf()
            return conn.execute(sql, params).fetchdf()

    def query_with_retry(self, sql: str, params=None, max_retries: int = 3) -> pd.DataFrame:
        """
        Execute a SQL query with automatic retry and temporary connections.
        Recommended for web applications to avoid connection issues.
        """
        for attempt in range(max_retries):
            try:
                return self.query(sql, params, use_temporary_connection=True)
            except Exception as e:
                if attempt < max_retries - 1:
                    wait_time = (2**attempt) + random.uniform(0, 0.5)  # nosec B311
                    logger.warning(f"Query failed, retrying in {wait_time:.2f}s: {e}")
                    time.sleep(wait_time)
                    continue
                else:
                    logger.error(f"Query failed after {max_retries} attempts: {e}")
                    raise

    def table_exists(self, table_name: str, use_temporary_connection: bool = True) -> bool:
        """
        Check if a table exists in the database.

        Args:
            table_name: Name of table to check
            use_temporary_connection: Whether to use a temporary connection (recommended)
        """
        sql = "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?"
        with self._reader(use_temporary_connection) as conn:
            result = conn.execute(sql, [table_name]).fetchone()
            return result[0] > 0

    def get_table_info(self, table_name: str) -> pd.DataFrame:
        """Get column information for a table."""
        with self._reader(True) as conn:
            return conn.execute(f"DESCRIBE {_check_table_name(table_name)}").fetchdf()

    def store_frame(self, table_name: str, frame: pd.DataFrame) -> int:
        """
        Replace a table with the contents of a DataFrame.

        Args:
            table_name: Destination table
            frame: Rows to store

        Returns:
            Number of rows stored
        """
        if self.read_only and not self.is_in_memory:
            raise RuntimeError(f"Database {self.db_path} is open read-only")

        table_name = _check_table_name(table_name)
        view_name = f"{table_name}_frame"
        self.conn.register(view_name, frame)
        try:
            self.conn.execute(f"CREATE OR REPLACE TABLE {table_name} AS SELECT * FROM {view_name}")
        except Exception as e:
            logger.error(f"Error storing table {table_name}: {e}")
            raise
        finally:
            self.conn.unregister(view_name)

        logger.info(f"Stored {len(frame)} rows in {table_name}")
        return len(frame)

    def close(self):
        """Close database connection."""
        if self._conn:
            try:
                self._conn.close()
                logger.debug(f"Closed database connection to {self.db_path}")
            except Exception as e:
                logger.warning(f"Error closing database connection: {e}")
            finally:
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
