"""SQLite connection pool shared by request threads."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections run in autocommit mode (``isolation_level=None``) so callers
    open explicit ``BEGIN IMMEDIATE`` transactions for multi-statement writes.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout: float = 30.0):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout = busy_timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with proper settings."""
        conn = sqlite3.connect(
            self.database,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            create = False
            with self._lock:
                if self._created_connections < self.max_connections:
                    self._created_connections += 1
                    create = True
            if create:
                try:
                    connection = self._create_connection()
                except sqlite3.Error:
                    # Give the reserved slot back so later callers do not wait forever.
                    with self._lock:
                        self._created_connections -= 1
                    raise
                logger.debug("Created new connection to %s (total: %d)", self.database, self._created_connections)
            else:
                # Pool exhausted; wait for a connection to come back.
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                if connection.in_transaction:
                    connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                connection.close()
                with self._lock:
                    self._created_connections -= 1

    def close_all(self) -> None:
        """Close idle connections, e.g. when a test swaps the database file."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            connection.close()
            with self._lock:
                self._created_connections -= 1
