"""SQLite connection pool for the telemetry event store."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

from errors import StorageError

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool with bounded waits.

    Acquiring a connection never blocks for longer than ``timeout`` seconds;
    the same value is used as SQLite's busy timeout so that lock contention
    surfaces as a :class:`StorageError` instead of hanging the caller.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 5.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with proper settings."""
        try:
            conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open event store at {self.database}: {exc}") from exc
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
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug(f"Created new connection (total: {self._created_connections})")
            if connection is None:
                try:
                    connection = self._pool.get(block=True, timeout=self.timeout)
                except Empty as exc:
                    raise StorageError(
                        f"timed out after {self.timeout}s waiting for an event store connection"
                    ) from exc

        try:
            yield connection
        finally:
            try:
                # Uncommitted work never leaks into the next borrower.
                connection.rollback()
                self._pool.put(connection)
            except Exception as e:
                logger.error(f"Error returning connection to pool: {e}")
                try:
                    connection.close()
                finally:
                    with self._lock:
                        self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection held by the pool."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            connection.close()
            with self._lock:
                self._created_connections -= 1
