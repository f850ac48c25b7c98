"""SQLite connection pool shared by the tutor stores."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are handed between request threads, so they are opened with
    ``check_same_thread=False``; each one is used by a single thread at a time.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout: float = 30.0):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout = busy_timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.busy_timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection, creating one while under ``max_connections``."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %d)", self._created_connections)
            if connection is None:
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as exc:
                logger.error("Error returning connection to pool: %s", exc)
                self._discard(connection)

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error:
            logger.debug("Closing a broken connection failed", exc_info=True)
        with self._lock:
            self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection; borrowed ones are closed on return failure."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            self._discard(connection)
