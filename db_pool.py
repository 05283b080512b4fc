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

    Connections are handed between worker threads, so they are opened with
    ``check_same_thread=False``; each one is only ever used by one thread at a
    time while checked out.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout: float = 30.0):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout = busy_timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database,
            timeout=self.busy_timeout,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %s)", self._created_connections)
                    return self._create_connection()
            # limit reached; wait for a connection to come back
            return self._pool.get(block=True)

    def _release(self, connection: sqlite3.Connection) -> None:
        try:
            connection.rollback()
            self._pool.put(connection)
        except sqlite3.Error as e:
            logger.error("Error returning connection to pool: %s", e)
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Closing broken connection failed", exc_info=True)
            with self._lock:
                self._created_connections -= 1

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        connection = self._acquire()
        try:
            yield connection
        finally:
            self._release(connection)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run the block inside ``BEGIN IMMEDIATE``.

        The write lock is taken up front, so read-modify-write sequences on the
        same row serialise across threads and processes.
        """
        with self.get_connection() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                raise
            else:
                connection.commit()

    def close_all(self) -> None:
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            connection.close()
            with self._lock:
                self._created_connections -= 1
