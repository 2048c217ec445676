from __future__ import annotations

import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Protocol

from .errors import PoolClosedError, PoolTimeoutError, StorageError
from .settings import DEFAULT_POOL_SIZE, DEFAULT_POOL_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_SECONDS = 5.0


class ConnectionPool(Protocol):
    """Checkout contract the session store borrows connections through."""

    def acquire(self, timeout: Optional[float] = None) -> sqlite3.Connection: ...

    def release(self, connection: sqlite3.Connection) -> None: ...


def _resolve_db_path(db_path: str) -> str:
    if db_path.strip() == ":memory:":
        raise ValueError("In-memory databases cannot be shared across pooled connections")
    path = Path(db_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


class SQLiteConnectionPool:
    """Thread-safe pool of SQLite connections to a single database file.

    Connections are opened lazily up to ``size``. ``acquire`` blocks for at
    most ``timeout`` seconds and raises PoolTimeoutError when every
    connection is checked out.
    """

    def __init__(
        self,
        db_path: str,
        *,
        size: int = DEFAULT_POOL_SIZE,
        timeout: float = DEFAULT_POOL_TIMEOUT_SECONDS,
    ) -> None:
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self._db_path = _resolve_db_path(db_path)
        self._size = size
        self._timeout = timeout
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self._wal_lock = threading.Lock()
        self._wal_enabled = False
        self._closed = False

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def size(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        if self._closed:
            raise PoolClosedError("Connection pool is closed")
        wait = self._timeout if timeout is None else timeout
        if not self._slots.acquire(timeout=wait):
            raise PoolTimeoutError(f"Timed out after {wait}s waiting for a connection to {self._db_path}")

        # close() may have run while this thread waited for a slot.
        with self._lock:
            closed = self._closed
            if not closed:
                try:
                    return self._idle.get_nowait()
                except queue.Empty:
                    pass
        if closed:
            self._slots.release()
            raise PoolClosedError("Connection pool is closed")

        try:
            connection = self._open()
        except sqlite3.Error as exc:
            self._slots.release()
            raise StorageError(f"Unable to open {self._db_path}: {exc}") from exc

        with self._lock:
            closed = self._closed
        if closed:
            connection.close()
            self._slots.release()
            raise PoolClosedError("Connection pool is closed")
        return connection

    def release(self, connection: sqlite3.Connection) -> None:
        try:
            with self._lock:
                if not self._closed:
                    self._idle.put(connection)
                    return
            connection.close()
        finally:
            self._slots.release()

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        connection = self.acquire(timeout)
        try:
            yield connection
        finally:
            self.release(connection)

    def close(self) -> None:
        """Close idle connections; checked-out ones are closed on release."""
        idle = []
        with self._lock:
            self._closed = True
            while True:
                try:
                    idle.append(self._idle.get_nowait())
                except queue.Empty:
                    break
        for connection in idle:
            connection.close()
        logger.debug("Closed connection pool for %s", self._db_path)

    def _open(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=_BUSY_TIMEOUT_SECONDS,
            check_same_thread=False,
        )
        try:
            with self._wal_lock:
                if not self._wal_enabled:
                    connection.execute("PRAGMA journal_mode = WAL;")
                    self._wal_enabled = True
        except sqlite3.Error:
            connection.close()
            raise
        logger.debug("Opened SQLite connection to %s", self._db_path)
        return connection
