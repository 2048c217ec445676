from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, TypeVar, Union

from .errors import StorageError
from .pool import ConnectionPool, SQLiteConnectionPool
from .settings import SessionStoreSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CLEANUP_INTERVAL = timedelta(minutes=5)

_SESSIONS_DDL = """
CREATE TABLE IF NOT EXISTS sessions (
    token TEXT PRIMARY KEY,
    data BLOB NOT NULL,
    expiry REAL NOT NULL
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS sessions_expiry_idx ON sessions(expiry);",
]

# expiry holds a fractional Julian day; "now" is always evaluated by SQLite.
_FIND_SQL = "SELECT data FROM sessions WHERE token = ? AND julianday('now') < expiry"
_ALL_SQL = "SELECT token, data FROM sessions WHERE julianday('now') < expiry"
_COMMIT_SQL = (
    "INSERT INTO sessions (token, data, expiry) VALUES (?, ?, julianday(?))"
    " ON CONFLICT(token) DO UPDATE SET data = excluded.data, expiry = excluded.expiry"
)
_DELETE_SQL = "DELETE FROM sessions WHERE token = ?"
_DELETE_EXPIRED_SQL = "DELETE FROM sessions WHERE expiry < julianday('now')"


class SessionStore(Protocol):
    """Capability a session middleware needs from its backing store."""

    async def find(self, token: str) -> tuple[Optional[bytes], bool]: ...

    async def commit(self, token: str, data: bytes, expiry: datetime) -> None: ...

    async def delete(self, token: str) -> None: ...

    async def all(self) -> dict[str, bytes]: ...


class SQLiteSessionStore:
    """SQLite-backed session store with a background expiry sweep.

    Every operation borrows one connection from the pool for a single
    statement. Expired rows are hidden from reads immediately and removed
    physically by the sweep, which runs every ``cleanup_interval`` once
    ``init`` (or ``start_cleanup``) is called. An interval of zero disables
    the sweep.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        cleanup_interval: Union[timedelta, float] = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        if isinstance(cleanup_interval, timedelta):
            interval = cleanup_interval.total_seconds()
        else:
            interval = float(cleanup_interval)
        if interval < 0:
            raise ValueError("cleanup_interval must not be negative")

        self._pool = pool
        self._cleanup_interval = interval
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        self._stop_cleanup = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: SessionStoreSettings) -> SQLiteSessionStore:
        pool = SQLiteConnectionPool(
            settings.db_path,
            size=settings.pool_size,
            timeout=settings.pool_timeout,
        )
        return cls(pool, cleanup_interval=settings.cleanup_timedelta)

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def cleanup_interval(self) -> timedelta:
        return timedelta(seconds=self._cleanup_interval)

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def init(self, *, create_schema: bool = True) -> None:
        """Create the sessions table if needed and start the expiry sweep."""
        if create_schema:
            await asyncio.to_thread(self._run, _create_schema)
            logger.info("Session table ready")
        self.start_cleanup()

    async def close(self) -> None:
        await self.stop_cleanup()

    async def find(self, token: str) -> tuple[Optional[bytes], bool]:
        """Return ``(data, True)`` for an active session, ``(None, False)`` otherwise.

        Expired and missing tokens are indistinguishable.
        """
        row = await asyncio.to_thread(self._fetchone, _FIND_SQL, (token,))
        if row is None:
            return None, False
        return _as_bytes(row[0]), True

    async def commit(self, token: str, data: bytes, expiry: datetime) -> None:
        """Insert the session or replace its data and expiry."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"Session data must be bytes, not {type(data).__name__}")
        await asyncio.to_thread(
            self._execute,
            _COMMIT_SQL,
            (token, bytes(data), _format_expiry(expiry)),
        )

    async def delete(self, token: str) -> None:
        await asyncio.to_thread(self._execute, _DELETE_SQL, (token,))

    async def all(self) -> dict[str, bytes]:
        rows = await asyncio.to_thread(self._fetchall, _ALL_SQL)
        return {row[0]: _as_bytes(row[1]) for row in rows}

    def start_cleanup(self) -> None:
        """Start the expiry sweep on the running event loop.

        Does nothing when the interval is zero or the sweep is already
        running. A stopped sweep cannot be restarted.
        """
        if self._cleanup_interval <= 0:
            return
        if self._stop_cleanup.is_set():
            raise RuntimeError("Expiry sweep was stopped; create a new store to restart it")
        if self.cleanup_running:
            return

        loop = asyncio.get_running_loop()
        self._cleanup_task = loop.create_task(self._cleanup_loop(), name="session-expiry-sweep")
        logger.info("Started session expiry sweep every %.1fs", self._cleanup_interval)

    async def stop_cleanup(self) -> None:
        """Stop the expiry sweep and wait for it to exit. Safe to call repeatedly."""
        self._stop_cleanup.set()
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        await task
        logger.info("Stopped session expiry sweep")

    async def _cleanup_loop(self) -> None:
        while not self._stop_cleanup.is_set():
            try:
                await asyncio.wait_for(self._stop_cleanup.wait(), timeout=self._cleanup_interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                removed = await asyncio.to_thread(self._execute, _DELETE_EXPIRED_SQL)
            except StorageError as exc:
                logger.error("Failed to delete expired sessions: %s", exc)
            except Exception:  # noqa: BLE001 - a custom pool must not end the sweep
                logger.exception("Unexpected error while deleting expired sessions")
            else:
                logger.debug("Removed %d expired sessions", removed)

    def _run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        connection = self._pool.acquire()
        try:
            return operation(connection)
        except sqlite3.Error as exc:
            if connection.in_transaction:
                try:
                    connection.rollback()
                except sqlite3.Error:
                    logger.warning("Rollback failed after %s", exc, exc_info=True)
            raise StorageError(str(exc)) from exc
        finally:
            self._pool.release(connection)

    def _execute(self, query: str, params: tuple = ()) -> int:
        def _write(connection: sqlite3.Connection) -> int:
            cursor = connection.execute(query, params)
            connection.commit()
            return cursor.rowcount

        return self._run(_write)

    def _fetchall(self, query: str, params: tuple = ()) -> list[Any]:
        return self._run(lambda connection: connection.execute(query, params).fetchall())

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[Any]:
        return self._run(lambda connection: connection.execute(query, params).fetchone())


def _create_schema(connection: sqlite3.Connection) -> None:
    connection.execute(_SESSIONS_DDL)
    for statement in _CREATE_INDEXES:
        connection.execute(statement)
    connection.commit()


def _format_expiry(expiry: datetime) -> str:
    if not isinstance(expiry, datetime):
        raise TypeError(f"Session expiry must be a datetime, not {type(expiry).__name__}")
    try:
        expiry = expiry.astimezone(timezone.utc)
    except (OverflowError, ValueError) as exc:
        raise ValueError(f"Session expiry {expiry!r} is out of range") from exc
    # julianday() only parses four-digit years.
    if expiry.year < 1000:
        raise ValueError(f"Session expiry {expiry!r} is out of range")
    # Millisecond precision, the finest julianday() resolves.
    return expiry.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]


def _as_bytes(value: Any) -> bytes:
    return b"" if value is None else bytes(value)
