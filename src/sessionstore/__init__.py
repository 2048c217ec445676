"""SQLite-backed session persistence with a background expiry sweep."""

from .dependencies import get_session_store, session_store_lifespan
from .errors import PoolClosedError, PoolTimeoutError, SessionStoreError, StorageError
from .pool import ConnectionPool, SQLiteConnectionPool
from .settings import SessionStoreSettings
from .store import SessionStore, SQLiteSessionStore

__all__ = [
    "ConnectionPool",
    "PoolClosedError",
    "PoolTimeoutError",
    "SQLiteConnectionPool",
    "SQLiteSessionStore",
    "SessionStore",
    "SessionStoreError",
    "SessionStoreSettings",
    "StorageError",
    "get_session_store",
    "session_store_lifespan",
]
