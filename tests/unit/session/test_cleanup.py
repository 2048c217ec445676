import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from src.sessionstore.pool import SQLiteConnectionPool
from src.sessionstore.store import SQLiteSessionStore


def _row_count(db_path) -> int:
    with sqlite3.connect(str(db_path)) as connection:
        return connection.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cleanup.db"


@pytest.fixture
def pool(db_path):
    pool = SQLiteConnectionPool(str(db_path))
    yield pool
    pool.close()


@pytest.mark.asyncio
async def test_sweep_removes_expired_rows(pool, db_path):
    store = SQLiteSessionStore(pool, cleanup_interval=timedelta(milliseconds=50))
    await store.init()
    assert store.cleanup_running is True

    now = datetime.now(timezone.utc)
    await store.commit("expired", b"old", now - timedelta(minutes=1))
    await store.commit("active", b"new", now + timedelta(hours=1))

    await asyncio.sleep(0.3)

    assert _row_count(db_path) == 1
    assert await store.find("active") == (b"new", True)
    await store.stop_cleanup()


@pytest.mark.asyncio
async def test_zero_interval_disables_sweep(pool, db_path):
    store = SQLiteSessionStore(pool, cleanup_interval=0)
    await store.init()
    assert store.cleanup_running is False

    await store.commit("expired", b"old", datetime.now(timezone.utc) - timedelta(minutes=1))
    await asyncio.sleep(0.2)

    assert _row_count(db_path) == 1
    assert await store.find("expired") == (None, False)


@pytest.mark.asyncio
async def test_stop_cleanup_is_idempotent(pool):
    store = SQLiteSessionStore(pool, cleanup_interval=timedelta(seconds=30))
    await store.init()
    assert store.cleanup_running is True

    await store.stop_cleanup()
    assert store.cleanup_running is False

    await store.stop_cleanup()
    await store.close()


@pytest.mark.asyncio
async def test_stop_cleanup_without_sweep(pool):
    store = SQLiteSessionStore(pool, cleanup_interval=0)

    await store.stop_cleanup()
    await store.stop_cleanup()


@pytest.mark.asyncio
async def test_stopped_sweep_cannot_restart(pool):
    store = SQLiteSessionStore(pool, cleanup_interval=timedelta(seconds=30))
    await store.init()
    await store.stop_cleanup()

    with pytest.raises(RuntimeError):
        store.start_cleanup()


@pytest.mark.asyncio
async def test_start_cleanup_twice_keeps_one_task(pool):
    store = SQLiteSessionStore(pool, cleanup_interval=timedelta(seconds=30))
    await store.init()
    first = store._cleanup_task

    store.start_cleanup()

    assert store._cleanup_task is first
    await store.stop_cleanup()


@pytest.mark.asyncio
async def test_sweep_failure_is_logged_and_sweep_continues(pool, db_path, caplog):
    caplog.set_level(logging.ERROR, logger="src.sessionstore.store")
    store = SQLiteSessionStore(pool, cleanup_interval=timedelta(milliseconds=50))
    await store.init(create_schema=False)

    await asyncio.sleep(0.2)

    assert store.cleanup_running is True
    assert any("Failed to delete expired sessions" in record.getMessage() for record in caplog.records)

    with sqlite3.connect(str(db_path)) as connection:
        connection.execute("CREATE TABLE sessions (token TEXT PRIMARY KEY, data BLOB NOT NULL, expiry REAL NOT NULL)")
        connection.execute(
            "INSERT INTO sessions (token, data, expiry) VALUES ('old', x'00', julianday('now') - 1)"
        )
    await asyncio.sleep(0.3)

    assert _row_count(db_path) == 0
    await store.stop_cleanup()


class _FlakyPool:
    """Pool whose first checkout fails with a non-storage error."""

    def __init__(self, inner: SQLiteConnectionPool) -> None:
        self._inner = inner
        self.acquire_calls = 0

    def acquire(self, timeout=None):
        self.acquire_calls += 1
        if self.acquire_calls == 1:
            raise ConnectionError("transient network failure")
        return self._inner.acquire(timeout)

    def release(self, connection) -> None:
        self._inner.release(connection)


@pytest.mark.asyncio
async def test_sweep_survives_unexpected_pool_error(pool, db_path, caplog):
    caplog.set_level(logging.ERROR, logger="src.sessionstore.store")
    with sqlite3.connect(str(db_path)) as connection:
        connection.execute("CREATE TABLE sessions (token TEXT PRIMARY KEY, data BLOB NOT NULL, expiry REAL NOT NULL)")
        connection.execute(
            "INSERT INTO sessions (token, data, expiry) VALUES ('old', x'00', julianday('now') - 1)"
        )
    flaky = _FlakyPool(pool)
    store = SQLiteSessionStore(flaky, cleanup_interval=timedelta(milliseconds=30))
    await store.init(create_schema=False)

    await asyncio.sleep(0.3)

    assert store.cleanup_running is True
    assert flaky.acquire_calls > 1
    assert _row_count(db_path) == 0
    assert any("Unexpected error" in record.getMessage() for record in caplog.records)
    await store.stop_cleanup()
