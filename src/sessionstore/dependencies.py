from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI

from src.config.loader import load_env_file

from .pool import SQLiteConnectionPool
from .settings import SessionStoreSettings
from .store import SQLiteSessionStore

logger = logging.getLogger(__name__)

_SESSION_STORE: Optional[SQLiteSessionStore] = None


def initialise_session_store() -> SQLiteSessionStore:
    """Create session store instance using configuration."""
    global _SESSION_STORE
    if _SESSION_STORE is not None:
        return _SESSION_STORE

    load_env_file()
    settings = SessionStoreSettings.from_env()
    store = SQLiteSessionStore.from_settings(settings)
    _SESSION_STORE = store
    logger.info(
        "Initialised session store with DB path %s (cleanup every %ss)",
        settings.db_path,
        settings.cleanup_interval,
    )
    return store


def set_session_store(store: Optional[SQLiteSessionStore]) -> None:
    global _SESSION_STORE
    _SESSION_STORE = store


def get_session_store(_: SQLiteSessionStore = Depends(initialise_session_store)) -> SQLiteSessionStore:
    if _SESSION_STORE is None:
        raise RuntimeError("Session store has not been initialised")
    return _SESSION_STORE


@asynccontextmanager
async def session_store_lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Lifespan handler that owns the process-wide session store."""
    store = initialise_session_store()
    await store.init()
    try:
        yield
    finally:
        await store.close()
        pool = store.pool
        if isinstance(pool, SQLiteConnectionPool):
            pool.close()
        set_session_store(None)
