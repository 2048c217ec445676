from __future__ import annotations


class SessionStoreError(Exception):
    pass


class StorageError(SessionStoreError):
    """Raised when a connection cannot be acquired or a statement fails."""


class PoolTimeoutError(StorageError):
    pass


class PoolClosedError(StorageError):
    pass
