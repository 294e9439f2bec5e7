from __future__ import annotations


class OfflineSyncError(RuntimeError):
    pass


class StorageError(OfflineSyncError):
    """A durable store operation failed."""


class StorageUnavailable(StorageError):
    """The local store cannot be opened or written (disk, quota, permissions).

    Fatal to the engine: never retried, surfaced to the caller immediately.
    """


class NotFoundError(OfflineSyncError):
    """A row looked up by key does not exist."""


class NetworkError(OfflineSyncError):
    """Timeout, refused connection, DNS failure. Retryable with backoff."""


class RemoteRejected(OfflineSyncError):
    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"remote rejected request with HTTP {status_code}")


class ConflictDetected(OfflineSyncError):
    def __init__(self, message: str = "conflict", server_data: dict[str, object] | None = None):
        self.server_data = server_data
        super().__init__(message)


class ExhaustedRetries(OfflineSyncError):
    pass


class SyncInProgressError(OfflineSyncError):
    def __init__(self) -> None:
        super().__init__("sync already in progress")


class OfflineError(OfflineSyncError):
    def __init__(self) -> None:
        super().__init__("no network connection")


class SyncDisabledError(OfflineSyncError):
    """Raised by the engine facade when the store could not be opened at startup."""


class ConflictResolutionError(OfflineSyncError):
    """A conflict cannot be resolved as requested (already resolved, missing merge data)."""
