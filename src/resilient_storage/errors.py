"""Shared error types for resilient_storage."""


class StorageError(RuntimeError):
    """Base error for storage backend failures."""


class TransientStorageError(StorageError):
    """Retry-safe transient storage backend failure."""


class NoStrategyAvailableError(StorageError):
    """Raised when no enabled storage strategy can serve a request."""

    def __init__(self, preferred_type: str | None = None) -> None:
        self.preferred_type = preferred_type
        if preferred_type is None:
            message = "no storage strategy available"
        else:
            message = f"no storage strategy available for type={preferred_type}"
        super().__init__(message)
