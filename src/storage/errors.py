"""
Storage Errors

Exception hierarchy raised by storage clients. Only TransientStorageError
is retried by the client layer; everything else is surfaced immediately.
"""

from typing import Optional


class StorageError(Exception):
    """Base class for storage client failures."""
    pass


class TransientStorageError(StorageError):
    """Raised for I/O failures that may succeed when retried."""
    pass


class RetriesExhaustedError(StorageError):
    """Raised when a retried storage call keeps failing."""

    def __init__(self, operation: str, attempts: int, cause: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{operation} failed after {attempts} attempts: {cause}")


class TableNotFoundError(StorageError):
    """Raised when a table does not exist."""
    pass


class TableExistsError(StorageError):
    """Raised when creating a table that already exists."""
    pass


class TableDisabledError(StorageError):
    """Raised when reading or writing a disabled table."""
    pass


class SnapshotNotFoundError(StorageError):
    """Raised when a snapshot reference cannot be resolved."""
    pass
