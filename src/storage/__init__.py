"""
Storage Module for the Index Builder

Client interface to the distributed, versioned key-value store plus an
in-memory engine and a retrying client wrapper.

Usage:
    from src.storage import open_storage, KeyRange

    storage = open_storage("memory://")
    storage.get_admin().create_table("T", split_points=[b"m"])
    rows = list(storage.scan("T", KeyRange(b"a", b"z")))
"""

import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

from src.storage.client import Admin, StorageClient, Transaction
from src.storage.errors import (
    RetriesExhaustedError,
    SnapshotNotFoundError,
    StorageError,
    TableDisabledError,
    TableExistsError,
    TableNotFoundError,
    TransientStorageError,
)
from src.storage.memory import InMemoryStorage
from src.storage.model import Cell, CellType, KeyRange, Mutation, Region, RowResult, TableSnapshot
from src.storage.retry import RetryingStorageClient, RetryPolicy

logger = logging.getLogger(__name__)

_backends: Dict[str, Callable[..., StorageClient]] = {
    "memory": lambda url, credentials: InMemoryStorage(),
}


def register_backend(scheme: str, factory: Callable[..., StorageClient]) -> None:
    """
    Register a storage backend for a URL scheme.

    Args:
        scheme: URL scheme (e.g. "hbase")
        factory: Callable taking (url, credentials) and returning a StorageClient
    """
    _backends[scheme] = factory


def open_storage(
    url: str,
    credentials: Optional[Dict[str, Any]] = None,
    retry_policy: Optional[RetryPolicy] = None
) -> StorageClient:
    """
    Open a storage client for url, wrapped with bounded retries.

    Raises:
        ValueError: If the URL scheme has no registered backend
    """
    scheme = urlparse(url).scheme or url.rstrip(":/")
    factory = _backends.get(scheme)
    if factory is None:
        raise ValueError(f"Unsupported storage URL scheme: {scheme}. Known: {sorted(_backends)}")
    logger.info(f"Opening storage backend {scheme}")
    return RetryingStorageClient(factory(url, credentials), retry_policy)


__all__ = [
    "Admin",
    "Cell",
    "CellType",
    "InMemoryStorage",
    "KeyRange",
    "Mutation",
    "Region",
    "RetriesExhaustedError",
    "RetryPolicy",
    "RetryingStorageClient",
    "RowResult",
    "SnapshotNotFoundError",
    "StorageClient",
    "StorageError",
    "TableDisabledError",
    "TableExistsError",
    "TableNotFoundError",
    "TableSnapshot",
    "Transaction",
    "TransientStorageError",
    "open_storage",
    "register_backend",
]
