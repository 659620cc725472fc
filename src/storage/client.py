"""
Storage Client Interface

Abstract read/write/admin surface of the distributed, versioned key-value
store. The index tool only talks to storage through these classes.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from src.storage.model import KeyRange, Mutation, Region, RowResult, TableSnapshot

MutationObserver = Callable[[str, int], None]


class Admin(ABC):
    """Table and snapshot administration."""

    @abstractmethod
    def create_table(
        self,
        name: str,
        split_points: Sequence[bytes] = (),
        ttl_ms: Optional[int] = None
    ) -> None:
        ...

    @abstractmethod
    def table_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def disable_table(self, name: str) -> None:
        ...

    @abstractmethod
    def enable_table(self, name: str) -> None:
        ...

    @abstractmethod
    def is_table_enabled(self, name: str) -> bool:
        ...

    @abstractmethod
    def delete_table(self, name: str) -> None:
        ...

    @abstractmethod
    def truncate_table(self, name: str, preserve_splits: bool = True) -> None:
        ...

    @abstractmethod
    def get_regions(self, name: str) -> List[Region]:
        ...

    @abstractmethod
    def split_points(self, name: str) -> List[bytes]:
        ...

    @abstractmethod
    def snapshot(self, table: str, name: str) -> TableSnapshot:
        ...

    @abstractmethod
    def delete_snapshot(self, name: str) -> None:
        ...


class Transaction(ABC):
    """Buffered writes that become visible atomically on commit."""

    @abstractmethod
    def mutate(self, table: str, mutations: Sequence[Mutation]) -> None:
        ...

    @abstractmethod
    def commit(self) -> int:
        """Apply buffered writes and return the commit timestamp."""
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...

    @property
    @abstractmethod
    def read_timestamp(self) -> int:
        ...

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.commit()
        else:
            self.rollback()


class StorageClient(ABC):
    """Data path of the store."""

    @abstractmethod
    def scan(
        self,
        table: str,
        key_range: KeyRange = KeyRange(),
        as_of: Optional[int] = None,
        snapshot: Optional[str] = None,
        min_timestamp: Optional[int] = None,
        max_versions: Optional[int] = None,
        raw: bool = False
    ) -> Iterator[RowResult]:
        """
        Scan rows in key order.

        Args:
            table: Table name
            key_range: Rows to read
            as_of: Read timestamp; cells written later are invisible
            snapshot: Serve the read from this snapshot instead of the live table
            min_timestamp: Only return rows with a cell or marker at or after this
            max_versions: Versions per column to return (all when None)
            raw: Return delete markers and the puts they mask
        """
        ...

    @abstractmethod
    def get(
        self,
        table: str,
        row: bytes,
        as_of: Optional[int] = None,
        raw: bool = False
    ) -> Optional[RowResult]:
        ...

    @abstractmethod
    def batch_mutate(self, table: str, mutations: Sequence[Mutation]) -> None:
        """Apply mutations all-or-nothing."""
        ...

    @abstractmethod
    def begin_transaction(self) -> Transaction:
        ...

    @abstractmethod
    def invoke_endpoint(
        self,
        name: str,
        table: str,
        key_range: KeyRange,
        request: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Run a server-side computation beside the region hosting key_range."""
        ...

    @abstractmethod
    def register_endpoint(self, name: str, handler: Callable[..., Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    def get_admin(self) -> Admin:
        ...

    @abstractmethod
    def current_time(self) -> int:
        """Server clock in epoch milliseconds."""
        ...

    def add_observer(self, observer: MutationObserver) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "StorageClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
