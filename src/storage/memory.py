"""
In-Memory Storage Engine

Multi-version key-value store implementing the StorageClient interface.
Used for local runs and tests. Tables are split into regions by their
split points, snapshots freeze a deep copy of the table contents, and
transactions buffer writes until commit.
"""

import bisect
import copy
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from src.storage.client import Admin, MutationObserver, StorageClient, Transaction
from src.storage.errors import (
    SnapshotNotFoundError,
    StorageError,
    TableDisabledError,
    TableExistsError,
    TableNotFoundError,
    TransientStorageError,
)
from src.storage.model import (
    Cell,
    KeyRange,
    Mutation,
    Region,
    RowResult,
    TableSnapshot,
    visible_cells,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class _Table:
    """Rows and layout of one table."""

    def __init__(self, name: str, split_points: Sequence[bytes], ttl_ms: Optional[int]):
        self.name = name
        self.split_points = sorted(set(p for p in split_points if p))
        self.ttl_ms = ttl_ms
        self.enabled = True
        self.rows: Dict[bytes, List[Cell]] = {}
        self.region_ids = [i + 1 for i in range(len(self.split_points) + 1)]

    def regions(self) -> List[Region]:
        bounds = [b""] + self.split_points + [b""]
        regions = []
        for i in range(len(bounds) - 1):
            start, stop = bounds[i], bounds[i + 1]
            name = f"{self.name},{start.hex()},{self.region_ids[i]}"
            regions.append(Region(self.name, name, KeyRange(start, stop)))
        return regions

    def sorted_keys(self, key_range: KeyRange) -> List[bytes]:
        keys = sorted(self.rows)
        lo = bisect.bisect_left(keys, key_range.start)
        hi = len(keys) if not key_range.stop else bisect.bisect_left(keys, key_range.stop)
        return keys[lo:hi]


class InMemoryAdmin(Admin):
    """Admin surface over an InMemoryStorage."""

    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage

    def create_table(
        self,
        name: str,
        split_points: Sequence[bytes] = (),
        ttl_ms: Optional[int] = None
    ) -> None:
        with self._storage._lock:
            if name in self._storage._tables:
                raise TableExistsError(f"Table already exists: {name}")
            self._storage._tables[name] = _Table(name, split_points, ttl_ms)
        logger.info(f"Created table {name} with {len(split_points) + 1} regions")

    def table_exists(self, name: str) -> bool:
        return name in self._storage._tables

    def disable_table(self, name: str) -> None:
        with self._storage._lock:
            self._storage._table(name).enabled = False
        logger.debug(f"Disabled table {name}")

    def enable_table(self, name: str) -> None:
        with self._storage._lock:
            self._storage._table(name).enabled = True
        logger.debug(f"Enabled table {name}")

    def is_table_enabled(self, name: str) -> bool:
        return self._storage._table(name).enabled

    def delete_table(self, name: str) -> None:
        with self._storage._lock:
            table = self._storage._table(name)
            if table.enabled:
                raise StorageError(f"Table {name} must be disabled before it is deleted")
            del self._storage._tables[name]
        logger.info(f"Deleted table {name}")

    def truncate_table(self, name: str, preserve_splits: bool = True) -> None:
        with self._storage._lock:
            table = self._storage._table(name)
            if table.enabled:
                raise StorageError(f"Table {name} must be disabled before it is truncated")
            splits = table.split_points if preserve_splits else []
            replacement = _Table(name, splits, table.ttl_ms)
            self._storage._tables[name] = replacement
        logger.info(f"Truncated table {name}")

    def get_regions(self, name: str) -> List[Region]:
        return self._storage._table(name).regions()

    def split_points(self, name: str) -> List[bytes]:
        return list(self._storage._table(name).split_points)

    def get_ttl(self, name: str) -> Optional[int]:
        return self._storage._table(name).ttl_ms

    def snapshot(self, table: str, name: str) -> TableSnapshot:
        with self._storage._lock:
            source = self._storage._table(table)
            frozen = copy.deepcopy(source)
            snapshot = TableSnapshot(name=name, table=table, created_at=self._storage.current_time())
            self._storage._snapshots[name] = (snapshot, frozen)
        logger.info(f"Created snapshot {name} of {table}")
        return snapshot

    def delete_snapshot(self, name: str) -> None:
        with self._storage._lock:
            if name not in self._storage._snapshots:
                raise SnapshotNotFoundError(f"Snapshot not found: {name}")
            del self._storage._snapshots[name]
        logger.info(f"Deleted snapshot {name}")

    def list_snapshots(self) -> List[TableSnapshot]:
        return [snap for snap, _ in self._storage._snapshots.values()]


class InMemoryTransaction(Transaction):
    """Write buffer applied atomically across tables on commit."""

    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        self._read_ts = storage.current_time()
        self._buffer: List[tuple] = []
        self._done = False

    @property
    def read_timestamp(self) -> int:
        return self._read_ts

    def mutate(self, table: str, mutations: Sequence[Mutation]) -> None:
        if self._done:
            raise StorageError("Transaction already finished")
        self._buffer.append((table, list(mutations)))

    def commit(self) -> int:
        if self._done:
            raise StorageError("Transaction already finished")
        with self._storage._lock:
            for table, _ in self._buffer:
                self._storage._writable(table)
            commit_ts = self._storage.current_time()
            for table, mutations in self._buffer:
                self._storage._apply(table, mutations)
        self._done = True
        for table, mutations in self._buffer:
            self._storage._notify(table, len(mutations))
        return commit_ts

    def rollback(self) -> None:
        self._buffer = []
        self._done = True


class InMemoryStorage(StorageClient):
    """
    Thread-safe multi-version store.

    Args:
        clock: Callable returning epoch milliseconds (defaults to wall clock)
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or _now_ms
        self._lock = threading.RLock()
        self._tables: Dict[str, _Table] = {}
        self._snapshots: Dict[str, tuple] = {}
        self._endpoints: Dict[str, Callable[..., Dict[str, Any]]] = {}
        self._observers: List[MutationObserver] = []
        self._pending_failures: List[Optional[str]] = []
        self._admin = InMemoryAdmin(self)
        logger.debug("Initialized InMemoryStorage")

    def current_time(self) -> int:
        return self._clock()

    def get_admin(self) -> InMemoryAdmin:
        return self._admin

    def add_observer(self, observer: MutationObserver) -> None:
        self._observers.append(observer)

    def fail_next(self, count: int = 1, table: Optional[str] = None) -> None:
        """Make the next count operations (optionally on one table) raise TransientStorageError."""
        with self._lock:
            self._pending_failures.extend([table] * count)

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
        with self._lock:
            self._maybe_fail(table)
            source = self._read_source(table, snapshot)
            read_ts = self.current_time() if as_of is None else as_of
            rows = []
            for key in source.sorted_keys(key_range):
                result = self._read_row(source, key, read_ts, min_timestamp, max_versions, raw)
                if result is not None:
                    rows.append(result)
        return iter(rows)

    def get(
        self,
        table: str,
        row: bytes,
        as_of: Optional[int] = None,
        raw: bool = False
    ) -> Optional[RowResult]:
        with self._lock:
            self._maybe_fail(table)
            source = self._read_source(table, None)
            if row not in source.rows:
                return None
            read_ts = self.current_time() if as_of is None else as_of
            return self._read_row(source, row, read_ts, None, None, raw)

    def batch_mutate(self, table: str, mutations: Sequence[Mutation]) -> None:
        if not mutations:
            return
        with self._lock:
            self._maybe_fail(table)
            self._writable(table)
            self._apply(table, mutations)
        self._notify(table, len(mutations))

    def begin_transaction(self) -> InMemoryTransaction:
        return InMemoryTransaction(self)

    def register_endpoint(self, name: str, handler: Callable[..., Dict[str, Any]]) -> None:
        self._endpoints[name] = handler
        logger.debug(f"Registered endpoint {name}")

    def invoke_endpoint(
        self,
        name: str,
        table: str,
        key_range: KeyRange,
        request: Dict[str, Any]
    ) -> Dict[str, Any]:
        handler = self._endpoints.get(name)
        if handler is None:
            raise StorageError(f"No endpoint registered under {name}")
        with self._lock:
            self._maybe_fail(table)
            self._table(table)
        return handler(self, table, key_range, request)

    def table_names(self) -> List[str]:
        return sorted(self._tables)

    def row_count(self, table: str, as_of: Optional[int] = None) -> int:
        return sum(1 for row in self.scan(table, as_of=as_of) if not row.is_empty())

    def _table(self, name: str) -> _Table:
        table = self._tables.get(name)
        if table is None:
            raise TableNotFoundError(f"Table not found: {name}")
        return table

    def _writable(self, name: str) -> _Table:
        table = self._table(name)
        if not table.enabled:
            raise TableDisabledError(f"Table is disabled: {name}")
        return table

    def _read_source(self, table: str, snapshot: Optional[str]) -> _Table:
        if snapshot is not None:
            entry = self._snapshots.get(snapshot)
            if entry is None:
                raise SnapshotNotFoundError(f"Snapshot not found: {snapshot}")
            return entry[1]
        return self._writable(table)

    def _read_row(
        self,
        source: _Table,
        key: bytes,
        read_ts: int,
        min_timestamp: Optional[int],
        max_versions: Optional[int],
        raw: bool
    ) -> Optional[RowResult]:
        stored = source.rows[key]
        in_view = [cell for cell in stored if cell.timestamp <= read_ts]
        if min_timestamp is not None and not any(c.timestamp >= min_timestamp for c in in_view):
            return None
        if raw:
            cells = sorted(in_view, key=lambda c: (c.family, c.qualifier, -c.timestamp))
            return RowResult(row=key, cells=cells) if cells else None
        cells = visible_cells(in_view, read_ts, max_versions)
        return RowResult(row=key, cells=cells) if cells else None

    def _apply(self, name: str, mutations: Sequence[Mutation]) -> None:
        table = self._table(name)
        for mutation in mutations:
            stored = table.rows.setdefault(mutation.row, [])
            stored.extend(mutation.cells)

    def _notify(self, table: str, count: int) -> None:
        for observer in self._observers:
            observer(table, count)

    def _maybe_fail(self, table: str) -> None:
        for i, target in enumerate(self._pending_failures):
            if target is None or target == table:
                del self._pending_failures[i]
                raise TransientStorageError(f"Injected I/O failure on {table}")
