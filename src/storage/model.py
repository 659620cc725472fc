"""
Storage Data Model

Multi-versioned cells, mutations and key ranges shared by the storage
client and everything built on top of it. Timestamps are epoch milliseconds
and row keys, qualifiers and values are bytes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class CellType(Enum):
    """Kind of a stored cell."""
    PUT = "PUT"
    DELETE_COLUMN = "DELETE_COLUMN"
    DELETE_FAMILY = "DELETE_FAMILY"


@dataclass(frozen=True)
class Cell:
    """A single versioned cell."""

    family: bytes
    qualifier: bytes
    timestamp: int
    value: bytes = b""
    type: CellType = CellType.PUT

    @property
    def column(self) -> Tuple[bytes, bytes]:
        return (self.family, self.qualifier)

    def is_put(self) -> bool:
        return self.type is CellType.PUT


@dataclass(frozen=True)
class Mutation:
    """A set of cells written atomically to one row."""

    row: bytes
    cells: Tuple[Cell, ...]

    @classmethod
    def put(cls, row: bytes, cells: List[Cell]) -> "Mutation":
        return cls(row=row, cells=tuple(cells))

    @classmethod
    def delete_row(cls, row: bytes, timestamp: int, family: bytes = b"0") -> "Mutation":
        return cls(
            row=row,
            cells=(Cell(family, b"", timestamp, b"", CellType.DELETE_FAMILY),)
        )

    @classmethod
    def delete_column(cls, row: bytes, family: bytes, qualifier: bytes, timestamp: int) -> "Mutation":
        return cls(
            row=row,
            cells=(Cell(family, qualifier, timestamp, b"", CellType.DELETE_COLUMN),)
        )

    @property
    def is_delete(self) -> bool:
        return any(not cell.is_put() for cell in self.cells)

    @property
    def timestamp(self) -> int:
        return max((cell.timestamp for cell in self.cells), default=0)


@dataclass(frozen=True)
class KeyRange:
    """Half-open row key range [start, stop). An empty stop is unbounded."""

    start: bytes = b""
    stop: bytes = b""

    def contains(self, key: bytes) -> bool:
        if key < self.start:
            return False
        return not self.stop or key < self.stop

    def is_empty(self) -> bool:
        return bool(self.stop) and self.stop <= self.start

    def intersect(self, other: "KeyRange") -> "KeyRange":
        start = max(self.start, other.start)
        if not self.stop:
            stop = other.stop
        elif not other.stop:
            stop = self.stop
        else:
            stop = min(self.stop, other.stop)
        return KeyRange(start, stop)

    @classmethod
    def for_prefix(cls, prefix: bytes) -> "KeyRange":
        """Range covering every key that starts with prefix."""
        if not prefix:
            return cls()
        stop = bytearray(prefix)
        while stop and stop[-1] == 0xFF:
            stop.pop()
        if not stop:
            return cls(prefix, b"")
        stop[-1] += 1
        return cls(prefix, bytes(stop))


def visible_cells(cells: List[Cell], as_of: int, max_versions: Optional[int] = None) -> List[Cell]:
    """
    Apply delete markers and return the put cells visible at as_of.

    Result is ordered by column and newest first per column.
    """
    family_deletes: Dict[bytes, int] = {}
    column_deletes: Dict[Tuple[bytes, bytes], int] = {}
    for cell in cells:
        if cell.timestamp > as_of:
            continue
        if cell.type is CellType.DELETE_FAMILY:
            family_deletes[cell.family] = max(family_deletes.get(cell.family, -1), cell.timestamp)
        elif cell.type is CellType.DELETE_COLUMN:
            column_deletes[cell.column] = max(column_deletes.get(cell.column, -1), cell.timestamp)

    by_version: Dict[Tuple[bytes, bytes, int], Cell] = {}
    for cell in cells:
        if not cell.is_put() or cell.timestamp > as_of:
            continue
        if cell.timestamp <= family_deletes.get(cell.family, -1):
            continue
        if cell.timestamp <= column_deletes.get(cell.column, -1):
            continue
        # last write wins for an identical (column, timestamp)
        by_version[(cell.family, cell.qualifier, cell.timestamp)] = cell

    visible = sorted(by_version.values(), key=lambda c: (c.family, c.qualifier, -c.timestamp))
    if max_versions is None:
        return visible

    trimmed: List[Cell] = []
    seen: Dict[Tuple[bytes, bytes], int] = {}
    for cell in visible:
        count = seen.get(cell.column, 0)
        if count < max_versions:
            trimmed.append(cell)
            seen[cell.column] = count + 1
    return trimmed


@dataclass
class RowResult:
    """
    Cell versions of one row returned by a read.

    A regular read carries visible put cells only. A raw read also carries
    the delete markers and the puts they mask, so callers can replay the
    row's history with state_at().
    """

    row: bytes
    cells: List[Cell] = field(default_factory=list)

    def state_at(self, timestamp: int) -> Dict[Tuple[bytes, bytes], Cell]:
        """Newest visible version per column as of timestamp."""
        state: Dict[Tuple[bytes, bytes], Cell] = {}
        for cell in visible_cells(self.cells, timestamp, max_versions=1):
            state[cell.column] = cell
        return state

    def latest(self) -> Dict[Tuple[bytes, bytes], Cell]:
        return self.state_at(self.last_modified())

    def timestamps(self) -> List[int]:
        """Distinct timestamps of every put and marker, ascending."""
        return sorted({cell.timestamp for cell in self.cells})

    def last_modified(self) -> int:
        return max((cell.timestamp for cell in self.cells), default=0)

    def is_deleted(self) -> bool:
        return not self.latest()

    def is_empty(self) -> bool:
        return not self.cells



@dataclass(frozen=True)
class Region:
    """A contiguous key range of a table served as one unit."""

    table: str
    name: str
    key_range: KeyRange


@dataclass(frozen=True)
class TableSnapshot:
    """A frozen, point-in-time copy of a table."""

    name: str
    table: str
    created_at: int
