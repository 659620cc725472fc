"""
Index Mutation Generator

Derives the index mutations implied by a data row's version history.
Generation is deterministic: the same data row state always yields the
same mutations, so replaying them is idempotent.
"""

import bisect
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.indexing.catalog import IndexDescriptor, NullHandling, TableDescriptor
from src.indexing.encoding import (
    SEPARATOR,
    decode_key,
    decode_value,
    encode_value,
    tenant_prefix,
    view_index_prefix,
)
from src.storage.model import Cell, Mutation, RowResult

logger = logging.getLogger(__name__)

INDEX_FAMILY = b"0"
EMPTY_COLUMN = b"_0"
EMPTY_VALUE = b"x"


@dataclass(frozen=True)
class ExpectedIndexRow:
    """Projection of a data row version into its index row."""

    key: bytes
    cells: Tuple[Tuple[bytes, bytes], ...]

    def as_dict(self) -> Dict[bytes, bytes]:
        return dict(self.cells)


def covered_qualifier(family: bytes, name: str) -> bytes:
    """Index qualifier of a covered column, e.g. b"0:NAME"."""
    return family + b":" + name.encode("utf-8")


class IndexMutationGenerator:
    """
    Builds index rows and mutations for one (data table, index) pair.

    Args:
        table: Data table or tenant view descriptor
        index: Index descriptor
        data_split_points: Data table split points, used to co-locate
            local index rows with their data region
    """

    def __init__(
        self,
        table: TableDescriptor,
        index: IndexDescriptor,
        data_split_points: Sequence[bytes] = ()
    ):
        self.table = table
        self.index = index
        self.data_split_points = sorted(data_split_points)
        self._pk_types = [c.column_type for c in table.pk_columns]
        self._indexed = [(expr, table.column(expr.column)) for expr in index.indexed]
        self._covered = [table.column(name) for name in index.covered]
        logger.debug(f"Initialized IndexMutationGenerator for {index.full_name}")

    def region_start(self, row_key: bytes) -> bytes:
        """Start key of the data region holding row_key."""
        position = bisect.bisect_right(self.data_split_points, row_key)
        return self.data_split_points[position - 1] if position else b""

    def key_prefix(self, row_key: bytes) -> bytes:
        prefix = b""
        if self.index.is_local:
            prefix += self.region_start(row_key) + SEPARATOR
        if self.table.tenant_id is not None:
            prefix += tenant_prefix(self.table.tenant_id)
        if self.index.view_index_id is not None:
            prefix += view_index_prefix(self.index.view_index_id)
        return prefix

    def index_row_key(self, row_key: bytes, values: Sequence[Any]) -> bytes:
        """
        Encode an index row key.

        Each indexed value carries a null indicator byte and a trailing
        separator so keys stay unambiguous for fixed-width types, and the
        data row key is appended so the index row points back at its source.
        """
        parts = [self.key_prefix(row_key)]
        for (expression, column), value in zip(self._indexed, values):
            if value is None:
                parts.append(b"\x00")
            else:
                parts.append(b"\x01" + encode_value(value, expression.result_type(column.column_type)))
            parts.append(SEPARATOR)
        parts.append(row_key)
        return b"".join(parts)

    def indexed_values(self, row_key: bytes, state: Dict[Tuple[bytes, bytes], Cell]) -> List[Any]:
        pk_values = None
        values = []
        for expression, column in self._indexed:
            if self.table.is_pk(column.name):
                if pk_values is None:
                    pk_values = dict(zip(
                        (c.name for c in self.table.pk_columns),
                        decode_key(row_key, self._pk_types)
                    ))
                raw = pk_values[column.name]
            else:
                cell = state.get(column.ref)
                raw = decode_value(cell.value, column.column_type) if cell is not None else None
            values.append(expression.apply(raw))
        return values

    def project(self, row_key: bytes, state: Dict[Tuple[bytes, bytes], Cell]) -> Optional[ExpectedIndexRow]:
        """
        Project one data row state into its expected index row.

        Returns:
            The expected index row, or None when the row is deleted or the
            null handling policy excludes it
        """
        if not state:
            return None

        values = self.indexed_values(row_key, state)
        policy = self.index.null_handling
        if policy is NullHandling.SKIP_IF_ANY_NULL and any(v is None for v in values):
            return None
        if policy is NullHandling.SKIP_IF_ALL_NULL and all(v is None for v in values):
            return None

        cells = [(EMPTY_COLUMN, EMPTY_VALUE)]
        for column in self._covered:
            cell = state.get(column.ref)
            if cell is not None and cell.value:
                cells.append((covered_qualifier(column.family, column.name), cell.value))
        return ExpectedIndexRow(key=self.index_row_key(row_key, values), cells=tuple(sorted(cells)))

    def expected_versions(self, row: RowResult) -> List[Tuple[int, Optional[ExpectedIndexRow]]]:
        """Index projection after each version of the row, oldest first."""
        return [(ts, self.project(row.row, row.state_at(ts))) for ts in row.timestamps()]

    def expected_latest(self, row: RowResult) -> Optional[ExpectedIndexRow]:
        return self.project(row.row, row.latest())

    def generate(self, row: RowResult, min_timestamp: Optional[int] = None) -> List[Mutation]:
        """
        Generate index mutations for a data row.

        For every version at or after min_timestamp whose projection differs
        from the previous one, emit a put of the new index row stamped with
        the version's source timestamp, and a row delete of the previous
        index row key when the key changed or the row stopped being indexed.

        Args:
            row: Raw data row (delete markers included)
            min_timestamp: Only emit mutations for versions at or after this

        Returns:
            Ordered list of index mutations
        """
        mutations: List[Mutation] = []
        previous: Optional[ExpectedIndexRow] = None

        for ts, expected in self.expected_versions(row):
            if expected == previous:
                continue
            if min_timestamp is None or ts >= min_timestamp:
                if previous is not None and (expected is None or expected.key != previous.key):
                    mutations.append(Mutation.delete_row(previous.key, ts, INDEX_FAMILY))
                elif previous is not None:
                    dropped = sorted(set(previous.as_dict()) - set(expected.as_dict()))
                    for qualifier in dropped:
                        mutations.append(Mutation.delete_column(expected.key, INDEX_FAMILY, qualifier, ts))
                if expected is not None:
                    mutations.append(self.to_put(expected, ts))
            previous = expected

        return mutations

    def to_put(self, expected: ExpectedIndexRow, timestamp: int) -> Mutation:
        return Mutation.put(
            expected.key,
            [Cell(INDEX_FAMILY, qualifier, timestamp, value) for qualifier, value in expected.cells]
        )
