"""
Pytest configuration and shared fixtures.

Every test gets its own in-memory storage driven by a manual clock, so
timestamps are deterministic and no external services are needed.
"""

import pytest

from src.indexing.catalog import (
    Catalog,
    ColumnDef,
    IndexDescriptor,
    IndexedExpression,
    TableDescriptor,
)
from src.storage.memory import InMemoryStorage
from src.storage.model import Cell, CellType, Mutation

NOW = 1_000_000


class ManualClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1000) -> int:
        self.now += ms
        return self.now


def make_put(row_key, values, ts, family=b"0"):
    """Put mutation of a data row; a None value deletes that column."""
    cells = []
    for name, value in values.items():
        if value is None:
            cells.append(Cell(family, name.encode(), ts, b"", CellType.DELETE_COLUMN))
        else:
            cells.append(Cell(family, name.encode(), ts, value.encode()))
    return Mutation.put(row_key, cells)


@pytest.fixture
def clock():
    """Manual clock starting at NOW."""
    return ManualClock()


@pytest.fixture
def storage(clock):
    """Empty in-memory storage on the manual clock."""
    return InMemoryStorage(clock=clock)


@pytest.fixture
def write_row(storage):
    """Write one data row version: write_row(table, key, {"COL": "v"}, ts)."""
    def _write(table, row_key, values, ts):
        storage.batch_mutate(table, [make_put(row_key, values, ts)])
    return _write


@pytest.fixture
def delete_row(storage):
    """Delete a whole data row at ts."""
    def _delete(table, row_key, ts):
        storage.batch_mutate(table, [Mutation.delete_row(row_key, ts)])
    return _delete


@pytest.fixture
def orders_table():
    """S.ORDERS(ID) with NAME, ZIP and CITY columns."""
    return TableDescriptor(
        schema="S",
        name="ORDERS",
        pk_columns=(ColumnDef("ID"),),
        columns=(ColumnDef("NAME"), ColumnDef("ZIP"), ColumnDef("CITY")),
    )


@pytest.fixture
def orders_index():
    """S.IDX on ORDERS(NAME) covering ZIP."""
    return IndexDescriptor(
        schema="S",
        name="IDX",
        data_table="S.ORDERS",
        indexed=(IndexedExpression("NAME"),),
        covered=("ZIP",),
    )


@pytest.fixture
def catalog(orders_table, orders_index):
    """Catalog holding S.ORDERS and S.IDX."""
    catalog = Catalog()
    catalog.register_table(orders_table)
    catalog.register_index(orders_index)
    return catalog
