"""
Unit tests for index mutation generation.
"""

from dataclasses import replace

import pytest

from src.indexing.catalog import IndexedExpression, IndexType, NullHandling
from src.indexing.generator import EMPTY_COLUMN, IndexMutationGenerator
from src.storage.model import Cell, CellType, RowResult


def row(key, *versions):
    """RowResult from (ts, {col: value}) versions; value None deletes the column."""
    cells = []
    for ts, values in versions:
        if values is None:
            cells.append(Cell(b"0", b"", ts, b"", CellType.DELETE_FAMILY))
            continue
        for name, value in values.items():
            if value is None:
                cells.append(Cell(b"0", name.encode(), ts, b"", CellType.DELETE_COLUMN))
            else:
                cells.append(Cell(b"0", name.encode(), ts, value.encode()))
    return RowResult(key, cells)


class TestProjection:
    """Test projection of one data row state."""

    @pytest.fixture
    def generator(self, orders_table, orders_index):
        return IndexMutationGenerator(orders_table, orders_index)

    def test_project_row(self, generator):
        data = row(b"r1", (10, {"NAME": "alice", "ZIP": "111"}))
        expected = generator.expected_latest(data)

        assert expected.key == b"\x01alice\x00r1"
        assert expected.cells == ((b"0:ZIP", b"111"), (EMPTY_COLUMN, b"x"))

    def test_null_indexed_value_is_included_by_default(self, generator):
        expected = generator.expected_latest(row(b"r1", (10, {"ZIP": "111"})))
        assert expected.key == b"\x00\x00r1"

    def test_skip_if_any_null(self, orders_table, orders_index):
        index = replace(orders_index, null_handling=NullHandling.SKIP_IF_ANY_NULL)
        generator = IndexMutationGenerator(orders_table, index)
        assert generator.expected_latest(row(b"r1", (10, {"ZIP": "111"}))) is None

    def test_deleted_row_projects_nothing(self, generator):
        data = row(b"r1", (10, {"NAME": "alice"}), (20, None))
        assert generator.expected_latest(data) is None

    def test_expression_transforms_apply(self, orders_table, orders_index):
        index = replace(orders_index, indexed=(IndexedExpression("NAME", ("upper",)),))
        generator = IndexMutationGenerator(orders_table, index)
        expected = generator.expected_latest(row(b"r1", (10, {"NAME": "alice"})))
        assert expected.key == b"\x01ALICE\x00r1"

    def test_primary_key_column_is_read_from_row_key(self, orders_table, orders_index):
        index = replace(orders_index, indexed=(IndexedExpression("ID"),), covered=())
        generator = IndexMutationGenerator(orders_table, index)
        expected = generator.expected_latest(row(b"r9", (10, {"NAME": "x"})))
        assert expected.key == b"\x01r9\x00r9"

    def test_local_index_key_starts_with_region_start(self, orders_table, orders_index):
        index = replace(orders_index, index_type=IndexType.LOCAL)
        generator = IndexMutationGenerator(orders_table, index, data_split_points=[b"m"])

        low = generator.expected_latest(row(b"a1", (10, {"NAME": "n"})))
        high = generator.expected_latest(row(b"r1", (10, {"NAME": "n"})))

        assert low.key.startswith(b"\x00\x01n")
        assert high.key.startswith(b"m\x00\x01n")

    def test_tenant_view_key_carries_tenant_and_view_index_id(self, orders_table, orders_index):
        view = replace(orders_table, tenant_id="acme", multi_tenant=True)
        index = replace(orders_index, view_index_id=3)
        generator = IndexMutationGenerator(view, index)
        expected = generator.expected_latest(row(b"acme\x00r1", (10, {"NAME": "n"})))
        assert expected.key.startswith(b"acme\x00\x00\x03\x01n\x00")


class TestGenerate:
    """Test mutation generation over a row's history."""

    @pytest.fixture
    def generator(self, orders_table, orders_index):
        return IndexMutationGenerator(orders_table, orders_index)

    def test_single_version_is_one_put_at_source_timestamp(self, generator):
        mutations = generator.generate(row(b"r1", (10, {"NAME": "alice", "ZIP": "111"})))

        assert len(mutations) == 1
        assert mutations[0].row == b"\x01alice\x00r1"
        assert {c.timestamp for c in mutations[0].cells} == {10}

    def test_key_change_deletes_previous_index_row(self, generator):
        data = row(b"r1", (10, {"NAME": "alice", "ZIP": "111"}), (20, {"NAME": "bob"}))
        mutations = generator.generate(data)

        assert [m.row for m in mutations] == [b"\x01alice\x00r1", b"\x01alice\x00r1", b"\x01bob\x00r1"]
        assert mutations[1].cells[0].type is CellType.DELETE_FAMILY
        assert mutations[1].timestamp == 20
        # covered column carries over from the older version
        assert (b"0:ZIP", b"111") in [(c.qualifier, c.value) for c in mutations[2].cells]

    def test_min_timestamp_skips_older_versions(self, generator):
        data = row(b"r1", (10, {"NAME": "alice"}), (20, {"NAME": "bob"}))
        mutations = generator.generate(data, min_timestamp=15)

        assert [m.row for m in mutations] == [b"\x01alice\x00r1", b"\x01bob\x00r1"]
        assert mutations[0].is_delete

    def test_row_delete_removes_index_row(self, generator):
        data = row(b"r1", (10, {"NAME": "alice"}), (30, None))
        mutations = generator.generate(data)

        assert mutations[-1].row == b"\x01alice\x00r1"
        assert mutations[-1].is_delete
        assert mutations[-1].timestamp == 30

    def test_unindexed_column_change_emits_nothing(self, generator):
        data = row(b"r1", (10, {"NAME": "alice", "CITY": "x"}), (20, {"CITY": "y"}))
        assert len(generator.generate(data)) == 1

    def test_dropped_covered_column_is_deleted(self, generator):
        data = row(b"r1", (10, {"NAME": "alice", "ZIP": "111"}), (20, {"ZIP": None}))
        mutations = generator.generate(data)

        assert len(mutations) == 3
        column_delete = mutations[1]
        assert column_delete.cells[0].type is CellType.DELETE_COLUMN
        assert column_delete.cells[0].qualifier == b"0:ZIP"

    def test_generation_is_deterministic(self, generator):
        data = row(b"r1", (10, {"NAME": "alice"}), (20, {"NAME": "bob"}), (30, None))
        assert generator.generate(data) == generator.generate(data)
