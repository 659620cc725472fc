"""
Unit tests for the per-region index builder and mapper selection.
"""

from dataclasses import replace
from unittest.mock import patch

import pytest

from src.execution import InputSplit, JobCounters, TaskContext
from src.indexing.catalog import IndexType
from src.indexing.mapper import (
    BuildRequest,
    DisableLoggingType,
    MapperStrategy,
    RegionIndexBuilder,
    VerifyType,
    install_build_endpoint,
    server_pushed_mapper,
)
from src.indexing.repository import OutputRepository, ResultRepository
from src.storage.model import Cell, KeyRange, Mutation

ALICE_KEY = b"\x01alice\x00r1"


class TestVerifyType:
    """Test verify mode properties."""

    def test_before_modes(self):
        assert {v for v in VerifyType if v.verifies_before} == {
            VerifyType.BEFORE, VerifyType.BOTH, VerifyType.ONLY
        }

    def test_after_modes(self):
        assert {v for v in VerifyType if v.verifies_after} == {VerifyType.AFTER, VerifyType.BOTH}

    def test_only_never_mutates(self):
        assert not VerifyType.ONLY.mutates
        assert all(v.mutates for v in VerifyType if v is not VerifyType.ONLY)

    def test_disable_logging(self):
        assert DisableLoggingType.BOTH.disables("BEFORE_REBUILD")
        assert DisableLoggingType.BEFORE.disables("BEFORE_REBUILD")
        assert not DisableLoggingType.BEFORE.disables("AFTER_REBUILD")
        assert not DisableLoggingType.NONE.disables("AFTER_REBUILD")


class TestMapperStrategy:
    """Test where builds run."""

    def test_plain_table_is_server_pushed(self, orders_table, orders_index):
        assert MapperStrategy.select(orders_table, orders_index) is MapperStrategy.SERVER_PUSHED

    def test_transactional_global_index_uses_direct_api(self, orders_table, orders_index):
        table = replace(orders_table, transactional=True)
        assert MapperStrategy.select(table, orders_index) is MapperStrategy.DIRECT_API

    def test_transactional_local_index_is_server_pushed(self, orders_table, orders_index):
        table = replace(orders_table, transactional=True)
        index = replace(orders_index, index_type=IndexType.LOCAL)
        assert MapperStrategy.select(table, index) is MapperStrategy.SERVER_PUSHED

    def test_snapshot_reads_use_direct_api(self, orders_table, orders_index):
        assert MapperStrategy.select(orders_table, orders_index, use_snapshot=True) \
            is MapperStrategy.DIRECT_API

    def test_direct_flag_forces_direct_api(self, orders_table, orders_index):
        assert MapperStrategy.select(orders_table, orders_index, direct_api=True) \
            is MapperStrategy.DIRECT_API


class TestBuildRequest:
    def test_dict_round_trip(self):
        request = BuildRequest(
            data_table="S.ORDERS", index_table="S.IDX", as_of=100, run_ts=90,
            tenant_id="acme", verify_type=VerifyType.BOTH,
            disable_logging_type=DisableLoggingType.AFTER, min_timestamp=50, page_size=3
        )
        assert request.to_dict()["verify_type"] == "BOTH"
        assert BuildRequest.from_dict(request.to_dict()) == request


class TestRegionIndexBuilder:
    """Test building and verifying one key range."""

    @pytest.fixture
    def tables(self, storage, write_row, orders_table, orders_index):
        admin = storage.get_admin()
        admin.create_table(orders_table.physical_name)
        admin.create_table(orders_index.physical_name)
        write_row("S.ORDERS", b"r1", {"NAME": "alice", "ZIP": "111"}, 100)
        write_row("S.ORDERS", b"r2", {"NAME": "bob", "ZIP": "222"}, 100)
        write_row("S.ORDERS", b"r3", {"NAME": "carol", "ZIP": "333"}, 200)
        return orders_table, orders_index

    @pytest.fixture
    def repos(self, storage):
        output, result = OutputRepository(storage), ResultRepository(storage)
        output.create_table_if_absent()
        result.create_table_if_absent()
        return output, result

    @pytest.fixture
    def build(self, storage, clock, tables, repos):
        table, index = tables

        def _build(verify_type, disable_logging=DisableLoggingType.NONE, table_override=None):
            request = BuildRequest(
                data_table="S.ORDERS", index_table="S.IDX", as_of=clock(), run_ts=clock(),
                verify_type=verify_type, disable_logging_type=disable_logging, page_size=2
            )
            counters = JobCounters()
            builder = RegionIndexBuilder(
                storage, table_override or table, index, request, counters, *repos
            )
            builder.build(KeyRange(), region_name="all")
            return counters

        return _build

    def test_full_rebuild(self, storage, build):
        counters = build(VerifyType.NONE)

        assert counters.get("INPUT_RECORDS") == 3
        assert counters.get("REBUILT_INDEX_ROW_COUNT") == 3
        assert counters.get("INDEX_MUTATION_COUNT") == 3
        assert storage.row_count("S.IDX") == 3

    def test_rebuild_is_idempotent(self, build):
        build(VerifyType.NONE)
        counters = build(VerifyType.NONE)

        assert counters.get("REBUILT_INDEX_ROW_COUNT") == 0
        assert counters.get("INDEX_MUTATION_COUNT") == 0

    def test_verify_only_writes_nothing_to_index(self, storage, build, repos, clock):
        counters = build(VerifyType.ONLY)

        assert counters.get("BEFORE_REBUILD_MISSING_INDEX_ROW_COUNT") == 3
        assert counters.get("REBUILT_INDEX_ROW_COUNT") == 0
        assert storage.row_count("S.IDX") == 0
        records = repos[0].scan_by_prefix(clock(), "S.IDX")
        assert [r.data_row_key for r in records] == [b"r1", b"r2", b"r3"]
        assert {r.phase for r in records} == {"BEFORE_REBUILD"}

    def test_disabled_logging_suppresses_output_records(self, build, repos, clock):
        build(VerifyType.ONLY, disable_logging=DisableLoggingType.BEFORE)
        assert repos[0].scan_by_prefix(clock()) == []

    def test_before_repairs_only_failing_rows(self, storage, build, clock):
        build(VerifyType.NONE)
        # corrupt r1's index row with a cell newer than its data row
        storage.batch_mutate("S.IDX", [Mutation.put(ALICE_KEY, [Cell(b"0", b"0:CITY", 500, b"x")])])

        counters = build(VerifyType.BEFORE)

        assert counters.get("BEFORE_REBUILD_VALID_INDEX_ROW_COUNT") == 2
        assert counters.get("BEFORE_REBUILD_INVALID_INDEX_ROW_COUNT_COZ_EXTRA_CELLS") == 1
        assert counters.get("REBUILT_INDEX_ROW_COUNT") == 1
        assert counters.get("INDEX_MUTATION_COUNT") == 2

        clock.advance()
        assert build(VerifyType.ONLY).get("BEFORE_REBUILD_VALID_INDEX_ROW_COUNT") == 3

    def test_after_verifies_the_rebuild(self, build):
        counters = build(VerifyType.AFTER)

        assert counters.get("REBUILT_INDEX_ROW_COUNT") == 3
        assert counters.get("AFTER_REBUILD_VALID_INDEX_ROW_COUNT") == 3
        assert counters.get("FAILED_INDEX_ROW_COUNT") == 0
        assert counters.get("BEFORE_REBUILD_VALID_INDEX_ROW_COUNT") == 0

    def test_after_masks_cells_newer_than_the_data_row(self, storage, build, clock):
        build(VerifyType.NONE)
        storage.batch_mutate("S.IDX", [Mutation.put(ALICE_KEY, [Cell(b"0", b"0:CITY", 500, b"x")])])
        clock.advance()

        counters = build(VerifyType.AFTER)

        assert counters.get("REBUILT_INDEX_ROW_COUNT") == 1
        assert counters.get("AFTER_REBUILD_VALID_INDEX_ROW_COUNT") == 3
        assert counters.get("FAILED_INDEX_ROW_COUNT") == 0

    def test_expired_rows_are_not_written_to_output(self, build, repos, clock, tables):
        table = replace(tables[0], ttl_ms=1)
        clock.advance()

        counters = build(VerifyType.ONLY, table_override=table)

        assert counters.get("BEFORE_REBUILD_EXPIRED_INDEX_ROW_COUNT") == 3
        assert repos[0].scan_by_prefix(clock()) == []

    def test_both_verifies_repairs_and_reverifies(self, build):
        counters = build(VerifyType.BOTH)

        assert counters.get("BEFORE_REBUILD_MISSING_INDEX_ROW_COUNT") == 3
        assert counters.get("REBUILT_INDEX_ROW_COUNT") == 3
        assert counters.get("AFTER_REBUILD_VALID_INDEX_ROW_COUNT") == 3

    def test_result_record_per_region(self, build, repos, clock):
        build(VerifyType.ONLY)
        results = repos[1].scan_by_prefix(clock(), "S.IDX")

        assert len(results) == 1
        assert results[0].region_name == "all"
        assert results[0].counters["INPUT_RECORDS"] == 3

    def test_transactional_table_writes_through_a_transaction(self, storage, build, tables):
        table = replace(tables[0], transactional=True)
        with patch.object(storage, "begin_transaction", wraps=storage.begin_transaction) as begin:
            build(VerifyType.NONE, table_override=table)

        assert begin.call_count == 2
        assert storage.row_count("S.IDX") == 3


class TestServerPushedMapper:
    """Test the endpoint round trip of a server-pushed build."""

    def test_counters_come_back_from_the_endpoint(self, storage, catalog, clock, write_row):
        admin = storage.get_admin()
        admin.create_table("S.ORDERS")
        admin.create_table("S.IDX")
        write_row("S.ORDERS", b"r1", {"NAME": "alice"}, 100)

        install_build_endpoint(storage, catalog)
        request = BuildRequest(data_table="S.ORDERS", index_table="S.IDX", as_of=clock(), run_ts=clock())
        mapper = server_pushed_mapper(storage, request)
        context = TaskContext(
            job_id="job_test",
            split=InputSplit("S.ORDERS", "region-1", KeyRange()),
            counters=JobCounters(),
            config=request.to_dict(),
        )

        mapper(context)

        assert context.counters.get("INPUT_RECORDS") == 1
        assert context.counters.get("REBUILT_INDEX_ROW_COUNT") == 1
        assert storage.row_count("S.IDX") == 1
