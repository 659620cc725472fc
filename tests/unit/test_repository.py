"""
Unit tests for the verification output and result repositories.
"""

import pytest

from src.indexing.repository import (
    OUTPUT_TABLE_NAME,
    OutputRecord,
    OutputRepository,
    ResultRecord,
    ResultRepository,
    decode_timestamp,
    encode_timestamp,
)


def output_record(run_ts=100, data_row_key=b"r1", index_table="S.IDX", phase="BEFORE_REBUILD"):
    return OutputRecord(
        run_ts=run_ts,
        data_table="S.ORDERS",
        index_table=index_table,
        data_row_key=data_row_key,
        index_row_key=b"\x01alice\x00" + data_row_key,
        error_type="MISSING",
        error_message="Missing index row",
        phase=phase,
    )


class TestTimestampEncoding:
    def test_timestamps_sort_numerically(self):
        assert encode_timestamp(99) < encode_timestamp(100) < encode_timestamp(2 ** 40)
        assert decode_timestamp(encode_timestamp(123456789)) == 123456789


class TestOutputRepository:
    """Test per-row failure records."""

    @pytest.fixture
    def repo(self, storage):
        repo = OutputRepository(storage)
        repo.create_table_if_absent()
        return repo

    def test_create_table_once(self, storage):
        repo = OutputRepository(storage)
        assert repo.create_table_if_absent() is True
        assert repo.create_table_if_absent() is False
        assert storage.get_admin().table_exists(OUTPUT_TABLE_NAME)

    def test_append_and_read_back(self, repo):
        record = output_record()
        repo.append(record)
        assert repo.scan_by_prefix(run_ts=100) == [record]

    def test_data_row_key_containing_separator(self, repo):
        record = output_record(data_row_key=b"a|b\x00c")
        repo.append(record)
        assert repo.scan_by_prefix(run_ts=100)[0].data_row_key == b"a|b\x00c"

    def test_phases_of_one_row_do_not_collide(self, repo):
        before = output_record(phase="BEFORE_REBUILD")
        after = output_record(phase="AFTER_REBUILD")
        repo.append(before)
        repo.append(after)

        assert repo.scan_by_prefix(run_ts=100) == [after, before]

    def test_runs_do_not_collide(self, repo):
        repo.append_all([output_record(run_ts=100), output_record(run_ts=200)])

        assert len(repo.scan_by_prefix()) == 2
        assert [r.run_ts for r in repo.scan_by_prefix(run_ts=200)] == [200]

    def test_filter_by_index_table(self, repo):
        repo.append_all([
            output_record(index_table="S.IDX"),
            output_record(index_table="S.OTHER"),
        ])

        assert [r.index_table for r in repo.scan_by_prefix(100, "S.OTHER")] == ["S.OTHER"]
        assert [r.index_table for r in repo.scan_by_prefix(index_table="S.IDX")] == ["S.IDX"]

    def test_record_without_index_row_key(self, repo):
        record = OutputRecord(100, "S.ORDERS", "S.IDX", b"r1", None, "MISSING", "Missing index row",
                              "BEFORE_REBUILD")
        repo.append(record)
        assert repo.scan_by_prefix(100)[0].index_row_key is None

    def test_drop(self, storage, repo):
        repo.drop()
        assert not storage.get_admin().table_exists(OUTPUT_TABLE_NAME)


class TestResultRepository:
    """Test per-region counter records."""

    def test_append_and_read_back(self, storage):
        repo = ResultRepository(storage)
        repo.create_table_if_absent()
        record = ResultRecord(
            run_ts=100,
            index_table="S.IDX",
            region_name="S.ORDERS,,1",
            scan_start=b"",
            scan_stop=b"m",
            counters={"INPUT_RECORDS": 3, "BEFORE_REBUILD_VALID_INDEX_ROW_COUNT": 3},
        )
        repo.append(record)

        assert repo.scan_by_prefix(run_ts=100, index_table="S.IDX") == [record]
