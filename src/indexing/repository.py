"""
Verification Repositories

Append-only tables recording what a verifying build found. The output
table holds one record per failing row, the result table one record per
scanned region. Row keys start with the run timestamp, so successive runs
over the same range never collide and concurrent writers need no locking.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, Generic, List, Optional, Sequence, TypeVar

from src.storage.client import StorageClient
from src.storage.errors import TableExistsError
from src.storage.model import Cell, KeyRange, Mutation, RowResult

logger = logging.getLogger(__name__)

OUTPUT_TABLE_NAME = "INDEX_TOOL_OUTPUT"
RESULT_TABLE_NAME = "INDEX_TOOL_RESULT"
FAMILY = b"0"
SEP = b"|"

DATA_TABLE_NAME = b"DATA_TABLE_NAME"
INDEX_TABLE_NAME = b"INDEX_TABLE_NAME"
ERROR_MESSAGE = b"ERROR_MESSAGE"
ERROR_TYPE = b"ERROR_TYPE"
VERIFICATION_PHASE = b"VERIFICATION_PHASE"
INDEX_TABLE_ROW_KEY = b"INDEX_TABLE_ROW_KEY"

REGION_NAME = b"REGION_NAME"
SCAN_START_ROW = b"SCAN_START_ROW"
SCAN_STOP_ROW = b"SCAN_STOP_ROW"


def encode_timestamp(ts: int) -> bytes:
    return struct.pack(">q", ts)


def decode_timestamp(data: bytes) -> int:
    return struct.unpack(">q", data[:8])[0]


def _key_prefix(run_ts: Optional[int], index_table: Optional[str]) -> bytes:
    if run_ts is None:
        return b""
    prefix = encode_timestamp(run_ts) + SEP
    if index_table is not None:
        prefix += index_table.encode("utf-8") + SEP
    return prefix


@dataclass(frozen=True)
class OutputRecord:
    """One row that failed verification."""

    run_ts: int
    data_table: str
    index_table: str
    data_row_key: bytes
    index_row_key: Optional[bytes]
    error_type: str
    error_message: str
    phase: str

    @property
    def row_key(self) -> bytes:
        return (_key_prefix(self.run_ts, self.index_table) + self.data_row_key
                + SEP + self.phase.encode("utf-8"))

    def to_mutation(self, timestamp: int) -> Mutation:
        columns = {
            DATA_TABLE_NAME: self.data_table.encode("utf-8"),
            INDEX_TABLE_NAME: self.index_table.encode("utf-8"),
            ERROR_MESSAGE: self.error_message.encode("utf-8"),
            ERROR_TYPE: self.error_type.encode("utf-8"),
            VERIFICATION_PHASE: self.phase.encode("utf-8"),
        }
        if self.index_row_key is not None:
            columns[INDEX_TABLE_ROW_KEY] = self.index_row_key
        return Mutation.put(
            self.row_key,
            [Cell(FAMILY, qualifier, timestamp, value) for qualifier, value in columns.items()]
        )

    @classmethod
    def from_row(cls, row: RowResult) -> "OutputRecord":
        values = {qualifier: cell.value for (_, qualifier), cell in row.latest().items()}
        index_table = values[INDEX_TABLE_NAME]
        phase = values[VERIFICATION_PHASE]
        # run timestamp, index name, data row key and phase, separated by SEP
        data_row_key = row.row[8 + len(SEP) + len(index_table) + len(SEP):-(len(SEP) + len(phase))]
        return cls(
            run_ts=decode_timestamp(row.row),
            data_table=values[DATA_TABLE_NAME].decode("utf-8"),
            index_table=index_table.decode("utf-8"),
            data_row_key=data_row_key,
            index_row_key=values.get(INDEX_TABLE_ROW_KEY),
            error_type=values[ERROR_TYPE].decode("utf-8"),
            error_message=values[ERROR_MESSAGE].decode("utf-8"),
            phase=phase.decode("utf-8"),
        )


@dataclass(frozen=True)
class ResultRecord:
    """Counters of one scanned region."""

    run_ts: int
    index_table: str
    region_name: str
    scan_start: bytes
    scan_stop: bytes
    counters: Dict[str, int] = field(default_factory=dict)

    @property
    def row_key(self) -> bytes:
        return _key_prefix(self.run_ts, self.index_table) + SEP.join(
            [self.region_name.encode("utf-8"), self.scan_start, self.scan_stop]
        )

    def to_mutation(self, timestamp: int) -> Mutation:
        cells = [
            Cell(FAMILY, INDEX_TABLE_NAME, timestamp, self.index_table.encode("utf-8")),
            Cell(FAMILY, REGION_NAME, timestamp, self.region_name.encode("utf-8")),
            Cell(FAMILY, SCAN_START_ROW, timestamp, self.scan_start),
            Cell(FAMILY, SCAN_STOP_ROW, timestamp, self.scan_stop),
        ]
        for name, value in sorted(self.counters.items()):
            cells.append(Cell(FAMILY, name.encode("utf-8"), timestamp, struct.pack(">q", value)))
        return Mutation.put(self.row_key, cells)

    @classmethod
    def from_row(cls, row: RowResult) -> "ResultRecord":
        values = {qualifier: cell.value for (_, qualifier), cell in row.latest().items()}
        fixed = (INDEX_TABLE_NAME, REGION_NAME, SCAN_START_ROW, SCAN_STOP_ROW)
        counters = {
            qualifier.decode("utf-8"): struct.unpack(">q", value)[0]
            for qualifier, value in values.items() if qualifier not in fixed
        }
        return cls(
            run_ts=decode_timestamp(row.row),
            index_table=values[INDEX_TABLE_NAME].decode("utf-8"),
            region_name=values[REGION_NAME].decode("utf-8"),
            scan_start=values.get(SCAN_START_ROW, b""),
            scan_stop=values.get(SCAN_STOP_ROW, b""),
            counters=counters,
        )


RecordT = TypeVar("RecordT", OutputRecord, ResultRecord)


class _Repository(Generic[RecordT]):
    """Shared append/scan logic of the verification tables."""

    table_name = ""
    record_type = OutputRecord

    def __init__(self, storage: StorageClient, table_name: Optional[str] = None):
        self.storage = storage
        if table_name is not None:
            self.table_name = table_name

    def create_table_if_absent(self) -> bool:
        """
        Create the table unless it already exists.

        Returns:
            True if the table was created by this call
        """
        admin = self.storage.get_admin()
        if admin.table_exists(self.table_name):
            return False
        try:
            admin.create_table(self.table_name)
        except TableExistsError:
            # created concurrently by another run
            return False
        logger.info(f"Created verification table {self.table_name}")
        return True

    def append(self, record: RecordT) -> None:
        self.append_all([record])

    def append_all(self, records: Sequence[RecordT]) -> None:
        if not records:
            return
        timestamp = self.storage.current_time()
        self.storage.batch_mutate(self.table_name, [r.to_mutation(timestamp) for r in records])
        logger.debug(f"Appended {len(records)} records to {self.table_name}")

    def scan_by_prefix(self, run_ts: Optional[int] = None,
                       index_table: Optional[str] = None) -> List[RecordT]:
        """
        Read records of one run, optionally narrowed to one index table.

        Args:
            run_ts: Run timestamp (all runs when None)
            index_table: Index table name, only used together with run_ts
        """
        key_range = KeyRange.for_prefix(_key_prefix(run_ts, index_table))
        records = [self.record_type.from_row(row) for row in self.storage.scan(self.table_name, key_range)]
        if run_ts is None and index_table is not None:
            records = [r for r in records if r.index_table == index_table]
        return records

    def drop(self) -> None:
        admin = self.storage.get_admin()
        if admin.table_exists(self.table_name):
            admin.disable_table(self.table_name)
            admin.delete_table(self.table_name)
            logger.info(f"Dropped verification table {self.table_name}")


class OutputRepository(_Repository[OutputRecord]):
    """Per-row verification failures."""

    table_name = OUTPUT_TABLE_NAME
    record_type = OutputRecord


class ResultRepository(_Repository[ResultRecord]):
    """Per-region verification counters."""

    table_name = RESULT_TABLE_NAME
    record_type = ResultRecord
