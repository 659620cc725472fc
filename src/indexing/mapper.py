"""
Index Build Mappers

Per-split work of an index build job. A RegionIndexBuilder pages through
one key range, verifies and rebuilds index rows according to the verify
mode, and records failures and per-region counters. It runs either inside
the worker (direct API) or beside the data through the "index_build"
storage endpoint (server pushed).
"""

import itertools
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from src.execution.counters import JobCounters
from src.execution.job import Mapper, TaskContext
from src.indexing.catalog import Catalog, IndexDescriptor, TableDescriptor
from src.indexing.comparer import IndexRowComparer, VerificationResult
from src.indexing.counters import (
    AFTER_REBUILD,
    BEFORE_REBUILD,
    FAILED_INDEX_ROW_COUNT,
    INDEX_MUTATION_COUNT,
    INPUT_RECORDS,
    REBUILT_INDEX_ROW_COUNT,
    SCANNED_DATA_ROW_COUNT,
    record_outcome,
)
from src.indexing.generator import INDEX_FAMILY, IndexMutationGenerator
from src.indexing.repository import OutputRecord, OutputRepository, ResultRecord, ResultRepository
from src.storage.client import StorageClient
from src.storage.model import KeyRange, Mutation, RowResult
from src.utils.correlation import CorrelationContext

logger = logging.getLogger(__name__)

BUILD_ENDPOINT = "index_build"
DEFAULT_PAGE_SIZE = 8


class VerifyType(Enum):
    """When index rows are verified relative to the rebuild."""
    NONE = "NONE"
    BEFORE = "BEFORE"
    AFTER = "AFTER"
    BOTH = "BOTH"
    ONLY = "ONLY"

    @property
    def verifies_before(self) -> bool:
        return self in (VerifyType.BEFORE, VerifyType.BOTH, VerifyType.ONLY)

    @property
    def verifies_after(self) -> bool:
        return self in (VerifyType.AFTER, VerifyType.BOTH)

    @property
    def rebuilds_all(self) -> bool:
        return self in (VerifyType.NONE, VerifyType.AFTER)

    @property
    def mutates(self) -> bool:
        return self is not VerifyType.ONLY


class DisableLoggingType(Enum):
    """Verification phases whose failures are not written to the output table."""
    NONE = "NONE"
    BEFORE = "BEFORE"
    AFTER = "AFTER"
    BOTH = "BOTH"

    def disables(self, phase: str) -> bool:
        if self is DisableLoggingType.BOTH:
            return True
        if self is DisableLoggingType.BEFORE:
            return phase == BEFORE_REBUILD
        if self is DisableLoggingType.AFTER:
            return phase == AFTER_REBUILD
        return False


class MapperStrategy(Enum):
    """Where index mutations are computed."""
    SERVER_PUSHED = "SERVER_PUSHED"
    DIRECT_API = "DIRECT_API"

    @classmethod
    def select(cls, table: TableDescriptor, index: IndexDescriptor,
               use_snapshot: bool = False, direct_api: bool = False) -> "MapperStrategy":
        """
        Push the build to the server unless the caller asked for the client
        API, or snapshot reads or transactional writes through a global
        index require it.
        """
        if direct_api:
            return cls.DIRECT_API
        if (index.is_local or not table.transactional) and not use_snapshot:
            return cls.SERVER_PUSHED
        return cls.DIRECT_API


@dataclass(frozen=True)
class BuildRequest:
    """Serialisable description of one build job, identical for every split."""

    data_table: str
    index_table: str
    as_of: int
    run_ts: int
    tenant_id: Optional[str] = None
    verify_type: VerifyType = VerifyType.NONE
    disable_logging_type: DisableLoggingType = DisableLoggingType.NONE
    min_timestamp: Optional[int] = None
    page_size: int = DEFAULT_PAGE_SIZE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["verify_type"] = self.verify_type.value
        data["disable_logging_type"] = self.disable_logging_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildRequest":
        return cls(
            data_table=data["data_table"],
            index_table=data["index_table"],
            as_of=int(data["as_of"]),
            run_ts=int(data["run_ts"]),
            tenant_id=data.get("tenant_id"),
            verify_type=VerifyType(data.get("verify_type", VerifyType.NONE.value)),
            disable_logging_type=DisableLoggingType(
                data.get("disable_logging_type", DisableLoggingType.NONE.value)
            ),
            min_timestamp=data.get("min_timestamp"),
            page_size=int(data.get("page_size", DEFAULT_PAGE_SIZE)),
        )


def _pages(rows: Iterable[RowResult], page_size: int) -> Iterator[List[RowResult]]:
    iterator = iter(rows)
    while True:
        page = list(itertools.islice(iterator, page_size))
        if not page:
            return
        yield page


class RegionIndexBuilder:
    """
    Builds and verifies the index rows of one key range.

    Args:
        storage: Storage client
        table: Data table (or tenant view) descriptor
        index: Index descriptor
        request: Build request shared by every split of the job
        counters: Counters of the current split attempt
        output_repo: Failure records sink (None disables output records)
        result_repo: Region counters sink (None disables result records)
    """

    def __init__(
        self,
        storage: StorageClient,
        table: TableDescriptor,
        index: IndexDescriptor,
        request: BuildRequest,
        counters: JobCounters,
        output_repo: Optional[OutputRepository] = None,
        result_repo: Optional[ResultRepository] = None
    ):
        self.storage = storage
        self.table = table
        self.index = index
        self.request = request
        self.counters = counters
        self.output_repo = output_repo
        self.result_repo = result_repo

        split_points = storage.get_admin().split_points(table.physical_name) if index.is_local else ()
        self.generator = IndexMutationGenerator(table, index, split_points)
        self.comparer = IndexRowComparer(self.generator, table.ttl_ms, table.max_lookback_ms)
        self._index_read_ts = request.as_of

    @classmethod
    def for_request(
        cls,
        storage: StorageClient,
        catalog: Catalog,
        request: BuildRequest,
        counters: JobCounters
    ) -> "RegionIndexBuilder":
        """Resolve the request's tables through the catalog."""
        table = catalog.get_table_by_full_name(request.data_table, request.tenant_id)
        schema, _, name = request.index_table.rpartition(".")
        index = catalog.get_index(schema, name, request.tenant_id)
        verifying = request.verify_type is not VerifyType.NONE
        return cls(
            storage, table, index, request, counters,
            OutputRepository(storage) if verifying else None,
            ResultRepository(storage) if verifying else None,
        )

    def build(self, key_range: KeyRange, region_name: str = "",
              snapshot: Optional[str] = None) -> JobCounters:
        """
        Build (and verify) the index rows of every data row in key_range.

        Returns:
            The counters of this range
        """
        scan_range = key_range.intersect(self.table.key_range())
        region_counters = JobCounters()
        if not scan_range.is_empty():
            rows = self.storage.scan(
                self.table.physical_name,
                scan_range,
                as_of=self.request.as_of,
                snapshot=snapshot,
                min_timestamp=self.request.min_timestamp,
                raw=True
            )
            for page in _pages(rows, self.request.page_size):
                self._process_page(page, region_counters)

        self.counters.merge(region_counters)
        if self.result_repo is not None:
            self.result_repo.append(ResultRecord(
                run_ts=self.request.run_ts,
                index_table=self.index.full_name,
                region_name=region_name,
                scan_start=key_range.start,
                scan_stop=key_range.stop,
                counters=region_counters.as_dict(),
            ))
        logger.debug(
            f"Built {self.index.full_name} over region {region_name or '<all>'}: "
            f"{region_counters.as_dict()}"
        )
        return region_counters

    def _process_page(self, page: List[RowResult], counters: JobCounters) -> None:
        verify_type = self.request.verify_type
        counters.increment(INPUT_RECORDS, len(page))
        counters.increment(SCANNED_DATA_ROW_COUNT, len(page))

        to_rebuild = page if verify_type.rebuilds_all else []
        to_repair: List[RowResult] = []

        if verify_type.verifies_before:
            results = self._verify(page, BEFORE_REBUILD, counters)
            if verify_type.mutates:
                to_repair = [row for row, result in zip(page, results) if result.is_failure]

        if verify_type.mutates:
            mutations, rebuilt = self._rebuild_mutations(to_rebuild, to_repair)
            self._apply(mutations)
            counters.increment(INDEX_MUTATION_COUNT, len(mutations))
            counters.increment(REBUILT_INDEX_ROW_COUNT, rebuilt)

        if verify_type.verifies_after:
            results = self._verify(page, AFTER_REBUILD, counters)
            counters.increment(FAILED_INDEX_ROW_COUNT, sum(1 for r in results if r.is_failure))

    def _compare(self, row: RowResult) -> VerificationResult:
        index_rows = {
            key: self.storage.get(self.index.physical_name, key, as_of=self._index_read_ts)
            for key in self.comparer.index_keys(row)
        }
        return self.comparer.compare(row, index_rows, self.request.as_of)

    def _verify(self, page: List[RowResult], phase: str,
                counters: JobCounters) -> List[VerificationResult]:
        results = []
        for row in page:
            result = self._compare(row)
            record_outcome(counters, phase, result.outcome)
            results.append(result)

        failed = [r for r in results if r.is_failure]
        if failed and self.output_repo is not None \
                and not self.request.disable_logging_type.disables(phase):
            self.output_repo.append_all([
                OutputRecord(
                    run_ts=self.request.run_ts,
                    data_table=self.table.full_name,
                    index_table=self.index.full_name,
                    data_row_key=r.data_row_key,
                    index_row_key=r.index_row_key,
                    error_type=r.outcome.value,
                    error_message=r.message,
                    phase=phase,
                ) for r in failed
            ])
        return results

    def _rebuild_mutations(
        self,
        rows: List[RowResult],
        repairs: List[RowResult]
    ) -> Tuple[List[Mutation], int]:
        """
        Mutations for the page and the number of data rows they touch.

        A rebuilt row whose visible index state already matches its data row
        only gets the versions missing from the index. Any other row is
        repaired, since plain puts at data row timestamps would stay hidden
        under newer index cells or delete markers.
        """
        min_timestamp = self.request.min_timestamp
        per_row: List[List[Mutation]] = []
        for row in rows:
            if self._compare(row).is_failure:
                per_row.append(self._repair_mutations(row, min_timestamp))
            else:
                per_row.append(self.generator.generate(row, min_timestamp))
        per_row.extend(self._repair_mutations(row) for row in repairs)

        raw_index: Dict[bytes, Optional[RowResult]] = {}
        mutations: List[Mutation] = []
        rebuilt = 0
        for row_mutations in per_row:
            fresh = [m for m in row_mutations if not self._already_applied(m, raw_index)]
            if fresh:
                rebuilt += 1
                mutations.extend(fresh)
        return mutations, rebuilt

    def _repair_mutations(self, row: RowResult, min_timestamp: Optional[int] = None) -> List[Mutation]:
        """
        Mutations replacing whatever the index holds for a failing row.

        Existing cells may be newer than the data row, so the index rows are
        masked at their newest timestamp and the expected row is written just
        above it.
        """
        expected = self.generator.expected_latest(row)
        keys = self.comparer.index_keys(row)
        newest = 0
        existing: List[bytes] = []
        for key in keys:
            index_row = self.storage.get(self.index.physical_name, key, as_of=self.request.as_of, raw=True)
            if index_row is not None and not index_row.is_empty():
                newest = max(newest, index_row.last_modified())
                existing.append(key)

        if not existing:
            return self.generator.generate(row, min_timestamp)

        mutations = [Mutation.delete_row(key, newest, INDEX_FAMILY) for key in existing]
        if expected is not None:
            ts = max(newest + 1, row.last_modified())
            mutations.append(self.generator.to_put(expected, ts))
            self._index_read_ts = max(self._index_read_ts, ts)
        return mutations

    def _already_applied(self, mutation: Mutation, cache: Dict[bytes, Optional[RowResult]]) -> bool:
        if mutation.row not in cache:
            cache[mutation.row] = self.storage.get(self.index.physical_name, mutation.row, raw=True)
        existing = cache[mutation.row]
        if existing is None:
            return False
        stored: Set = set(existing.cells)
        return all(cell in stored for cell in mutation.cells)

    def _apply(self, mutations: List[Mutation]) -> None:
        if not mutations:
            return
        if self.table.transactional and not self.index.is_local:
            with self.storage.begin_transaction() as txn:
                txn.mutate(self.index.physical_name, mutations)
        else:
            self.storage.batch_mutate(self.index.physical_name, mutations)


def install_build_endpoint(storage: StorageClient, catalog: Catalog) -> None:
    """Register the server side of the server-pushed build on storage."""

    def handle(server_storage: StorageClient, table: str, key_range: KeyRange,
               request: Dict[str, Any]) -> Dict[str, Any]:
        build_request = BuildRequest.from_dict(request)
        counters = JobCounters()
        builder = RegionIndexBuilder.for_request(server_storage, catalog, build_request, counters)
        builder.build(key_range, request.get("region_name", ""))
        return {"counters": counters.as_dict()}

    storage.register_endpoint(BUILD_ENDPOINT, handle)


def direct_api_mapper(storage: StorageClient, catalog: Catalog, request: BuildRequest) -> Mapper:
    """Mapper that reads data rows and writes index mutations from the worker."""

    def run(context: TaskContext) -> None:
        with CorrelationContext(context.job_id):
            builder = RegionIndexBuilder.for_request(storage, catalog, request, context.counters)
            builder.build(context.split.key_range, context.split.region_name, context.split.snapshot)

    return run


def server_pushed_mapper(storage: StorageClient, request: BuildRequest) -> Mapper:
    """Mapper that asks the region's server to build and collects its counters."""

    def run(context: TaskContext) -> None:
        with CorrelationContext(context.job_id):
            payload = request.to_dict()
            payload["region_name"] = context.split.region_name
            response = storage.invoke_endpoint(
                BUILD_ENDPOINT, context.split.table, context.split.key_range, payload
            )
            for name, value in response.get("counters", {}).items():
                context.counters.increment(name, value)

    return run
