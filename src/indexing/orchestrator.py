"""
Index Tool Orchestrator

Plans and runs an index build job: resolves the tenant scope and time
window, rejects unsupported feature combinations before anything is
written, provisions a new index table, splits the data table by region,
picks the mapper strategy and maps the job's terminal state to a status.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import yaml

from src.execution.job import InputSplit, JobHandle, LocalJobRunner
from src.indexing.catalog import Catalog, IndexDescriptor, IndexState, TableDescriptor
from src.indexing.exceptions import SetupError, UnsupportedFeatureError
from src.indexing.mapper import (
    DEFAULT_PAGE_SIZE,
    BuildRequest,
    DisableLoggingType,
    MapperStrategy,
    VerifyType,
    direct_api_mapper,
    install_build_endpoint,
    server_pushed_mapper,
)
from src.indexing.provisioner import IndexTableProvisioner
from src.indexing.repository import OutputRepository, ResultRepository
from src.storage.client import StorageClient
from src.storage.errors import StorageError
from src.utils.correlation import CorrelationContext

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 0
STATUS_MISMATCH = -1
STATUS_SETUP_ERROR = 1
STATUS_JOB_FAILED = 2


@dataclass
class IndexToolConfig:
    """Options of one index tool run."""

    data_table: str
    index_table: str
    schema: str = ""
    tenant_id: Optional[str] = None
    direct_api: bool = False
    verify_type: VerifyType = VerifyType.NONE
    use_snapshot: bool = False
    run_foreground: bool = True
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    disable_logging_type: DisableLoggingType = DisableLoggingType.NONE
    sampling_rate: Optional[int] = None
    split_above_regions: Optional[int] = None
    incremental_lookback_ms: Optional[int] = None
    output_path: Optional[str] = None
    page_size: int = DEFAULT_PAGE_SIZE
    max_workers: int = 4
    max_split_attempts: int = 2

    def __post_init__(self):
        if isinstance(self.verify_type, str):
            self.verify_type = VerifyType(self.verify_type.upper())
        if isinstance(self.disable_logging_type, str):
            self.disable_logging_type = DisableLoggingType(self.disable_logging_type.upper())

    @classmethod
    def from_args(cls, args: Any) -> "IndexToolConfig":
        """Build a config from an argparse namespace; unset options keep defaults."""
        values = {}
        for f in fields(cls):
            value = getattr(args, f.name, None)
            if value is not None:
                values[f.name] = value
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str, **overrides) -> "IndexToolConfig":
        """
        Load a config from a YAML mapping of field names to values.

        Args:
            path: YAML file path
            **overrides: Values taking precedence over the file (None ignored)

        Raises:
            SetupError: If the file is not a mapping or names unknown options
        """
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise SetupError(f"Config file {path} must contain a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise SetupError(f"Unknown options in {path}: {', '.join(unknown)}")

        data.update({k: v for k, v in overrides.items() if v is not None})
        logger.debug(f"Loaded index tool config from {path}")
        return cls(**data)

    def validate(self) -> None:
        """
        Check option values that do not need the catalog.

        Raises:
            SetupError: On missing names or out of range values
        """
        if not self.data_table:
            raise SetupError("Data table name is required")
        if not self.index_table:
            raise SetupError("Index table name is required")
        if self.start_time is not None and self.end_time is not None \
                and self.start_time >= self.end_time:
            raise SetupError(
                f"Start time {self.start_time} must be before end time {self.end_time}"
            )
        if self.sampling_rate is not None and not 0 < self.sampling_rate <= 100:
            raise SetupError(f"Sampling rate must be between 1 and 100, got {self.sampling_rate}")
        if self.split_above_regions is not None and self.split_above_regions < 0:
            raise SetupError("Split-above region count cannot be negative")
        if self.incremental_lookback_ms is not None and self.incremental_lookback_ms < 0:
            raise SetupError("Incremental lookback cannot be negative")
        if self.page_size < 1:
            raise SetupError("Page size must be at least 1")

    @property
    def has_time_window(self) -> bool:
        return self.start_time is not None or self.end_time is not None


class IndexTool:
    """
    Runs index build and verification jobs.

    Args:
        storage: Storage client
        catalog: Table catalog
        clock: Callable returning epoch milliseconds (storage clock when None)
        runner: Job runner (a LocalJobRunner sized from the config when None)
        metrics: Optional IndexToolMetrics recording finished runs
    """

    def __init__(
        self,
        storage: StorageClient,
        catalog: Catalog,
        clock: Optional[Callable[[], int]] = None,
        runner: Optional[LocalJobRunner] = None,
        metrics=None
    ):
        self.storage = storage
        self.catalog = catalog
        self.clock = clock or storage.current_time
        self.runner = runner
        self.metrics = metrics
        self.job: Optional[JobHandle] = None
        self.strategy: Optional[MapperStrategy] = None
        self.request: Optional[BuildRequest] = None
        self._finalizer: Optional[threading.Thread] = None

    def get_counter(self, name: str) -> int:
        if self.job is None:
            return 0
        return self.job.get_counter(name)

    def run(self, config: IndexToolConfig) -> int:
        """
        Run a job described by config.

        Returns:
            0 on success (or after background submission), -1 when the index
            does not correspond to the requested tenant table, 1 on setup
            errors and 2 when the job failed
        """
        started = time.monotonic()
        self.job = None
        try:
            config.validate()
            table, index = self._resolve(config)
        except SetupError as e:
            logger.error(f"Index tool setup failed: {e}")
            self._record_metrics(config, "setup_error", started)
            return STATUS_SETUP_ERROR

        if not self._is_valid_pairing(config, table, index):
            logger.error(
                f"Index {index.full_name} does not belong to table {table.full_name} "
                f"for tenant {config.tenant_id}"
            )
            self._record_metrics(config, "mismatch", started)
            return STATUS_MISMATCH

        snapshot = None
        try:
            self._check_supported(config, table, index)
            request = self._build_request(config, table, index)
            self._prepare_tables(config, table, index, request)
            snapshot = self._take_snapshot(config, table, request)
            splits = self._compute_splits(table, snapshot)
            mapper = self._select_mapper(config, table, index, request)
        except (SetupError, StorageError) as e:
            logger.error(f"Index tool setup failed: {e}")
            self._drop_snapshot(snapshot)
            self._record_metrics(config, "setup_error", started)
            return STATUS_SETUP_ERROR

        runner = self.runner or LocalJobRunner(config.max_workers, config.max_split_attempts)
        job = runner.submit(
            splits, mapper, config=request.to_dict(), job_name=f"IndexTool_{index.full_name}"
        )
        self.job = job
        self.request = request
        logger.info(
            f"Submitted {job.job_id} for {index.full_name}: {len(splits)} splits, "
            f"strategy={self.strategy.value}, verify={config.verify_type.value}"
        )

        if not config.run_foreground:
            self._finalizer = threading.Thread(
                target=self._finish,
                args=(config, index, job, snapshot, started),
                name=f"{job.job_id}-finalizer",
                daemon=True
            )
            self._finalizer.start()
            return STATUS_SUCCESS

        return self._finish(config, index, job, snapshot, started)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for a background run to be finalized."""
        if self._finalizer is None:
            return True
        self._finalizer.join(timeout)
        return not self._finalizer.is_alive()

    def _finish(self, config: IndexToolConfig, index: IndexDescriptor, job: JobHandle,
                snapshot: Optional[str], started: float) -> int:
        with CorrelationContext(job.job_id):
            succeeded = job.wait_for_completion()
            self._drop_snapshot(snapshot)

            if succeeded:
                if config.verify_type.mutates:
                    self.catalog.set_index_state(index, IndexState.ACTIVE)
                status = STATUS_SUCCESS
                logger.info(f"Job {job.job_id} succeeded: {job.counters()}")
            else:
                status = STATUS_JOB_FAILED
                for failure in job.failures():
                    logger.error(
                        f"Split {failure.split.region_name} failed after "
                        f"{failure.attempts} attempts: {failure.error}"
                    )

            if config.output_path:
                self._write_job_output(config.output_path, job, status)
            self._record_metrics(config, "success" if succeeded else "failure", started, job)
            return status

    def _resolve(self, config: IndexToolConfig) -> Tuple[TableDescriptor, IndexDescriptor]:
        table = self.catalog.get_table(config.schema, config.data_table, config.tenant_id)
        index = self.catalog.get_index(config.schema, config.index_table, config.tenant_id)
        return table, index

    @staticmethod
    def _is_valid_pairing(config: IndexToolConfig, table: TableDescriptor,
                          index: IndexDescriptor) -> bool:
        if index.data_table != table.full_name:
            return False
        if config.tenant_id is None:
            return index.tenant_id is None
        return table.tenant_id == config.tenant_id and index.tenant_id == config.tenant_id

    @staticmethod
    def _check_supported(config: IndexToolConfig, table: TableDescriptor,
                         index: IndexDescriptor) -> None:
        provider = table.transaction_provider
        if index.is_local and provider is not None and not provider.supports_local_index:
            raise UnsupportedFeatureError(
                f"Local index {index.full_name} is not supported with {provider.value} transactions"
            )
        if config.has_time_window and table.transactional:
            raise UnsupportedFeatureError(
                f"Start and end time are not supported for transactional table {table.full_name}"
            )

    def _build_request(self, config: IndexToolConfig, table: TableDescriptor,
                       index: IndexDescriptor) -> BuildRequest:
        now = self.clock()
        as_of = config.end_time if config.end_time is not None else now
        if config.start_time is not None:
            min_timestamp = config.start_time
        elif config.incremental_lookback_ms is not None:
            min_timestamp = as_of - config.incremental_lookback_ms
        else:
            min_timestamp = None
        if min_timestamp is not None and min_timestamp >= as_of:
            raise SetupError(f"Start time {min_timestamp} must be before read time {as_of}")

        return BuildRequest(
            data_table=table.full_name,
            index_table=index.full_name,
            as_of=as_of,
            run_ts=now,
            tenant_id=config.tenant_id,
            verify_type=config.verify_type,
            disable_logging_type=config.disable_logging_type,
            min_timestamp=min_timestamp,
            page_size=config.page_size,
        )

    def _prepare_tables(self, config: IndexToolConfig, table: TableDescriptor,
                        index: IndexDescriptor, request: BuildRequest) -> None:
        admin = self.storage.get_admin()
        if not admin.table_exists(table.physical_name):
            raise SetupError(f"Data table {table.physical_name} does not exist")

        if not admin.table_exists(index.physical_name):
            IndexTableProvisioner(self.storage, self.catalog).provision(
                table, index,
                sampling_rate=config.sampling_rate,
                split_above_regions=config.split_above_regions,
                as_of=request.as_of
            )

        if config.verify_type is not VerifyType.NONE:
            OutputRepository(self.storage).create_table_if_absent()
            ResultRepository(self.storage).create_table_if_absent()

    def _take_snapshot(self, config: IndexToolConfig, table: TableDescriptor,
                       request: BuildRequest) -> Optional[str]:
        if not config.use_snapshot:
            return None
        name = f"{table.physical_name}_INDEX_TOOL_{request.run_ts}"
        self.storage.get_admin().snapshot(table.physical_name, name)
        logger.info(f"Took snapshot {name} of {table.physical_name}")
        return name

    def _drop_snapshot(self, snapshot: Optional[str]) -> None:
        if snapshot is None:
            return
        try:
            self.storage.get_admin().delete_snapshot(snapshot)
            logger.info(f"Deleted snapshot {snapshot}")
        except StorageError as e:
            logger.warning(f"Failed to delete snapshot {snapshot}: {e}")

    def _compute_splits(self, table: TableDescriptor, snapshot: Optional[str]):
        tenant_range = table.key_range()
        splits = []
        for region in self.storage.get_admin().get_regions(table.physical_name):
            key_range = region.key_range.intersect(tenant_range)
            if key_range.is_empty():
                continue
            splits.append(InputSplit(table.physical_name, region.name, key_range, snapshot))
        return splits

    def _select_mapper(self, config: IndexToolConfig, table: TableDescriptor,
                       index: IndexDescriptor, request: BuildRequest):
        self.strategy = MapperStrategy.select(table, index, config.use_snapshot, config.direct_api)
        if self.strategy is MapperStrategy.SERVER_PUSHED:
            install_build_endpoint(self.storage, self.catalog)
            return server_pushed_mapper(self.storage, request)
        return direct_api_mapper(self.storage, self.catalog, request)

    @staticmethod
    def _write_job_output(output_path: str, job: JobHandle, status: int) -> None:
        directory = Path(output_path)
        directory.mkdir(parents=True, exist_ok=True)
        output_file = directory / f"{job.job_id}.json"
        payload: Dict[str, Any] = {
            "job_id": job.job_id,
            "job_name": job.job_name,
            "status": status,
            "job_status": job.status.value,
            "counters": job.counters(),
            "failures": [
                {"region": f.split.region_name, "attempts": f.attempts, "error": f.error}
                for f in job.failures()
            ],
        }
        with open(output_file, 'w') as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        logger.info(f"Job output written to {output_file}")

    def _record_metrics(self, config: IndexToolConfig, status: str, started: float,
                        job: Optional[JobHandle] = None) -> None:
        if self.metrics is None:
            return
        index_name = f"{config.schema}.{config.index_table}" if config.schema else config.index_table
        self.metrics.record_run(
            index=index_name,
            verify_type=config.verify_type.value,
            status=status,
            duration_seconds=time.monotonic() - started,
            counters=job.counters() if job is not None else {}
        )
