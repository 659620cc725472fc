"""
Prometheus Metrics for the Index Tool

Metrics describing index build and verification runs. Values are taken
from the final counters of a job, so a run is recorded once regardless of
how many splits it had. Metrics can be scraped from an HTTP endpoint or
pushed to a Pushgateway at the end of a batch run.
"""

import logging
from typing import Dict, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    push_to_gateway,
    start_http_server,
)

from src.indexing.counters import (
    FAILED_INDEX_ROW_COUNT,
    INDEX_MUTATION_COUNT,
    PHASES,
    REBUILT_INDEX_ROW_COUNT,
    SCANNED_DATA_ROW_COUNT,
    EXPIRED_INDEX_ROW_COUNT,
    INVALID_COZ_EXTRA_CELLS,
    INVALID_COZ_MISSING_CELLS,
    MISSING_INDEX_ROW_COUNT,
    VALID_INDEX_ROW_COUNT,
)

logger = logging.getLogger(__name__)

_OUTCOME_LABELS = {
    VALID_INDEX_ROW_COUNT: "valid",
    EXPIRED_INDEX_ROW_COUNT: "expired",
    MISSING_INDEX_ROW_COUNT: "missing",
    INVALID_COZ_EXTRA_CELLS: "invalid_extra_cells",
    INVALID_COZ_MISSING_CELLS: "invalid_missing_cells",
}


class IndexToolMetrics:
    """
    Prometheus metrics for index tool runs.

    Args:
        registry: Registry to register metrics in (a private one when None,
            so several instances can coexist in one process)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.runs_total = Counter(
            'index_tool_runs_total',
            'Total number of index tool runs',
            ['index', 'verify_type', 'status'],
            registry=self.registry
        )

        self.scanned_rows_total = Counter(
            'index_tool_scanned_rows_total',
            'Data rows scanned by index tool runs',
            ['index'],
            registry=self.registry
        )

        self.rebuilt_rows_total = Counter(
            'index_tool_rebuilt_rows_total',
            'Index rows rebuilt by index tool runs',
            ['index'],
            registry=self.registry
        )

        self.index_mutations_total = Counter(
            'index_tool_index_mutations_total',
            'Index mutations written by index tool runs',
            ['index'],
            registry=self.registry
        )

        self.verified_rows_total = Counter(
            'index_tool_verified_rows_total',
            'Index rows verified, by phase and outcome',
            ['index', 'phase', 'outcome'],
            registry=self.registry
        )

        self.last_run_inconsistent_rows = Gauge(
            'index_tool_last_run_inconsistent_rows',
            'Inconsistent index rows found by the most recent run',
            ['index', 'phase'],
            registry=self.registry
        )

        self.last_run_failed_rows = Gauge(
            'index_tool_last_run_failed_rows',
            'Index rows still inconsistent after the most recent rebuild',
            ['index'],
            registry=self.registry
        )

        self.run_duration_seconds = Histogram(
            'index_tool_run_duration_seconds',
            'Duration of index tool runs in seconds',
            ['index', 'verify_type'],
            buckets=[1, 5, 10, 30, 60, 300, 900, 1800, 3600, 7200],
            registry=self.registry
        )

        self.tool_info = Info('index_tool', 'Index tool build information', registry=self.registry)
        self.tool_info.info({'version': '1.0.0', 'engine': 'index-builder'})

        logger.debug("IndexToolMetrics initialized")

    def record_run(
        self,
        index: str,
        verify_type: str,
        status: str,
        duration_seconds: float,
        counters: Dict[str, int]
    ) -> None:
        """
        Record a finished run.

        Args:
            index: Index full name
            verify_type: Verify mode of the run
            status: Run status (success/failure/mismatch/setup_error)
            duration_seconds: Wall clock duration
            counters: Final job counters
        """
        self.runs_total.labels(index=index, verify_type=verify_type, status=status).inc()
        self.run_duration_seconds.labels(index=index, verify_type=verify_type).observe(duration_seconds)

        self.scanned_rows_total.labels(index=index).inc(counters.get(SCANNED_DATA_ROW_COUNT, 0))
        self.rebuilt_rows_total.labels(index=index).inc(counters.get(REBUILT_INDEX_ROW_COUNT, 0))
        self.index_mutations_total.labels(index=index).inc(counters.get(INDEX_MUTATION_COUNT, 0))
        self.last_run_failed_rows.labels(index=index).set(counters.get(FAILED_INDEX_ROW_COUNT, 0))

        for phase in PHASES:
            inconsistent = 0
            for suffix, outcome in _OUTCOME_LABELS.items():
                value = counters.get(phase + suffix, 0)
                if value:
                    self.verified_rows_total.labels(
                        index=index, phase=phase.lower(), outcome=outcome
                    ).inc(value)
                if suffix not in (VALID_INDEX_ROW_COUNT, EXPIRED_INDEX_ROW_COUNT):
                    inconsistent += value
            self.last_run_inconsistent_rows.labels(index=index, phase=phase.lower()).set(inconsistent)

        logger.debug(
            f"Recorded index tool metrics for {index}: "
            f"verify_type={verify_type}, status={status}, duration={duration_seconds:.2f}s"
        )

    def start_server(self, port: int = 9090) -> None:
        """Start Prometheus metrics HTTP server."""
        try:
            start_http_server(port, registry=self.registry)
            logger.info(f"Metrics server started on port {port}")
        except OSError as e:
            if "Address already in use" in str(e):
                logger.warning(f"Metrics server already running on port {port}")
            else:
                raise

    def push(self, gateway: str, job: str = "index_tool") -> None:
        """Push the registry to a Prometheus Pushgateway."""
        push_to_gateway(gateway, job=job, registry=self.registry)
        logger.info(f"Pushed index tool metrics to {gateway}")
