"""
Local Job Runner

Parallel execution substrate for split-based batch jobs. Each input split
is processed by an independent worker with its own counters; a failed
split attempt is retried, and only counters from successful attempts are
folded into the job totals.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from src.execution.counters import JobCounters
from src.storage.model import KeyRange

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Lifecycle states of a submitted job."""
    PREP = "PREP"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    KILLED = "KILLED"


@dataclass(frozen=True)
class InputSplit:
    """A unit of work: one region's key range, optionally read from a snapshot."""

    table: str
    region_name: str
    key_range: KeyRange
    snapshot: Optional[str] = None


@dataclass
class TaskContext:
    """Per-attempt context handed to a mapper."""

    job_id: str
    split: InputSplit
    counters: JobCounters
    config: Dict[str, Any]
    attempt: int = 1


Mapper = Callable[[TaskContext], None]


@dataclass
class SplitFailure:
    """Terminal failure of one split."""

    split: InputSplit
    attempts: int
    error: str


class JobHandle:
    """Handle to a submitted job."""

    def __init__(self, job_id: str, job_name: str, mapper: Mapper, splits: List[InputSplit]):
        self.job_id = job_id
        self.job_name = job_name
        self.mapper = mapper
        self.splits = splits
        self._status = JobStatus.PREP
        self._counters = JobCounters()
        self._failures: List[SplitFailure] = []
        self._done = threading.Event()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()

    @property
    def status(self) -> JobStatus:
        return self._status

    def is_complete(self) -> bool:
        return self._done.is_set()

    def is_successful(self) -> bool:
        return self._status is JobStatus.SUCCEEDED

    def wait_for_completion(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the job finishes.

        Returns:
            True if the job succeeded, False if it failed, was killed or timed out
        """
        if not self._done.wait(timeout):
            return False
        return self.is_successful()

    def get_counter(self, name: str) -> int:
        return self._counters.get(name)

    def counters(self) -> Dict[str, int]:
        return self._counters.as_dict()

    def failures(self) -> List[SplitFailure]:
        return list(self._failures)

    def kill(self) -> None:
        """Stop scheduling further splits; running splits finish their attempt."""
        self._cancelled.set()

    def _record_success(self, counters: JobCounters) -> None:
        with self._lock:
            self._counters.merge(counters)

    def _record_failure(self, failure: SplitFailure) -> None:
        with self._lock:
            self._failures.append(failure)

    def _finish(self, status: JobStatus) -> None:
        self._status = status
        self._done.set()


class LocalJobRunner:
    """
    Runs split mappers on a thread pool.

    Args:
        max_workers: Concurrent split workers
        max_split_attempts: Attempts per split before the job fails
    """

    def __init__(self, max_workers: int = 4, max_split_attempts: int = 2):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if max_split_attempts < 1:
            raise ValueError("max_split_attempts must be at least 1")
        self.max_workers = max_workers
        self.max_split_attempts = max_split_attempts
        logger.debug(f"Initialized LocalJobRunner with {max_workers} workers")

    def submit(
        self,
        splits: List[InputSplit],
        mapper: Mapper,
        config: Optional[Dict[str, Any]] = None,
        job_name: str = "job"
    ) -> JobHandle:
        """
        Submit a job and return immediately.

        Args:
            splits: Input splits, processed independently
            mapper: Callable invoked once per split attempt
            config: Read-only job configuration passed to every task
            job_name: Human readable job name

        Returns:
            JobHandle for status and counters
        """
        job_id = f"job_{uuid.uuid4().hex[:12]}"
        handle = JobHandle(job_id, job_name, mapper, list(splits))
        frozen_config = dict(config or {})

        logger.info(f"Submitting {job_name} ({job_id}) with {len(splits)} splits")

        driver = threading.Thread(
            target=self._drive,
            args=(handle, frozen_config),
            name=f"{job_id}-driver",
            daemon=True
        )
        handle._status = JobStatus.RUNNING
        driver.start()
        return handle

    def _drive(self, handle: JobHandle, config: Dict[str, Any]) -> None:
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers,
                                    thread_name_prefix=handle.job_id) as pool:
                futures: List[Future] = [
                    pool.submit(self._run_split, handle, split, config)
                    for split in handle.splits
                ]
                for future in futures:
                    future.result()
        except Exception as e:
            logger.error(f"Job {handle.job_id} driver crashed: {e}", exc_info=True)
            handle._finish(JobStatus.FAILED)
            return

        if handle._cancelled.is_set():
            status = JobStatus.KILLED
        elif handle._failures:
            status = JobStatus.FAILED
        else:
            status = JobStatus.SUCCEEDED
        logger.info(f"Job {handle.job_id} finished with status {status.value}")
        handle._finish(status)

    def _run_split(self, handle: JobHandle, split: InputSplit, config: Dict[str, Any]) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_split_attempts + 1):
            if handle._cancelled.is_set():
                return
            context = TaskContext(
                job_id=handle.job_id,
                split=split,
                counters=JobCounters(),
                config=config,
                attempt=attempt
            )
            try:
                handle.mapper(context)
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Split {split.region_name} attempt {attempt}/{self.max_split_attempts} failed: {e}"
                )
                continue
            handle._record_success(context.counters)
            return

        handle._record_failure(SplitFailure(
            split=split,
            attempts=self.max_split_attempts,
            error=str(last_error)
        ))
