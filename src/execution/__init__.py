"""
Execution Module for the Index Builder

Split-parallel job substrate: partitioned input splits, per-split worker
invocation with retries, run-scoped counters and foreground/background runs.

Usage:
    from src.execution import LocalJobRunner, InputSplit

    runner = LocalJobRunner(max_workers=4)
    handle = runner.submit(splits, mapper, config={"page_size": 100})
    handle.wait_for_completion()
    handle.get_counter("INPUT_RECORDS")
"""

from src.execution.counters import JobCounters
from src.execution.job import (
    InputSplit,
    JobHandle,
    JobStatus,
    LocalJobRunner,
    SplitFailure,
    TaskContext,
)

__all__ = [
    "InputSplit",
    "JobCounters",
    "JobHandle",
    "JobStatus",
    "LocalJobRunner",
    "SplitFailure",
    "TaskContext",
]
