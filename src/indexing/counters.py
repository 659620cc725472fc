"""
Index Tool Counter Names

Counter names reported by an index build job, and the mapping from a
verification outcome to the counters it increments.
"""

from typing import Dict, List

from src.execution.counters import JobCounters
from src.indexing.comparer import VerificationOutcome

INPUT_RECORDS = "INPUT_RECORDS"
SCANNED_DATA_ROW_COUNT = "SCANNED_DATA_ROW_COUNT"
REBUILT_INDEX_ROW_COUNT = "REBUILT_INDEX_ROW_COUNT"
INDEX_MUTATION_COUNT = "INDEX_MUTATION_COUNT"
FAILED_INDEX_ROW_COUNT = "FAILED_INDEX_ROW_COUNT"

BEFORE_REBUILD = "BEFORE_REBUILD"
AFTER_REBUILD = "AFTER_REBUILD"
PHASES = (BEFORE_REBUILD, AFTER_REBUILD)

VALID_INDEX_ROW_COUNT = "_VALID_INDEX_ROW_COUNT"
EXPIRED_INDEX_ROW_COUNT = "_EXPIRED_INDEX_ROW_COUNT"
MISSING_INDEX_ROW_COUNT = "_MISSING_INDEX_ROW_COUNT"
INVALID_INDEX_ROW_COUNT = "_INVALID_INDEX_ROW_COUNT"
INVALID_COZ_EXTRA_CELLS = "_INVALID_INDEX_ROW_COUNT_COZ_EXTRA_CELLS"
INVALID_COZ_MISSING_CELLS = "_INVALID_INDEX_ROW_COUNT_COZ_MISSING_CELLS"

_OUTCOME_SUFFIXES: Dict[VerificationOutcome, List[str]] = {
    VerificationOutcome.VALID: [VALID_INDEX_ROW_COUNT],
    VerificationOutcome.EXPIRED: [EXPIRED_INDEX_ROW_COUNT],
    VerificationOutcome.MISSING: [MISSING_INDEX_ROW_COUNT],
    VerificationOutcome.INVALID_EXTRA_CELLS: [INVALID_INDEX_ROW_COUNT, INVALID_COZ_EXTRA_CELLS],
    VerificationOutcome.INVALID_MISSING_CELLS: [INVALID_INDEX_ROW_COUNT, INVALID_COZ_MISSING_CELLS],
}


def phase_counter(phase: str, suffix: str) -> str:
    """Full counter name, e.g. BEFORE_REBUILD_VALID_INDEX_ROW_COUNT."""
    if phase not in PHASES:
        raise ValueError(f"Unknown verification phase: {phase}")
    return phase + suffix


def phase_counter_names(phase: str) -> List[str]:
    return [
        phase_counter(phase, suffix) for suffix in (
            VALID_INDEX_ROW_COUNT,
            EXPIRED_INDEX_ROW_COUNT,
            MISSING_INDEX_ROW_COUNT,
            INVALID_INDEX_ROW_COUNT,
            INVALID_COZ_EXTRA_CELLS,
            INVALID_COZ_MISSING_CELLS,
        )
    ]


def all_counter_names() -> List[str]:
    names = [
        INPUT_RECORDS,
        SCANNED_DATA_ROW_COUNT,
        REBUILT_INDEX_ROW_COUNT,
        INDEX_MUTATION_COUNT,
        FAILED_INDEX_ROW_COUNT,
    ]
    for phase in PHASES:
        names.extend(phase_counter_names(phase))
    return names


def record_outcome(counters: JobCounters, phase: str, outcome: VerificationOutcome) -> None:
    """Increment the counters of one verified row in the given phase."""
    for suffix in _OUTCOME_SUFFIXES[outcome]:
        counters.increment(phase_counter(phase, suffix))
