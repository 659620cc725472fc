"""
Index Row Comparer

Classifies an index row against the data row it was derived from, both
read at one fixed timestamp so the two tables are compared at the same
point in time. Pure logic: the caller supplies the rows.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional

from src.indexing.generator import INDEX_FAMILY, ExpectedIndexRow, IndexMutationGenerator
from src.storage.model import RowResult

logger = logging.getLogger(__name__)


class VerificationOutcome(Enum):
    """Consistency class of one data row's index row."""
    VALID = "VALID"
    MISSING = "MISSING"
    INVALID_EXTRA_CELLS = "INVALID_EXTRA_CELLS"
    INVALID_MISSING_CELLS = "INVALID_MISSING_CELLS"
    EXPIRED = "EXPIRED"

    @property
    def is_failure(self) -> bool:
        return self in (
            VerificationOutcome.MISSING,
            VerificationOutcome.INVALID_EXTRA_CELLS,
            VerificationOutcome.INVALID_MISSING_CELLS,
        )


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of comparing one data row with its index row."""

    outcome: VerificationOutcome
    data_row_key: bytes
    index_row_key: Optional[bytes] = None
    message: str = ""

    @property
    def is_failure(self) -> bool:
        return self.outcome.is_failure


def _printable(value: bytes) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.hex()


class IndexRowComparer:
    """
    Compares data rows with index rows.

    Args:
        generator: Mutation generator of the (table, index) pair
        ttl_ms: Data table time-to-live; rows older than this are expired
        max_lookback_ms: Window of older data versions an index row may
            still legitimately reflect
    """

    def __init__(
        self,
        generator: IndexMutationGenerator,
        ttl_ms: Optional[int] = None,
        max_lookback_ms: int = 0
    ):
        self.generator = generator
        self.ttl_ms = ttl_ms
        self.max_lookback_ms = max_lookback_ms

    def is_expired(self, data_row: RowResult, as_of: int) -> bool:
        return self.ttl_ms is not None and data_row.last_modified() < as_of - self.ttl_ms

    def index_keys(self, data_row: RowResult) -> List[bytes]:
        """Every index row key projected by the data row's history."""
        keys = []
        for _, expected in self.generator.expected_versions(data_row):
            if expected is not None and expected.key not in keys:
                keys.append(expected.key)
        return keys

    def compare(
        self,
        data_row: RowResult,
        index_rows: Mapping[bytes, Optional[RowResult]],
        as_of: int
    ) -> VerificationResult:
        """
        Classify the index state of one data row.

        Args:
            data_row: Raw data row read at as_of
            index_rows: Index rows read at as_of, keyed by index row key
                (at least every key returned by index_keys)
            as_of: Read timestamp shared by both reads

        Returns:
            VerificationResult
        """
        key = data_row.row
        if self.is_expired(data_row, as_of):
            return VerificationResult(VerificationOutcome.EXPIRED, key, None, "Data row expired")

        versions = self.generator.expected_versions(data_row)
        latest = versions[-1][1] if versions else None
        history_keys = [e.key for _, e in versions if e is not None]

        if latest is None:
            for index_key in history_keys:
                if self._live_cells(index_rows.get(index_key)):
                    return VerificationResult(
                        VerificationOutcome.INVALID_EXTRA_CELLS, key, index_key,
                        "Index row exists for a data row that is deleted or not indexed"
                    )
            return VerificationResult(VerificationOutcome.VALID, key, None)

        actual = self._live_cells(index_rows.get(latest.key))
        if not actual:
            return VerificationResult(
                VerificationOutcome.MISSING, key, latest.key, "Missing index row"
            )

        window_start = as_of - self.max_lookback_ms
        candidates: List[ExpectedIndexRow] = [latest] + [
            expected for ts, expected in versions
            if expected is not None and expected.key == latest.key
            and ts >= window_start and expected != latest
        ]

        stale_keys = [
            index_key for index_key in history_keys
            if index_key != latest.key and self._live_cells(index_rows.get(index_key))
        ]
        if not stale_keys and any(candidate.as_dict() == actual for candidate in candidates):
            return VerificationResult(VerificationOutcome.VALID, key, latest.key)

        return self._classify_mismatch(key, latest, candidates, actual, stale_keys)

    def _classify_mismatch(
        self,
        data_key: bytes,
        latest: ExpectedIndexRow,
        candidates: List[ExpectedIndexRow],
        actual: Dict[bytes, bytes],
        stale_keys: List[bytes]
    ) -> VerificationResult:
        if stale_keys:
            return VerificationResult(
                VerificationOutcome.INVALID_EXTRA_CELLS, data_key, stale_keys[0],
                "Index row found at a key no longer produced by the data row"
            )

        allowed: Dict[bytes, set] = {}
        for candidate in candidates:
            for qualifier, value in candidate.cells:
                allowed.setdefault(qualifier, set()).add(value)

        for qualifier, value in sorted(actual.items()):
            if value not in allowed.get(qualifier, ()):
                expected_value = latest.as_dict().get(qualifier)
                return VerificationResult(
                    VerificationOutcome.INVALID_EXTRA_CELLS, data_key, latest.key,
                    f"Not matching value for {_printable(qualifier)} E:"
                    f"{_printable(expected_value) if expected_value is not None else 'null'} "
                    f"A:{_printable(value)}"
                )

        missing = sorted(set(latest.as_dict()) - set(actual))
        if missing:
            return VerificationResult(
                VerificationOutcome.INVALID_MISSING_CELLS, data_key, latest.key,
                "Missing cells " + ", ".join(_printable(q) for q in missing)
            )

        return VerificationResult(
            VerificationOutcome.INVALID_EXTRA_CELLS, data_key, latest.key,
            "Index row mixes cells from different data row versions"
        )

    @staticmethod
    def _live_cells(index_row: Optional[RowResult]) -> Dict[bytes, bytes]:
        if index_row is None:
            return {}
        return {
            qualifier: cell.value
            for (family, qualifier), cell in index_row.latest().items()
            if family == INDEX_FAMILY
        }
