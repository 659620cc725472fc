"""
Retrying Storage Client

Wraps a StorageClient and retries transient I/O failures with bounded
attempts and exponential backoff (tenacity). Exhaustion raises
RetriesExhaustedError, which the execution substrate treats as a split
failure.
"""

import logging
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, TypeVar

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.storage.client import Admin, MutationObserver, StorageClient, Transaction
from src.storage.errors import RetriesExhaustedError, TransientStorageError
from src.storage.model import KeyRange, Mutation, RowResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Bounded retry settings.

    Attributes:
        max_attempts: Total attempts including the first call
        backoff_ms: Delay before the first retry
        multiplier: Backoff growth factor per retry
    """

    max_attempts: int = 3
    backoff_ms: int = 50
    multiplier: float = 2.0


def call_with_retries(
    operation: str,
    func: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Run func, retrying TransientStorageError per policy.

    Raises:
        RetriesExhaustedError: If every attempt failed transiently
    """
    def log_retry(retry_state) -> None:
        logger.warning(
            f"{operation} attempt {retry_state.attempt_number} failed "
            f"({retry_state.outcome.exception()}), retrying in {retry_state.next_action.sleep:.3f}s"
        )

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.backoff_ms / 1000.0, exp_base=policy.multiplier),
        retry=retry_if_exception_type(TransientStorageError),
        sleep=sleep,
        before_sleep=log_retry,
    )
    try:
        return retrying(func)
    except RetryError as e:
        attempts = e.last_attempt.attempt_number
        cause = e.last_attempt.exception()
        logger.error(f"{operation} failed after {attempts} attempts: {cause}")
        raise RetriesExhaustedError(operation, attempts, cause) from cause


def retried(func):
    """Method decorator applying the client's retry policy."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        return call_with_retries(
            func.__name__,
            lambda: func(self, *args, **kwargs),
            self.policy,
            self._sleep
        )
    return wrapper


class RetryingStorageClient(StorageClient):
    """StorageClient decorator adding bounded retries."""

    def __init__(
        self,
        delegate: StorageClient,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.delegate = delegate
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    @retried
    def scan(
        self,
        table: str,
        key_range: KeyRange = KeyRange(),
        as_of: Optional[int] = None,
        snapshot: Optional[str] = None,
        min_timestamp: Optional[int] = None,
        max_versions: Optional[int] = None,
        raw: bool = False
    ) -> Iterator[RowResult]:
        # Materialise so a failure surfaces inside the retry loop.
        rows = list(self.delegate.scan(
            table, key_range, as_of, snapshot, min_timestamp, max_versions, raw
        ))
        return iter(rows)

    @retried
    def get(
        self,
        table: str,
        row: bytes,
        as_of: Optional[int] = None,
        raw: bool = False
    ) -> Optional[RowResult]:
        return self.delegate.get(table, row, as_of, raw)

    @retried
    def batch_mutate(self, table: str, mutations: Sequence[Mutation]) -> None:
        self.delegate.batch_mutate(table, mutations)

    def begin_transaction(self) -> Transaction:
        return self.delegate.begin_transaction()

    @retried
    def invoke_endpoint(
        self,
        name: str,
        table: str,
        key_range: KeyRange,
        request: Dict[str, Any]
    ) -> Dict[str, Any]:
        return self.delegate.invoke_endpoint(name, table, key_range, request)

    def register_endpoint(self, name: str, handler: Callable[..., Dict[str, Any]]) -> None:
        self.delegate.register_endpoint(name, handler)

    def get_admin(self) -> Admin:
        return self.delegate.get_admin()

    def current_time(self) -> int:
        return self.delegate.current_time()

    def add_observer(self, observer: MutationObserver) -> None:
        self.delegate.add_observer(observer)

    def close(self) -> None:
        self.delegate.close()
