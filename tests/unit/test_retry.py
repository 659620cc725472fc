"""
Unit tests for bounded storage retries.
"""

import pytest
from unittest.mock import Mock

from src.storage import open_storage
from src.storage.errors import RetriesExhaustedError, StorageError, TransientStorageError
from src.storage.retry import RetryingStorageClient, RetryPolicy, call_with_retries


class TestCallWithRetries:
    """Test the retry loop."""

    def test_succeeds_after_transient_failures(self):
        """Two transient failures are retried with growing backoff."""
        func = Mock(side_effect=[TransientStorageError("a"), TransientStorageError("b"), "ok"])
        sleeps = []

        result = call_with_retries("op", func, RetryPolicy(), sleeps.append)

        assert result == "ok"
        assert func.call_count == 3
        assert sleeps == [0.05, 0.1]

    def test_exhausted_retries_raise(self):
        func = Mock(side_effect=TransientStorageError("down"))

        with pytest.raises(RetriesExhaustedError) as exc_info:
            call_with_retries("scan", func, RetryPolicy(max_attempts=3), lambda _: None)

        assert exc_info.value.attempts == 3
        assert func.call_count == 3

    def test_non_transient_errors_are_not_retried(self):
        func = Mock(side_effect=StorageError("bad request"))

        with pytest.raises(StorageError):
            call_with_retries("op", func, RetryPolicy(), lambda _: None)

        assert func.call_count == 1

    def test_single_attempt_policy_never_sleeps(self):
        sleeps = []
        with pytest.raises(RetriesExhaustedError):
            call_with_retries(
                "op", Mock(side_effect=TransientStorageError("x")),
                RetryPolicy(max_attempts=1), sleeps.append
            )
        assert sleeps == []


class TestRetryingStorageClient:
    """Test the retrying client decorator."""

    @pytest.fixture
    def client(self, storage):
        storage.get_admin().create_table("T")
        return RetryingStorageClient(storage, RetryPolicy(backoff_ms=0), sleep=lambda _: None)

    def test_scan_recovers_from_injected_failures(self, storage, client, write_row):
        write_row("T", b"a", {"V": "1"}, 10)
        storage.fail_next(2, table="T")
        assert [r.row for r in client.scan("T")] == [b"a"]

    def test_scan_gives_up_after_max_attempts(self, storage, client):
        storage.fail_next(3, table="T")
        with pytest.raises(RetriesExhaustedError):
            client.scan("T")

    def test_delegates_admin_and_clock(self, storage, client, clock):
        assert client.get_admin().table_exists("T")
        assert client.current_time() == clock()


class TestOpenStorage:
    """Test backend lookup by URL."""

    def test_memory_backend_is_wrapped_with_retries(self):
        client = open_storage("memory://")
        assert isinstance(client, RetryingStorageClient)

    def test_unknown_scheme_raises(self):
        with pytest.raises(ValueError, match="Unsupported storage URL scheme"):
            open_storage("nosuch://host")
