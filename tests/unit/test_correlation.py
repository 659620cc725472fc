"""
Unit tests for correlation module.
"""

import logging
import threading

import pytest

from src.utils.correlation import (
    CorrelationContext,
    clear_correlation_id,
    correlation_id_filter,
    generate_correlation_id,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
    setup_correlation_logging,
)


def make_record():
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg="Test message",
        args=(),
        exc_info=None
    )


class TestCorrelationIdGeneration:
    """Test correlation ID generation functions."""

    def test_generated_ids_look_like_run_ids(self):
        correlation_id = generate_correlation_id()

        assert correlation_id.startswith("run_")
        assert len(correlation_id) == 16
        int(correlation_id[4:], 16)

    def test_generate_correlation_id_returns_unique_values(self):
        """Test that multiple generated IDs are unique."""
        assert len({generate_correlation_id() for _ in range(3)}) == 3

    def test_context_without_id_generates_one(self):
        with CorrelationContext() as correlation_id:
            assert correlation_id.startswith("run_")


class TestCorrelationIdContext:
    """Test correlation ID context management."""

    def setup_method(self):
        clear_correlation_id()

    def teardown_method(self):
        clear_correlation_id()

    def test_get_correlation_id_returns_none_when_not_set(self):
        assert get_correlation_id() is None

    def test_set_and_get_correlation_id(self):
        set_correlation_id("job_abc")
        assert get_correlation_id() == "job_abc"

    @pytest.mark.parametrize("bad_id", ["", None, 12345])
    def test_set_invalid_correlation_id_raises_error(self, bad_id):
        with pytest.raises(ValueError, match="non-empty string"):
            set_correlation_id(bad_id)

    def test_reset_restores_previous_id(self):
        set_correlation_id("job_outer")
        token = set_correlation_id("job_inner")

        reset_correlation_id(token)

        assert get_correlation_id() == "job_outer"

    def test_clear_correlation_id(self):
        set_correlation_id("job_abc")
        clear_correlation_id()
        assert get_correlation_id() is None


class TestCorrelationContext:
    """Test CorrelationContext context manager."""

    def setup_method(self):
        clear_correlation_id()

    def teardown_method(self):
        clear_correlation_id()

    def test_context_creates_new_id(self):
        with CorrelationContext() as correlation_id:
            assert get_correlation_id() == correlation_id

        assert get_correlation_id() is None

    def test_context_uses_job_id(self):
        with CorrelationContext("job_123") as correlation_id:
            assert correlation_id == "job_123"

    def test_nested_contexts_restore_outer_id(self):
        with CorrelationContext("outer"):
            with CorrelationContext("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"

        assert get_correlation_id() is None

    def test_context_clears_on_exception(self):
        with pytest.raises(RuntimeError):
            with CorrelationContext():
                raise RuntimeError("Test exception")

        assert get_correlation_id() is None

    def test_worker_threads_have_their_own_context(self):
        """A worker thread only sees the id it entered itself."""
        seen = {}

        def worker():
            seen["before"] = get_correlation_id()
            with CorrelationContext("job_worker"):
                seen["inside"] = get_correlation_id()

        with CorrelationContext("job_main"):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()
            assert get_correlation_id() == "job_main"

        assert seen == {"before": None, "inside": "job_worker"}


class TestCorrelationLogging:
    """Test log record enrichment."""

    def setup_method(self):
        clear_correlation_id()

    def test_filter_without_id(self):
        record = make_record()
        assert correlation_id_filter(record) is True
        assert record.correlation_id == "N/A"

    def test_filter_with_id(self):
        record = make_record()
        with CorrelationContext("job_42"):
            correlation_id_filter(record)
        assert record.correlation_id == "job_42"

    def test_setup_correlation_logging_adds_handler_filter(self):
        handler = logging.StreamHandler()
        setup_correlation_logging(handler)
        assert correlation_id_filter in handler.filters
