"""
Correlation IDs for Index Tool Runs

Every log line written while a job runs carries the job id. The id lives
in a context variable, so each split worker thread enters its own scope
with the id it was handed and never sees another run's id.
"""

import contextvars
import logging
import uuid
from typing import Optional

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id',
    default=None
)

NO_CORRELATION_ID = "N/A"


def generate_correlation_id() -> str:
    """A fresh id for work not tied to a submitted job, e.g. run_3f9a0c12d4e7."""
    return f"run_{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """
    Bind correlation_id to the current context.

    Returns:
        Token restoring the previous id when passed to reset_correlation_id

    Raises:
        ValueError: If correlation_id is not a non-empty string
    """
    if not correlation_id or not isinstance(correlation_id, str):
        raise ValueError("Correlation ID must be a non-empty string")
    return _correlation_id.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    _correlation_id.reset(token)


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class CorrelationContext:
    """
    Scope a correlation id, restoring the enclosing one on exit.

    Args:
        correlation_id: Id to bind (usually a job id); generated when omitted
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = set_correlation_id(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        reset_correlation_id(self._token)
        self._token = None


def correlation_id_filter(record: logging.LogRecord) -> bool:
    """Stamp record.correlation_id; never drops a record."""
    record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
    return True


def setup_correlation_logging(handler: logging.Handler) -> None:
    """
    Attach the correlation filter to a handler.

    Handler filters see records from every logger that propagates to the
    handler, so one call on the root handler covers the whole tool.
    """
    handler.addFilter(correlation_id_filter)
