"""Session ID logging context for tracing a visitor session across modules.

Provides a session_id-aware logger that attaches the current session
identifier to every log record, so a single conversation can be followed
from extraction through to webhook delivery.

Usage:
    from agentforms.logging_context import get_session_logger, session_scope

    logger = get_session_logger(__name__)
    with session_scope("sess-abc123"):
        logger.info("Processing message")  # record.session_id == "sess-abc123"
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_session_id: ContextVar[str] = ContextVar("session_id", default="NO_SESSION")


def set_session_id(session_id: str) -> None:
    """Set the correlation ID for the current async context."""
    _session_id.set(session_id)


def get_session_id() -> str:
    """Retrieve the current correlation ID."""
    return _session_id.get()


@contextmanager
def session_scope(session_id: str) -> Iterator[None]:
    """Bind ``session_id`` for the duration of the block, then restore."""
    token = _session_id.set(session_id)
    try:
        yield
    finally:
        _session_id.reset(token)


class SessionIdFilter(logging.Filter):
    """Injects session_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_id.get()  # type: ignore[attr-defined]
        return True


def get_session_logger(name: str) -> logging.Logger:
    """Return a logger with the SessionIdFilter attached.

    The filter adds ``session_id`` to each record so formatters can
    include ``%(session_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, SessionIdFilter) for f in logger.filters):
        logger.addFilter(SessionIdFilter())
    return logger
