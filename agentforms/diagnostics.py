"""Structured diagnostics sink for non-fatal failures.

Extraction degradation and delivery problems are reported here instead of
being printed and forgotten. The default sink writes to logging; tests
and embedders can swap in the no-op sink or a recording implementation.
"""

import logging
from typing import Any, Optional, Protocol

from agentforms.logging_context import get_session_logger


class DiagnosticsSink(Protocol):
    def report(self, kind: str, message: str, **context: Any) -> None:
        ...


class LoggingDiagnostics:
    """Writes each report as a WARNING on the ``agentforms.diagnostics`` logger."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or get_session_logger("agentforms.diagnostics")

    def report(self, kind: str, message: str, **context: Any) -> None:
        details = " ".join(f"{key}={value!r}" for key, value in sorted(context.items()))
        self._logger.warning("[%s] %s %s", kind, message, details)


class NullDiagnostics:
    def report(self, kind: str, message: str, **context: Any) -> None:
        return None
