"""
Input guardrails applied to visitor messages before extraction.

Two independent checks, composed into a GuardrailPipeline:
1. MessageLengthGuardrail - rejects empty and over-long messages
2. RateLimitGuardrail     - caps messages per session in a sliding window

A failed check blocks the message: it is never appended to the transcript.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from agentforms.config import settings

logger = logging.getLogger(__name__)

RATE_WINDOW_SEC = 60.0


@dataclass
class GuardrailResult:
    """Outcome of a single guardrail check."""
    passed: bool
    violation_type: Optional[str] = None
    message: Optional[str] = None
    retry_after: Optional[float] = None


class MessageLengthGuardrail:
    """Rejects blank messages and messages above the configured length."""

    def __init__(self, max_length: Optional[int] = None) -> None:
        self.max_length = max_length or settings.sessions.max_message_length

    def check(self, text: str) -> GuardrailResult:
        if not text or not text.strip():
            return GuardrailResult(
                passed=False,
                violation_type="empty_message",
                message="Message cannot be empty.",
            )
        if len(text) > self.max_length:
            return GuardrailResult(
                passed=False,
                violation_type="message_too_long",
                message=f"Message exceeds {self.max_length} characters.",
            )
        return GuardrailResult(passed=True)


class RateLimitGuardrail:
    """Sliding-window message counter per session."""

    def __init__(
        self,
        max_per_minute: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_minute = max_per_minute or settings.sessions.messages_per_minute
        self._clock = clock
        self._sent: dict[str, deque[float]] = {}

    @property
    def tracked_sessions(self) -> int:
        return len(self._sent)

    def _prune(self, session_id: str, now: float) -> deque[float]:
        window = self._sent.get(session_id, deque())
        while window and now - window[0] >= RATE_WINDOW_SEC:
            window.popleft()
        if not window:
            self._sent.pop(session_id, None)
        return window

    def check(self, session_id: str) -> GuardrailResult:
        now = self._clock()
        window = self._prune(session_id, now)
        if len(window) >= self.max_per_minute:
            retry_after = RATE_WINDOW_SEC - (now - window[0])
            logger.info("Rate limit hit for session %s (%d msgs/min)", session_id, len(window))
            return GuardrailResult(
                passed=False,
                violation_type="rate_limited",
                message=f"Too many messages. Try again in {retry_after:.0f}s.",
                retry_after=retry_after,
            )
        return GuardrailResult(passed=True)

    def record(self, session_id: str) -> None:
        self._sent.setdefault(session_id, deque()).append(self._clock())

    def forget(self, session_id: str) -> None:
        self._sent.pop(session_id, None)


class GuardrailPipeline:
    """Composes the input guardrails. Only accepted messages count toward the rate."""

    def __init__(
        self,
        length: Optional[MessageLengthGuardrail] = None,
        rate: Optional[RateLimitGuardrail] = None,
    ) -> None:
        self.length = length or MessageLengthGuardrail()
        self.rate = rate or RateLimitGuardrail()

    def check_visitor_message(self, session_id: str, text: str) -> list[GuardrailResult]:
        """Return failed checks; an empty list means the message may proceed."""
        results = [self.length.check(text), self.rate.check(session_id)]
        failures = [r for r in results if not r.passed]
        if not failures:
            self.rate.record(session_id)
        return failures

    def forget(self, session_id: str) -> None:
        """Drop per-session state once the session has ended."""
        self.rate.forget(session_id)
