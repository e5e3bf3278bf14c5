"""Error taxonomy for the session engine.

Validation failures are not exceptions: they travel as data in a
ValidationResult. Everything below is raised somewhere in the engine.
"""

from typing import Optional


class AgentFormsError(Exception):
    """Base class for all engine errors."""


class ExtractionFailure(AgentFormsError):
    """The primary extractor was unreachable or returned something unusable.

    Recovered inside the extraction coordinator; never reaches a visitor.
    """


class DeliveryFailure(AgentFormsError):
    """A webhook POST failed at the transport or HTTP level."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class InvalidTransitionError(AgentFormsError):
    """Raised when a transition is not valid from the current session state."""


# Illegal lifecycle moves abort the operation instead of being coerced.
StateViolation = InvalidTransitionError


class StreamAbort(AgentFormsError):
    """Expected cancellation of an in-flight response stream."""


class StreamingInProgress(AgentFormsError):
    """A second stream was started while one is still running for the session."""


class RecordNotFound(AgentFormsError):
    """A persistence lookup by id found nothing."""

    def __init__(self, collection: str, record_id: str) -> None:
        super().__init__(f"{collection} record '{record_id}' not found")
        self.collection = collection
        self.record_id = record_id


class MessageRejected(AgentFormsError):
    """A visitor message was refused by an input guardrail before extraction."""

    def __init__(self, message: str, violation_type: str) -> None:
        super().__init__(message)
        self.violation_type = violation_type


class RateLimitExceeded(MessageRejected):
    """The session sent more messages than the per-minute allowance."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message, violation_type="rate_limited")
        self.retry_after = retry_after


class LLMTransportError(AgentFormsError):
    """The language-model collaborator failed while producing a reply stream."""
