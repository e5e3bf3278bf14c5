"""
Field extraction coordinator: LLM first, pattern matching as the safety net.

Policy:
    1. Ask the primary extractor once.
    2. On success keep only known fields at or above the confidence threshold.
    3. On any failure report it to diagnostics and run the fallback extractor,
       whose matches are accepted at confidence 100. The fallback only scans
       messages not yet processed, so an answer that failed validation is
       never picked up again once the visitor corrects it.

Nothing raised by either extractor ever leaves ``extract_fields``.
"""

from typing import Collection, Mapping, Optional, Sequence

from agentforms.config import settings
from agentforms.diagnostics import DiagnosticsSink, LoggingDiagnostics
from agentforms.extraction.base import FallbackExtractor, PrimaryExtractor
from agentforms.extraction.fallback import PatternFallbackExtractor
from agentforms.extraction.llm_client import LLMExtractorClient
from agentforms.logging_context import get_session_logger
from agentforms.schemas.agent_schema import AgentSchema
from agentforms.schemas.session_schema import ExtractedField, ExtractionSource, Message

logger = get_session_logger(__name__)

FALLBACK_CONFIDENCE = 100


class FieldExtractionCoordinator:
    """Composes a PrimaryExtractor and a FallbackExtractor."""

    def __init__(
        self,
        primary: Optional[PrimaryExtractor] = None,
        fallback: Optional[FallbackExtractor] = None,
        confidence_threshold: Optional[int] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        owns_primary: bool = False,
    ) -> None:
        self._primary = primary
        self._fallback = fallback or PatternFallbackExtractor()
        self._threshold = (
            settings.extraction.confidence_threshold
            if confidence_threshold is None
            else confidence_threshold
        )
        self._diagnostics = diagnostics or LoggingDiagnostics()
        self._owns_primary = owns_primary

    @classmethod
    def from_settings(cls, diagnostics: Optional[DiagnosticsSink] = None) -> "FieldExtractionCoordinator":
        """LLM-first coordinator when an API key is configured, fallback-only otherwise."""
        if not settings.model.llm_api_key:
            return cls(diagnostics=diagnostics)
        client = LLMExtractorClient(api_key=settings.model.llm_api_key)
        return cls(primary=client, diagnostics=diagnostics, owns_primary=True)

    @property
    def primary(self) -> Optional[PrimaryExtractor]:
        return self._primary

    async def aclose(self) -> None:
        """Close the primary extractor if this coordinator created it."""
        if not self._owns_primary:
            return
        aclose = getattr(self._primary, "aclose", None)
        if aclose is not None:
            await aclose()

    @property
    def confidence_threshold(self) -> int:
        return self._threshold

    async def extract_fields(
        self,
        messages: Sequence[Message],
        schema: AgentSchema,
        existing: Optional[Mapping[str, str]] = None,
        processed_ids: Optional[Collection[str]] = None,
    ) -> dict[str, ExtractedField]:
        """
        Extract candidates from the transcript.

        Args:
            messages: Full transcript, oldest first, ending with the new message.
            schema: Form schema of the session.
            existing: Values already accepted; the fallback never re-derives them.
            processed_ids: Message ids already applied to the session. The
                fallback skips them; the primary extractor still sees them
                as context.
        """
        if self._primary is None:
            return self._run_fallback(messages, schema, existing, processed_ids)

        try:
            candidates = await self._primary.extract_fields(messages, schema)
        except Exception as exc:
            self._diagnostics.report(
                "extraction_failure",
                "LLM extraction failed, using pattern fallback",
                error=f"{type(exc).__name__}: {exc}",
            )
            return self._run_fallback(messages, schema, existing, processed_ids)

        known = schema.field_ids
        accepted = {
            field_id: candidate
            for field_id, candidate in candidates.items()
            if field_id in known and candidate.confidence >= self._threshold
        }
        logger.debug(
            "LLM extraction: %d candidate(s), %d above threshold %d",
            len(candidates), len(accepted), self._threshold,
        )
        return accepted

    def _run_fallback(
        self,
        messages: Sequence[Message],
        schema: AgentSchema,
        existing: Optional[Mapping[str, str]],
        processed_ids: Optional[Collection[str]] = None,
    ) -> dict[str, ExtractedField]:
        if processed_ids:
            messages = [m for m in messages if m.id not in processed_ids]
        try:
            values = self._fallback.extract(messages, schema, existing)
        except Exception as exc:
            self._diagnostics.report(
                "extraction_failure",
                "Pattern fallback raised; no fields extracted this turn",
                error=f"{type(exc).__name__}: {exc}",
            )
            return {}
        return {
            field_id: ExtractedField(
                field_id=field_id,
                value=value,
                confidence=FALLBACK_CONFIDENCE,
                source=ExtractionSource.FALLBACK,
            )
            for field_id, value in values.items()
        }
