"""
Deterministic pattern-matching field extractor.

The safety net behind the LLM extractor: it scans visitor messages in
transcript order and fills each schema field from the first message that
matches the field's type. It never raises, never blocks and never touches
anything outside its arguments.

Usage:
    values = PatternFallbackExtractor().extract(messages, schema)
    # {"email": "a@b.com"}
"""

import logging
import re
from typing import Mapping, Optional, Sequence

from agentforms.schemas.agent_schema import AgentSchema, FieldType, SchemaField
from agentforms.schemas.session_schema import Message, MessageRole

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"[\w.+-]+@[\w.-]+\.\w+")
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4}")

# Label words too generic to tie a message to a field.
_LABEL_STOPWORDS = frozenset({
    "your", "the", "and", "for", "what", "which", "please", "enter", "with", "from",
})
_MIN_KEYWORD_LENGTH = 4


def _label_keywords(label: str) -> list[str]:
    words = re.findall(r"[a-z0-9]+", label.lower())
    return [w for w in words if len(w) >= _MIN_KEYWORD_LENGTH and w not in _LABEL_STOPWORDS]


def _mentions_label(content: str, field: SchemaField) -> bool:
    """Topical-relevance heuristic for free-text fields."""
    lowered = content.lower()
    label = field.label.lower().strip()
    if label and label in lowered:
        return True
    return any(word in lowered for word in _label_keywords(field.label))


class PatternFallbackExtractor:
    """Type-driven regex and substring extraction, first match wins."""

    def extract(
        self,
        messages: Sequence[Message],
        schema: AgentSchema,
        existing: Optional[Mapping[str, str]] = None,
    ) -> dict[str, str]:
        filled = set(existing or {})
        extracted: dict[str, str] = {}

        for message in messages:
            if message.role != MessageRole.VISITOR:
                continue
            for field in schema.fields:
                if field.id in extracted or field.id in filled:
                    continue
                try:
                    value = self.match_field(message.content, field)
                except Exception as exc:
                    logger.debug("Pattern match skipped for '%s': %s", field.id, exc)
                    continue
                if value:
                    extracted[field.id] = value

        return extracted

    def match_field(self, content: str, field: SchemaField) -> Optional[str]:
        """Return the value this message offers for ``field``, if any."""
        if field.type == FieldType.EMAIL:
            match = EMAIL_RE.search(content)
            return match.group(0) if match else None

        if field.type == FieldType.NUMBER:
            match = NUMBER_RE.search(content)
            return match.group(0) if match else None

        if field.type == FieldType.DATE:
            match = DATE_RE.search(content)
            return match.group(0) if match else None

        if field.type == FieldType.SELECT:
            lowered = content.lower()
            for option in field.options or []:
                if option and option.lower() in lowered:
                    return option
            return None

        text = content.strip()
        if text and _mentions_label(text, field):
            return text
        return None
