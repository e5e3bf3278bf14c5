"""
Per-rule-type evaluators for the validation rule engine.

Each evaluator answers one question: does ``value`` satisfy this rule?
Every rule except ``required`` passes on an empty value, so a field is
only forced non-empty by an explicit required rule.
"""

import logging
import math
import re
from typing import Any, Callable
from urllib.parse import urlparse

from agentforms.schemas.validation_schema import (
    FormatCriteria,
    MaxLengthCriteria,
    MinLengthCriteria,
    PatternCriteria,
    RuleCriteria,
    RuleType,
)
from agentforms.utils import digits_only, parse_date

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_CHARS_RE = re.compile(r"^[\d\s\-+()]+$")
URL_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*$")
MIN_PHONE_DIGITS = 10


def is_blank(value: Any) -> bool:
    """True for None, an empty string, or whitespace only."""
    return value is None or (isinstance(value, str) and not value.strip())


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def is_email(text: str) -> bool:
    return bool(EMAIL_RE.match(text))


def is_url(text: str) -> bool:
    parsed = urlparse(text.strip())
    if not parsed.scheme or not URL_SCHEME_RE.match(parsed.scheme):
        return False
    return bool(parsed.netloc or parsed.path)


def is_phone(text: str) -> bool:
    return bool(PHONE_CHARS_RE.match(text)) and len(digits_only(text)) >= MIN_PHONE_DIGITS


def is_number(value: Any) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def is_date(text: str) -> bool:
    return parse_date(text) is not None


def _check_min_length(criteria: MinLengthCriteria, text: str) -> bool:
    return criteria.min is None or len(text) >= criteria.min


def _check_max_length(criteria: MaxLengthCriteria, text: str) -> bool:
    return criteria.max is None or len(text) <= criteria.max


def _check_pattern(criteria: PatternCriteria, text: str) -> bool:
    if not criteria.pattern:
        return True
    try:
        compiled = re.compile(criteria.pattern)
    except re.error as exc:
        # Broken patterns fail open so a bad rule cannot lock visitors out.
        logger.warning("Ignoring unparsable pattern %r: %s", criteria.pattern, exc)
        return True
    return compiled.search(text) is not None


_FORMAT_CHECKS: dict[str, Callable[[str], bool]] = {
    "email": is_email,
    "url": is_url,
    "phone": is_phone,
    "number": is_number,
    "date": is_date,
}


def _check_format(criteria: FormatCriteria, text: str) -> bool:
    return _FORMAT_CHECKS[criteria.rule_type](text)


_CHECKS: dict[RuleType, Callable[[Any, str], bool]] = {
    RuleType.MIN_LENGTH: _check_min_length,
    RuleType.MAX_LENGTH: _check_max_length,
    RuleType.PATTERN: _check_pattern,
    RuleType.EMAIL: _check_format,
    RuleType.URL: _check_format,
    RuleType.PHONE: _check_format,
    RuleType.NUMBER: _check_format,
    RuleType.DATE: _check_format,
}


def check_rule(criteria: RuleCriteria, value: Any) -> bool:
    """Evaluate one rule's criteria against a value."""
    rule_type = RuleType(criteria.rule_type)
    if rule_type == RuleType.REQUIRED:
        return not is_blank(value)
    if is_empty(value):
        return True
    if rule_type == RuleType.CUSTOM:
        return True
    return _CHECKS[rule_type](criteria, str(value))
