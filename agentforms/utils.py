"""Shared utilities used across the session engine."""

import re
import uuid
from datetime import datetime, timezone
from typing import Optional

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%B %d, %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    """Return a random identifier, optionally prefixed (``msg-3f2a...``)."""
    value = uuid.uuid4().hex
    return f"{prefix}-{value}" if prefix else value


def digits_only(value: str) -> str:
    """Strip everything except digits.

    Examples:
        >>> digits_only("+1 (555) 010-9999")
        '15550109999'
    """
    return re.sub(r"\D", "", value)


def parse_date(value: str) -> Optional[datetime]:
    """Parse a date written in one of the common visitor formats.

    ISO 8601 (with or without a time part) is tried first, then a fixed
    list of slash and month-name formats. Returns None when nothing fits.

    Examples:
        >>> parse_date("2025-03-15").day
        15
        >>> parse_date("3/15/2025").month
        3
        >>> parse_date("someday") is None
        True
    """
    text = value.strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None
