"""
Common utility helper functions.

This module provides the text-cleaning primitives used by ingredient name
normalization, plus small formatting helpers shared across services.
"""

import re
import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable

# Configure logging
logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r'\s+')
_PARENTHETICAL_RE = re.compile(r'\([^)]*\)|\[[^\]]*\]')
# "4:1", "20:1", "10 : 1"
_RATIO_RE = re.compile(r'\b\d+(?:\.\d+)?\s*:\s*\d+(?:\.\d+)?\b')
# "40%", "1/8%", "PE 1/8% Flavones", "95% Curcuminoids"
_PERCENT_RE = re.compile(
    r'(?:\bPE\s+)?\d+(?:[./]\d+)*\s*%(?:\s+[A-Za-z]+)?',
    re.IGNORECASE
)
_PE_TOKEN_RE = re.compile(r'\bPE\b')
_EDGE_PUNCT_RE = re.compile(r'^[\s,;:\-]+|[\s,;:\-]+$')


def collapse_whitespace(text: str) -> str:
    """
    Trim and collapse internal whitespace runs to single spaces.

    Example:
        >>> collapse_whitespace("  Milk   Thistle ")
        'Milk Thistle'
    """
    return _WHITESPACE_RE.sub(' ', text).strip()


def strip_parentheticals(text: str) -> str:
    """
    Remove parenthetical and bracketed source descriptors.

    Example:
        >>> collapse_whitespace(strip_parentheticals("Phosphatidylcholine 40% (soy)"))
        'Phosphatidylcholine 40%'
    """
    return _PARENTHETICAL_RE.sub(' ', text)


def strip_potency_qualifiers(text: str, qualifier_words: Iterable[str]) -> str:
    """
    Remove potency and extraction qualifiers from an ingredient name.

    Strips, in order:
    - Extraction ratios ("4:1")
    - Percentage-of-compound notation ("PE 1/8% Flavones", "40%")
    - A bare "PE" (plant extract) marker
    - Standalone qualifier words ("Extract", "Root", ...)

    Args:
        text: Ingredient name with parentheticals already removed
        qualifier_words: Words to drop when they appear as whole words

    Returns:
        str: Name with qualifiers removed (whitespace not yet collapsed)

    Example:
        >>> strip_potency_qualifiers("Hawthorn Berry PE 1/8% Flavones", ["extract"])
        'Hawthorn Berry'
    """
    cleaned = _RATIO_RE.sub(' ', text)
    cleaned = _PERCENT_RE.sub(' ', cleaned)
    cleaned = _PE_TOKEN_RE.sub(' ', cleaned)

    words = [re.escape(w) for w in qualifier_words]
    if words:
        cleaned = re.sub(r'\b(?:' + '|'.join(words) + r')\b', ' ', cleaned, flags=re.IGNORECASE)

    cleaned = _EDGE_PUNCT_RE.sub('', cleaned)
    return cleaned


def truncate_text(text: str, limit: int = 300) -> str:
    """Shorten text for log lines, marking the cut."""
    if text is None:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "...[truncated]"


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def format_mg(amount: float) -> str:
    """Format a milligram amount without a trailing .0 for whole numbers."""
    if float(amount).is_integer():
        return f"{int(amount)}mg"
    return f"{amount:g}mg"


def round_half_up_mg(amount: float) -> int:
    """
    Round to whole milligrams, halves going up.

    Example:
        >>> round_half_up_mg(50.5), round_half_up_mg(74.4)
        (51, 74)
    """
    return int(math.floor(amount + 0.5))


def format_sse_event(event: str, data: Any) -> str:
    """
    Format one Server-Sent Events message.

    Example:
        >>> format_sse_event("text", {"text": "Hi"})
        'event: text\\ndata: {"text": "Hi"}\\n\\n'
    """
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"
