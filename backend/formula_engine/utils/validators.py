"""
Input validation utilities.

This module provides validation functions for caller-supplied input
(user ids, capsule counts, formula names, free text) so that bad requests
fail with a specific message before any provider call is made.
"""

import re
import logging
from typing import Optional

from formula_engine.utils.constants import FORMULA_LIMITS

# Configure logging
logger = logging.getLogger(__name__)

DANGEROUS_PATTERNS = [
    r'<script',  # Script tags
    r'javascript:',  # JavaScript protocol
    r'on\w+\s*=',  # Event handlers (onclick, onload, etc)
    r'[<>]'  # HTML tags
]


def validate_user_id(user_id: str) -> bool:
    """
    Validate user ID format.

    Args:
        user_id: User identifier string

    Returns:
        bool: True if valid

    Raises:
        ValueError: If validation fails
    """
    if not user_id or not user_id.strip():
        raise ValueError("User ID cannot be empty")

    if len(user_id) > 128:
        raise ValueError("User ID cannot exceed 128 characters")

    # Allow alphanumeric, hyphens, underscores, dots and @
    if not re.match(r'^[a-zA-Z0-9_.@-]+$', user_id):
        raise ValueError(
            "User ID must contain only alphanumeric characters, "
            "hyphens, underscores, dots and @"
        )

    return True


def validate_capsule_count(capsule_count: Optional[int], default: Optional[int] = None) -> int:
    """
    Resolve and validate the requested daily capsule count.

    Args:
        capsule_count: Requested count, or None for the default
        default: Fallback count (FORMULA_LIMITS default when omitted)

    Returns:
        int: The capsule count to use

    Raises:
        ValueError: If the count is not an allowed capsule count
    """
    if capsule_count is None:
        return default or FORMULA_LIMITS["default_capsule_count"]

    allowed = FORMULA_LIMITS["allowed_capsule_counts"]
    if capsule_count not in allowed:
        raise ValueError(
            f"Capsule count must be one of {', '.join(str(c) for c in allowed)} "
            f"(got {capsule_count})"
        )
    return capsule_count


def validate_formula_name(name: str) -> bool:
    """
    Validate a user-facing formula label.

    Raises:
        ValueError: If the name is empty, too long or contains markup
    """
    if not name or not name.strip():
        raise ValueError("Formula name cannot be empty")

    if len(name) > 100:
        raise ValueError("Formula name cannot exceed 100 characters")

    for pattern in DANGEROUS_PATTERNS:
        if re.search(pattern, name, re.IGNORECASE):
            raise ValueError("Formula name contains invalid characters or patterns")

    logger.debug(f"Formula name validated: {name}")
    return True


def sanitize_input(text: str) -> str:
    """
    Remove dangerous characters from user input.

    Strips control characters and markup from free text (health profile
    entries, conversation messages) before it is placed in a prompt.

    Args:
        text: Raw user input string

    Returns:
        str: Sanitized string
    """
    if not text:
        return ""

    # Remove leading/trailing whitespace
    sanitized = text.strip()

    # Remove control characters except newlines and tabs
    sanitized = ''.join(
        char for char in sanitized
        if ord(char) >= 32 or char in '\n\t'
    )

    # Remove HTML/XML tags
    sanitized = re.sub(r'<[^>]+>', '', sanitized)

    # Remove script-related content
    sanitized = re.sub(r'javascript:', '', sanitized, flags=re.IGNORECASE)

    return sanitized
