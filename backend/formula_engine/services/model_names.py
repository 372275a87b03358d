"""
Model-name normalization for the supported LLM providers.

Users and config files spell model names loosely ("Claude Sonnet 4.5",
"claude-4.5", "gpt5"). Each provider maps the known aliases to one exact
backend identifier; anything unrecognized passes through so newly released
models keep working without a code change.
"""

import logging
import re
from typing import Optional

from formula_engine.utils.constants import (
    ALLOWED_MODELS,
    DEFAULT_MODELS,
    MODEL_ALIASES,
    OPENAI_REASONING_MODEL_PREFIXES,
)

logger = logging.getLogger(__name__)


def normalize_model(provider: str, requested: Optional[str]) -> str:
    """
    Map a loosely spelled model name to the provider's exact identifier.

    Args:
        provider: "anthropic" or "openai"
        requested: Model name from the request or configuration

    Returns:
        str: Exact model identifier; the provider default when ``requested``
        is empty, or the trimmed input when it matches no known alias

    Raises:
        ValueError: If the provider is unknown

    Example:
        >>> normalize_model("anthropic", "Claude Sonnet 4.5")
        'claude-sonnet-4-5'
        >>> normalize_model("openai", "gpt5")
        'gpt-5'
    """
    if provider not in DEFAULT_MODELS:
        raise ValueError(f"Unknown provider: {provider}")

    if requested is None or not requested.strip():
        return DEFAULT_MODELS[provider]

    trimmed = requested.strip()
    key = re.sub(r'\s+', '-', trimmed).lower()

    if key in ALLOWED_MODELS[provider]:
        return key

    for pattern, canonical in MODEL_ALIASES[provider]:
        if re.search(pattern, key):
            if canonical != trimmed:
                logger.debug(f"Model '{requested}' normalized to '{canonical}' for {provider}")
            return canonical

    logger.info(f"Model '{trimmed}' not in the {provider} alias table, passing through")
    return trimmed


def is_reasoning_model(model: str) -> bool:
    """OpenAI reasoning models take max_completion_tokens and no temperature."""
    return model.lower().startswith(OPENAI_REASONING_MODEL_PREFIXES)
