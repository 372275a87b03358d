"""
Application configuration.

This module defines the engine settings as a Pydantic model whose fields
are populated from environment variables (optionally loaded from a .env
file next to the backend package).
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from typing import Optional
import os
from dotenv import load_dotenv

from formula_engine.utils.constants import FORMULA_LIMITS

# Load .env from backend directory (works regardless of cwd when running uvicorn)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=_env_path)


SUPPORTED_PROVIDERS = ("anthropic", "openai")
ALLOWED_CAPSULE_COUNTS = tuple(FORMULA_LIMITS["allowed_capsule_counts"])


class Settings(BaseModel):
    """
    Formula engine configuration settings.

    Can be configured via environment variables or .env file.
    Environment variable names are uppercase (e.g., AI_PROVIDER).

    Attributes:
        AI_PROVIDER: Active LLM backend ("anthropic" or "openai")
        AI_MODEL: Requested model; normalized per provider, empty means provider default
        ANTHROPIC_API_KEY: Key for the Anthropic messages API
        OPENAI_API_KEY: Key for the OpenAI chat completions API
        API_TIMEOUT: Outbound request timeout in seconds
        RETRY_MAX_ATTEMPTS: Total attempts for retriable provider errors
        RETRY_BASE_DELAY_MS: First backoff interval, doubled on each retry
        CAPSULE_CAPACITY_MG: Milligrams of material per capsule
        DEFAULT_CAPSULE_COUNT: Capsule count used when a request names none
        ENABLE_REPAIR_RETRY: Re-prompt once with the violation list on rejection
        FORMULA_DB_PATH: SQLite file backing the formula store
        LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
    """

    # Provider selection
    AI_PROVIDER: str = Field(
        default_factory=lambda: os.getenv("AI_PROVIDER", "anthropic"),
        description="LLM provider backing formula generation"
    )

    AI_MODEL: Optional[str] = Field(
        default_factory=lambda: os.getenv("AI_MODEL"),
        description="Requested model identifier (aliases are normalized)"
    )

    ANTHROPIC_API_KEY: Optional[str] = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_API_KEY"),
        description="API key for the Anthropic messages API"
    )

    OPENAI_API_KEY: Optional[str] = Field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY"),
        description="API key for the OpenAI chat completions API"
    )

    ANTHROPIC_BASE_URL: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
        description="Base URL for the Anthropic API"
    )

    OPENAI_BASE_URL: str = Field(
        default_factory=lambda: os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        description="Base URL for the OpenAI API, including the /v1 prefix"
    )

    ANTHROPIC_VERSION: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_VERSION", "2023-06-01"),
        description="Value sent in the anthropic-version header"
    )

    # Request tuning
    API_TIMEOUT: int = Field(
        default_factory=lambda: int(os.getenv("API_TIMEOUT", "60")),
        ge=1,
        le=600,
        description="Provider request timeout in seconds"
    )

    LLM_TEMPERATURE: float = Field(
        default_factory=lambda: float(os.getenv("LLM_TEMPERATURE", "0.7")),
        ge=0.0,
        le=2.0,
        description="Sampling temperature for formula generation"
    )

    LLM_MAX_TOKENS: int = Field(
        default_factory=lambda: int(os.getenv("LLM_MAX_TOKENS", "4096")),
        ge=256,
        le=32768,
        description="Maximum tokens per LLM response"
    )

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = Field(
        default_factory=lambda: int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
        ge=1,
        le=10,
        description="Total attempts for 429/5xx responses"
    )

    RETRY_BASE_DELAY_MS: int = Field(
        default_factory=lambda: int(os.getenv("RETRY_BASE_DELAY_MS", "200")),
        ge=0,
        le=10000,
        description="Base backoff delay in milliseconds, doubled per retry"
    )

    # Formula rules
    CAPSULE_CAPACITY_MG: int = Field(
        default_factory=lambda: int(os.getenv("CAPSULE_CAPACITY_MG", str(FORMULA_LIMITS["capsule_capacity_mg"]))),
        ge=1,
        description="Milligrams of material that fit in one capsule"
    )

    DEFAULT_CAPSULE_COUNT: int = Field(
        default_factory=lambda: int(os.getenv("DEFAULT_CAPSULE_COUNT", "9")),
        description="Capsule count used when a request does not specify one"
    )

    ENABLE_REPAIR_RETRY: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_REPAIR_RETRY", "true").lower() == "true",
        description="Regenerate once with corrective feedback after a validation failure"
    )

    # Persistence
    FORMULA_DB_PATH: str = Field(
        default_factory=lambda: os.getenv(
            "FORMULA_DB_PATH",
            str(Path(__file__).resolve().parent.parent / "formulas.db"),
        ),
        description="SQLite database file for formulas and their change log"
    )

    # Logging Configuration
    LOG_LEVEL: str = Field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"),
        description="Logging level (DEBUG/INFO/WARNING/ERROR)"
    )

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of: {', '.join(valid_levels)}"
            )
        return v_upper

    @field_validator('AI_PROVIDER')
    @classmethod
    def validate_provider(cls, v):
        """Ensure the provider is one the gateway can talk to."""
        v_lower = v.strip().lower()
        if v_lower not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"AI_PROVIDER must be one of: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        return v_lower

    @field_validator('DEFAULT_CAPSULE_COUNT')
    @classmethod
    def validate_capsule_count(cls, v):
        if v not in ALLOWED_CAPSULE_COUNTS:
            raise ValueError(
                f"DEFAULT_CAPSULE_COUNT must be one of: {', '.join(str(c) for c in ALLOWED_CAPSULE_COUNTS)}"
            )
        return v

    @field_validator('ANTHROPIC_BASE_URL', 'OPENAI_BASE_URL')
    @classmethod
    def validate_url(cls, v):
        """Ensure URLs are properly formatted."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip('/')  # Remove trailing slash


# Create global settings instance
settings = Settings()


# Configure logging based on settings
def configure_logging():
    """Configure application logging based on settings."""
    import logging

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {settings.LOG_LEVEL} level")
    logger.info(f"AI provider: {settings.AI_PROVIDER} (model: {settings.AI_MODEL or 'provider default'})")
    logger.info(f"Formula store: {settings.FORMULA_DB_PATH}")
    logger.info(f"Repair retry: {'Enabled' if settings.ENABLE_REPAIR_RETRY else 'Disabled'}")


# Initialize logging on import
configure_logging()
