"""
Provider gateway: one completion interface over interchangeable LLM backends.

The active backend is chosen by configuration. Call sites use
``ProviderGateway.complete`` / ``ProviderGateway.stream`` and never learn
which adapter is behind them.
"""

import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Type

import httpx

from formula_engine.config import Settings, settings as default_settings
from formula_engine.models.provider import ChatMessage, CompletionOptions, CompletionResult, StreamChunk
from formula_engine.services.anthropic_provider import AnthropicProvider
from formula_engine.services.ingredient_catalog import IngredientCatalog
from formula_engine.services.llm_provider import (
    LLMProvider,
    ProviderError,
    ProviderFatalError,
    ProviderTransientError,
)
from formula_engine.services.model_names import normalize_model
from formula_engine.services.openai_provider import OpenAIProvider
from formula_engine.utils.constants import ALLOWED_MODELS, DEFAULT_MODELS

logger = logging.getLogger(__name__)

__all__ = [
    "ProviderGateway",
    "ProviderError",
    "ProviderFatalError",
    "ProviderTransientError",
    "create_provider",
    "normalize_model",
]

PROVIDER_CLASSES: Dict[str, Type[LLMProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}


def create_provider(
    provider_name: str,
    config: Settings = default_settings,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    catalog: Optional[IngredientCatalog] = None,
) -> LLMProvider:
    """
    Build the adapter for ``provider_name`` from configuration.

    Raises:
        ValueError: If the provider is not supported
    """
    provider_name = provider_name.strip().lower()
    if provider_name not in PROVIDER_CLASSES:
        raise ValueError(
            f"Unsupported provider '{provider_name}'. Choose one of: {', '.join(PROVIDER_CLASSES)}"
        )

    common = dict(
        timeout=config.API_TIMEOUT,
        max_attempts=config.RETRY_MAX_ATTEMPTS,
        base_delay_ms=config.RETRY_BASE_DELAY_MS,
        temperature=config.LLM_TEMPERATURE,
        max_tokens=config.LLM_MAX_TOKENS,
        client=client,
        sleep=sleep,
        catalog=catalog,
    )

    if provider_name == "anthropic":
        return AnthropicProvider(
            config.ANTHROPIC_API_KEY,
            config.ANTHROPIC_BASE_URL,
            api_version=config.ANTHROPIC_VERSION,
            **common,
        )
    return OpenAIProvider(config.OPENAI_API_KEY, config.OPENAI_BASE_URL, **common)


class ProviderGateway:
    """
    Configuration-selected facade over one provider adapter.

    Fills in the configured model when a call does not name one, so a
    deployment can switch backends or models through settings alone.
    """

    def __init__(self, provider: LLMProvider, default_model: Optional[str] = None):
        self.provider = provider
        self.model = normalize_model(provider.name, default_model)

    @classmethod
    def from_settings(
        cls,
        config: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        catalog: Optional[IngredientCatalog] = None,
    ) -> "ProviderGateway":
        provider = create_provider(config.AI_PROVIDER, config, client=client, sleep=sleep, catalog=catalog)
        gateway = cls(provider, default_model=config.AI_MODEL)
        logger.info(f"Provider gateway ready: {gateway.provider_name} / {gateway.model}")
        return gateway

    @property
    def provider_name(self) -> str:
        return self.provider.name

    def normalize_model(self, requested: Optional[str]) -> str:
        return normalize_model(self.provider.name, requested)

    def _resolve_options(self, options: Optional[CompletionOptions]) -> CompletionOptions:
        options = options or CompletionOptions()
        model = self.normalize_model(options.model) if options.model else self.model
        return options.model_copy(update={"model": model})

    async def complete(
        self,
        system_prompt: str,
        history: List[ChatMessage],
        options: Optional[CompletionOptions] = None,
    ) -> CompletionResult:
        return await self.provider.complete(system_prompt, history, self._resolve_options(options))

    def stream(
        self,
        system_prompt: str,
        history: List[ChatMessage],
        options: Optional[CompletionOptions] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Start a streamed completion.

        Returns the adapter's own async generator, so closing what the
        caller holds closes the upstream connection directly.
        """
        return self.provider.stream(system_prompt, history, self._resolve_options(options))


def list_models() -> Dict[str, Dict[str, object]]:
    """Known model identifiers and defaults per provider."""
    return {
        provider: {"default": DEFAULT_MODELS[provider], "models": list(ALLOWED_MODELS[provider])}
        for provider in PROVIDER_CLASSES
    }
