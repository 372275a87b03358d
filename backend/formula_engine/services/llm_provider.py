"""
Base class for LLM provider adapters.

An adapter maps the engine's provider-neutral request and result types
onto one vendor SDK. This base class owns what the adapters share: SDK
client creation, the retry/backoff policy and stream lifecycle. The SDK
clients are built with ``max_retries=0`` so that the policy below is the
only one in effect.

Retry policy:
- 429 and 5xx responses are retried up to ``max_attempts`` total, waiting
  ``base_delay_ms * 2**(attempt-1)`` between attempts. When attempts run
  out the last status and body are raised as ProviderTransientError.
- Any other 4xx fails immediately with ProviderFatalError.
- Network-level failures (connect errors, timeouts) are retried once.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Type

import httpx

from formula_engine.models.provider import ChatMessage, CompletionOptions, CompletionResult, StreamChunk
from formula_engine.services.ingredient_catalog import IngredientCatalog
from formula_engine.services.model_names import normalize_model
from formula_engine.services.stream_assembler import StreamProtocolError, ToolCallAssembler
from formula_engine.utils.helpers import truncate_text

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for LLM provider errors."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response_body = response_body


class ProviderTransientError(ProviderError):
    """Network, 429 or 5xx failure that persisted through every retry."""
    pass


class ProviderFatalError(ProviderError):
    """Non-retriable failure: bad credentials, malformed request, other 4xx."""
    pass


class LLMProvider:
    """
    Shared plumbing for provider adapters.

    Subclasses set ``name``, the SDK exception and response types, and
    implement ``_create_client``, ``_request``, ``_parse_response`` and
    ``_parse_stream``.
    """

    name = "base"

    # SDK exception hierarchy and buffered response type
    api_error: Type[Exception] = Exception
    status_error: Type[Exception] = Exception
    connection_error: Type[Exception] = Exception
    response_type: Type[Any] = object

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        timeout: float = 60.0,
        max_attempts: int = 3,
        base_delay_ms: int = 200,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        catalog: Optional[IngredientCatalog] = None,
    ):
        """
        Args:
            api_key: Provider API key
            base_url: API root, without trailing slash
            timeout: Request timeout in seconds
            max_attempts: Total attempts for retriable responses
            base_delay_ms: First backoff interval, doubled per retry
            temperature: Default sampling temperature
            max_tokens: Default response token cap
            client: httpx client handed to the SDK (the SDK's own when omitted)
            sleep: Awaitable sleep used between retries (asyncio.sleep by default)
            catalog: Catalog for the tool enum (active catalog when omitted)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.base_delay_ms = base_delay_ms
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.catalog = catalog
        self._http_client = client
        self._sdk_client = None
        self._sleep = sleep or asyncio.sleep

    # ─── Adapter hooks ─────────────────────────────────────────────────────────

    def _create_client(self, api_key: str, http_client: Optional[httpx.AsyncClient]):
        raise NotImplementedError

    async def _request(self, client, params: Dict[str, Any], stream: bool):
        raise NotImplementedError

    def _build_params(
        self,
        system_prompt: str,
        history: List[ChatMessage],
        options: CompletionOptions,
        model: str,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, response: Any, model: str) -> CompletionResult:
        raise NotImplementedError

    def _parse_stream(self, events: AsyncIterator[Any], assembler: ToolCallAssembler) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    # ─── Public interface ──────────────────────────────────────────────────────

    def normalize_model(self, requested: Optional[str]) -> str:
        return normalize_model(self.name, requested)

    async def complete(
        self,
        system_prompt: str,
        history: List[ChatMessage],
        options: Optional[CompletionOptions] = None,
    ) -> CompletionResult:
        """
        Run a buffered completion.

        Args:
            system_prompt: Instructions for the model
            history: Conversation, oldest first
            options: Per-call overrides

        Returns:
            CompletionResult: Text, parsed tool calls and attempt count

        Raises:
            ProviderTransientError: If retriable failures exhausted every attempt
            ProviderFatalError: On non-retriable failures
        """
        options = options or CompletionOptions()
        model = self.normalize_model(options.model)
        client = self._get_client()
        params = self._build_params(system_prompt, history, options, model)

        logger.info(f"{self.name} completion request (model: {model}, messages: {len(history)})")

        response, attempts = await self._send_with_retry(lambda: self._request(client, params, stream=False))

        # SDKs hand back the raw text when the body is not JSON
        if not isinstance(response, self.response_type):
            raise ProviderTransientError(
                f"{self.name} returned a non-JSON body",
                provider=self.name,
                response_body=truncate_text(str(response)),
            )

        result = self._parse_response(response, model)
        result.attempts = attempts
        logger.info(
            f"{self.name} completion finished after {attempts} attempt(s) "
            f"(stop: {result.stop_reason}, tool calls: {len(result.tool_calls)})"
        )
        return result

    async def stream(
        self,
        system_prompt: str,
        history: List[ChatMessage],
        options: Optional[CompletionOptions] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion as text and tool-use chunks.

        Text chunks are yielded as soon as they arrive. Tool calls are
        yielded once their block closes. Closing this generator (or
        cancelling the task consuming it) closes the upstream response.

        Raises:
            ProviderTransientError: If the connection could not be established
                within the retry budget, the provider reports an error
                mid-stream, or the stream ends inside a tool block
            ProviderFatalError: On non-retriable failures
        """
        options = options or CompletionOptions()
        model = self.normalize_model(options.model)
        client = self._get_client()
        params = self._build_params(system_prompt, history, options, model)

        logger.info(f"{self.name} streaming request (model: {model}, messages: {len(history)})")

        events, attempts = await self._send_with_retry(lambda: self._request(client, params, stream=True))
        try:
            assembler = ToolCallAssembler()
            try:
                async for chunk in self._parse_stream(events, assembler):
                    yield chunk
            except StreamProtocolError as e:
                raise ProviderTransientError(
                    f"{self.name} stream violated the block protocol: {e}",
                    provider=self.name,
                ) from e
            except self.api_error as e:
                raise ProviderTransientError(
                    f"{self.name} stream error: {e}",
                    provider=self.name,
                    status_code=getattr(e, "status_code", None),
                ) from e
            except httpx.TransportError as e:
                raise ProviderTransientError(
                    f"{self.name} stream interrupted: {e}",
                    provider=self.name,
                ) from e

            # Partial tool JSON is never parsed
            if assembler.open_keys:
                logger.error(f"{self.name} stream ended inside tool block(s) {assembler.open_keys}")
                raise ProviderTransientError(
                    "stream ended with an unterminated tool block",
                    provider=self.name,
                )
        finally:
            await events.close()
            logger.debug(f"{self.name} stream closed")

    # ─── SDK plumbing ──────────────────────────────────────────────────────────

    def _get_client(self):
        """SDK client, created on first use and reused afterwards."""
        if not self.api_key:
            raise ProviderFatalError(f"{self.name} API key is not configured", provider=self.name)
        if self._sdk_client is None:
            self._sdk_client = self._create_client(self.api_key, self._http_client)
        return self._sdk_client

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return (self.base_delay_ms * (2 ** (attempt - 1))) / 1000.0

    async def _send_with_retry(self, send: Callable[[], Awaitable[Any]]) -> Tuple[Any, int]:
        """
        Send a request under the retry policy.

        Returns:
            Tuple: (SDK response or stream, number of attempts used)
        """
        attempt = 0
        network_failures = 0

        while True:
            attempt += 1
            try:
                return await send(), attempt
            except self.connection_error as e:
                network_failures += 1
                if network_failures > 1 or attempt >= self.max_attempts:
                    logger.error(f"{self.name} network failure after {attempt} attempt(s): {e}")
                    raise ProviderTransientError(
                        f"{self.name} network error after {attempt} attempt(s): {e}",
                        provider=self.name,
                    ) from e
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"{self.name} network error ({type(e).__name__}), retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                await self._sleep(delay)
            except self.status_error as e:
                status = e.status_code
                body = self._error_body(e)

                if status == 429 or status >= 500:
                    if attempt >= self.max_attempts:
                        logger.error(f"{self.name} returned {status} on final attempt {attempt}: {body}")
                        raise ProviderTransientError(
                            f"{self.name} returned {status} after {attempt} attempts",
                            provider=self.name,
                            status_code=status,
                            response_body=body,
                        ) from e
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        f"{self.name} returned {status}, retrying in {delay:.2f}s "
                        f"(attempt {attempt}/{self.max_attempts})"
                    )
                    await self._sleep(delay)
                    continue

                logger.error(f"{self.name} rejected the request with {status}: {body}")
                raise ProviderFatalError(
                    f"{self.name} rejected the request with {status}",
                    provider=self.name,
                    status_code=status,
                    response_body=body,
                ) from e
            except self.api_error as e:
                raise ProviderTransientError(
                    f"{self.name} returned an unusable response: {e}",
                    provider=self.name,
                ) from e
            except ValueError as e:
                raise ProviderTransientError(
                    f"{self.name} returned a non-JSON body",
                    provider=self.name,
                ) from e

    @staticmethod
    def _error_body(error: Exception) -> str:
        body = getattr(error, "body", None)
        return truncate_text(str(body if body is not None else error))
