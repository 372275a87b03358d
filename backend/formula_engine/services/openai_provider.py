"""
OpenAI chat completions adapter, built on the ``openai`` SDK.

The system prompt is the first message, tools are declared as functions
whose arguments come back as a JSON string, and streamed tool arguments
arrive as fragments keyed by ``tool_calls[].index`` until the choice
reports a ``finish_reason``.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import openai
from openai.types.chat import ChatCompletion

from formula_engine.models.provider import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    StreamChunk,
    ToolCall,
)
from formula_engine.services.llm_provider import LLMProvider, ProviderTransientError
from formula_engine.services.model_names import is_reasoning_model
from formula_engine.services.stream_assembler import ToolCallAssembler, parse_tool_arguments
from formula_engine.services.tool_definitions import CREATE_FORMULA_TOOL, openai_tools

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """Adapter for ``AsyncOpenAI.chat.completions.create``."""

    name = "openai"

    api_error = openai.APIError
    status_error = openai.APIStatusError
    connection_error = openai.APIConnectionError
    response_type = ChatCompletion

    def _create_client(self, api_key: str, http_client: Optional[httpx.AsyncClient]) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
            http_client=http_client,
        )

    async def _request(self, client: openai.AsyncOpenAI, params: Dict[str, Any], stream: bool):
        if stream:
            return await client.chat.completions.create(stream=True, **params)
        return await client.chat.completions.create(**params)

    def _build_params(
        self,
        system_prompt: str,
        history: List[ChatMessage],
        options: CompletionOptions,
        model: str,
    ) -> Dict[str, Any]:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m.role, "content": m.content} for m in history)

        params: Dict[str, Any] = {"model": model, "messages": messages}
        max_tokens = options.max_tokens or self.max_tokens

        # Reasoning models reject max_tokens and any non-default temperature
        if is_reasoning_model(model):
            params["max_completion_tokens"] = max_tokens
        else:
            params["max_tokens"] = max_tokens
            params["temperature"] = options.temperature if options.temperature is not None else self.temperature

        if options.use_tools:
            params["tools"] = openai_tools(self.catalog)
            if options.force_tool:
                params["tool_choice"] = {"type": "function", "function": {"name": CREATE_FORMULA_TOOL}}
            else:
                params["tool_choice"] = "auto"
        return params

    def _parse_response(self, response: ChatCompletion, model: str) -> CompletionResult:
        if not response.choices:
            raise ProviderTransientError("openai response contained no choices", provider=self.name)
        choice = response.choices[0]
        message = choice.message

        tool_calls: List[ToolCall] = []
        for call in message.tool_calls or []:
            raw = call.function.arguments or ""
            arguments, error = parse_tool_arguments(raw)
            tool_calls.append(ToolCall(
                id=call.id,
                name=call.function.name,
                input=arguments,
                raw_arguments=raw,
                error=error,
            ))

        return CompletionResult(
            provider=self.name,
            model=response.model or model,
            text=message.content or "",
            tool_calls=tool_calls,
            stop_reason=choice.finish_reason,
        )

    async def _parse_stream(
        self,
        events: AsyncIterator[Any],
        assembler: ToolCallAssembler,
    ) -> AsyncIterator[StreamChunk]:
        # The SDK ends iteration at [DONE]; buffers close on finish_reason
        async for chunk in events:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            if delta is not None:
                if delta.content:
                    yield StreamChunk(type="text", text=delta.content)

                for call in delta.tool_calls or []:
                    index = call.index if call.index is not None else 0
                    name = call.function.name if call.function is not None else None
                    fragment = call.function.arguments if call.function is not None else None
                    if not assembler.is_open(index):
                        assembler.open(index, name=name, call_id=call.id)
                    else:
                        assembler.update(index, name=name, call_id=call.id)
                    if fragment:
                        assembler.append(index, fragment)

            if choice.finish_reason:
                for tool_call in assembler.close_all():
                    yield StreamChunk(type="tool_use", tool_call=tool_call)
