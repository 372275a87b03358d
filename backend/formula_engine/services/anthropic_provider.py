"""
Anthropic messages API adapter, built on the ``anthropic`` SDK.

The system prompt travels as a top-level field, tools are declared with an
``input_schema``, and streamed tool arguments arrive as ``input_json_delta``
fragments between ``content_block_start`` and ``content_block_stop``.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import anthropic
import httpx
from anthropic.types import Message

from formula_engine.models.provider import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    StreamChunk,
    ToolCall,
)
from formula_engine.services.llm_provider import LLMProvider
from formula_engine.services.stream_assembler import ToolCallAssembler
from formula_engine.services.tool_definitions import CREATE_FORMULA_TOOL, anthropic_tools

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Adapter for ``AsyncAnthropic.messages.create``."""

    name = "anthropic"

    api_error = anthropic.APIError
    status_error = anthropic.APIStatusError
    connection_error = anthropic.APIConnectionError
    response_type = Message

    def __init__(self, *args, api_version: str = "2023-06-01", **kwargs):
        super().__init__(*args, **kwargs)
        self.api_version = api_version

    def _create_client(self, api_key: str, http_client: Optional[httpx.AsyncClient]) -> anthropic.AsyncAnthropic:
        return anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
            default_headers={"anthropic-version": self.api_version},
            http_client=http_client,
        )

    async def _request(self, client: anthropic.AsyncAnthropic, params: Dict[str, Any], stream: bool):
        if stream:
            return await client.messages.create(stream=True, **params)
        return await client.messages.create(**params)

    def _build_params(
        self,
        system_prompt: str,
        history: List[ChatMessage],
        options: CompletionOptions,
        model: str,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens or self.max_tokens,
            "temperature": options.temperature if options.temperature is not None else self.temperature,
            "system": system_prompt,
            "messages": [{"role": m.role, "content": m.content} for m in history],
        }
        if options.use_tools:
            params["tools"] = anthropic_tools(self.catalog)
            if options.force_tool:
                params["tool_choice"] = {"type": "tool", "name": CREATE_FORMULA_TOOL}
            else:
                params["tool_choice"] = {"type": "auto"}
        return params

    def _parse_response(self, response: Message, model: str) -> CompletionResult:
        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []

        for block in response.content or []:
            if block.type == "text":
                text_parts.append(block.text or "")
            elif block.type == "tool_use":
                arguments = block.input
                error = None
                if not isinstance(arguments, dict):
                    error = "Tool input is not an object"
                    arguments = None
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    input=arguments,
                    raw_arguments=json.dumps(block.input),
                    error=error,
                ))

        return CompletionResult(
            provider=self.name,
            model=response.model or model,
            text="".join(text_parts),
            tool_calls=tool_calls,
            stop_reason=response.stop_reason,
        )

    async def _parse_stream(
        self,
        events: AsyncIterator[Any],
        assembler: ToolCallAssembler,
    ) -> AsyncIterator[StreamChunk]:
        async for event in events:
            if event.type == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    assembler.open(event.index, name=block.name, call_id=block.id)

            elif event.type == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    if delta.text:
                        yield StreamChunk(type="text", text=delta.text)
                elif delta.type == "input_json_delta":
                    assembler.append(event.index, delta.partial_json or "")

            elif event.type == "content_block_stop":
                if assembler.is_open(event.index):
                    yield StreamChunk(type="tool_use", tool_call=assembler.close(event.index))

            elif event.type == "message_stop":
                break
