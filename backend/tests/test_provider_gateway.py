"""
Tests for the provider gateway and its Anthropic/OpenAI adapters.

The vendor SDK clients run on an httpx.AsyncClient backed by
httpx.MockTransport, and backoff sleeps are recorded instead of awaited.

Tests verify:
1. Retry policy: 429/5xx retried with exponential backoff, other 4xx fatal
2. Network failures retried once
3. Request payload shape per provider
4. Streamed text and tool arguments reassembled per provider
5. Model-name normalization
"""

import asyncio
import json

import httpx
import pytest

from formula_engine.config import ALLOWED_CAPSULE_COUNTS, Settings
from formula_engine.models.provider import ChatMessage, CompletionOptions
from formula_engine.services.anthropic_provider import AnthropicProvider
from formula_engine.services.model_names import is_reasoning_model
from formula_engine.services.openai_provider import OpenAIProvider
from formula_engine.services.provider_gateway import (
    ProviderFatalError,
    ProviderGateway,
    ProviderTransientError,
    create_provider,
    list_models,
    normalize_model,
)
from formula_engine.utils.constants import FORMULA_LIMITS

HISTORY = [ChatMessage(role="user", content="Please create my formula")]

FORMULA_ARGS = {"bases": [{"ingredient": "Adrenal Support", "amount": 420, "unit": "mg"}], "totalMg": 420}

ANTHROPIC_OK = {
    "id": "msg_01",
    "type": "message",
    "model": "claude-sonnet-4-5",
    "content": [
        {"type": "text", "text": "Here is your formula."},
        {"type": "tool_use", "id": "toolu_01", "name": "create_formula", "input": FORMULA_ARGS},
    ],
    "stop_reason": "tool_use",
}

OPENAI_OK = {
    "id": "chatcmpl-1",
    "model": "gpt-4o",
    "choices": [{
        "index": 0,
        "message": {
            "role": "assistant",
            "content": None,
            "tool_calls": [{
                "id": "call_1",
                "type": "function",
                "function": {"name": "create_formula", "arguments": json.dumps(FORMULA_ARGS)},
            }],
        },
        "finish_reason": "tool_calls",
    }],
}


def run(coro):
    return asyncio.run(coro)


async def collect(stream):
    return [chunk async for chunk in stream]


def sse(events):
    """
    Encode events as an SSE body.

    Dicts are JSON-encoded and, when they carry a ``type``, named with an
    ``event:`` line the way the messages API does. Strings are sent as-is.
    """
    lines = []
    for event in events:
        if isinstance(event, str):
            lines.append(f"data: {event}\n\n")
        elif "type" in event:
            lines.append(f"event: {event['type']}\ndata: {json.dumps(event)}\n\n")
        else:
            lines.append(f"data: {json.dumps(event)}\n\n")
    return "".join(lines).encode()


class Recorder:
    """MockTransport handler replaying queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.sleeps = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def sleep(self, delay):
        self.sleeps.append(delay)

    def payload(self, i=0):
        return json.loads(self.requests[i].content)

    def provider(self, cls=AnthropicProvider, api_key="test-key", **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(self))
        base_url = "https://llm.example.test/v1" if cls is OpenAIProvider else "https://llm.example.test"
        return cls(api_key, base_url, client=client, sleep=self.sleep, **kwargs)


class TestRetryPolicy:
    """Retry and backoff behavior shared by both adapters."""

    def test_two_rate_limits_then_success(self):
        recorder = Recorder(
            httpx.Response(429, json={"error": "rate limited"}),
            httpx.Response(429, json={"error": "rate limited"}),
            httpx.Response(200, json=ANTHROPIC_OK),
        )
        result = run(recorder.provider().complete("system", HISTORY))

        assert result.attempts == 3
        assert len(recorder.requests) == 3
        assert recorder.sleeps == [0.2, 0.4]
        assert result.formula_payload().input == FORMULA_ARGS

    def test_server_errors_exhaust_attempts(self):
        recorder = Recorder(*[httpx.Response(503, text="upstream overloaded") for _ in range(3)])

        with pytest.raises(ProviderTransientError) as exc_info:
            run(recorder.provider().complete("system", HISTORY))

        assert exc_info.value.status_code == 503
        assert "upstream overloaded" in exc_info.value.response_body
        assert len(recorder.requests) == 3
        assert recorder.sleeps == [0.2, 0.4]

    def test_client_error_is_fatal_without_retry(self):
        recorder = Recorder(httpx.Response(400, json={"error": {"message": "bad request"}}))

        with pytest.raises(ProviderFatalError) as exc_info:
            run(recorder.provider().complete("system", HISTORY))

        assert exc_info.value.status_code == 400
        assert len(recorder.requests) == 1
        assert recorder.sleeps == []

    def test_unauthorized_is_fatal(self):
        recorder = Recorder(httpx.Response(401, json={"error": "invalid key"}))

        with pytest.raises(ProviderFatalError):
            run(recorder.provider(OpenAIProvider).complete("system", HISTORY))

    def test_network_error_retried_once(self):
        recorder = Recorder(
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json=ANTHROPIC_OK),
        )
        result = run(recorder.provider().complete("system", HISTORY))

        assert result.attempts == 2
        assert recorder.sleeps == [0.2]

    def test_second_network_error_surfaces(self):
        recorder = Recorder(
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("timed out"),
            httpx.Response(200, json=ANTHROPIC_OK),
        )

        with pytest.raises(ProviderTransientError):
            run(recorder.provider().complete("system", HISTORY))
        assert len(recorder.requests) == 2

    def test_non_json_body_is_transient(self):
        recorder = Recorder(httpx.Response(200, text="<html>gateway</html>"))

        with pytest.raises(ProviderTransientError):
            run(recorder.provider().complete("system", HISTORY))

    def test_missing_api_key_is_fatal_before_any_request(self):
        recorder = Recorder()

        with pytest.raises(ProviderFatalError):
            run(recorder.provider(api_key=None).complete("system", HISTORY))
        assert recorder.requests == []

    def test_backoff_doubles(self):
        provider = Recorder().provider(base_delay_ms=100)
        assert [provider.backoff_delay(n) for n in (1, 2, 3)] == [0.1, 0.2, 0.4]


class TestAnthropicAdapter:
    """Messages API request and response mapping."""

    def test_request_shape(self):
        recorder = Recorder(httpx.Response(200, json=ANTHROPIC_OK))
        options = CompletionOptions(model="Claude Sonnet 4.5", temperature=0.2, max_tokens=2048)

        run(recorder.provider().complete("You are a formulator", HISTORY, options))

        request = recorder.requests[0]
        payload = recorder.payload()
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "test-key"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert payload["model"] == "claude-sonnet-4-5"
        assert payload["system"] == "You are a formulator"
        assert payload["messages"] == [{"role": "user", "content": "Please create my formula"}]
        assert payload["temperature"] == 0.2
        assert payload["max_tokens"] == 2048
        assert payload["tools"][0]["name"] == "create_formula"
        assert "input_schema" in payload["tools"][0]
        assert payload["tool_choice"] == {"type": "auto"}

    def test_forced_tool_choice(self):
        recorder = Recorder(httpx.Response(200, json=ANTHROPIC_OK))
        run(recorder.provider().complete("system", HISTORY, CompletionOptions(force_tool=True)))

        assert recorder.payload()["tool_choice"] == {"type": "tool", "name": "create_formula"}

    def test_response_parsed(self):
        recorder = Recorder(httpx.Response(200, json=ANTHROPIC_OK))
        result = run(recorder.provider().complete("system", HISTORY))

        assert result.provider == "anthropic"
        assert result.text == "Here is your formula."
        assert result.stop_reason == "tool_use"
        call = result.formula_payload()
        assert call.id == "toolu_01"
        assert call.input == FORMULA_ARGS

    def test_stream_reassembles_text_and_tool_arguments(self):
        arguments = json.dumps(FORMULA_ARGS)
        body = sse([
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Building "}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "formula"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1,
             "content_block": {"type": "tool_use", "id": "toolu_01", "name": "create_formula", "input": {}}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": arguments[:15]}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": arguments[15:]}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
            {"type": "message_stop"},
        ])
        recorder = Recorder(httpx.Response(200, content=body))

        chunks = run(collect(recorder.provider().stream("system", HISTORY)))

        assert [c.text for c in chunks if c.type == "text"] == ["Building ", "formula"]
        tool_chunks = [c for c in chunks if c.type == "tool_use"]
        assert len(tool_chunks) == 1
        assert tool_chunks[0].tool_call.input == FORMULA_ARGS
        assert recorder.payload()["stream"] is True

    def test_stream_ending_inside_tool_block_is_transient(self):
        body = sse([
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "toolu_02", "name": "create_formula", "input": {}}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": '{"bases": ['}},
        ])
        recorder = Recorder(httpx.Response(200, content=body))

        with pytest.raises(ProviderTransientError) as exc_info:
            run(collect(recorder.provider().stream("system", HISTORY)))

        assert "unterminated tool block" in str(exc_info.value)

    def test_stream_error_event_raises_transient(self):
        body = sse([
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        ])
        recorder = Recorder(httpx.Response(200, content=body))

        with pytest.raises(ProviderTransientError):
            run(collect(recorder.provider().stream("system", HISTORY)))

    def test_stream_connection_retried(self):
        recorder = Recorder(
            httpx.Response(529, text="overloaded"),
            httpx.Response(200, content=sse([
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}},
                {"type": "message_stop"},
            ])),
        )

        chunks = run(collect(recorder.provider().stream("system", HISTORY)))

        assert [c.text for c in chunks] == ["ok"]
        assert recorder.sleeps == [0.2]


class TestOpenAIAdapter:
    """Chat completions request and response mapping."""

    def test_request_shape(self):
        recorder = Recorder(httpx.Response(200, json=OPENAI_OK))
        options = CompletionOptions(model="GPT-4o", temperature=0.3, max_tokens=1000)

        run(recorder.provider(OpenAIProvider).complete("You are a formulator", HISTORY, options))

        request = recorder.requests[0]
        payload = recorder.payload()
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer test-key"
        assert payload["model"] == "gpt-4o"
        assert payload["messages"][0] == {"role": "system", "content": "You are a formulator"}
        assert payload["messages"][1]["role"] == "user"
        assert payload["max_tokens"] == 1000
        assert payload["temperature"] == 0.3
        assert payload["tools"][0]["type"] == "function"
        assert payload["tools"][0]["function"]["name"] == "create_formula"
        assert payload["tool_choice"] == "auto"

    def test_reasoning_model_payload(self):
        recorder = Recorder(httpx.Response(200, json=OPENAI_OK))
        options = CompletionOptions(model="gpt5", temperature=0.3, max_tokens=1000)

        run(recorder.provider(OpenAIProvider).complete("system", HISTORY, options))

        payload = recorder.payload()
        assert payload["model"] == "gpt-5"
        assert payload["max_completion_tokens"] == 1000
        assert "max_tokens" not in payload
        assert "temperature" not in payload

    def test_response_parsed(self):
        recorder = Recorder(httpx.Response(200, json=OPENAI_OK))
        result = run(recorder.provider(OpenAIProvider).complete("system", HISTORY))

        assert result.provider == "openai"
        assert result.text == ""
        assert result.stop_reason == "tool_calls"
        assert result.formula_payload().input == FORMULA_ARGS

    def test_malformed_arguments_kept_as_error(self):
        broken = json.loads(json.dumps(OPENAI_OK))
        broken["choices"][0]["message"]["tool_calls"][0]["function"]["arguments"] = '{"bases": ['
        recorder = Recorder(httpx.Response(200, json=broken))

        call = run(recorder.provider(OpenAIProvider).complete("system", HISTORY)).formula_payload()

        assert call.input is None
        assert call.raw_arguments == '{"bases": ['
        assert call.error

    def test_stream_reassembles_tool_arguments(self):
        arguments = json.dumps(FORMULA_ARGS)
        body = sse([
            {"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Working"}}]},
            {"choices": [{"index": 0, "delta": {"tool_calls": [{
                "index": 0, "id": "call_1", "type": "function",
                "function": {"name": "create_formula", "arguments": ""},
            }]}}]},
            {"choices": [{"index": 0, "delta": {"tool_calls": [{
                "index": 0, "function": {"arguments": arguments[:10]},
            }]}}]},
            {"choices": [{"index": 0, "delta": {"tool_calls": [{
                "index": 0, "function": {"arguments": arguments[10:]},
            }]}}]},
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        ])
        recorder = Recorder(httpx.Response(200, content=body))

        chunks = run(collect(recorder.provider(OpenAIProvider).stream("system", HISTORY)))

        assert chunks[0].type == "text" and chunks[0].text == "Working"
        assert chunks[1].type == "tool_use"
        assert chunks[1].tool_call.id == "call_1"
        assert chunks[1].tool_call.input == FORMULA_ARGS
        assert len(chunks) == 2

    def test_stream_ending_without_finish_reason_is_transient(self):
        body = sse([
            {"choices": [{"index": 0, "delta": {"tool_calls": [{
                "index": 0, "id": "call_2", "type": "function",
                "function": {"name": "create_formula", "arguments": '{"bases": ['},
            }]}}]},
            "[DONE]",
        ])
        recorder = Recorder(httpx.Response(200, content=body))

        with pytest.raises(ProviderTransientError) as exc_info:
            run(collect(recorder.provider(OpenAIProvider).stream("system", HISTORY)))

        assert "unterminated tool block" in str(exc_info.value)

    def test_stream_error_payload_raises_transient(self):
        body = sse([{"error": {"message": "server_error"}}])
        recorder = Recorder(httpx.Response(200, content=body))

        with pytest.raises(ProviderTransientError):
            run(collect(recorder.provider(OpenAIProvider).stream("system", HISTORY)))


class TrackingStream(httpx.AsyncByteStream):
    """Response body that records whether it was closed."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        self.closed = True


class TestGateway:
    """Configuration-selected facade."""

    def test_default_model_normalized(self):
        gateway = ProviderGateway(Recorder().provider(), default_model="claude 4.5")
        assert gateway.provider_name == "anthropic"
        assert gateway.model == "claude-sonnet-4-5"

    def test_per_call_model_overrides_default(self):
        recorder = Recorder(httpx.Response(200, json=ANTHROPIC_OK))
        gateway = ProviderGateway(recorder.provider())

        run(gateway.complete("system", HISTORY, CompletionOptions(model="haiku 4.5")))

        assert recorder.payload()["model"] == "claude-haiku-4-5"

    def test_from_settings_selects_provider(self):
        config = Settings(AI_PROVIDER="openai", AI_MODEL="gpt4o", OPENAI_API_KEY="sk-test")
        gateway = ProviderGateway.from_settings(config)

        assert isinstance(gateway.provider, OpenAIProvider)
        assert gateway.model == "gpt-4o"
        assert gateway.provider.api_key == "sk-test"

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError):
            create_provider("gemini")

    def test_closing_stream_closes_upstream(self):
        body = TrackingStream([
            sse([{"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "one"}}]),
            sse([{"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "two"}}]),
        ])
        recorder = Recorder(httpx.Response(200, stream=body))
        gateway = ProviderGateway(recorder.provider())

        async def consume_first():
            stream = gateway.stream("system", HISTORY)
            first = await stream.__anext__()
            await stream.aclose()
            return first

        first = run(consume_first())

        assert first.text == "one"
        assert body.closed is True

    def test_list_models(self):
        models = list_models()
        assert models["anthropic"]["default"] == "claude-sonnet-4-5"
        assert "gpt-4o-mini" in models["openai"]["models"]


class TestSettings:
    """Provider and capsule settings come from the environment."""

    def test_tuning_fields_read_environment(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_VERSION", "2024-01-01")
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("RETRY_BASE_DELAY_MS", "50")
        monkeypatch.setenv("CAPSULE_CAPACITY_MG", "600")

        config = Settings()

        assert config.ANTHROPIC_VERSION == "2024-01-01"
        assert config.RETRY_MAX_ATTEMPTS == 5
        assert config.RETRY_BASE_DELAY_MS == 50
        assert config.CAPSULE_CAPACITY_MG == 600

    def test_defaults_follow_formula_limits(self, monkeypatch):
        monkeypatch.delenv("CAPSULE_CAPACITY_MG", raising=False)
        monkeypatch.delenv("OPENAI_BASE_URL", raising=False)

        config = Settings()

        assert config.CAPSULE_CAPACITY_MG == FORMULA_LIMITS["capsule_capacity_mg"]
        assert ALLOWED_CAPSULE_COUNTS == tuple(FORMULA_LIMITS["allowed_capsule_counts"])
        assert config.OPENAI_BASE_URL == "https://api.openai.com/v1"

    def test_anthropic_version_sent_as_header(self):
        recorder = Recorder(httpx.Response(200, json=ANTHROPIC_OK))
        run(recorder.provider(api_version="2024-01-01").complete("system", HISTORY))

        assert recorder.requests[0].headers["anthropic-version"] == "2024-01-01"


class TestModelNames:
    """Loose model spellings map to exact identifiers."""

    @pytest.mark.parametrize("provider, requested, expected", [
        ("anthropic", None, "claude-sonnet-4-5"),
        ("anthropic", "  ", "claude-sonnet-4-5"),
        ("anthropic", "Claude Sonnet 4.5", "claude-sonnet-4-5"),
        ("anthropic", "sonnet-4.5", "claude-sonnet-4-5"),
        ("anthropic", "claude-3.5-sonnet", "claude-3-5-sonnet-20241022"),
        ("anthropic", "claude-3-5-haiku", "claude-3-5-haiku-20241022"),
        ("openai", None, "gpt-4o"),
        ("openai", "GPT-4o-Mini", "gpt-4o-mini"),
        ("openai", "gpt5", "gpt-5"),
    ])
    def test_aliases(self, provider, requested, expected):
        assert normalize_model(provider, requested) == expected

    def test_unknown_model_passes_through(self):
        assert normalize_model("openai", " o3-mini ") == "o3-mini"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            normalize_model("gemini", "gemini-pro")

    def test_reasoning_models(self):
        assert is_reasoning_model("gpt-5")
        assert is_reasoning_model("o3-mini")
        assert not is_reasoning_model("gpt-4o")
