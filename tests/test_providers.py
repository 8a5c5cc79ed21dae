"""Tests for provider registry, error classification and adapter normalization."""

from types import SimpleNamespace

import pytest

from cadence.core.conversation import ConversationMessage, StreamContext, ToolSpec
from cadence.providers import build_registry
from cadence.providers.anthropic import AnthropicProvider
from cadence.providers.ollama import OllamaProvider
from cadence.providers.openai_compat import OpenAICompatibleProvider
from cadence.streaming.config import StreamConfig
from cadence.streaming.provider import ProviderRegistry, classify_provider_error
from cadence.streaming.types import (
    ChunkType,
    FunctionCallEvent,
    ProviderErrorType,
    RawStreamChunk,
    UnknownProviderError,
)
from cadence.utils.config import Settings


@pytest.mark.parametrize(
    "status,message,expected,retryable",
    [
        (429, "too many", ProviderErrorType.RATE_LIMIT, True),
        (503, "down", ProviderErrorType.API_ERROR, True),
        (529, "overloaded", ProviderErrorType.API_ERROR, True),
        (504, "gateway", ProviderErrorType.TIMEOUT, True),
        (401, "bad key", ProviderErrorType.API_ERROR, False),
        (None, "RESOURCE_EXHAUSTED: quota", ProviderErrorType.RATE_LIMIT, True),
        (None, "Request timed out.", ProviderErrorType.TIMEOUT, True),
        (None, "Response blocked by safety filters", ProviderErrorType.CONTENT_BLOCKED, False),
        (None, "something odd", ProviderErrorType.API_ERROR, False),
    ],
)
def test_classify_provider_error(status, message, expected, retryable):
    error = classify_provider_error(status, message, provider="test")
    assert error.type == expected
    assert error.retryable is retryable
    assert error.code == (str(status) if status else None)
    assert error.message.startswith("test error (")


def test_registry_aliases_and_unknown():
    registry = build_registry()
    assert registry.names() == ["anthropic", "nvidia", "ollama", "openrouter"]
    assert registry.resolve("Claude") == "anthropic"
    assert "local" in registry
    with pytest.raises(UnknownProviderError) as excinfo:
        registry.resolve("gemini")
    assert "anthropic" in str(excinfo.value)


def test_registry_rejects_duplicates():
    registry = ProviderRegistry()
    registry.register("x", lambda settings: None)
    with pytest.raises(ValueError):
        registry.register("X", lambda settings: None)


def test_registry_creates_configured_adapters():
    settings = Settings(ANTHROPIC_API_KEY="k")
    registry = build_registry()

    anthropic = registry.create("claude", settings)
    assert isinstance(anthropic, AnthropicProvider)
    assert anthropic.model == settings.llm.anthropic.model

    nvidia = registry.create("nvidia", settings)
    assert isinstance(nvidia, OpenAICompatibleProvider)
    assert nvidia.get_capabilities().name == "nvidia"

    assert isinstance(registry.create("ollama", settings), OllamaProvider)


def _context_with_tool_round() -> StreamContext:
    context = StreamContext(
        conversation_id="c",
        system_prompt="Be brief.",
        messages=[ConversationMessage(role="user", content="time?")],
        tools=[ToolSpec(name="get_time", description="Time", parameters={"type": "object"})],
    )
    return context.with_function_result(
        FunctionCallEvent(name="get_time", args={}, id="toolu_1"), {"utc": "now"}
    )


# Anthropic


def test_anthropic_request_translation():
    provider = AnthropicProvider(api_key="k", model="claude-test", max_tokens=100)
    request = provider.build_request(StreamConfig(), _context_with_tool_round())

    assert request["model"] == "claude-test"
    assert request["system"] == "Be brief."
    assert request["max_tokens"] == 100
    assert request["tools"][0]["input_schema"] == {"type": "object"}
    assistant, tool_result = request["messages"][1], request["messages"][2]
    assert assistant["content"][0] == {"type": "tool_use", "id": "toolu_1", "name": "get_time", "input": {}}
    assert tool_result["role"] == "user"
    assert tool_result["content"][0]["tool_use_id"] == "toolu_1"


def test_anthropic_chunk_normalization():
    provider = AnthropicProvider(api_key="k")

    def raw(**fields):
        return RawStreamChunk(data=SimpleNamespace(**fields), provider="anthropic")

    assert provider.process_chunk(raw(type="text", text="Hi")).content == "Hi"

    block = SimpleNamespace(type="tool_use", name="lookup", input={"q": 1}, id="toolu_9")
    call_chunk = provider.process_chunk(raw(type="content_block_stop", content_block=block))
    assert call_chunk.type == ChunkType.FUNCTION_CALL
    assert call_chunk.function_call == FunctionCallEvent(name="lookup", args={"q": 1}, id="toolu_9")

    text_block = SimpleNamespace(type="text", text="done")
    assert provider.process_chunk(raw(type="content_block_stop", content_block=text_block)).content == ""

    stop = raw(type="message_stop", message=SimpleNamespace(stop_reason="end_turn"))
    assert provider.process_chunk(stop).type == ChunkType.DONE

    refusal = provider.process_chunk(raw(type="message_stop", message=SimpleNamespace(stop_reason="refusal")))
    assert refusal.type == ChunkType.ERROR
    assert refusal.error.type == ProviderErrorType.CONTENT_BLOCKED


def test_anthropic_error_fragment():
    provider = AnthropicProvider(api_key="k")

    class FakeStatusError(Exception):
        status_code = 529
        message = "Overloaded"

    chunk = RawStreamChunk(data=FakeStatusError("Overloaded"), provider="anthropic", metadata={"kind": "error"})
    processed = provider.process_chunk(chunk)
    assert processed.type == ChunkType.ERROR
    assert processed.error.retryable is True
    assert processed.error.code == "529"
    assert processed.error.user_message == "Overloaded"


@pytest.mark.asyncio
async def test_anthropic_stream_failure_yields_error_fragment():
    class FailingMessages:
        def stream(self, **kwargs):
            raise RuntimeError("connection refused")

    provider = AnthropicProvider(api_key="k", client=SimpleNamespace(messages=FailingMessages()))
    chunks = [c async for c in provider.start_stream(StreamConfig(), StreamContext())]
    assert len(chunks) == 1
    assert provider.process_chunk(chunks[0]).type == ChunkType.ERROR


# OpenAI-compatible


def _delta_chunk(content=None, tool_calls=None, finish_reason=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def _tool_delta(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


class _FakeCompletions:
    def __init__(self, chunks):
        self.chunks = chunks
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)

        async def generator():
            for chunk in self.chunks:
                yield chunk

        return generator()


def _openai_provider(chunks):
    completions = _FakeCompletions(chunks)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    provider = OpenAICompatibleProvider(
        name="openrouter", api_key="k", base_url="http://x", model="m", client=client
    )
    return provider, completions


async def _normalize(provider):
    return [provider.process_chunk(c) async for c in provider.start_stream(StreamConfig(), _context_with_tool_round())]


@pytest.mark.asyncio
async def test_openai_text_then_stop():
    provider, completions = _openai_provider(
        [_delta_chunk(content="Hel"), _delta_chunk(content="lo"), _delta_chunk(finish_reason="stop")]
    )
    processed = await _normalize(provider)
    assert [p.type for p in processed] == [ChunkType.TEXT, ChunkType.TEXT, ChunkType.DONE]
    assert "".join(p.content for p in processed[:2]) == "Hello"

    request = completions.requests[0]
    assert request["stream"] is True
    assert request["messages"][0] == {"role": "system", "content": "Be brief."}
    assert request["messages"][-1]["role"] == "tool"
    assert request["messages"][-1]["tool_call_id"] == "toolu_1"
    assert request["tool_choice"] == "auto"


@pytest.mark.asyncio
async def test_openai_tool_call_deltas_are_accumulated():
    provider, _ = _openai_provider(
        [
            _delta_chunk(tool_calls=[_tool_delta(0, id="call_a", name="lookup", arguments='{"q": ')]),
            _delta_chunk(tool_calls=[_tool_delta(0, arguments='"cats"}')]),
            _delta_chunk(finish_reason="tool_calls"),
        ]
    )
    processed = await _normalize(provider)
    assert len(processed) == 1
    assert processed[0].type == ChunkType.FUNCTION_CALL
    assert processed[0].function_call == FunctionCallEvent(name="lookup", args={"q": "cats"}, id="call_a")


@pytest.mark.asyncio
async def test_openai_content_filter_is_blocked():
    provider, _ = _openai_provider([_delta_chunk(content="I"), _delta_chunk(finish_reason="content_filter")])
    processed = await _normalize(provider)
    assert processed[-1].type == ChunkType.ERROR
    assert processed[-1].error.type == ProviderErrorType.CONTENT_BLOCKED


@pytest.mark.asyncio
async def test_openai_request_failure_yields_error():
    class RateLimited(Exception):
        status_code = 429

    class Failing:
        async def create(self, **kwargs):
            raise RateLimited("Rate limit reached")

    client = SimpleNamespace(chat=SimpleNamespace(completions=Failing()))
    provider = OpenAICompatibleProvider(name="nvidia", api_key="k", base_url="http://x", model="m", client=client)
    processed = await _normalize(provider)
    assert processed[0].type == ChunkType.ERROR
    assert processed[0].error.type == ProviderErrorType.RATE_LIMIT


# Ollama


def test_ollama_chunk_normalization():
    provider = OllamaProvider()

    def raw(data):
        return RawStreamChunk(data=data, provider="ollama")

    assert provider.process_chunk(raw({"message": {"content": "hey"}, "done": False})).content == "hey"
    assert provider.process_chunk(raw({"message": {"content": ""}, "done": True})).type == ChunkType.DONE

    call = provider.process_chunk(
        raw({"message": {"content": "", "tool_calls": [{"function": {"name": "f", "arguments": {"a": 1}}}]}})
    )
    assert call.type == ChunkType.FUNCTION_CALL
    assert call.function_call.name == "f"
    assert call.function_call.args == {"a": 1}


def test_ollama_request_includes_system_and_tools():
    provider = OllamaProvider(model="llama-test")
    request = provider.build_request(StreamConfig(max_output_tokens=50), _context_with_tool_round())
    assert request["model"] == "llama-test"
    assert request["messages"][0]["role"] == "system"
    assert request["options"]["num_predict"] == 50
    assert request["tools"][0]["function"]["name"] == "get_time"
