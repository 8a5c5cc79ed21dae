"""Streaming adapter for OpenAI-compatible chat APIs (OpenRouter, NVIDIA NIM)."""

import json
from typing import TYPE_CHECKING, Any, AsyncGenerator

from ..streaming.provider import ProviderCapabilities, StreamProvider, classify_provider_error
from ..streaming.types import (
    FunctionCallEvent,
    ProcessedChunk,
    ProviderError,
    ProviderErrorType,
    RawStreamChunk,
)
from ..utils.logging import get_logger

if TYPE_CHECKING:
    from ..core.conversation import StreamContext
    from ..streaming.config import StreamConfig

logger = get_logger(__name__)

# Raw fragment kinds produced by start_stream
KIND_TEXT = "text"
KIND_FUNCTION_CALL = "function_call"
KIND_FINISH = "finish"
KIND_ERROR = "error"


class OpenAICompatibleProvider(StreamProvider):
    """
    Adapter for any endpoint speaking the OpenAI chat completions protocol.

    Tool call arguments arrive as string deltas spread over many chunks, so
    they are accumulated inside ``start_stream`` and surfaced as a single
    function call fragment once the model finishes.
    """

    def __init__(
        self,
        name: str,
        api_key: str,
        base_url: str,
        model: str,
        max_tokens: int = 4096,
        timeout: int = 120,
        temperature: float = 0.7,
        extra_body: dict[str, Any] | None = None,
        client: Any = None,
    ) -> None:
        self.name = name
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.temperature = temperature
        self.extra_body = extra_body or {}
        self._client: Any = client

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=self.timeout,
            )
        return self._client

    def _messages_to_openai(self, context: "StreamContext") -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        if context.system_prompt:
            out.append({"role": "system", "content": context.system_prompt})
        for m in context.messages:
            msg: dict[str, Any] = {"role": m.role, "content": m.content or ""}
            if m.role == "tool":
                msg["tool_call_id"] = m.tool_call_id or ""
            elif m.role == "assistant" and m.tool_calls:
                msg["tool_calls"] = [
                    {
                        "id": tc.get("id", f"call_{i}"),
                        "type": "function",
                        "function": {
                            "name": tc.get("name", ""),
                            "arguments": (
                                json.dumps(tc["arguments"])
                                if isinstance(tc.get("arguments"), dict)
                                else str(tc.get("arguments", "{}"))
                            ),
                        },
                    }
                    for i, tc in enumerate(m.tool_calls)
                ]
            out.append(msg)
        return out

    def build_request(self, config: "StreamConfig", context: "StreamContext") -> dict[str, Any]:
        """Translate a stream context into chat completion keyword arguments."""
        request: dict[str, Any] = {
            "model": config.model or self.model,
            "messages": self._messages_to_openai(context),
            "temperature": self.temperature if config.temperature is None else config.temperature,
            "max_tokens": config.max_output_tokens or self.max_tokens,
            "stream": True,
        }
        if self.extra_body:
            request["extra_body"] = self.extra_body
        if context.tools:
            request["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in context.tools
            ]
            request["tool_choice"] = "auto"
        return request

    async def start_stream(
        self,
        config: "StreamConfig",
        context: "StreamContext",
    ) -> AsyncGenerator[RawStreamChunk, None]:
        client = self._get_client()
        request = self.build_request(config, context)
        pending_calls: dict[int, dict[str, str]] = {}

        try:
            stream = await client.chat.completions.create(**request)
            async for chunk in stream:
                if not getattr(chunk, "choices", None):
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                for tc in getattr(delta, "tool_calls", None) or []:
                    slot = pending_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    function = getattr(tc, "function", None)
                    if function is not None:
                        if function.name:
                            slot["name"] += function.name
                        if function.arguments:
                            slot["arguments"] += function.arguments

                # Reasoning deltas from thinking models are not shown to users
                if getattr(delta, "content", None):
                    yield RawStreamChunk(data=delta.content, provider=self.name, metadata={"kind": KIND_TEXT})

                if choice.finish_reason:
                    if pending_calls:
                        first = pending_calls[min(pending_calls)]
                        if len(pending_calls) > 1:
                            logger.info(
                                "Model requested several tools, handing off the first",
                                requested=len(pending_calls),
                            )
                        yield RawStreamChunk(
                            data=first,
                            provider=self.name,
                            metadata={"kind": KIND_FUNCTION_CALL},
                        )
                    else:
                        yield RawStreamChunk(
                            data=choice.finish_reason,
                            provider=self.name,
                            metadata={"kind": KIND_FINISH},
                        )
                    return
        except Exception as e:
            logger.error("Streaming request failed", provider=self.name, error=str(e))
            yield RawStreamChunk(data=e, provider=self.name, metadata={"kind": KIND_ERROR})

    def process_chunk(self, chunk: RawStreamChunk) -> ProcessedChunk:
        kind = chunk.metadata.get("kind")
        if kind == KIND_TEXT:
            return ProcessedChunk.text(chunk.data)
        if kind == KIND_FUNCTION_CALL:
            call = self.extract_function_call(chunk)
            if call is not None:
                return ProcessedChunk.call(call)
            return ProcessedChunk.text("")
        if kind == KIND_ERROR:
            return ProcessedChunk.failure(self.handle_provider_error(chunk.data))
        if kind == KIND_FINISH and chunk.data == "content_filter":
            return ProcessedChunk.failure(
                ProviderError(
                    type=ProviderErrorType.CONTENT_BLOCKED,
                    message=f"{self.name} error (content_filter): response was filtered",
                    code="content_filter",
                )
            )
        if kind == KIND_FINISH:
            if chunk.data == "length":
                logger.warning("Response hit max_tokens", provider=self.name)
            return ProcessedChunk.done()
        return ProcessedChunk.text("")

    def extract_function_call(self, chunk: RawStreamChunk) -> FunctionCallEvent | None:
        if chunk.metadata.get("kind") != KIND_FUNCTION_CALL or not isinstance(chunk.data, dict):
            return None
        data = chunk.data
        if not data.get("name"):
            return None
        raw_args = data.get("arguments") or "{}"
        try:
            args = json.loads(raw_args)
        except json.JSONDecodeError:
            logger.warning("Tool call arguments are not valid JSON", function=data["name"])
            args = {}
        if not isinstance(args, dict):
            args = {"value": args}
        return FunctionCallEvent(name=data["name"], args=args, id=data.get("id") or None)

    def handle_provider_error(self, error: BaseException) -> ProviderError:
        status = getattr(error, "status_code", None)
        normalized = classify_provider_error(status, str(error), provider=self.name)
        normalized.original_error = error
        normalized.user_message = getattr(error, "message", None)
        return normalized

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            name=self.name,
            version=self.model,
            supports_function_calling=True,
        )
