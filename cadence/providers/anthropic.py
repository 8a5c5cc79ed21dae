"""Anthropic Claude streaming adapter."""

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

PROVIDER_NAME = "anthropic"


class AnthropicProvider(StreamProvider):
    """
    Streams Claude responses through ``messages.stream``.

    Raw fragments are the SDK's stream events. Exceptions raised while the
    stream is open are turned into error fragments so the orchestrator sees
    them in order with everything else.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4096,
        timeout: int = 120,
        temperature: float = 0.7,
        client: Any = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._client: Any = client

    def _get_client(self) -> Any:
        """Get or create the Anthropic client."""
        if self._client is None:
            import anthropic

            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.timeout,
            )
        return self._client

    def build_request(self, config: "StreamConfig", context: "StreamContext") -> dict[str, Any]:
        """Translate a stream context into ``messages.stream`` keyword arguments."""
        system_parts = [context.system_prompt] if context.system_prompt else []
        messages: list[dict[str, Any]] = []

        for msg in context.messages:
            if msg.role == "system":
                system_parts.append(msg.content)
            elif msg.role == "tool":
                messages.append(
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": msg.tool_call_id or "",
                                "content": msg.content,
                            }
                        ],
                    }
                )
            elif msg.role == "assistant" and msg.tool_calls:
                blocks: list[dict[str, Any]] = []
                if msg.content and msg.content.strip():
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": tc.get("id", ""),
                            "name": tc.get("name", ""),
                            "input": tc.get("arguments") or {},
                        }
                    )
                messages.append({"role": "assistant", "content": blocks})
            else:
                messages.append({"role": msg.role, "content": msg.content})

        request: dict[str, Any] = {
            "model": config.model or self.model,
            "messages": messages,
            "max_tokens": config.max_output_tokens or self.max_tokens,
            "temperature": self.temperature if config.temperature is None else config.temperature,
        }
        if system_parts:
            request["system"] = "\n\n".join(system_parts)
        if context.tools:
            request["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters,
                }
                for t in context.tools
            ]
        return request

    async def start_stream(
        self,
        config: "StreamConfig",
        context: "StreamContext",
    ) -> AsyncGenerator[RawStreamChunk, None]:
        client = self._get_client()
        request = self.build_request(config, context)

        try:
            async with client.messages.stream(**request) as stream:
                async for event in stream:
                    yield RawStreamChunk(data=event, provider=PROVIDER_NAME)
        except Exception as e:
            logger.error("Anthropic streaming failed", error=str(e))
            yield RawStreamChunk(data=e, provider=PROVIDER_NAME, metadata={"kind": "error"})

    def process_chunk(self, chunk: RawStreamChunk) -> ProcessedChunk:
        if chunk.metadata.get("kind") == "error":
            return ProcessedChunk.failure(self.handle_provider_error(chunk.data))

        event = chunk.data
        event_type = getattr(event, "type", None)

        if event_type == "text":
            return ProcessedChunk.text(getattr(event, "text", "") or "")

        if event_type == "content_block_stop":
            call = self.extract_function_call(chunk)
            if call is not None:
                return ProcessedChunk.call(call)

        if event_type == "message_stop":
            message = getattr(event, "message", None)
            stop_reason = getattr(message, "stop_reason", None)
            if stop_reason == "refusal":
                return ProcessedChunk.failure(
                    ProviderError(
                        type=ProviderErrorType.CONTENT_BLOCKED,
                        message="anthropic error (refusal): response was refused",
                        code="refusal",
                    )
                )
            if stop_reason == "max_tokens":
                logger.warning("Anthropic response hit max_tokens")
            return ProcessedChunk.done()

        # Deltas for tool input, message_start/message_delta and friends
        return ProcessedChunk.text("")

    def extract_function_call(self, chunk: RawStreamChunk) -> FunctionCallEvent | None:
        block = getattr(chunk.data, "content_block", None)
        if block is None or getattr(block, "type", None) != "tool_use":
            return None
        arguments = getattr(block, "input", None) or {}
        return FunctionCallEvent(
            name=getattr(block, "name", ""),
            args=dict(arguments),
            id=getattr(block, "id", None),
        )

    def handle_provider_error(self, error: BaseException) -> ProviderError:
        status = getattr(error, "status_code", None)
        normalized = classify_provider_error(status, str(error), provider=PROVIDER_NAME)
        normalized.original_error = error
        normalized.user_message = getattr(error, "message", None)
        return normalized

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            name=PROVIDER_NAME,
            version=self.model,
            supports_function_calling=True,
        )
