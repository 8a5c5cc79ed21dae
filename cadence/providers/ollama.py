"""Local Ollama streaming adapter."""

from typing import TYPE_CHECKING, Any, AsyncGenerator

from ..streaming.provider import ProviderCapabilities, StreamProvider, classify_provider_error
from ..streaming.types import FunctionCallEvent, ProcessedChunk, ProviderError, RawStreamChunk
from ..utils.logging import get_logger

if TYPE_CHECKING:
    from ..core.conversation import StreamContext
    from ..streaming.config import StreamConfig

logger = get_logger(__name__)

PROVIDER_NAME = "ollama"


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from either a dict or an ollama response model."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


class OllamaProvider(StreamProvider):
    """Adapter for a local Ollama server's streaming chat endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2:8b",
        timeout: int = 60,
        temperature: float = 0.7,
        client: Any = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self._client: Any = client

    def _get_client(self) -> Any:
        """Get or create the Ollama client."""
        if self._client is None:
            import ollama

            self._client = ollama.AsyncClient(host=self.base_url, timeout=self.timeout)
        return self._client

    def _convert_messages(self, context: "StreamContext") -> list[dict[str, Any]]:
        """Convert conversation messages to Ollama format, preserving tool calls and results."""
        ollama_messages: list[dict[str, Any]] = []
        if context.system_prompt:
            ollama_messages.append({"role": "system", "content": context.system_prompt})
        for m in context.messages:
            msg: dict[str, Any] = {"role": m.role, "content": m.content or ""}

            if m.role == "assistant" and m.tool_calls:
                msg["tool_calls"] = [
                    {
                        "function": {
                            "name": tc.get("name", ""),
                            "arguments": tc.get("arguments", {}),
                        }
                    }
                    for tc in m.tool_calls
                ]

            ollama_messages.append(msg)
        return ollama_messages

    def build_request(self, config: "StreamConfig", context: "StreamContext") -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": config.model or self.model,
            "messages": self._convert_messages(context),
            "stream": True,
            "options": {
                "temperature": self.temperature if config.temperature is None else config.temperature,
                "num_predict": config.max_output_tokens or -1,
            },
        }
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
        return request

    async def start_stream(
        self,
        config: "StreamConfig",
        context: "StreamContext",
    ) -> AsyncGenerator[RawStreamChunk, None]:
        client = self._get_client()
        request = self.build_request(config, context)

        try:
            async for part in await client.chat(**request):
                yield RawStreamChunk(data=part, provider=PROVIDER_NAME)
        except Exception as e:
            logger.error("Ollama streaming failed", error=str(e))
            yield RawStreamChunk(data=e, provider=PROVIDER_NAME, metadata={"kind": "error"})

    def process_chunk(self, chunk: RawStreamChunk) -> ProcessedChunk:
        if chunk.metadata.get("kind") == "error":
            return ProcessedChunk.failure(self.handle_provider_error(chunk.data))

        call = self.extract_function_call(chunk)
        if call is not None:
            return ProcessedChunk.call(call)

        message = _get(chunk.data, "message")
        content = _get(message, "content") if message is not None else None
        if content:
            return ProcessedChunk.text(content)
        if _get(chunk.data, "done"):
            return ProcessedChunk.done()
        return ProcessedChunk.text("")

    def extract_function_call(self, chunk: RawStreamChunk) -> FunctionCallEvent | None:
        message = _get(chunk.data, "message")
        tool_calls = _get(message, "tool_calls") if message is not None else None
        if not tool_calls:
            return None

        func = _get(tool_calls[0], "function")
        name = _get(func, "name", "") if func is not None else ""
        if not name:
            logger.warning("Ollama tool call without a name, skipping")
            return None
        arguments = _get(func, "arguments") or {}
        return FunctionCallEvent(name=name, args=dict(arguments), id="call_0")

    def handle_provider_error(self, error: BaseException) -> ProviderError:
        status = getattr(error, "status_code", None)
        normalized = classify_provider_error(status, str(error), provider=PROVIDER_NAME)
        normalized.original_error = error
        normalized.user_message = getattr(error, "error", None)
        return normalized

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            name=PROVIDER_NAME,
            version=self.model,
            supports_function_calling=True,
        )
