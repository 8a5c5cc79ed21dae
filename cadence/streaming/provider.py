"""Provider adapter contract and registry.

An adapter hides everything specific to one upstream generation service:
request construction, the native stream format and native errors. The
orchestrator only ever sees ``ProcessedChunk`` values.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncGenerator, Callable

from ..utils.logging import get_logger
from .types import (
    FunctionCallEvent,
    ProcessedChunk,
    ProviderError,
    ProviderErrorType,
    RawStreamChunk,
    UnknownProviderError,
)

if TYPE_CHECKING:
    from ..core.conversation import StreamContext
    from ..utils.config import Settings
    from .config import StreamConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static facts about an adapter."""

    name: str
    version: str = ""
    supports_streaming: bool = True
    supports_function_calling: bool = False


class StreamProvider(ABC):
    """Interface every upstream provider adapter implements."""

    @abstractmethod
    def start_stream(
        self,
        config: "StreamConfig",
        context: "StreamContext",
    ) -> AsyncGenerator[RawStreamChunk, None]:
        """
        Start a fresh upstream generation.

        Returns a lazy, finite async generator of raw fragments. It cannot be
        resumed mid-stream; every call starts a new upstream interaction.
        """

    @abstractmethod
    def process_chunk(self, chunk: RawStreamChunk) -> ProcessedChunk:
        """Normalize one raw fragment."""

    @abstractmethod
    def extract_function_call(self, chunk: RawStreamChunk) -> FunctionCallEvent | None:
        """Return the tool call carried by a raw fragment, if any."""

    @abstractmethod
    def handle_provider_error(self, error: BaseException) -> ProviderError:
        """Normalize a native SDK exception."""

    @abstractmethod
    def get_capabilities(self) -> ProviderCapabilities:
        """Static information for logging and feature checks."""


def classify_provider_error(
    status: int | None,
    message: str,
    provider: str = "provider",
) -> ProviderError:
    """
    Map an HTTP status and/or error text to a normalized ProviderError.

    Status codes win when present; otherwise the message is searched for
    well-known markers.
    """
    lowered = message.lower()
    error_type: ProviderErrorType
    retryable: bool

    if status == 429:
        error_type, retryable = ProviderErrorType.RATE_LIMIT, True
    elif status in (500, 502, 503, 529):
        error_type, retryable = ProviderErrorType.API_ERROR, True
    elif status == 504:
        error_type, retryable = ProviderErrorType.TIMEOUT, True
    elif status in (400, 401, 403, 404):
        error_type, retryable = ProviderErrorType.API_ERROR, False
    elif "api key" in lowered or "permission_denied" in lowered or "unauthorized" in lowered:
        error_type, retryable = ProviderErrorType.API_ERROR, False
    elif "rate limit" in lowered or "rate_limit" in lowered or "quota" in lowered or "resource_exhausted" in lowered:
        error_type, retryable = ProviderErrorType.RATE_LIMIT, True
    elif "timeout" in lowered or "timed out" in lowered or "deadline_exceeded" in lowered:
        error_type, retryable = ProviderErrorType.TIMEOUT, True
    elif "overloaded" in lowered or "unavailable" in lowered:
        error_type, retryable = ProviderErrorType.API_ERROR, True
    elif "safety" in lowered or "blocked" in lowered or "prohibited" in lowered:
        error_type, retryable = ProviderErrorType.CONTENT_BLOCKED, False
    else:
        error_type, retryable = ProviderErrorType.API_ERROR, False

    return ProviderError(
        type=error_type,
        message=f"{provider} error ({status or 'unknown'}): {message}",
        code=str(status) if status else None,
        retryable=retryable,
    )


ProviderFactory = Callable[["Settings"], StreamProvider]


class ProviderRegistry:
    """
    Maps provider identifiers to adapter factories.

    Populated once at startup; lookups are case-insensitive and accept
    aliases (``claude`` -> ``anthropic``).
    """

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        self._aliases: dict[str, str] = {}

    def register(
        self,
        name: str,
        factory: ProviderFactory,
        aliases: tuple[str, ...] = (),
    ) -> None:
        key = name.lower().strip()
        if key in self._factories or key in self._aliases:
            raise ValueError(f"Provider already registered: {name}")
        self._factories[key] = factory
        for alias in aliases:
            self._aliases[alias.lower().strip()] = key

    def resolve(self, name: str) -> str:
        """Return the canonical identifier for a name or alias."""
        key = name.lower().strip()
        key = self._aliases.get(key, key)
        if key not in self._factories:
            raise UnknownProviderError(
                f"Unsupported provider: {name}. Supported providers: {', '.join(self.names())}"
            )
        return key

    def create(self, name: str, settings: "Settings") -> StreamProvider:
        key = self.resolve(name)
        provider = self._factories[key](settings)
        logger.info("Created provider adapter", provider=key)
        return provider

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        key = name.lower().strip()
        return key in self._factories or key in self._aliases
