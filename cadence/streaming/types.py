"""Shared data types for the streaming delivery pipeline."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChunkType(str, Enum):
    """Kinds of normalized stream fragments."""

    TEXT = "text"
    FUNCTION_CALL = "function_call"
    ERROR = "error"
    DONE = "done"


class ProviderErrorType(str, Enum):
    """Normalized provider failure categories."""

    API_ERROR = "api_error"
    RATE_LIMIT = "rate_limit"
    CONTENT_BLOCKED = "content_blocked"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class StreamStatus(str, Enum):
    """Terminal outcome of one orchestration session."""

    COMPLETED = "completed"
    FUNCTION_CALL = "function_call"
    ERROR = "error"
    TIMEOUT = "timeout"


class BreakType(str, Enum):
    """Why a segment was flushed."""

    NEWLINE = "newline"
    PERIOD = "period"
    CODE_OPEN = "code_open"
    CODE_CLOSE = "code_close"
    OVERFLOW = "overflow"
    # Flushes forced by the orchestrator rather than the segmentation engine
    FINAL = "final"
    FUNCTION_CALL = "function_call"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class FunctionCallEvent:
    """A tool invocation requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class ProviderError:
    """Provider failure normalized into a provider-independent shape."""

    type: ProviderErrorType
    message: str
    code: str | None = None
    retryable: bool = False
    original_error: Any = None
    # Provider's own human-readable explanation, if it sent one
    user_message: str | None = None


@dataclass
class RawStreamChunk:
    """A provider-native fragment, opaque to everything but its adapter."""

    data: Any
    provider: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessedChunk:
    """A fragment normalized by a provider adapter."""

    type: ChunkType
    content: str | None = None
    function_call: FunctionCallEvent | None = None
    error: ProviderError | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, content: str, **metadata: Any) -> "ProcessedChunk":
        return cls(type=ChunkType.TEXT, content=content, metadata=metadata)

    @classmethod
    def call(cls, function_call: FunctionCallEvent) -> "ProcessedChunk":
        return cls(type=ChunkType.FUNCTION_CALL, function_call=function_call)

    @classmethod
    def failure(cls, error: ProviderError) -> "ProcessedChunk":
        return cls(type=ChunkType.ERROR, error=error)

    @classmethod
    def done(cls) -> "ProcessedChunk":
        return cls(type=ChunkType.DONE)


@dataclass
class StreamMetrics:
    """Counters for one orchestration session."""

    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None
    fragments: int = 0
    characters: int = 0
    segments_flushed: int = 0
    messages_sent: int = 0
    function_calls: int = 0
    errors: int = 0
    timeouts: int = 0

    @property
    def duration_ms(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at) * 1000

    def finalize(self) -> "StreamMetrics":
        if self.ended_at is None:
            self.ended_at = time.monotonic()
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "fragments": self.fragments,
            "characters": self.characters,
            "segments_flushed": self.segments_flushed,
            "messages_sent": self.messages_sent,
            "function_calls": self.function_calls,
            "errors": self.errors,
            "timeouts": self.timeouts,
            "duration_ms": round(self.duration_ms, 1) if self.duration_ms is not None else None,
        }


@dataclass
class SessionState:
    """Mutable state owned by exactly one orchestration session."""

    buffer: str = ""
    inside_code_block: bool = False
    message_sent_count: int = 0
    has_replied_once: bool = False
    last_activity: float = field(default_factory=time.monotonic)
    # Model text in arrival order, kept for the follow-up request after a tool call
    text_parts: list[str] = field(default_factory=list)


@dataclass
class StreamResult:
    """Outcome of an orchestration session."""

    status: StreamStatus
    function_call: FunctionCallEvent | None = None
    error: ProviderError | None = None
    messages_sent: int = 0
    metrics: StreamMetrics | None = None
    # Text the model produced during the session
    text: str = ""

    @property
    def is_empty(self) -> bool:
        """Completed without delivering anything."""
        return self.status == StreamStatus.COMPLETED and self.messages_sent == 0


class StreamError(Exception):
    """Base class for streaming pipeline errors."""


class StreamTimeout(StreamError):
    """The upstream stream went quiet for longer than the inactivity timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Stream timed out after {timeout:.1f}s of inactivity")
        self.timeout = timeout


class DeliveryError(StreamError):
    """The chat platform did not accept an outbound message."""


class UnknownProviderError(StreamError):
    """No provider adapter is registered under the requested identifier."""
