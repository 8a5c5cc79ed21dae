"""Streaming delivery: segmentation, pacing and orchestration."""

from .config import BufferConfig, HumanizerDegree, PacingConfig, StreamConfig
from .orchestrator import StreamOrchestrator
from .provider import ProviderCapabilities, ProviderRegistry, StreamProvider
from .sink import ChannelSink, Notice, NoticeKind, OutputSink
from .types import (
    ChunkType,
    FunctionCallEvent,
    ProcessedChunk,
    ProviderError,
    ProviderErrorType,
    RawStreamChunk,
    StreamResult,
    StreamStatus,
)

__all__ = [
    "BufferConfig",
    "ChannelSink",
    "ChunkType",
    "FunctionCallEvent",
    "HumanizerDegree",
    "Notice",
    "NoticeKind",
    "OutputSink",
    "PacingConfig",
    "ProcessedChunk",
    "ProviderCapabilities",
    "ProviderError",
    "ProviderErrorType",
    "ProviderRegistry",
    "RawStreamChunk",
    "StreamConfig",
    "StreamOrchestrator",
    "StreamProvider",
    "StreamResult",
    "StreamStatus",
]
