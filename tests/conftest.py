"""Shared fakes for streaming tests."""

import asyncio
from typing import Any, AsyncGenerator

import pytest

from cadence.channels.base import BaseChannel
from cadence.core.conversation import StreamContext
from cadence.streaming.config import BufferConfig, HumanizerDegree, PacingConfig, StreamConfig
from cadence.streaming.provider import ProviderCapabilities, StreamProvider
from cadence.streaming.sink import DeliveryReceipt, Notice, OutputSink
from cadence.streaming.types import (
    FunctionCallEvent,
    ProcessedChunk,
    ProviderError,
    ProviderErrorType,
    RawStreamChunk,
)


class ScriptedProvider(StreamProvider):
    """
    Provider that replays one script per start_stream call.

    Script items: a ProcessedChunk is yielded, an exception is raised, a
    float is a real sleep before the next item.
    """

    def __init__(self, *scripts: list[Any]) -> None:
        self.scripts = list(scripts)
        self.calls = 0
        self.contexts: list[StreamContext] = []

    async def start_stream(self, config, context) -> AsyncGenerator[RawStreamChunk, None]:
        script = self.scripts[min(self.calls, len(self.scripts) - 1)]
        self.calls += 1
        self.contexts.append(context)
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, (int, float)):
                await asyncio.sleep(item)
                continue
            yield RawStreamChunk(data=item, provider="scripted")

    def process_chunk(self, chunk: RawStreamChunk) -> ProcessedChunk:
        return chunk.data

    def extract_function_call(self, chunk: RawStreamChunk) -> FunctionCallEvent | None:
        return chunk.data.function_call

    def handle_provider_error(self, error: BaseException) -> ProviderError:
        return ProviderError(type=ProviderErrorType.UNKNOWN, message=str(error))

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(name="scripted", supports_function_calling=True)


class RecordingSink(OutputSink):
    """Sink that records everything it is asked to do."""

    def __init__(self, fail_on_deliver: Exception | None = None) -> None:
        self.segments: list[str] = []
        self.notices: list[Notice] = []
        self.activity = 0
        self.fail_on_deliver = fail_on_deliver

    async def deliver(self, text: str, pause=None) -> DeliveryReceipt:
        if self.fail_on_deliver is not None:
            raise self.fail_on_deliver
        self.segments.append(text)
        return DeliveryReceipt(message_ids=[str(len(self.segments))], replied=len(self.segments) == 1)

    async def signal_activity(self) -> None:
        self.activity += 1

    async def notify(self, notice: Notice) -> None:
        self.notices.append(notice)


class FakeChannel(BaseChannel):
    """Channel that records sends instead of talking to a platform."""

    def __init__(self, accept: bool = True, typing_error: Exception | None = None) -> None:
        super().__init__("fake")
        self.accept = accept
        self.typing_error = typing_error
        self.sent: list[dict[str, Any]] = []
        self.typing = 0

    async def start(self) -> None:
        self._connected = True

    async def stop(self) -> None:
        self._connected = False

    async def send_message(self, target, content, reply_to=None, thread_id=None):
        if not self.accept:
            return None
        self.sent.append(
            {"target": target, "content": content, "reply_to": reply_to, "thread_id": thread_id}
        )
        return f"m{len(self.sent)}"

    async def send_typing_indicator(self, target: str) -> None:
        if self.typing_error is not None:
            raise self.typing_error
        self.typing += 1


class SleepRecorder:
    """Stand-in for asyncio.sleep that records durations without waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def text(*parts: str) -> list[ProcessedChunk]:
    return [ProcessedChunk.text(p) for p in parts]


@pytest.fixture
def context() -> StreamContext:
    return StreamContext(conversation_id="conv-1", user_id="u1", channel="fake")


@pytest.fixture
def plain_config() -> StreamConfig:
    """Pacing off, prose flushed at newlines only."""
    return StreamConfig(humanizer_degree=HumanizerDegree.NONE)


@pytest.fixture
def paced_config() -> StreamConfig:
    return StreamConfig(
        humanizer_degree=HumanizerDegree.HEAVY,
        buffer=BufferConfig(sentence_flush=True),
        pacing=PacingConfig(enabled=True),
    )


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
