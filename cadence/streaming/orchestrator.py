"""Stream orchestrator - turns a provider stream into paced chat messages."""

import asyncio
import random
from contextlib import aclosing
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from structlog.contextvars import bound_contextvars

from ..core.events import StreamEvent
from ..utils.logging import get_logger
from .config import CODE_FENCE, StreamConfig
from .pacing import PacingSimulator, SleepFunc
from .provider import StreamProvider
from .segmentation import evaluate_buffer
from .sink import Notice, NoticeKind, OutputSink
from .types import (
    BreakType,
    ChunkType,
    ProcessedChunk,
    ProviderError,
    ProviderErrorType,
    RawStreamChunk,
    SessionState,
    StreamMetrics,
    StreamResult,
    StreamStatus,
    StreamTimeout,
)
from .watchdog import InactivityWatchdog

if TYPE_CHECKING:
    from ..core.conversation import StreamContext
    from ..core.events import EventBus

logger = get_logger(__name__)

# Empty responses are retried this many times before giving up
MAX_EMPTY_RESPONSE_RETRIES = 2
RETRY_DELAY_SECONDS = 1.0


class StreamOrchestrator:
    """
    Drives one conversational turn's worth of streaming delivery.

    Responsibilities:
    - Consume provider fragments strictly in arrival order
    - Segment text so fenced code is never split across messages
    - Pace delivery like a person typing
    - Hand tool calls back to the caller
    - Retry empty completions a bounded number of times
    - Detect stalled streams and never let an exception escape
    """

    def __init__(
        self,
        provider: StreamProvider,
        sink: OutputSink,
        events: "EventBus | None" = None,
        rng: random.Random | None = None,
        sleep: SleepFunc = asyncio.sleep,
        max_retries: int = MAX_EMPTY_RESPONSE_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ) -> None:
        self.provider = provider
        self.sink = sink
        self.events = events
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._rng = rng or random.Random()
        self._sleep = sleep

    async def run_session(self, config: StreamConfig, context: "StreamContext") -> StreamResult:
        """
        Stream one model response to the sink.

        Completed attempts that delivered nothing are retried up to
        ``max_retries`` times, ``retry_delay`` seconds apart. If every attempt
        comes back empty the user gets a "no response" notice and the result
        is still ``completed``.

        Returns:
            The terminal result: completed, function_call, error or timeout.
        """
        capabilities = self.provider.get_capabilities()
        session_id = uuid4().hex[:12]

        with bound_contextvars(
            session_id=session_id,
            provider=capabilities.name,
            conversation_id=context.conversation_id,
        ):
            result = StreamResult(status=StreamStatus.COMPLETED)
            for attempt in range(self.max_retries + 1):
                with bound_contextvars(attempt=attempt + 1):
                    result = await self._run_attempt(config, context)

                if not result.is_empty:
                    return result

                if attempt < self.max_retries:
                    logger.info(
                        "Empty response, retrying",
                        attempt=attempt + 1,
                        max_attempts=self.max_retries + 1,
                        delay_s=self.retry_delay,
                    )
                    await self._emit(StreamEvent.RETRY, {"attempt": attempt + 1, "delay_s": self.retry_delay})
                    await self._sleep(self.retry_delay)

            logger.warning("Empty response after retries", retries=self.max_retries)
            await self._emit(StreamEvent.EMPTY, {"retries": self.max_retries})
            await self._notify(Notice(NoticeKind.EMPTY_RESPONSE))
            return result

    async def _run_attempt(self, config: StreamConfig, context: "StreamContext") -> StreamResult:
        """Run a single attempt. Never raises (except on cancellation)."""
        state = SessionState()
        metrics = StreamMetrics()
        pacer = PacingSimulator(config.pacing, rng=self._rng, sleep=self._sleep)
        watchdog = InactivityWatchdog(config.inactivity_timeout, label=context.conversation_id)

        logger.info(
            "Stream session started",
            channel=context.channel,
            humanizer=int(config.humanizer_degree),
        )
        await self._emit(StreamEvent.STARTED, {"conversation_id": context.conversation_id})

        try:
            try:
                result = await self._consume(config, context, state, metrics, pacer, watchdog)
            except StreamTimeout as timeout:
                result = await self._handle_timeout(timeout, state, metrics, pacer)
        except Exception as e:
            result = await self._handle_exception(e, state, metrics)
        finally:
            watchdog.cancel()

        return await self._finish(result, state, metrics)

    async def _consume(
        self,
        config: StreamConfig,
        context: "StreamContext",
        state: SessionState,
        metrics: StreamMetrics,
        pacer: PacingSimulator,
        watchdog: InactivityWatchdog,
    ) -> StreamResult:
        watchdog.start()
        await self._signal_activity()

        async with aclosing(self.provider.start_stream(config, context)) as fragments:
            async for raw in fragments:
                watchdog.check()
                watchdog.reset()
                state.last_activity = watchdog.last_activity
                metrics.fragments += 1

                chunk = self.provider.process_chunk(raw)
                outcome = await self._handle_chunk(chunk, raw, config, state, metrics, pacer)
                if outcome is not None:
                    return outcome

                # Time spent pacing our own output does not count as upstream inactivity
                watchdog.reset()

        # Silence right before the end of the stream still counts as a timeout
        watchdog.check()

        # Stream ran out without an explicit "done"
        await self._flush_remaining(state, metrics, pacer, BreakType.FINAL)
        return StreamResult(status=StreamStatus.COMPLETED)

    async def _handle_chunk(
        self,
        chunk: ProcessedChunk,
        raw: RawStreamChunk,
        config: StreamConfig,
        state: SessionState,
        metrics: StreamMetrics,
        pacer: PacingSimulator,
    ) -> StreamResult | None:
        """Dispatch one normalized fragment. Returns a result to stop the session."""
        if chunk.type == ChunkType.ERROR:
            error = chunk.error or ProviderError(
                type=ProviderErrorType.UNKNOWN,
                message="Provider reported an error without details",
            )
            metrics.errors += 1
            logger.warning(
                "Provider stopped the response",
                error_type=error.type.value,
                code=error.code,
                retryable=error.retryable,
                message=error.message,
            )
            await self._notify(
                Notice(
                    NoticeKind.PROVIDER_ERROR,
                    {"reason": error.type.value, "code": error.code or "unknown"},
                )
            )
            return StreamResult(status=StreamStatus.ERROR, error=error)

        if chunk.type == ChunkType.FUNCTION_CALL:
            call = chunk.function_call or self.provider.extract_function_call(raw)
            if call is None:
                logger.warning("Function call fragment without a call, ignoring")
                return None
            metrics.function_calls += 1
            await self._flush_remaining(state, metrics, pacer, BreakType.FUNCTION_CALL)
            logger.info("Handing off function call", function=call.name)
            return StreamResult(status=StreamStatus.FUNCTION_CALL, function_call=call)

        if chunk.type == ChunkType.TEXT:
            if chunk.content:
                await self._process_text(chunk.content, config, state, metrics, pacer)
            return None

        # DONE
        await self._flush_remaining(state, metrics, pacer, BreakType.FINAL)
        return StreamResult(status=StreamStatus.COMPLETED)

    async def _process_text(
        self,
        text: str,
        config: StreamConfig,
        state: SessionState,
        metrics: StreamMetrics,
        pacer: PacingSimulator,
    ) -> None:
        """Append text to the buffer and deliver every segment that is ready."""
        state.buffer += text
        state.text_parts.append(text)
        metrics.characters += len(text)

        while state.buffer:
            decision = evaluate_buffer(state.buffer, state.inside_code_block, config.buffer)
            state.inside_code_block = decision.inside_code_block
            if decision.segment is None:
                break

            state.buffer = decision.remaining
            if decision.break_type == BreakType.OVERFLOW and decision.segment.startswith(CODE_FENCE):
                logger.warning(
                    "Code block exceeded safety size without closing fence, flushing incomplete block",
                    size=len(decision.segment),
                    limit=config.buffer.code_block_flush_size,
                )
            await self._dispatch(decision.segment, decision.break_type, state, metrics, pacer)

    async def _flush_remaining(
        self,
        state: SessionState,
        metrics: StreamMetrics,
        pacer: PacingSimulator,
        break_type: BreakType,
    ) -> None:
        """Force out whatever is still buffered."""
        if not state.buffer:
            return
        if state.inside_code_block:
            logger.warning(
                "Flushing while inside a code block, the block may be incomplete",
                reason=break_type.value,
            )
        segment = state.buffer
        state.buffer = ""
        state.inside_code_block = False
        await self._dispatch(segment, break_type, state, metrics, pacer)

    async def _dispatch(
        self,
        segment: str,
        break_type: BreakType | None,
        state: SessionState,
        metrics: StreamMetrics,
        pacer: PacingSimulator,
    ) -> None:
        """Pace and deliver one segment."""
        metrics.segments_flushed += 1
        kind = break_type.value if break_type else None
        logger.debug("Flushing segment", break_type=kind, length=len(segment))
        await self._emit(StreamEvent.SEGMENT_FLUSHED, {"break_type": kind, "length": len(segment)})

        if not segment.strip():
            return

        await pacer.simulate_typing(segment, self._signal_activity)

        async def pause() -> float:
            return await pacer.pause_between_chunks(self._signal_activity)

        receipt = await self.sink.deliver(segment, pause=pause if pacer.enabled else None)
        state.message_sent_count += receipt.sent_count
        state.has_replied_once = state.has_replied_once or receipt.replied
        metrics.messages_sent += receipt.sent_count

    async def _handle_timeout(
        self,
        timeout: StreamTimeout,
        state: SessionState,
        metrics: StreamMetrics,
        pacer: PacingSimulator,
    ) -> StreamResult:
        metrics.timeouts += 1
        logger.warning("Stream timed out", timeout_s=timeout.timeout, buffered=len(state.buffer))
        await self._flush_remaining(state, metrics, pacer, BreakType.TIMEOUT)
        return StreamResult(status=StreamStatus.TIMEOUT)

    async def _handle_exception(
        self,
        error: Exception,
        state: SessionState,
        metrics: StreamMetrics,
    ) -> StreamResult:
        metrics.errors += 1
        logger.error(
            "Stream session failed",
            error=str(error),
            error_class=type(error).__name__,
            buffered=len(state.buffer),
            inside_code_block=state.inside_code_block,
            messages_sent=state.message_sent_count,
            exc_info=True,
        )
        await self._notify(Notice(NoticeKind.STREAM_ERROR, {"error": str(error)}))
        return StreamResult(
            status=StreamStatus.ERROR,
            error=ProviderError(
                type=ProviderErrorType.UNKNOWN,
                message=str(error) or type(error).__name__,
                retryable=False,
                original_error=error,
            ),
        )

    async def _finish(
        self,
        result: StreamResult,
        state: SessionState,
        metrics: StreamMetrics,
    ) -> StreamResult:
        result.messages_sent = state.message_sent_count
        result.text = "".join(state.text_parts)
        result.metrics = metrics.finalize()

        logger.info("Stream session finished", status=result.status.value, **metrics.to_dict())

        event_name = {
            StreamStatus.COMPLETED: StreamEvent.COMPLETED,
            StreamStatus.FUNCTION_CALL: StreamEvent.FUNCTION_CALL,
            StreamStatus.TIMEOUT: StreamEvent.TIMEOUT,
            StreamStatus.ERROR: StreamEvent.FAILED,
        }[result.status]
        data: dict[str, Any] = {"status": result.status.value, **metrics.to_dict()}
        if result.function_call:
            data["function"] = result.function_call.name
        if result.error:
            data["error_type"] = result.error.type.value
        await self._emit(event_name, data)
        return result

    async def _signal_activity(self) -> None:
        try:
            await self.sink.signal_activity()
        except Exception as e:
            logger.warning("Activity signal failed", error=str(e))

    async def _notify(self, notice: Notice) -> None:
        try:
            await self.sink.notify(notice)
        except Exception as e:
            logger.warning("Failed to send notice", notice=notice.kind.value, error=str(e))

    async def _emit(self, name: StreamEvent, data: dict[str, Any]) -> None:
        if self.events is not None:
            await self.events.emit(name, data, source="stream_orchestrator")
