"""Stream lifecycle events.

The stream orchestrator publishes what it does on an ``EventBus``; anything
interested (stats, dashboards, tests) subscribes. The bus is handed to the
orchestrator explicitly, there is no process-wide instance.

Usage:
    bus = EventBus()
    stats = StreamStats().attach(bus)
    orchestrator = StreamOrchestrator(provider, sink, events=bus)
"""

import asyncio
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine

from ..utils.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[..., Coroutine[Any, Any, None]] | Callable[..., None]


class StreamEvent(str, Enum):
    """Names the stream orchestrator emits."""

    STARTED = "stream_started"  # an attempt opened a provider stream
    SEGMENT_FLUSHED = "segment_flushed"  # data: break_type, length
    RETRY = "stream_retry"  # an empty attempt will be retried
    EMPTY = "stream_empty"  # retries exhausted, nothing delivered
    COMPLETED = "stream_completed"
    FUNCTION_CALL = "stream_function_call"  # control goes back to the caller
    TIMEOUT = "stream_timeout"
    FAILED = "stream_failed"  # provider error or unexpected exception


TERMINAL_EVENTS = (
    StreamEvent.COMPLETED,
    StreamEvent.FUNCTION_CALL,
    StreamEvent.TIMEOUT,
    StreamEvent.FAILED,
)


def _event_key(name: "str | StreamEvent") -> str:
    return name.value if isinstance(name, StreamEvent) else name


@dataclass
class Event:
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = ""


class EventBus:
    """Publish/subscribe bus with a bounded history. ``"*"`` subscribes to everything."""

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._history: deque[Event] = deque(maxlen=max_history)

    def on(self, event_name: "str | StreamEvent", handler: EventHandler) -> Callable[[], None]:
        """Subscribe to an event. Returns an unsubscribe function."""
        key = _event_key(event_name)
        self._handlers[key].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[key]:
                self._handlers[key].remove(handler)

        return unsubscribe

    async def emit(
        self,
        event_name: "str | StreamEvent",
        data: dict[str, Any] | None = None,
        source: str = "",
    ) -> None:
        """Deliver an event to its subscribers. Handler errors are logged, not raised."""
        key = _event_key(event_name)
        event = Event(name=key, data=data or {}, source=source)
        self._history.append(event)

        for handler in [*self._handlers.get(key, []), *self._handlers.get("*", [])]:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "Event handler error",
                    event_name=key,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )

    def get_history(self, event_name: "str | StreamEvent | None" = None, limit: int = 50) -> list[Event]:
        """Recent events, oldest first, optionally filtered by name."""
        if event_name is None:
            events = list(self._history)
        else:
            key = _event_key(event_name)
            events = [e for e in self._history if e.name == key]
        return events[-limit:]

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()


@dataclass
class StreamStats:
    """Running totals across every session seen on a bus."""

    sessions: int = 0
    outcomes: Counter = field(default_factory=Counter)
    break_types: Counter = field(default_factory=Counter)
    retries: int = 0
    empty_turns: int = 0
    messages_sent: int = 0
    characters: int = 0

    def attach(self, bus: EventBus) -> "StreamStats":
        bus.on(StreamEvent.STARTED, self._on_started)
        bus.on(StreamEvent.SEGMENT_FLUSHED, self._on_segment)
        bus.on(StreamEvent.RETRY, self._on_retry)
        bus.on(StreamEvent.EMPTY, self._on_empty)
        for name in TERMINAL_EVENTS:
            bus.on(name, self._on_finished)
        return self

    def _on_started(self, event: Event) -> None:
        self.sessions += 1

    def _on_segment(self, event: Event) -> None:
        self.break_types[event.data.get("break_type") or "none"] += 1

    def _on_retry(self, event: Event) -> None:
        self.retries += 1

    def _on_empty(self, event: Event) -> None:
        self.empty_turns += 1

    def _on_finished(self, event: Event) -> None:
        self.outcomes[event.data.get("status", event.name)] += 1
        self.messages_sent += event.data.get("messages_sent", 0)
        self.characters += event.data.get("characters", 0)

    def summary(self) -> dict[str, Any]:
        return {
            "sessions": self.sessions,
            "outcomes": dict(self.outcomes),
            "break_types": dict(self.break_types),
            "retries": self.retries,
            "empty_turns": self.empty_turns,
            "messages_sent": self.messages_sent,
            "characters": self.characters,
        }
