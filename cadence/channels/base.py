"""Base channel interface for chat platforms."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine
from uuid import uuid4

from structlog.contextvars import bound_contextvars

from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Message:
    """An incoming chat message."""

    id: str = field(default_factory=lambda: str(uuid4()))
    channel: str = ""
    conversation_id: str = ""  # platform channel / DM id the reply goes to
    user_id: str = ""
    user_name: str | None = None
    content: str = ""
    thread_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: Any = None  # Original event from the platform


MessageHandler = Callable[[Message], Coroutine[Any, Any, Any]]


class BaseChannel(ABC):
    """
    A chat platform as seen by the assistant.

    Incoming messages are pushed to registered handlers. Outgoing text goes
    through ``send_message``, which is the whole contract the channel sink
    relies on: one call posts one message and returns its id, or None when
    the platform refused it.
    """

    # Hard platform cap for one message; None means no cap of its own
    message_limit: int | None = None

    def __init__(self, name: str) -> None:
        self.name = name
        self._connected = False
        self._message_handlers: list[MessageHandler] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler for incoming messages. Returns an unsubscribe callable."""
        self._message_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._message_handlers:
                self._message_handlers.remove(handler)

        return unsubscribe

    def effective_message_limit(self, configured: int) -> int:
        """The smaller of the configured message length and the platform cap."""
        if self.message_limit is None:
            return configured
        return min(configured, self.message_limit)

    async def _dispatch_message(self, message: Message) -> None:
        """Hand a received message to every handler; handler errors are logged, not raised."""
        if not self._message_handlers:
            logger.warning(
                "No message handlers registered, message dropped",
                channel=self.name,
                user=message.user_id,
            )
            return

        with bound_contextvars(channel=self.name, conversation_id=message.conversation_id):
            for handler in list(self._message_handlers):
                try:
                    await handler(message)
                except Exception as e:
                    logger.error(
                        "Error in message handler",
                        message_id=message.id,
                        error=str(e),
                        exc_info=True,
                    )

    @abstractmethod
    async def start(self) -> None:
        """Connect and begin listening for messages."""

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect and release resources."""

    @abstractmethod
    async def send_message(
        self,
        target: str,
        content: str,
        reply_to: str | None = None,
        thread_id: str | None = None,
    ) -> str | None:
        """
        Post one message.

        Args:
            target: Conversation (channel/DM) or user ID to post to
            content: Message text, already within the message length limit
            reply_to: Message ID this message answers
            thread_id: Thread to post into

        Returns:
            The platform message ID, or None if the platform refused it
        """

    async def send_typing_indicator(self, target: str) -> None:
        """Show that a reply is being written. No-op unless the platform has one."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name} connected={self._connected}>"
