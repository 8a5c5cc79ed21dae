"""Console channel for local one-shot runs."""

import sys
from typing import TextIO
from uuid import uuid4

from ..utils.logging import get_logger
from .base import BaseChannel, Message

logger = get_logger(__name__)


class ConsoleChannel(BaseChannel):
    """
    In-process channel that writes replies to a text stream.

    Used by the CLI ``--prompt`` mode and handy in tests: every sent
    message is also kept in ``sent``.
    """

    def __init__(self, stream: TextIO | None = None, user_id: str = "console-user") -> None:
        super().__init__("console")
        self._stream = stream or sys.stdout
        self.user_id = user_id
        self.sent: list[tuple[str, str]] = []

    async def start(self) -> None:
        self._connected = True
        logger.info("Console channel started")

    async def stop(self) -> None:
        self._connected = False
        logger.info("Console channel stopped")

    async def submit(self, content: str, conversation_id: str = "console") -> Message:
        """Feed a message in as if a user had typed it."""
        message = Message(
            channel=self.name,
            conversation_id=conversation_id,
            user_id=self.user_id,
            content=content,
        )
        await self._dispatch_message(message)
        return message

    async def send_message(
        self,
        target: str,
        content: str,
        reply_to: str | None = None,
        thread_id: str | None = None,
    ) -> str | None:
        message_id = uuid4().hex[:12]
        self.sent.append((message_id, content))
        self._stream.write(content.rstrip("\n") + "\n\n")
        self._stream.flush()
        return message_id
