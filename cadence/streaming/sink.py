"""Output sink contract, message chunking and the channel-backed sink."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..utils.logging import get_logger
from .config import CODE_FENCE
from .types import DeliveryError

if TYPE_CHECKING:
    from ..channels.base import BaseChannel

logger = get_logger(__name__)

PauseCallback = Callable[[], Awaitable[Any]]

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_FENCE_HEADER_RE = re.compile(r"```(\w*)\n?")
_CONTROL_TOKEN_RE = re.compile(r"(?:<\|im_end\|>|<\|file_separator\|>)\s*$")
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")


class NoticeKind(str, Enum):
    """User-visible status notices."""

    EMPTY_RESPONSE = "empty_response"
    PROVIDER_ERROR = "provider_error"
    STREAM_ERROR = "stream_error"


NOTICE_TEMPLATES: dict[NoticeKind, tuple[str, str]] = {
    NoticeKind.EMPTY_RESPONSE: (
        "No response",
        "I couldn't come up with a reply this time. Please try again.",
    ),
    NoticeKind.PROVIDER_ERROR: (
        "Response stopped",
        "The response was blocked or stopped. Reason: {reason}.",
    ),
    NoticeKind.STREAM_ERROR: (
        "Something went wrong",
        "An error occurred while streaming: {error}",
    ),
}


@dataclass(frozen=True)
class Notice:
    """A status notice for the person waiting on a reply."""

    kind: NoticeKind
    details: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        title, description = NOTICE_TEMPLATES[self.kind]
        try:
            body = description.format(**self.details)
        except (KeyError, IndexError):
            body = description
        return f"*{title}*\n{body}"


@dataclass
class DeliveryReceipt:
    """What a single ``deliver`` call actually sent."""

    message_ids: list[str] = field(default_factory=list)
    replied: bool = False

    @property
    def sent_count(self) -> int:
        return len(self.message_ids)


class OutputSink(ABC):
    """Where finished segments go."""

    @abstractmethod
    async def deliver(self, text: str, pause: PauseCallback | None = None) -> DeliveryReceipt:
        """
        Send a segment, split into platform-sized chunks.

        The first chunk of the conversation turn replies to the originating
        message when one is configured; everything else is a plain send.
        ``pause`` is awaited between consecutive chunks.
        """

    @abstractmethod
    async def signal_activity(self) -> None:
        """Best-effort "typing..." indicator. Must never raise."""

    @abstractmethod
    async def notify(self, notice: Notice) -> None:
        """Show a status notice. Must never raise."""


def clean_segment(text: str, bot_name: str | None = None) -> str:
    """Tidy model output before it is shown to people."""
    cleaned = _EXCESS_NEWLINES_RE.sub("\n\n", text)
    cleaned = _CONTROL_TOKEN_RE.sub("", cleaned)
    if bot_name:
        prefix = f"{bot_name}:"
        stripped = cleaned.lstrip()
        if stripped.startswith(prefix):
            cleaned = stripped[len(prefix) :].lstrip(" ")
    return cleaned


def chunk_message(text: str, max_length: int = 1950) -> list[str]:
    """
    Split text into chunks no longer than ``max_length``.

    Fenced code blocks stay whole when they fit in one chunk; larger blocks
    are split by lines and each piece is re-fenced with the original
    language tag. Prose is split at the last newline, else the last space,
    else hard-cut. Whitespace-only chunks are dropped.
    """
    if not text or not text.strip():
        return []
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    current = ""
    last_end = 0

    for match in _CODE_BLOCK_RE.finditer(text):
        if match.start() > last_end:
            current = _add_prose(text[last_end : match.start()], current, chunks, max_length)

        block = match.group(0)
        if len(current) + len(block) <= max_length:
            current += block
        else:
            if current.strip():
                chunks.append(current)
            current = ""
            if len(block) <= max_length:
                current = block
            else:
                chunks.extend(split_code_block(block, max_length))
        last_end = match.end()

    if last_end < len(text):
        current = _add_prose(text[last_end:], current, chunks, max_length)

    if current.strip():
        chunks.append(current)
    return chunks


def _add_prose(text: str, current: str, chunks: list[str], max_length: int) -> str:
    remaining = current + text
    while len(remaining) > max_length:
        cut = _find_cut(remaining, max_length)
        piece = remaining[:cut]
        if piece.strip():
            chunks.append(piece)
        remaining = remaining[cut:]
    return remaining


def _find_cut(text: str, max_length: int) -> int:
    window = text[:max_length]
    newline = window.rfind("\n")
    if newline > 0:
        return newline + 1
    space = window.rfind(" ")
    if space > 0:
        return space + 1
    return max_length


def split_code_block(block: str, max_length: int) -> list[str]:
    """Split one oversized fenced block into several fenced chunks."""
    header = _FENCE_HEADER_RE.match(block)
    language = header.group(1) if header else ""
    body_start = header.end() if header else 0
    body_end = len(block) - len(CODE_FENCE) if block.endswith(CODE_FENCE) else len(block)
    body = block[body_start:body_end].rstrip("\n")

    opener = f"{CODE_FENCE}{language}\n"
    closer = f"\n{CODE_FENCE}"
    room = max_length - len(opener) - len(closer)
    if room <= 0:
        return [block[i : i + max_length] for i in range(0, len(block), max_length)]

    chunks: list[str] = []
    lines: list[str] = []
    size = 0

    def flush() -> None:
        nonlocal lines, size
        if lines:
            chunks.append(opener + "\n".join(lines) + closer)
        lines = []
        size = 0

    for line in body.split("\n"):
        while len(line) > room:
            flush()
            chunks.append(opener + line[:room] + closer)
            line = line[room:]
        added = len(line) + (1 if lines else 0)
        if lines and size + added > room:
            flush()
            added = len(line)
        lines.append(line)
        size += added
    flush()
    return chunks


class ChannelSink(OutputSink):
    """
    Output sink that posts to a chat channel.

    One sink serves one conversational turn, so the reply-to-original
    behaviour happens once per turn even across tool handoffs and retries.
    """

    def __init__(
        self,
        channel: "BaseChannel",
        target: str,
        reply_to: str | None = None,
        thread_id: str | None = None,
        max_message_length: int = 1950,
        bot_name: str | None = None,
    ) -> None:
        self.channel = channel
        self.target = target
        self.reply_to = reply_to
        self.thread_id = thread_id
        self.max_message_length = max_message_length
        self.bot_name = bot_name
        self._has_replied = False
        self.messages_sent = 0
        # Cleaned segments in delivery order
        self.delivered: list[str] = []

    @property
    def has_replied(self) -> bool:
        return self._has_replied

    @property
    def transcript(self) -> str:
        """Everything delivered so far, as one text."""
        return "".join(self.delivered)

    async def deliver(self, text: str, pause: PauseCallback | None = None) -> DeliveryReceipt:
        cleaned = clean_segment(text, self.bot_name)
        receipt = DeliveryReceipt()

        for index, chunk in enumerate(chunk_message(cleaned, self.max_message_length)):
            if index > 0 and pause is not None:
                await pause()

            reply_to = self.reply_to if self.reply_to and not self._has_replied else None
            message_id = await self.channel.send_message(
                self.target,
                chunk,
                reply_to=reply_to,
                thread_id=self.thread_id,
            )
            if message_id is None:
                raise DeliveryError(
                    f"{self.channel.name} did not accept message {self.messages_sent + 1}"
                )
            if reply_to:
                self._has_replied = True
                receipt.replied = True

            self.messages_sent += 1
            receipt.message_ids.append(message_id)
            logger.info(
                "Sent message",
                channel=self.channel.name,
                count=self.messages_sent,
                preview=chunk[:100],
            )

        if receipt.message_ids:
            self.delivered.append(cleaned)
        return receipt

    async def signal_activity(self) -> None:
        try:
            await self.channel.send_typing_indicator(self.target)
        except Exception as e:
            logger.warning("Typing indicator failed", channel=self.channel.name, error=str(e))

    async def notify(self, notice: Notice) -> None:
        try:
            await self.channel.send_message(
                self.target,
                notice.render(),
                reply_to=None if self._has_replied else self.reply_to,
                thread_id=self.thread_id,
            )
        except Exception as e:
            logger.warning(
                "Failed to send notice",
                channel=self.channel.name,
                notice=notice.kind.value,
                error=str(e),
            )
