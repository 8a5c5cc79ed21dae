"""Assistant: routes channel messages through streamed turns."""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field

from ..channels.base import BaseChannel, Message
from ..streaming.config import StreamConfig
from ..streaming.orchestrator import StreamOrchestrator
from ..streaming.provider import StreamProvider
from ..streaming.sink import ChannelSink
from ..utils.config import Settings
from ..utils.logging import get_logger
from .conversation import ConversationMessage, StreamContext
from .events import EventBus
from .tools import ToolRegistry
from .turn import TurnResult, run_turn

logger = get_logger(__name__)


@dataclass
class _Conversation:
    history: list[ConversationMessage] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Assistant:
    """
    Glue between chat channels and the streaming core.

    Every incoming message becomes one turn: a fresh ChannelSink bound to
    the originating message plus as many orchestration sessions as tool
    calls require. Turns within one conversation run one at a time so
    replies never interleave; different conversations run concurrently.
    """

    def __init__(
        self,
        settings: Settings,
        provider: StreamProvider,
        tools: ToolRegistry | None = None,
        events: EventBus | None = None,
        stream_config: StreamConfig | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.tools = tools
        self.events = events
        self.stream_config = stream_config or StreamConfig.from_settings(settings)
        self._conversations: OrderedDict[str, _Conversation] = OrderedDict()

    def attach(self, channel: BaseChannel) -> None:
        """Route a channel's incoming messages to this assistant."""

        async def handler(message: Message) -> None:
            await self.handle_message(channel, message)

        channel.on_message(handler)
        logger.info("Channel wired to assistant", channel=channel.name)

    def history(self, channel_name: str, conversation_id: str) -> list[ConversationMessage]:
        conversation = self._conversations.get(f"{channel_name}:{conversation_id}")
        return list(conversation.history) if conversation else []

    def _conversation(self, key: str) -> _Conversation:
        """Fetch or create a conversation, forgetting the least recently used idle ones."""
        conversation = self._conversations.get(key)
        if conversation is None:
            conversation = self._conversations[key] = _Conversation()
        self._conversations.move_to_end(key)

        limit = self.settings.assistant.max_conversations
        for stale_key in list(self._conversations):
            if len(self._conversations) <= limit:
                break
            stale = self._conversations[stale_key]
            if stale is not conversation and not stale.lock.locked():
                del self._conversations[stale_key]
                logger.debug("Forgot idle conversation", conversation=stale_key)
        return conversation

    def _build_context(self, key: str, conversation: _Conversation, message: Message) -> StreamContext:
        assistant_cfg = self.settings.assistant
        history = conversation.history[-assistant_cfg.max_history_messages :]
        return StreamContext(
            conversation_id=key,
            user_id=message.user_id,
            channel=message.channel,
            system_prompt=assistant_cfg.system_prompt,
            messages=list(history),
            bot_name=assistant_cfg.name,
            metadata=dict(message.metadata),
        )

    async def handle_message(self, channel: BaseChannel, message: Message) -> TurnResult | None:
        """Stream a reply to one incoming message."""
        if not message.content or not message.content.strip():
            return None

        key = f"{channel.name}:{message.conversation_id}"
        conversation = self._conversation(key)
        async with conversation.lock:
            logger.info(
                "Handling message",
                channel=channel.name,
                user_id=message.user_id,
                content_preview=message.content[:80],
            )
            conversation.history.append(ConversationMessage(role="user", content=message.content))

            sink = ChannelSink(
                channel,
                target=message.conversation_id,
                reply_to=message.id,
                thread_id=message.thread_id,
                max_message_length=channel.effective_message_limit(self.stream_config.max_message_length),
                bot_name=self.settings.assistant.name,
            )
            orchestrator = StreamOrchestrator(self.provider, sink, events=self.events)
            turn = await run_turn(
                orchestrator,
                self.stream_config,
                self._build_context(key, conversation, message),
                tools=self.tools,
                max_tool_iterations=self.settings.assistant.max_tool_iterations,
            )

            reply = sink.transcript.strip()
            if reply:
                conversation.history.append(ConversationMessage(role="assistant", content=reply))
            self._trim_history(conversation)

            logger.info(
                "Turn finished",
                channel=channel.name,
                status=turn.result.status.value,
                messages_sent=sink.messages_sent,
                tool_calls=len(turn.tool_calls),
            )
            return turn

    def _trim_history(self, conversation: _Conversation) -> None:
        limit = self.settings.assistant.max_history_messages
        history = conversation.history
        if len(history) > limit:
            del history[:-limit]
