"""Slack channel implementation using Bolt SDK."""

import re
from collections import OrderedDict
from typing import Any

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from ..utils.config import Settings, get_settings
from ..utils.logging import get_logger
from .base import BaseChannel, Message

logger = get_logger(__name__)

# Subtypes that are not new user text
IGNORED_SUBTYPES = {"message_changed", "message_deleted", "bot_message", "channel_join", "channel_leave"}
# A channel mention arrives as both "message" and "app_mention"
SEEN_EVENTS_MAX = 512


class SlackChannel(BaseChannel):
    """
    Slack channel using the Bolt SDK with Socket Mode.

    Replies go into the thread of the triggering message when
    ``reply_in_thread`` is on, so every message of a multi-message reply
    stays together.
    """

    # chat.postMessage truncates text beyond 40k; Slack recommends staying under 4k
    message_limit = 4000

    def __init__(self, settings: Settings | None = None, client: AsyncWebClient | None = None) -> None:
        super().__init__("slack")
        self.settings = settings or get_settings()
        self.config = self.settings.channels.slack

        if client is None:
            self.app = AsyncApp(token=self.settings.slack_bot_token or self.config.bot_token)
        else:
            self.app = AsyncApp(client=client)
        self.client: AsyncWebClient = self.app.client
        self._handler: AsyncSocketModeHandler | None = None
        self._bot_user_id: str | None = None
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._dm_channels: dict[str, str] = {}

        self._setup_handlers()

    def _setup_handlers(self) -> None:
        @self.app.event("message")
        async def handle_message(event: dict[str, Any]) -> None:
            await self._handle_message_event(event)

        @self.app.event("app_mention")
        async def handle_mention(event: dict[str, Any]) -> None:
            await self._handle_message_event(event)

    def _first_sighting(self, event: dict[str, Any]) -> bool:
        key = f"{event.get('channel')}:{event.get('ts')}"
        if key in self._seen:
            return False
        self._seen[key] = None
        if len(self._seen) > SEEN_EVENTS_MAX:
            self._seen.popitem(last=False)
        return True

    async def _handle_message_event(self, event: dict[str, Any]) -> None:
        if event.get("bot_id") or event.get("subtype") in IGNORED_SUBTYPES:
            return
        if event.get("user") == self._bot_user_id:
            return

        allowed = self.config.allowed_channels
        if allowed and event.get("channel") not in allowed:
            return
        if not self._first_sighting(event):
            return

        message = self._build_message(event)
        logger.info(
            "Received Slack message",
            user=message.user_id,
            channel_id=message.conversation_id,
            thread=message.thread_id,
            content_preview=message.content[:80],
        )
        await self._dispatch_message(message)

    def _strip_mention(self, text: str) -> str:
        if not self._bot_user_id:
            return text
        return re.sub(rf"<@{re.escape(self._bot_user_id)}>\s*", "", text).strip()

    def _build_message(self, event: dict[str, Any]) -> Message:
        """Build a Message from a Slack event, anchoring replies to a thread."""
        ts = event.get("ts", "")
        thread_id = event.get("thread_ts")
        if thread_id is None and self.config.reply_in_thread and event.get("channel_type") != "im":
            thread_id = ts
        return Message(
            id=ts,
            channel=self.name,
            conversation_id=event.get("channel", ""),
            user_id=event.get("user", ""),
            content=self._strip_mention(event.get("text", "")),
            thread_id=thread_id,
            metadata={"channel_type": event.get("channel_type")},
            raw=event,
        )

    async def start(self) -> None:
        if self._connected:
            return

        app_token = self.settings.slack_app_token or self.config.app_token
        if not app_token:
            raise ValueError("Slack app token not configured")

        auth_result = await self.client.auth_test()
        self._bot_user_id = auth_result.get("user_id")
        logger.info("Slack bot authenticated", bot_user_id=self._bot_user_id)

        self._handler = AsyncSocketModeHandler(self.app, app_token)
        await self._handler.connect_async()

        self._connected = True
        logger.info("Slack channel started")

    async def stop(self) -> None:
        if not self._connected:
            return

        if self._handler:
            await self._handler.close_async()
            self._handler = None

        self._connected = False
        logger.info("Slack channel stopped")

    async def _resolve_channel(self, target: str) -> str:
        """Channel, group and DM ids pass through; user ids get a DM opened once."""
        if target.startswith(("C", "G", "D")):
            return target
        if target not in self._dm_channels:
            result = await self.client.conversations_open(users=[target])
            self._dm_channels[target] = result["channel"]["id"]
        return self._dm_channels[target]

    async def send_message(
        self,
        target: str,
        content: str,
        reply_to: str | None = None,
        thread_id: str | None = None,
    ) -> str | None:
        try:
            kwargs: dict[str, Any] = {
                "channel": await self._resolve_channel(target),
                "text": content,
            }
            if thread_id:
                kwargs["thread_ts"] = thread_id
            elif reply_to and self.config.reply_in_thread:
                kwargs["thread_ts"] = reply_to

            result = await self.client.chat_postMessage(**kwargs)
            return result.get("ts")
        except SlackApiError as e:
            logger.error("Slack rejected message", target=target, error=e.response.get("error"))
            return None
        except Exception as e:
            logger.error("Failed to send Slack message", target=target, error=str(e))
            return None

    async def send_typing_indicator(self, target: str) -> None:
        """Bots have no typing indicator on Slack."""
