"""Conversation state handed to provider adapters."""

import json
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import uuid4

from ..streaming.types import FunctionCallEvent


@dataclass
class ConversationMessage:
    """A message in a conversation."""

    role: str  # "user", "assistant", "system", "tool"
    content: str
    name: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None


@dataclass
class ToolSpec:
    """Tool definition for function calling."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class StreamContext:
    """
    Conversational state for one orchestration session.

    Adapters turn this into a provider request. After a tool handoff the
    caller builds a new context with ``with_function_result`` and starts a
    fresh session with it.
    """

    conversation_id: str = ""
    user_id: str = ""
    channel: str = ""
    system_prompt: str | None = None
    messages: list[ConversationMessage] = field(default_factory=list)
    tools: list[ToolSpec] = field(default_factory=list)
    bot_name: str | None = None
    locale: str = "en-US"
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_function_result(
        self,
        call: FunctionCallEvent,
        response: dict[str, Any],
        assistant_text: str = "",
    ) -> "StreamContext":
        """Return a copy with the tool call and its result appended."""
        call_id = call.id or f"call_{uuid4().hex[:12]}"
        messages = list(self.messages)
        messages.append(
            ConversationMessage(
                role="assistant",
                content=assistant_text,
                tool_calls=[{"id": call_id, "name": call.name, "arguments": call.args}],
            )
        )
        messages.append(
            ConversationMessage(
                role="tool",
                content=json.dumps(response, default=str),
                name=call.name,
                tool_call_id=call_id,
            )
        )
        return replace(self, messages=messages)
