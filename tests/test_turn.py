"""Tests for the tool handoff loop, tool registry and assistant glue."""

import json

import pytest

from conftest import FakeChannel, RecordingSink, ScriptedProvider, text
from cadence.channels.base import Message
from cadence.channels.console import ConsoleChannel
from cadence.core.assistant import Assistant
from cadence.core.conversation import StreamContext, ToolSpec
from cadence.core.tools import ToolRegistry, create_default_tools
from cadence.core.turn import run_turn
from cadence.streaming.config import StreamConfig
from cadence.streaming.orchestrator import StreamOrchestrator
from cadence.streaming.types import FunctionCallEvent, ProcessedChunk, StreamStatus
from cadence.utils.config import Settings


def weather_tools(calls):
    registry = ToolRegistry()

    def weather(args, context):
        calls.append(args)
        return {"forecast": "sunny", "city": args.get("city")}

    registry.register(
        ToolSpec(name="weather", description="Forecast", parameters={"type": "object"}),
        weather,
    )
    return registry


@pytest.mark.asyncio
async def test_tool_result_feeds_next_session(context, plain_config):
    call = FunctionCallEvent(name="weather", args={"city": "Oslo"}, id="call_1")
    provider = ScriptedProvider(
        text("Checking\n") + [ProcessedChunk.call(call)],
        text("It is sunny.\n"),
    )
    sink = RecordingSink()
    executed = []
    orchestrator = StreamOrchestrator(provider, sink)

    turn = await run_turn(orchestrator, plain_config, context, tools=weather_tools(executed))

    assert turn.result.status == StreamStatus.COMPLETED
    assert executed == [{"city": "Oslo"}]
    assert sink.segments == ["Checking\n", "It is sunny.\n"]
    assert turn.tool_calls == [call]

    second_context = provider.contexts[1]
    assert [t.name for t in second_context.tools] == ["weather"]
    assistant_msg, tool_msg = second_context.messages[-2:]
    assert assistant_msg.content == "Checking\n"
    assert assistant_msg.tool_calls == [{"id": "call_1", "name": "weather", "arguments": {"city": "Oslo"}}]
    assert tool_msg.role == "tool"
    assert tool_msg.tool_call_id == "call_1"
    assert json.loads(tool_msg.content) == {"forecast": "sunny", "city": "Oslo"}


@pytest.mark.asyncio
async def test_tool_iterations_are_bounded(context, plain_config):
    call = FunctionCallEvent(name="weather", args={})
    provider = ScriptedProvider([ProcessedChunk.call(call)])
    executed = []
    orchestrator = StreamOrchestrator(provider, RecordingSink())

    turn = await run_turn(orchestrator, plain_config, context, tools=weather_tools(executed), max_tool_iterations=3)

    assert len(executed) == 3
    assert provider.calls == 4
    assert turn.unresolved_call is True


@pytest.mark.asyncio
async def test_function_call_without_tools_returns(context, plain_config):
    provider = ScriptedProvider([ProcessedChunk.call(FunctionCallEvent(name="weather"))])
    turn = await run_turn(StreamOrchestrator(provider, RecordingSink()), plain_config, context)
    assert turn.result.status == StreamStatus.FUNCTION_CALL
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_unknown_tool_and_failing_tool_return_errors():
    registry = ToolRegistry()

    async def broken(args, context):
        raise RuntimeError("backend down")

    registry.register(ToolSpec(name="broken", description="", parameters={}), broken)
    ctx = StreamContext()

    assert await registry.execute(FunctionCallEvent(name="missing"), ctx) == {"error": "Unknown tool: missing"}
    assert await registry.execute(FunctionCallEvent(name="broken"), ctx) == {"error": "backend down"}


@pytest.mark.asyncio
async def test_default_tools_report_time():
    registry = create_default_tools()
    assert "get_current_time" in registry
    result = await registry.execute(FunctionCallEvent(name="get_current_time"), StreamContext())
    assert "utc" in result


@pytest.mark.asyncio
async def test_assistant_replies_in_conversation_and_keeps_history():
    provider = ScriptedProvider(text("Hi! How can I help?\n"))
    settings = Settings()
    assistant = Assistant(settings, provider, stream_config=StreamConfig())
    channel = FakeChannel()
    message = Message(id="orig", channel="fake", conversation_id="C42", user_id="u1", content="hello")

    turn = await assistant.handle_message(channel, message)

    assert turn.result.status == StreamStatus.COMPLETED
    assert channel.sent == [
        {"target": "C42", "content": "Hi! How can I help?\n", "reply_to": "orig", "thread_id": None}
    ]
    history = assistant.history("fake", "C42")
    assert [(m.role, m.content) for m in history] == [("user", "hello"), ("assistant", "Hi! How can I help?")]
    assert provider.contexts[0].system_prompt == settings.assistant.system_prompt


@pytest.mark.asyncio
async def test_assistant_forgets_least_recently_used_conversations():
    provider = ScriptedProvider(text("ok\n"))
    settings = Settings()
    settings.assistant.max_conversations = 2
    assistant = Assistant(settings, provider, stream_config=StreamConfig())
    channel = FakeChannel()

    for conversation_id in ("C1", "C2", "C1", "C3"):
        await assistant.handle_message(
            channel, Message(channel="fake", conversation_id=conversation_id, content="hi")
        )

    # C2 was the least recently used when C3 arrived
    assert assistant.history("fake", "C2") == []
    assert len(assistant.history("fake", "C1")) == 4
    assert len(assistant.history("fake", "C3")) == 2
    assert len(assistant._conversations) == 2


@pytest.mark.asyncio
async def test_busy_conversation_is_not_forgotten():
    settings = Settings()
    settings.assistant.max_conversations = 1
    assistant = Assistant(settings, ScriptedProvider(text("ok\n")), stream_config=StreamConfig())

    busy = assistant._conversation("fake:C1")
    async with busy.lock:
        assistant._conversation("fake:C2")
        assert list(assistant._conversations) == ["fake:C1", "fake:C2"]

    assistant._conversation("fake:C3")
    assert list(assistant._conversations) == ["fake:C3"]


@pytest.mark.asyncio
async def test_assistant_ignores_blank_messages():
    provider = ScriptedProvider(text("unused"))
    assistant = Assistant(Settings(), provider, stream_config=StreamConfig())
    assert await assistant.handle_message(FakeChannel(), Message(content="   ")) is None
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_console_channel_round_trip(tmp_path):
    provider = ScriptedProvider(text("Answer line\n"))
    assistant = Assistant(Settings(), provider, stream_config=StreamConfig())
    with open(tmp_path / "out.txt", "w+") as stream:
        console = ConsoleChannel(stream=stream)
        assistant.attach(console)
        await console.start()
        await console.submit("question")
        stream.seek(0)
        assert "Answer line" in stream.read()
    assert len(console.sent) == 1
