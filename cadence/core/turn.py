"""One conversational turn: stream sessions chained through tool calls."""

from dataclasses import dataclass, field, replace

from ..streaming.config import StreamConfig
from ..streaming.orchestrator import StreamOrchestrator
from ..streaming.types import FunctionCallEvent, StreamResult, StreamStatus
from ..utils.logging import get_logger
from .conversation import StreamContext
from .tools import ToolRegistry

logger = get_logger(__name__)


@dataclass
class TurnResult:
    """Outcome of a full turn."""

    result: StreamResult
    context: StreamContext
    tool_calls: list[FunctionCallEvent] = field(default_factory=list)

    @property
    def unresolved_call(self) -> bool:
        """The turn ended on a tool call that was never executed."""
        return self.result.status == StreamStatus.FUNCTION_CALL


async def run_turn(
    orchestrator: StreamOrchestrator,
    config: StreamConfig,
    context: StreamContext,
    tools: ToolRegistry | None = None,
    max_tool_iterations: int = 15,
) -> TurnResult:
    """
    Stream a reply, executing tool calls until the model stops asking.

    Each tool call ends the current session. The call and its response are
    appended to the context and a fresh session starts from there. After
    ``max_tool_iterations`` calls the last function_call result is returned
    unexecuted.
    """
    if tools is not None and not context.tools:
        context = replace(context, tools=tools.specs())

    executed: list[FunctionCallEvent] = []
    while True:
        result = await orchestrator.run_session(config, context)
        if result.status != StreamStatus.FUNCTION_CALL or result.function_call is None:
            break

        call = result.function_call
        if tools is None:
            logger.warning("Model requested a tool but none are available", tool=call.name)
            break
        if len(executed) >= max_tool_iterations:
            logger.warning(
                "Tool iteration limit reached",
                tool=call.name,
                max_tool_iterations=max_tool_iterations,
            )
            break

        response = await tools.execute(call, context)
        executed.append(call)
        logger.info("Tool executed, resuming stream", tool=call.name, iteration=len(executed))
        context = context.with_function_result(call, response, assistant_text=result.text)

    return TurnResult(result=result, context=context, tool_calls=executed)
