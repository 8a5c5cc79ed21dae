"""Tool registry for model function calls."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from ..streaming.types import FunctionCallEvent
from ..utils.logging import get_logger
from .conversation import StreamContext, ToolSpec

logger = get_logger(__name__)

ToolHandler = Callable[[dict[str, Any], StreamContext], Awaitable[Any] | Any]


class ToolRegistry:
    """
    Holds the tools offered to the model and executes the calls it makes.

    Execution never raises: unknown tools and handler failures come back as
    ``{"error": ...}`` payloads so the model can recover in the next session.
    """

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolSpec, ToolHandler]] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        """
        Register a tool.

        Args:
            spec: Definition shown to the model
            handler: Sync or async callable taking (arguments, context)
        """
        self._tools[spec.name] = (spec, handler)
        logger.info("Registered tool", tool=spec.name)

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            logger.info("Unregistered tool", tool=name)
            return True
        return False

    def specs(self) -> list[ToolSpec]:
        """Definitions of every registered tool."""
        return [spec for spec, _ in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, call: FunctionCallEvent, context: StreamContext) -> dict[str, Any]:
        """Run a function call and return the response payload for the model."""
        entry = self._tools.get(call.name)
        if entry is None:
            logger.warning("Model called an unknown tool", tool=call.name)
            return {"error": f"Unknown tool: {call.name}"}

        _, handler = entry
        logger.debug("Executing tool", tool=call.name, args=call.args)
        try:
            result = handler(dict(call.args), context)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            logger.error("Tool execution failed", tool=call.name, error=str(e))
            return {"error": str(e)}

        if isinstance(result, dict):
            return result
        return {"result": result}


def _current_time(args: dict[str, Any], context: StreamContext) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {"utc": now.isoformat(), "weekday": now.strftime("%A")}


CURRENT_TIME_TOOL = ToolSpec(
    name="get_current_time",
    description="Get the current date and time in UTC.",
    parameters={"type": "object", "properties": {}},
)


def create_default_tools() -> ToolRegistry:
    """Registry with the built-in tools."""
    registry = ToolRegistry()
    registry.register(CURRENT_TIME_TOOL, _current_time)
    return registry
