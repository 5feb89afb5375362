"""Registration and dispatch of dynamic tools by name."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from dygram.llm.provider import Tool

logger = logging.getLogger(__name__)


@dataclass
class RegisteredTool:
    tool: Tool
    handler: Callable[[dict], Any]


class ToolRegistry:
    """
    Dynamic tools keyed by name, in registration order.

    Handlers take the tool input dict and may be sync or async; a
    coroutine result is awaited by invoke(). Composition steps chain
    through invoke() as well, so every strategy dispatches the same way.
    """

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, name: str, tool: Tool, handler: Callable[[dict], Any]) -> None:
        if name in self._tools:
            logger.debug(f"🔧 Replacing handler for '{name}'")
        self._tools[name] = RegisteredTool(tool=tool, handler=handler)

    def unregister(self, name: str) -> bool:
        """Remove a tool. Returns True if it was registered."""
        return self._tools.pop(name, None) is not None

    def clear(self) -> None:
        self._tools.clear()

    def get_tools(self) -> dict[str, Tool]:
        return {name: rt.tool for name, rt in self._tools.items()}

    def get_registered_names(self) -> list[str]:
        return list(self._tools)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def invoke(self, name: str, inputs: dict[str, Any]) -> Any:
        """
        Run a tool on a copy of its input and return the raw result.

        Handler errors propagate to the caller.

        Raises:
            KeyError: If the tool is not registered
        """
        if name not in self._tools:
            raise KeyError(f"Unknown tool: {name}")
        logger.debug(f"🔧 Invoking '{name}'")
        result = self._tools[name].handler(dict(inputs))
        if asyncio.iscoroutine(result) or asyncio.isfuture(result):
            result = await result
        return result
