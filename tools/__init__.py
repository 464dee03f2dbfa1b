"""Tool registry — registration, validation, dispatch, error isolation, truncation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)


class ToolError(Exception):
    """An action failed; the message is shown to the caller as the tool result."""
    pass


class UnknownTool(LookupError):
    pass


class InvalidArguments(ValueError):
    pass


@dataclass
class ToolResult:
    text: str
    is_error: bool = False

    def to_mcp(self) -> dict:
        return {
            "content": [{"type": "text", "text": self.text}],
            "isError": self.is_error,
        }


class ToolRegistry:
    """Registers tool functions and dispatches tools/call requests."""

    def __init__(self, truncation_limit: int = 30000):
        self._tools: dict[str, dict] = {}
        self.truncation_limit = truncation_limit

    def register(self, name: str, description: str, input_schema: dict,
                 func: Callable[..., Any]) -> None:
        """Register a tool function."""
        self._tools[name] = {
            "name": name,
            "description": description,
            "input_schema": input_schema,
            "function": func,
        }

    def register_many(self, tools: list[dict]) -> None:
        """Register multiple tools from a TOOLS list."""
        for t in tools:
            self.register(
                name=t["name"],
                description=t["description"],
                input_schema=t["input_schema"],
                func=t["function"],
            )

    def get_schemas(self) -> list[dict]:
        """Return tool schemas in tools/list shape (without function references)."""
        return [
            {
                "name": t["name"],
                "description": t["description"],
                "inputSchema": t["input_schema"],
            }
            for t in self._tools.values()
        ]

    def validate(self, name: str, arguments: Any) -> None:
        """Raise UnknownTool / InvalidArguments before anything runs."""
        if name not in self._tools:
            raise UnknownTool(f"Unknown tool: {name}")
        if not isinstance(arguments, dict):
            raise InvalidArguments(f"Arguments for '{name}' must be an object")
        required = self._tools[name]["input_schema"].get("required", [])
        missing = [p for p in required if arguments.get(p) in (None, "")]
        if missing:
            raise InvalidArguments(
                f"Missing required parameter(s) for '{name}': {', '.join(missing)}"
            )

    async def execute(self, name: str, arguments: dict) -> ToolResult:
        """Validate then run a tool call with error isolation and truncation."""
        self.validate(name, arguments)

        func = self._tools[name]["function"]
        try:
            if inspect.iscoroutinefunction(func):
                result = await func(**arguments)
            else:
                result = await asyncio.to_thread(func, **arguments)
        except ToolError as e:
            log.info("Tool %s reported failure: %s", name, e)
            return ToolResult(f"Error: {e}", is_error=True)
        except TypeError as e:
            log.warning("Tool %s argument error: %s", name, e)
            return ToolResult(f"Error: Invalid arguments for '{name}': {e}", is_error=True)
        except Exception as e:
            log.error("Tool %s failed: %s", name, e, exc_info=True)
            return ToolResult(f"Error: Tool '{name}' execution failed", is_error=True)

        result_str = str(result) if not isinstance(result, str) else result
        if len(result_str) > self.truncation_limit:
            result_str = result_str[:self.truncation_limit] + \
                f"\n[truncated at {self.truncation_limit} chars]"
        return ToolResult(result_str)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())
