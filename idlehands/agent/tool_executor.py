"""
Tool Executor — Runs tools requested by the model and returns outcomes.

Routing order for ``execute``:
  0. Deny list → error outcome
  1. Registered handler, bounded by its per-tool timeout
  2. Unknown tool → error outcome

Every handler runs behind ``guard_tool_call``: ordinary exceptions are
turned into ``ERROR: …`` outcomes for the model, AgentLoopBreak escapes.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from idlehands.agent.loop_control import ToolOutcome, ToolStatus, guard_tool_call

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

DEFAULT_OUTPUT_LIMIT = 15_000


class ToolTimeout(Exception):
    """A tool exceeded its timeout."""


@dataclass
class ToolDefinition:
    """A tool the model may call."""
    name: str
    description: str
    handler: Optional[ToolHandler] = None
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    timeout: Optional[float] = None  # seconds; None = executor default
    output_limit: Optional[int] = None

    def to_schema(self) -> Dict[str, Any]:
        """OpenAI-style function schema passed to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolExecutor:
    """Executes agent tools and returns ToolOutcome records."""

    def __init__(
        self,
        tools: Optional[Iterable[ToolDefinition]] = None,
        *,
        default_timeout: float = 30.0,
        timeout_overrides: Optional[Dict[str, float]] = None,
        deny_list: Optional[Iterable[str]] = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
    ):
        self._tools: Dict[str, ToolDefinition] = {}
        self.default_timeout = default_timeout
        self.timeout_overrides = dict(timeout_overrides or {})
        self.deny_list = set(deny_list or [])
        self.output_limit = output_limit
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> ToolDefinition:
        if tool.name in self._tools:
            logger.warning("[TOOL] Replacing existing tool: %s", tool.name)
        self._tools[tool.name] = tool
        logger.debug("[TOOL] Registered tool: %s", tool.name)
        return tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def schemas(self) -> List[Dict[str, Any]]:
        return [t.to_schema() for t in self._tools.values() if t.name not in self.deny_list]

    def timeout_for(self, tool: ToolDefinition) -> float:
        if tool.name in self.timeout_overrides:
            return self.timeout_overrides[tool.name]
        if tool.timeout is not None:
            return tool.timeout
        return self.default_timeout

    async def execute(self, tool_name: str, tool_input: Dict[str, Any]) -> ToolOutcome:
        """Dispatch a tool call. Only AgentLoopBreak (and cancellation) escape."""
        if tool_name in self.deny_list:
            return _error(tool_name, f"ERROR: Tool '{tool_name}' is blocked by administrator policy.")

        tool = self._tools.get(tool_name)
        if tool is None or tool.handler is None:
            return _error(tool_name, f"ERROR: Unknown tool '{tool_name}'")

        timeout = self.timeout_for(tool)
        handler = tool.handler

        async def _call() -> Any:
            try:
                result = handler(tool_input)
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(result, timeout=timeout)
                return result
            except asyncio.TimeoutError:
                raise ToolTimeout(f"Tool '{tool_name}' timed out after {timeout:g}s") from None

        outcome = await guard_tool_call(tool_name, _call)

        limit = tool.output_limit or self.output_limit
        if outcome.status == ToolStatus.OK and len(outcome.content) > limit:
            truncated = len(outcome.content) - limit
            outcome.content = outcome.content[:limit] + f"\n\n[truncated, {truncated} more chars]"
        return outcome


def _error(tool_name: str, message: str) -> ToolOutcome:
    return ToolOutcome(tool_name=tool_name, status=ToolStatus.ERROR, content=message)
