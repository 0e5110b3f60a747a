"""
Loop Control — The two-tier error policy of an agent turn.

Ordinary tool failures are conversational data: they are caught at the
per-tool boundary and handed back to the model as an error result.
``AgentLoopBreak`` is a host-level abort: every per-tool handler re-raises
it unchanged so it reaches the runner, which ends the turn as ``aborted``.

Usage:
    from idlehands.agent.loop_control import AgentLoopBreak, guard_tool_call

    outcome = await guard_tool_call("exec", lambda: handler(args))
    if outcome.is_error:
        ...  # report to the model, keep looping
"""

import asyncio
import hashlib
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class AgentLoopBreak(Exception):
    """Abort the current turn. Never recovered by per-tool error handling."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def is_loop_break(err: Any) -> bool:
    """True for AgentLoopBreak, or an error that reports a tool-loop abort."""
    if isinstance(err, AgentLoopBreak):
        return True
    if not isinstance(err, BaseException):
        return False
    return "tool-loop" in str(err)


class ToolStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


@dataclass
class ToolOutcome:
    """Result of one tool invocation as seen by the model."""
    tool_name: str
    status: ToolStatus
    content: str
    error_type: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.status == ToolStatus.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool_name,
            "status": self.status.value,
            "content": self.content,
            "error_type": self.error_type,
        }


async def guard_tool_call(tool_name: str, call: Callable[[], Awaitable[str]]) -> ToolOutcome:
    """
    Run one tool call behind the per-tool recovery boundary.

    AgentLoopBreak and cancellation propagate unmodified. Every other
    exception becomes an ``error`` outcome.
    """
    try:
        result = await call()
    except AgentLoopBreak:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("[TOOL] %s raised", tool_name)
        return ToolOutcome(
            tool_name=tool_name,
            status=ToolStatus.ERROR,
            content=f"ERROR: {type(exc).__name__}: {exc}",
            error_type=type(exc).__name__,
        )
    return ToolOutcome(tool_name=tool_name, status=ToolStatus.OK, content="" if result is None else str(result))


class TurnStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


# ------------------------------------------------------------------
# Tool-loop guard
# ------------------------------------------------------------------

def _stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class ToolLoopWarning:
    """A repeated identical tool call crossed the warning threshold."""
    tool_name: str
    count: int
    level: str = "warning"  # warning | critical
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool_name,
            "count": self.count,
            "level": self.level,
            "message": self.message,
        }


@dataclass
class ToolLoopGuard:
    """
    Detects the model calling the same tool with the same arguments over
    and over within one turn.

    ``record`` returns a warning at ``warning_threshold`` repeats and raises
    AgentLoopBreak at ``critical_threshold``.
    """
    warning_threshold: int = 4
    critical_threshold: int = 8
    history_size: int = 30
    _history: Deque[str] = field(default_factory=deque, init=False, repr=False)

    @staticmethod
    def signature(tool_name: str, args: Dict[str, Any]) -> str:
        digest = hashlib.sha256(_stable_json(args or {}).encode()).hexdigest()[:16]
        return f"{tool_name}:{digest}"

    def record(self, tool_name: str, args: Dict[str, Any]) -> Optional[ToolLoopWarning]:
        sig = self.signature(tool_name, args)
        self._history.append(sig)
        while len(self._history) > self.history_size:
            self._history.popleft()

        count = sum(1 for s in self._history if s == sig)
        if count >= self.critical_threshold:
            raise AgentLoopBreak(
                f"{tool_name}: tool-loop detected ({count} identical calls). "
                "Stop repeating the same call; choose a different approach or ask the user."
            )
        if count == self.warning_threshold:
            return ToolLoopWarning(
                tool_name=tool_name,
                count=count,
                message=f"{tool_name} called {count} times with identical arguments",
            )
        return None

    def reset(self) -> None:
        self._history.clear()


# ------------------------------------------------------------------
# Auto-continue
# ------------------------------------------------------------------

AUTO_CONTINUE_PROMPT = (
    "Continue working on the task from where you left off. A tool loop was detected "
    "and automatically recovered. Do NOT restart from the beginning."
)


def format_auto_continue_notice(error_message: str, attempt: int, max_retries: int) -> str:
    """User-facing notice sent when an aborted turn is retried automatically."""
    truncated = error_message if len(error_message) <= 200 else error_message[:197] + "..."
    return (
        f"Tool loop detected: {truncated}\n\n"
        f"Automatically continuing the task (retry {attempt} of {max_retries})."
    )
