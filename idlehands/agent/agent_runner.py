"""
Agent Runner — One agent turn: instruction → (model ↔ tools)* → reply.

State per turn: idle → running → completed | aborted | failed.

* ``completed``: the model answered without further tool calls, or the
  iteration limit was reached.
* ``aborted``: an AgentLoopBreak reached the runner (from a tool, the
  tool-loop guard or a hook handler). This is a hard stop for the channel,
  not a conversational reply. A cancelled turn also ends as aborted, after
  its hooks have fired, and the cancellation is re-raised.
* ``failed``: the model call itself failed (endpoint down, bad response).

``ask_start`` fires before any model or tool work and ``ask_end`` fires
last on every path.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from idlehands.agent.hooks import HookBus, HookContext, HookError, HookEvent
from idlehands.agent.loop_control import AgentLoopBreak, ToolLoopGuard, TurnStatus, is_loop_break
from idlehands.agent.structured_logging import generate_ask_id, set_turn_context
from idlehands.agent.tool_executor import ToolExecutor
from idlehands.services.llm_backend import ModelBackend, ModelReply

logger = logging.getLogger(__name__)

MAX_ITERATIONS_TEXT = "I've reached the maximum number of tool iterations. Here's what I have so far."


class TurnInProgressError(Exception):
    """``run`` was called on a runner whose turn has not finished."""


@dataclass
class TurnResult:
    """Final result of a single agent turn."""
    ask_id: str
    session_key: str
    status: TurnStatus
    text: str = ""
    turns: int = 0
    tool_calls: int = 0
    error: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def aborted(self) -> bool:
        return self.status == TurnStatus.ABORTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ask_id": self.ask_id,
            "session_key": self.session_key,
            "status": self.status.value,
            "text": self.text,
            "turns": self.turns,
            "tool_calls": self.tool_calls,
            "error": self.error,
            "elapsed_ms": self.elapsed_ms,
        }


class AgentRunner:
    """
    Runs the agentic loop for one session.

    A runner executes one turn at a time; the host keeps one runner per
    session key.
    """

    def __init__(
        self,
        backend: ModelBackend,
        tools: ToolExecutor,
        hooks: HookBus,
        *,
        model: str,
        endpoint: str = "",
        session_id: str = "",
        system_prompt: Optional[str] = None,
        max_iterations: int = 20,
        loop_warning_threshold: int = 4,
        loop_critical_threshold: int = 8,
    ):
        self.backend = backend
        self.tools = tools
        self.hooks = hooks
        self.model = model
        self.endpoint = endpoint
        self.session_id = session_id
        self.system_prompt = system_prompt
        self.max_iterations = max(1, max_iterations)
        self.loop_warning_threshold = loop_warning_threshold
        self.loop_critical_threshold = loop_critical_threshold
        self.state = TurnStatus.IDLE

    def _context(self) -> HookContext:
        return HookContext(model=self.model, session_id=self.session_id, endpoint=self.endpoint)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(self, instruction: str, session_key: str = "", *, ask_id: Optional[str] = None) -> TurnResult:
        if self.state == TurnStatus.RUNNING:
            raise TurnInProgressError(f"A turn is already running for {session_key or self.session_id}")

        self.state = TurnStatus.RUNNING
        result = TurnResult(
            ask_id=ask_id or generate_ask_id(),
            session_key=session_key or self.session_id,
            status=TurnStatus.RUNNING,
        )
        set_turn_context(result.ask_id, result.session_key)
        ctx = self._context()
        start = time.time()
        logger.info("[AGENT] === New turn %s for %s ===", result.ask_id, result.session_key)

        try:
            await self.hooks.emit(
                HookEvent.ASK_START,
                {"ask_id": result.ask_id, "instruction": instruction},
                context=ctx,
            )
            await self._loop(instruction, result, ctx)
            result.status = TurnStatus.COMPLETED
        except AgentLoopBreak as brk:
            result.status = TurnStatus.ABORTED
            result.error = brk.message
            logger.warning("[AGENT] Turn %s aborted: %s", result.ask_id, brk.message)
        except asyncio.CancelledError:
            result.status = TurnStatus.ABORTED
            result.error = "cancelled"
            result.elapsed_ms = int((time.time() - start) * 1000)
            logger.warning("[AGENT] Turn %s cancelled", result.ask_id)
            try:
                await self._finish(result, ctx)
            finally:
                self.state = TurnStatus.ABORTED
            raise
        except Exception as exc:
            if is_loop_break(exc):
                result.status = TurnStatus.ABORTED
                result.error = str(exc)
                logger.warning("[AGENT] Turn %s aborted: %s", result.ask_id, exc)
            else:
                result.status = TurnStatus.FAILED
                result.error = f"{type(exc).__name__}: {exc}"
                logger.exception("[AGENT] Turn %s failed", result.ask_id)

        result.elapsed_ms = int((time.time() - start) * 1000)
        await self._finish(result, ctx)
        self.state = result.status
        logger.info(
            "[AGENT] Turn %s %s | turns=%d tools=%d | %dms",
            result.ask_id, result.status.value, result.turns, result.tool_calls, result.elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self, instruction: str, result: TurnResult, ctx: HookContext) -> None:
        guard = ToolLoopGuard(
            warning_threshold=self.loop_warning_threshold,
            critical_threshold=self.loop_critical_threshold,
        )
        messages: List[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": instruction})

        for _ in range(self.max_iterations):
            result.turns += 1
            await self.hooks.emit(HookEvent.TURN_START, {"ask_id": result.ask_id, "turn": result.turns}, context=ctx)
            reply: ModelReply = await self.backend.complete(messages, self.tools.schemas(), self.model)
            await self.hooks.emit(
                HookEvent.TURN_END,
                {"ask_id": result.ask_id, "turn": result.turns, "tool_calls": len(reply.tool_calls)},
                context=ctx,
            )
            result.text = reply.text

            if not reply.tool_calls:
                return

            messages.append({
                "role": "assistant",
                "content": reply.text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.args)},
                    }
                    for call in reply.tool_calls
                ],
            })

            for call in reply.tool_calls:
                result.tool_calls += 1
                # Raises AgentLoopBreak at the critical threshold
                warning = guard.record(call.name, call.args)
                if warning is not None:
                    logger.warning("[AGENT] %s", warning.message)
                    await self.hooks.emit(
                        HookEvent.TOOL_LOOP, {"ask_id": result.ask_id, **warning.to_dict()}, context=ctx,
                    )

                await self.hooks.emit(
                    HookEvent.TOOL_CALL, {"ask_id": result.ask_id, "call": call.to_dict()}, context=ctx,
                )
                logger.info("[AGENT] Tool called: %s(%s)", call.name, json.dumps(call.args)[:200])
                outcome = await self.tools.execute(call.name, call.args)
                await self.hooks.emit(
                    HookEvent.TOOL_RESULT,
                    {"ask_id": result.ask_id, "call_id": call.id, "result": outcome.to_dict()},
                    context=ctx,
                )

                content = outcome.content
                if warning is not None:
                    content += f"\n\n[warning] {warning.message}. Try a different approach."
                messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

        if not result.text:
            result.text = MAX_ITERATIONS_TEXT
        logger.warning("[AGENT] Turn %s hit max iterations (%d)", result.ask_id, self.max_iterations)

    async def _finish(self, result: TurnResult, ctx: HookContext) -> None:
        """Emit ask_error (when needed) then ask_end. A break raised here still aborts."""
        try:
            if result.status in (TurnStatus.ABORTED, TurnStatus.FAILED):
                await self.hooks.emit(
                    HookEvent.ASK_ERROR,
                    {"ask_id": result.ask_id, "status": result.status.value, "error": result.error},
                    context=ctx,
                )
        except (AgentLoopBreak, HookError) as exc:
            logger.warning("[AGENT] ask_error hook raised: %s", exc)

        try:
            await self.hooks.emit(
                HookEvent.ASK_END,
                {
                    "ask_id": result.ask_id,
                    "text": result.text,
                    "turns": result.turns,
                    "tool_calls": result.tool_calls,
                    "status": result.status.value,
                },
                context=ctx,
            )
        except AgentLoopBreak as brk:
            result.status = TurnStatus.ABORTED
            result.error = brk.message
        except HookError as exc:
            logger.error("[AGENT] ask_end hook failed in strict mode: %s", exc)
