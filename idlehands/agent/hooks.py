"""
Plugin Hook System — Lifecycle event bus for the agent loop.

Hook plugins observe a turn: ``ask_start`` fires before any model or tool
work, ``ask_end`` after the turn completes or aborts. Handlers run in
registration order. A failing or hanging handler is logged and skipped,
it never breaks the turn. The one exception is AgentLoopBreak, which a
handler may raise to abort the current turn.

Usage:
    from idlehands.agent.hooks import HookBus, HookEvent, HookPlugin

    bus = HookBus()
    bus.register_plugin(HookPlugin(
        name="timing",
        hooks={"ask_start": on_start, "ask_end": on_end},
    ))

    await bus.emit(HookEvent.ASK_START, {"ask_id": "a1", "instruction": "hi"})
"""

import asyncio
import copy
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Union

from idlehands.agent.loop_control import AgentLoopBreak

logger = logging.getLogger(__name__)

# Handler: (payload, context) -> None, sync or async
HookHandler = Callable[[Dict[str, Any], "HookContext"], Any]

RECENT_LIMIT = 25


class HookEvent(str, Enum):
    """All lifecycle hook events."""

    # Session lifecycle
    SESSION_START = "session_start"
    MODEL_CHANGED = "model_changed"

    # Turn lifecycle
    ASK_START = "ask_start"
    ASK_END = "ask_end"
    ASK_ERROR = "ask_error"
    TURN_START = "turn_start"
    TURN_END = "turn_end"

    # Tool lifecycle
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_LOOP = "tool_loop"


class HookCapability(str, Enum):
    OBSERVE = "observe"
    READ_PROMPTS = "read_prompts"
    READ_RESPONSES = "read_responses"
    READ_TOOL_ARGS = "read_tool_args"
    READ_TOOL_RESULTS = "read_tool_results"


class HookError(Exception):
    """A hook handler failed while the bus runs in strict mode."""


@dataclass
class HookContext:
    """Dispatch context handed to every handler alongside the payload."""
    model: str = ""
    session_id: str = ""
    endpoint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"model": self.model, "session_id": self.session_id, "endpoint": self.endpoint}


@dataclass
class HookPlugin:
    """A named bundle of event handlers."""
    name: str
    hooks: Dict[Union[str, HookEvent], Union[HookHandler, Sequence[HookHandler]]] = field(default_factory=dict)
    capabilities: List[str] = field(default_factory=lambda: [HookCapability.OBSERVE.value])


@dataclass
class _RegisteredHandler:
    source: str
    fn: HookHandler
    capabilities: frozenset


def clamp_capabilities(caps: Optional[Iterable[str]]) -> List[str]:
    """Drop unknown capability names; an empty result means ``observe``."""
    known = {c.value for c in HookCapability}
    out: List[str] = []
    for cap in caps or []:
        value = cap.value if isinstance(cap, HookCapability) else str(cap)
        if value in known and value not in out:
            out.append(value)
    if not out:
        out.append(HookCapability.OBSERVE.value)
    return out


def redact_payload(event: HookEvent, payload: Dict[str, Any], caps: frozenset) -> Dict[str, Any]:
    """Deep copy of ``payload`` with fields the handler may not read masked out."""
    out = copy.deepcopy(payload)

    if event == HookEvent.ASK_START and HookCapability.READ_PROMPTS.value not in caps:
        if "instruction" in out:
            out["instruction"] = "[redacted: missing read_prompts capability]"

    if event == HookEvent.ASK_END and HookCapability.READ_RESPONSES.value not in caps:
        if "text" in out:
            out["text"] = "[redacted: missing read_responses capability]"

    if event == HookEvent.TOOL_CALL and HookCapability.READ_TOOL_ARGS.value not in caps:
        if isinstance(out.get("call"), dict):
            out["call"]["args"] = {}

    if event == HookEvent.TOOL_RESULT and HookCapability.READ_TOOL_RESULTS.value not in caps:
        if isinstance(out.get("result"), dict):
            out["result"]["content"] = "[redacted: missing read_tool_results capability]"

    return out


class HookBus:
    """
    Central event bus for hook plugins.

    Handlers are called in registration order, one at a time. Each call is
    isolated: exceptions and timeouts are logged and recorded, then the
    next handler runs.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        strict: bool = False,
        warn_ms: int = 250,
        handler_timeout: Optional[float] = 5.0,
        allowed_capabilities: Optional[Iterable[str]] = None,
        context: Optional[Callable[[], HookContext]] = None,
    ):
        self.enabled = enabled
        self.strict = strict
        self.warn_ms = max(0, int(warn_ms))
        self.handler_timeout = handler_timeout
        allowed = set(clamp_capabilities(allowed_capabilities))
        allowed.add(HookCapability.OBSERVE.value)
        self.allowed_capabilities = frozenset(allowed)
        self._context_fn = context or HookContext

        self._handlers: Dict[HookEvent, List[_RegisteredHandler]] = {event: [] for event in HookEvent}
        self._plugins: List[Dict[str, Any]] = []
        self._event_counts: Dict[str, int] = {}
        self._recent_errors: Deque[str] = deque(maxlen=RECENT_LIMIT)
        self._recent_slow: Deque[str] = deque(maxlen=RECENT_LIMIT)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on(
        self,
        event: Union[str, HookEvent],
        handler: HookHandler,
        *,
        source: str = "runtime",
        capabilities: Optional[Iterable[str]] = None,
    ) -> None:
        """Register a handler for a specific event."""
        if not self.enabled:
            return
        ev = HookEvent(event)
        self._handlers[ev].append(_RegisteredHandler(
            source=source,
            fn=handler,
            capabilities=frozenset(clamp_capabilities(capabilities)),
        ))
        logger.debug("[HOOKS] Registered handler for %s from %s", ev.value, source)

    def register_plugin(self, plugin: HookPlugin) -> None:
        """Register every handler a hook plugin supplies, in mapping order."""
        if not self.enabled:
            return

        requested = clamp_capabilities(plugin.capabilities)
        granted = [c for c in requested if c in self.allowed_capabilities] or [HookCapability.OBSERVE.value]
        denied = [c for c in requested if c not in self.allowed_capabilities]
        if denied:
            msg = f"[HOOKS] plugin {plugin.name} requested denied capabilities: {', '.join(denied)}"
            if self.strict:
                raise HookError(msg)
            logger.warning(msg)

        self._plugins.append({
            "name": plugin.name,
            "requested_capabilities": requested,
            "granted_capabilities": granted,
            "denied_capabilities": denied,
        })

        for event, value in plugin.hooks.items():
            try:
                ev = HookEvent(event)
            except ValueError:
                msg = f"[HOOKS] plugin {plugin.name} uses unknown event: {event}"
                if self.strict:
                    raise HookError(msg)
                logger.warning(msg)
                continue
            handlers = list(value) if isinstance(value, (list, tuple)) else [value]
            for fn in handlers:
                if callable(fn):
                    self.on(ev, fn, source=plugin.name, capabilities=granted)

        logger.info("[HOOKS] Registered hook plugin: %s (capabilities=%s)", plugin.name, ",".join(granted))

    def unregister(self, event: Union[str, HookEvent], handler: HookHandler) -> bool:
        """Remove a specific handler from an event."""
        ev = HookEvent(event)
        for item in self._handlers[ev]:
            if item.fn is handler:
                self._handlers[ev].remove(item)
                return True
        return False

    def unregister_plugin(self, name: str) -> int:
        """Remove every handler and the manifest entry a plugin registered."""
        removed = 0
        for ev in HookEvent:
            kept = [h for h in self._handlers[ev] if h.source != name]
            removed += len(self._handlers[ev]) - len(kept)
            self._handlers[ev] = kept
        self._plugins = [p for p in self._plugins if p["name"] != name]
        return removed

    def clear(self) -> None:
        for ev in HookEvent:
            self._handlers[ev] = []
        self._plugins = []

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def emit(
        self,
        event: Union[str, HookEvent],
        payload: Optional[Dict[str, Any]] = None,
        *,
        context: Optional[HookContext] = None,
    ) -> None:
        """
        Emit a hook event, calling all registered handlers in order.

        ``context`` overrides the bus-wide context provider for this call.

        Raises only AgentLoopBreak (from a handler) or, in strict mode,
        HookError.
        """
        if not self.enabled:
            return
        ev = HookEvent(event)
        handlers = list(self._handlers[ev])
        if not handlers:
            return

        self._event_counts[ev.value] = self._event_counts.get(ev.value, 0) + 1
        ctx = context if context is not None else self._context_fn()
        payload = payload or {}

        for handler in handlers:
            started = time.monotonic()
            try:
                safe_payload = redact_payload(ev, payload, handler.capabilities)
                result = handler.fn(safe_payload, ctx)
                if inspect.isawaitable(result):
                    if self.handler_timeout:
                        await asyncio.wait_for(result, timeout=self.handler_timeout)
                    else:
                        await result
            except AgentLoopBreak:
                logger.warning("[HOOKS] %s handler (%s) requested loop break", ev.value, handler.source)
                raise
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                self._record_failure(ev, handler, f"timed out after {self.handler_timeout}s")
            except Exception as exc:
                self._record_failure(ev, handler, str(exc) or type(exc).__name__, exc_info=True)
            finally:
                elapsed_ms = (time.monotonic() - started) * 1000
                if self.warn_ms > 0 and elapsed_ms >= self.warn_ms:
                    slow = f"[HOOKS] {ev.value} handler slow ({handler.source}): {elapsed_ms:.0f}ms"
                    self._recent_slow.append(slow)
                    logger.warning(slow)

    def _record_failure(self, ev: HookEvent, handler: _RegisteredHandler, reason: str, exc_info: bool = False) -> None:
        msg = f"[HOOKS] {ev.value} handler failed ({handler.source}): {reason}"
        self._recent_errors.append(msg)
        if self.strict:
            raise HookError(msg)
        logger.error(msg, exc_info=exc_info)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def handler_count(self, event: Optional[Union[str, HookEvent]] = None) -> int:
        if event is not None:
            return len(self._handlers[HookEvent(event)])
        return sum(len(h) for h in self._handlers.values())

    def snapshot(self) -> Dict[str, Any]:
        """Return plugins, handlers and recent problems (for admin/debug)."""
        return {
            "enabled": self.enabled,
            "strict": self.strict,
            "allowed_capabilities": sorted(self.allowed_capabilities),
            "plugins": [dict(p) for p in self._plugins],
            "handlers": [
                {"event": ev.value, "source": h.source}
                for ev, items in self._handlers.items()
                for h in items
            ],
            "event_counts": dict(self._event_counts),
            "recent_errors": list(self._recent_errors),
            "recent_slow_handlers": list(self._recent_slow),
        }
