"""
Agent Host — Binds channels, hooks and the model endpoint into one process.

Startup order:
  1. Onboarding gate (no runtime configured → no session, nothing started)
  2. Wait for the endpoint, pick the model
  3. Register hook plugins, then channel plugins (one pass, declaration order)
  4. Start channels (fail-closed webhook credentials abort startup)
  5. Fire ``session_start``

Inbound messages reach ``dispatch`` through the runtime handle each channel
was given. Turns for the same session key run one at a time; different
session keys run concurrently.
"""

import logging
import sys
from typing import Any, Dict, Iterable, List, Optional, Sequence

from idlehands.agent.agent_runner import AgentRunner, TurnResult
from idlehands.agent.channels.accounts import SessionKey, format_pairing_approve_hint, resolve_default_account_id
from idlehands.agent.channels.base import BaseChannel, ChannelPlugin, InboundMessage, RuntimeHandle
from idlehands.agent.channels.registry import ChannelPluginRegistry
from idlehands.agent.channels.webhook_auth import ChannelSecurityError
from idlehands.agent.dm_pairing import DMPolicy, PairingManager
from idlehands.agent.hooks import HookBus, HookContext, HookEvent, HookPlugin
from idlehands.agent.lanes import SessionLaneManager
from idlehands.agent.loop_control import AUTO_CONTINUE_PROMPT, TurnStatus, format_auto_continue_notice
from idlehands.agent.tool_executor import ToolExecutor
from idlehands.config import Settings
from idlehands.services.llm_backend import ModelBackend, OpenAIChatBackend
from idlehands.services.model_discovery import (
    ModelClient,
    NoModelsAvailable,
    ProbeFunction,
    auto_pick_model,
    classify_infra_error,
    probe_endpoint,
    wait_for_endpoint,
)
from idlehands.services.runtime_store import RuntimeStore, check_runtime_gate

logger = logging.getLogger(__name__)


class AgentHost:
    """Owns the registry, hook bus, lanes and one runner per session key."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[RuntimeStore] = None,
        hooks: Optional[HookBus] = None,
        backend: Optional[ModelBackend] = None,
        tools: Optional[ToolExecutor] = None,
        pairing: Optional[PairingManager] = None,
        model_client: Optional[ModelClient] = None,
        probe: Optional[ProbeFunction] = None,
    ):
        self.settings = settings
        self.store = store or RuntimeStore(settings.runtimes_path)
        self.hooks = hooks or HookBus(
            enabled=settings.hooks_enabled,
            strict=settings.hooks_strict,
            warn_ms=settings.hooks_warn_ms,
            handler_timeout=settings.hooks_timeout_sec,
            allowed_capabilities=settings.hooks_allow_capabilities,
        )
        self.backend = backend
        self.tools = tools or ToolExecutor(
            default_timeout=settings.tool_timeout_default,
            timeout_overrides=settings.tool_timeout_overrides,
            output_limit=settings.tool_max_output_chars,
        )
        self.pairing = pairing or PairingManager(
            DMPolicy(settings.dm_policy), ttl_hours=settings.pairing_ttl_hours,
        )
        self.client = model_client or ModelClient(settings.endpoint, api_key=settings.api_key)
        self._probe = probe
        self.lanes = SessionLaneManager(max_concurrent=settings.lane_max_concurrent)
        self.config: Dict[str, Any] = {"channels": dict(settings.channels)}
        self.registry: Optional[ChannelPluginRegistry] = None
        self.model = ""
        self.started = False
        self._runners: Dict[str, AgentRunner] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        channel_plugins: Sequence[ChannelPlugin],
        hook_plugins: Iterable[HookPlugin] = (),
        interactive: bool = False,
    ) -> bool:
        """
        Bring the host up. Returns False (and starts nothing) when the
        runtime is not configured.

        Raises NoModelsAvailable when no model can be selected, and the
        registry's errors (duplicate ids, insecure channel config).
        """
        if self.started:
            raise RuntimeError("AgentHost already started")

        if not check_runtime_gate(self.store, interactive=interactive, out=sys.stderr):
            return False

        endpoint = self.settings.endpoint
        if self.settings.wait_for_endpoint_on_start:
            ready = await wait_for_endpoint(
                endpoint,
                self.settings.endpoint_wait_timeout_ms,
                self.settings.endpoint_poll_interval_ms,
                probe=self._probe or self._default_probe,
            )
            if not ready:
                logger.warning("[HOST] Endpoint %s not ready, continuing anyway", endpoint)

        self.model = self.settings.model or await self._select_model()
        if self.backend is None:
            self.backend = OpenAIChatBackend(endpoint, api_key=self.settings.api_key)

        # Hook plugins registered by a failed start are removed so a retry starts clean
        registered: List[str] = []
        try:
            for hook_plugin in hook_plugins:
                self.hooks.register_plugin(hook_plugin)
                registered.append(hook_plugin.name)
            ctx = HookContext(model=self.model, endpoint=endpoint)
            await self.hooks.emit(HookEvent.MODEL_CHANGED, {"previous": "", "model": self.model}, context=ctx)

            runtime = RuntimeHandle(endpoint=endpoint, model=self.model, client=self.client, dispatch_fn=self.dispatch)
            self.registry = ChannelPluginRegistry(runtime, config=self.config)
            self.registry.register_all(channel_plugins)
            try:
                await self.registry.start_channels()
            except ChannelSecurityError:
                await self.registry.stop_channels()
                raise
        except BaseException:
            for name in registered:
                self.hooks.unregister_plugin(name)
            self.registry = None
            raise

        for channel in self.registry.channels():
            policy = channel.dm_policy()
            if policy:
                self.pairing.set_policy(channel.id, DMPolicy(policy))

        self.started = True
        await self.hooks.emit(
            HookEvent.SESSION_START,
            {"endpoint": endpoint, "model": self.model, "channels": [c.id for c in self.registry.channels()]},
            context=ctx,
        )
        logger.info("[HOST] Started with model %s (%d channel(s))", self.model, len(self.registry.channels()))
        return True

    async def _select_model(self) -> str:
        """
        Auto-pick from the endpoint catalog. When the catalog yields no model,
        fall back to the first enabled model in runtimes.json.
        """
        try:
            return await auto_pick_model(
                self.client,
                timeout_ms=self.settings.model_list_timeout_ms,
                preferred_marker=self.settings.preferred_model_marker,
            )
        except NoModelsAvailable as exc:
            models = self.store.load().enabled_models()
            if not models:
                raise
            logger.warning("[HOST] %s Using runtime model %s", exc, models[0].id)
            return models[0].id

    async def _default_probe(self, endpoint: Optional[str]) -> bool:
        return await probe_endpoint(
            endpoint, timeout=self.settings.probe_timeout_sec, api_key=self.settings.api_key,
        )

    async def stop(self) -> None:
        if self.registry is not None:
            await self.registry.stop_channels()
        self.started = False
        logger.info("[HOST] Stopped")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def dispatch(self, msg: InboundMessage) -> Optional[TurnResult]:
        """Run one turn for an inbound message and deliver the outcome."""
        if not self.started or self.registry is None:
            logger.warning("[HOST] Dropping message from %s: host not started", msg.channel_id)
            return None
        channel = self.registry.get_channel(msg.channel_id)
        if channel is None:
            logger.warning("[HOST] Dropping message for unknown channel %s", msg.channel_id)
            return None

        account_id = msg.account_id or resolve_default_account_id(channel, self.config)
        key = SessionKey.for_message(msg.channel_id, account_id)

        if msg.is_direct and not await self._check_dm_access(channel, msg, account_id):
            return None

        async with self.lanes.lane(str(key)) as run:
            runner = self._runner_for(key)
            result = await runner.run(msg.text, str(key))

            attempt = 0
            max_retries = self.settings.auto_continue_max_retries
            while result.status == TurnStatus.ABORTED and attempt < max_retries:
                attempt += 1
                notice = format_auto_continue_notice(result.error or "", attempt, max_retries)
                await self._send(channel, msg, notice, account_id)
                result = await runner.run(f"{AUTO_CONTINUE_PROMPT}\n\nOriginal request: {msg.text}", str(key))

            run.status = result.status.value
            await self._deliver(channel, msg, result, account_id)
        return result

    async def _check_dm_access(self, channel: BaseChannel, msg: InboundMessage, account_id: str) -> bool:
        if self.pairing.check_access(channel.id, msg.sender_id):
            return True

        policy = self.pairing.get_policy(channel.id)
        if policy == DMPolicy.PAIRING:
            code = self.pairing.create_pairing(channel.id, msg.sender_id, metadata={"username": msg.username})
            await self._send(
                channel, msg,
                f"This agent needs the owner's approval before it can chat with you.\n"
                f"Pairing code: {code.code}\n{format_pairing_approve_hint(channel.id)}",
                account_id,
            )
        else:
            logger.info("[HOST] DM from %s on %s blocked by %s policy", msg.sender_id, channel.id, policy.value)
        return False

    def _runner_for(self, key: SessionKey) -> AgentRunner:
        runner = self._runners.get(str(key))
        if runner is None:
            runner = AgentRunner(
                self.backend,
                self.tools,
                self.hooks,
                model=self.model,
                endpoint=self.settings.endpoint,
                session_id=str(key),
                system_prompt=self.settings.system_prompt,
                max_iterations=self.settings.agent_max_tool_iterations,
                loop_warning_threshold=self.settings.tool_loop_warning_threshold,
                loop_critical_threshold=self.settings.tool_loop_critical_threshold,
            )
            self._runners[str(key)] = runner
        return runner

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, channel: BaseChannel, msg: InboundMessage, result: TurnResult, account_id: str) -> None:
        try:
            if result.status == TurnStatus.ABORTED:
                await channel.notify_abort(msg.target, result.error or "turn aborted", account_id=account_id)
            elif result.status == TurnStatus.FAILED:
                await channel.send_text(msg.target, _failure_text(result.error), account_id=account_id)
            elif result.text:
                await channel.send_text(msg.target, result.text, account_id=account_id)
        except Exception:
            logger.exception("[HOST] Failed to deliver %s result to %s", result.status.value, channel.id)

    async def _send(self, channel: BaseChannel, msg: InboundMessage, text: str, account_id: str) -> None:
        try:
            await channel.send_text(msg.target, text, account_id=account_id)
        except Exception:
            logger.exception("[HOST] Failed to send notice to %s", channel.id)

    def stats(self) -> Dict[str, Any]:
        """Status summary (for the health endpoint)."""
        return {
            "started": self.started,
            "model": self.model,
            "endpoint": self.settings.endpoint,
            "registry": self.registry.stats() if self.registry else None,
            "hooks": self.hooks.snapshot(),
            "lanes": self.lanes.get_stats(),
            "pairing": self.pairing.stats(),
        }


def _failure_text(error: Optional[str]) -> str:
    if classify_infra_error(error) in ("infra_down", "loading"):
        return "The model endpoint is not reachable right now. Check that the server is running and a model is loaded."
    return f"Something went wrong: {error}"
