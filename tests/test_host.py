"""
Agent Host Tests — startup gate, turn outcomes and delivery, loop-break
handling, DM pairing, session lanes, auto-continue, hook ordering.
"""

import asyncio

import httpx
import pytest


# ── Fakes ────────────────────────────────────────────────────

class ScriptedBackend:
    """Returns queued replies; a callable entry is awaited with the messages."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, messages, tools, model):
        from idlehands.services.llm_backend import ModelReply
        self.calls.append({"messages": list(messages), "tools": tools, "model": model})
        reply = self.replies.pop(0) if self.replies else "ok"
        if callable(reply):
            reply = await reply(messages)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return ModelReply(text=reply)
        return reply


def _tool_reply(name, args=None, call_id="c1"):
    from idlehands.services.llm_backend import ModelReply, ToolCall
    return ModelReply(tool_calls=[ToolCall(id=call_id, name=name, args=args or {})])


def _chat_plugin(channels, dm_policy=None, fail_start=None):
    from idlehands.agent.channels.base import BaseChannel, ChannelPlugin

    class ChatChannel(BaseChannel):
        id = "chat"

        def __init__(self):
            super().__init__()
            self.sent = []
            self.aborts = []
            self.started = False
            self.stopped = False

        async def start(self):
            if fail_start is not None:
                raise fail_start
            self.started = True

        async def stop(self):
            self.stopped = True

        async def send_text(self, target, text, *, account_id=None):
            self.sent.append((target, text, account_id))

        async def notify_abort(self, target, message, *, account_id=None):
            self.aborts.append((target, message))

        def dm_policy(self):
            return dm_policy

    def register(api):
        ch = ChatChannel()
        channels.append(ch)
        api.register_channel(plugin=ch)

    return ChannelPlugin(id="chat", name="Chat", register=register)


def _make_host(tmp_path, backend, *, configured=True, tools=None, **overrides):
    from idlehands.agent.host import AgentHost
    from idlehands.config import Settings
    from idlehands.services.runtime_store import RuntimeConfig, RuntimeStore

    settings = Settings(
        config_dir=str(tmp_path),
        model="qwen3-8b",
        wait_for_endpoint_on_start=False,
        **overrides,
    )
    store = RuntimeStore(settings.runtimes_path)
    if configured:
        store.save(RuntimeConfig.model_validate({
            "hosts": [{"id": "box"}],
            "backends": [{"id": "cpu"}],
            "models": [{"id": "qwen3-8b"}],
        }))
    return AgentHost(settings, store=store, backend=backend, tools=tools)


def _msg(text="hi", sender="u1", target="room", account_id=None, is_direct=False):
    from idlehands.agent.channels.base import InboundMessage
    return InboundMessage(
        channel_id="chat", sender_id=sender, target=target, text=text,
        account_id=account_id, is_direct=is_direct,
    )


# ── Startup ──────────────────────────────────────────────────

class TestStartup:
    @pytest.mark.asyncio
    async def test_unconfigured_runtime_starts_nothing(self, tmp_path):
        channels = []
        host = _make_host(tmp_path, ScriptedBackend(), configured=False)
        assert await host.start([_chat_plugin(channels)]) is False
        assert channels == []
        assert host.started is False
        assert await host.dispatch(_msg()) is None

    @pytest.mark.asyncio
    async def test_start_registers_and_starts_channels(self, tmp_path):
        channels = []
        host = _make_host(tmp_path, ScriptedBackend())
        assert await host.start([_chat_plugin(channels)]) is True
        assert channels[0].started
        assert host.registry.runtime.model == "qwen3-8b"
        await host.stop()
        assert channels[0].stopped

    @pytest.mark.asyncio
    async def test_auto_picks_model_when_unset(self, tmp_path):
        from idlehands.agent.host import AgentHost
        from idlehands.services.model_discovery import ModelClient
        base = _make_host(tmp_path, ScriptedBackend())
        base.settings.model = ""
        transport = httpx.MockTransport(
            lambda r: httpx.Response(200, json={"data": [{"id": "llama-3"}, {"id": "Qwen2.5"}]})
        )
        host = AgentHost(
            base.settings, store=base.store, backend=ScriptedBackend(),
            model_client=ModelClient("http://h", transport=transport),
        )
        assert await host.start([]) is True
        assert host.model == "Qwen2.5"

    @pytest.mark.asyncio
    async def test_insecure_channel_aborts_startup(self, tmp_path):
        from idlehands.agent.channels.webhook_auth import ChannelSecurityError
        channels = []
        host = _make_host(tmp_path, ScriptedBackend())
        with pytest.raises(ChannelSecurityError):
            await host.start([_chat_plugin(channels, fail_start=ChannelSecurityError("blank secret"))])
        assert host.started is False

    @pytest.mark.asyncio
    async def test_waits_for_endpoint_when_enabled(self, tmp_path):
        from idlehands.agent.host import AgentHost
        base = _make_host(tmp_path, ScriptedBackend())
        base.settings.wait_for_endpoint_on_start = True
        probes = []

        async def probe(endpoint):
            probes.append(endpoint)
            return True

        host = AgentHost(base.settings, store=base.store, backend=ScriptedBackend(), probe=probe)
        assert await host.start([]) is True
        assert probes == [base.settings.endpoint]


# ── Turn outcomes ────────────────────────────────────────────

class TestDispatch:
    @pytest.mark.asyncio
    async def test_completed_turn_is_sent(self, tmp_path):
        channels = []
        backend = ScriptedBackend("hello back")
        host = _make_host(tmp_path, backend)
        await host.start([_chat_plugin(channels)])

        result = await host.dispatch(_msg("hello"))
        assert result.status.value == "completed"
        assert result.session_key == "chat:default"
        assert channels[0].sent == [("room", "hello back", "default")]
        assert backend.calls[0]["model"] == "qwen3-8b"
        assert backend.calls[0]["messages"][-1] == {"role": "user", "content": "hello"}

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, tmp_path):
        from idlehands.agent.tool_executor import ToolDefinition, ToolExecutor

        async def clock(args):
            return "12:00"

        channels = []
        backend = ScriptedBackend(_tool_reply("clock"), "It is noon.")
        host = _make_host(tmp_path, backend, tools=ToolExecutor([ToolDefinition("clock", "Time", handler=clock)]))
        await host.start([_chat_plugin(channels)])

        result = await host.dispatch(_msg("time?"))
        assert result.tool_calls == 1 and result.turns == 2
        assert channels[0].sent[0][1] == "It is noon."
        tool_msg = backend.calls[1]["messages"][-1]
        assert tool_msg == {"role": "tool", "tool_call_id": "c1", "content": "12:00"}

    @pytest.mark.asyncio
    async def test_ordinary_tool_error_goes_back_to_model(self, tmp_path):
        from idlehands.agent.tool_executor import ToolDefinition, ToolExecutor

        async def read(args):
            raise FileNotFoundError("missing.txt")

        channels = []
        backend = ScriptedBackend(_tool_reply("read"), "That file does not exist.")
        host = _make_host(tmp_path, backend, tools=ToolExecutor([ToolDefinition("read", "Read", handler=read)]))
        await host.start([_chat_plugin(channels)])

        result = await host.dispatch(_msg("read it"))
        assert result.status.value == "completed"
        assert backend.calls[1]["messages"][-1]["content"] == "ERROR: FileNotFoundError: missing.txt"

    @pytest.mark.asyncio
    async def test_loop_break_from_tool_aborts_turn(self, tmp_path):
        from idlehands.agent.loop_control import AgentLoopBreak
        from idlehands.agent.tool_executor import ToolDefinition, ToolExecutor

        async def fatal(args):
            raise AgentLoopBreak("sandbox misconfigured")

        channels = []
        backend = ScriptedBackend(_tool_reply("exec"), "should never be asked")
        host = _make_host(tmp_path, backend, tools=ToolExecutor([ToolDefinition("exec", "Run", handler=fatal)]))
        await host.start([_chat_plugin(channels)])

        result = await host.dispatch(_msg("run it"))
        assert result.aborted
        assert result.error == "sandbox misconfigured"
        assert len(backend.calls) == 1
        assert channels[0].aborts == [("room", "sandbox misconfigured")]
        assert channels[0].sent == []

    @pytest.mark.asyncio
    async def test_repeated_identical_calls_abort(self, tmp_path):
        from idlehands.agent.tool_executor import ToolDefinition, ToolExecutor
        channels = []
        backend = ScriptedBackend(*[_tool_reply("ls", {"path": "."}, f"c{i}") for i in range(5)])
        host = _make_host(
            tmp_path, backend,
            tools=ToolExecutor([ToolDefinition("ls", "List", handler=lambda args: "a.txt")]),
            tool_loop_warning_threshold=2, tool_loop_critical_threshold=3,
        )
        await host.start([_chat_plugin(channels)])

        result = await host.dispatch(_msg("list"))
        assert result.aborted and "tool-loop detected" in result.error
        assert result.tool_calls == 3
        assert "[warning]" in backend.calls[2]["messages"][-1]["content"]

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_reports_failure(self, tmp_path):
        channels = []
        backend = ScriptedBackend(httpx.ConnectError("All connection attempts failed"))
        host = _make_host(tmp_path, backend)
        await host.start([_chat_plugin(channels)])

        result = await host.dispatch(_msg())
        assert result.status.value == "failed"
        assert "not reachable" in channels[0].sent[0][1]

    @pytest.mark.asyncio
    async def test_other_failure_reports_error(self, tmp_path):
        channels = []
        host = _make_host(tmp_path, ScriptedBackend(ValueError("bad response")))
        await host.start([_chat_plugin(channels)])
        await host.dispatch(_msg())
        assert channels[0].sent[0][1] == "Something went wrong: ValueError: bad response"

    @pytest.mark.asyncio
    async def test_unknown_channel_dropped(self, tmp_path):
        from idlehands.agent.channels.base import InboundMessage
        host = _make_host(tmp_path, ScriptedBackend())
        await host.start([_chat_plugin([])])
        assert await host.dispatch(InboundMessage(channel_id="nope", sender_id="u", target="t")) is None

    @pytest.mark.asyncio
    async def test_auto_continue_retries_after_break(self, tmp_path):
        from idlehands.agent.loop_control import AgentLoopBreak
        from idlehands.agent.tool_executor import ToolDefinition, ToolExecutor
        attempts = []

        async def flaky(args):
            attempts.append(1)
            if len(attempts) == 1:
                raise AgentLoopBreak("transient stop")
            return "fine"

        channels = []
        backend = ScriptedBackend(_tool_reply("flaky"), _tool_reply("flaky"), "done")
        host = _make_host(
            tmp_path, backend,
            tools=ToolExecutor([ToolDefinition("flaky", "Flaky", handler=flaky)]),
            auto_continue_max_retries=1,
        )
        await host.start([_chat_plugin(channels)])

        result = await host.dispatch(_msg("do the thing"))
        assert result.status.value == "completed"
        texts = [t for _, t, _ in channels[0].sent]
        assert "retry 1 of 1" in texts[0]
        assert texts[1] == "done"
        assert "Original request: do the thing" in backend.calls[1]["messages"][-1]["content"]


# ── DM access ────────────────────────────────────────────────

class TestDirectMessages:
    @pytest.mark.asyncio
    async def test_pairing_flow(self, tmp_path):
        channels = []
        backend = ScriptedBackend("welcome")
        host = _make_host(tmp_path, backend, dm_policy="pairing")
        await host.start([_chat_plugin(channels)])

        assert await host.dispatch(_msg("hi", sender="stranger", is_direct=True)) is None
        assert backend.calls == []
        notice = channels[0].sent[0][1]
        assert "Pairing code: " in notice
        assert "idlehands pairing approve chat <code>" in notice

        code = notice.split("Pairing code: ")[1].split("\n")[0]
        assert host.pairing.approve_pairing("chat", code)
        result = await host.dispatch(_msg("hi", sender="stranger", is_direct=True))
        assert result.text == "welcome"

    @pytest.mark.asyncio
    async def test_channel_policy_overrides_default(self, tmp_path):
        channels = []
        backend = ScriptedBackend()
        host = _make_host(tmp_path, backend, dm_policy="open")
        await host.start([_chat_plugin(channels, dm_policy="disabled")])
        assert await host.dispatch(_msg(is_direct=True)) is None
        assert channels[0].sent == [] and backend.calls == []

    @pytest.mark.asyncio
    async def test_group_messages_skip_dm_policy(self, tmp_path):
        channels = []
        host = _make_host(tmp_path, ScriptedBackend("hey"), dm_policy="disabled")
        await host.start([_chat_plugin(channels)])
        result = await host.dispatch(_msg(is_direct=False))
        assert result.text == "hey"


# ── Lanes ────────────────────────────────────────────────────

class TestSessionLanes:
    @pytest.mark.asyncio
    async def test_same_session_key_runs_one_at_a_time(self, tmp_path):
        state = {"inflight": 0, "max": 0}

        async def slow(messages):
            state["inflight"] += 1
            state["max"] = max(state["max"], state["inflight"])
            await asyncio.sleep(0.02)
            state["inflight"] -= 1
            return messages[-1]["content"]

        channels = []
        host = _make_host(tmp_path, ScriptedBackend(slow, slow, slow))
        await host.start([_chat_plugin(channels)])

        results = await asyncio.gather(*(host.dispatch(_msg(f"m{i}")) for i in range(3)))
        assert state["max"] == 1
        assert [r.text for r in results] == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_different_session_keys_run_concurrently(self, tmp_path):
        both_running = asyncio.Event()
        state = {"inflight": 0}

        async def wait_for_peer(messages):
            state["inflight"] += 1
            if state["inflight"] == 2:
                both_running.set()
            await asyncio.wait_for(both_running.wait(), timeout=2)
            return "ok"

        channels = []
        host = _make_host(tmp_path, ScriptedBackend(wait_for_peer, wait_for_peer))
        await host.start([_chat_plugin(channels)])

        results = await asyncio.gather(
            host.dispatch(_msg(account_id="work")),
            host.dispatch(_msg(account_id="home")),
        )
        assert {r.session_key for r in results} == {"chat:work", "chat:home"}
        assert all(r.status.value == "completed" for r in results)


# ── Hooks ────────────────────────────────────────────────────

class TestHookOrdering:
    @pytest.mark.asyncio
    async def test_lifecycle_events_in_order(self, tmp_path):
        from idlehands.agent.hooks import HookEvent, HookPlugin
        events = []

        def recorder(name):
            return lambda payload, ctx: events.append((name, ctx.session_id))

        plugin = HookPlugin(name="recorder", hooks={e.value: recorder(e.value) for e in HookEvent})
        host = _make_host(tmp_path, ScriptedBackend("hi"))
        await host.start([_chat_plugin([])], hook_plugins=[plugin])
        await host.dispatch(_msg())

        names = [name for name, _ in events]
        assert names == ["model_changed", "session_start", "ask_start", "turn_start", "turn_end", "ask_end"]
        assert events[2][1] == "chat:default"

    @pytest.mark.asyncio
    async def test_hook_break_aborts_turn(self, tmp_path):
        from idlehands.agent.hooks import HookPlugin
        from idlehands.agent.loop_control import AgentLoopBreak

        def deny(payload, ctx):
            raise AgentLoopBreak("blocked by policy hook")

        channels = []
        backend = ScriptedBackend("never")
        host = _make_host(tmp_path, backend)
        await host.start([_chat_plugin(channels)], hook_plugins=[HookPlugin(name="deny", hooks={"ask_start": deny})])

        result = await host.dispatch(_msg())
        assert result.aborted and backend.calls == []
        assert channels[0].aborts == [("room", "blocked by policy hook")]

    @pytest.mark.asyncio
    async def test_ask_end_fires_on_failure(self, tmp_path):
        from idlehands.agent.hooks import HookPlugin
        ends = []
        errors = []
        plugin = HookPlugin(name="rec", hooks={
            "ask_end": lambda p, c: ends.append(p["status"]),
            "ask_error": lambda p, c: errors.append(p["status"]),
        })
        host = _make_host(tmp_path, ScriptedBackend(RuntimeError("boom")))
        await host.start([_chat_plugin([])], hook_plugins=[plugin])
        await host.dispatch(_msg())
        assert errors == ["failed"] and ends == ["failed"]

    @pytest.mark.asyncio
    async def test_failed_start_does_not_leave_hook_handlers(self, tmp_path):
        from idlehands.agent.channels.webhook_auth import ChannelSecurityError
        from idlehands.agent.hooks import HookPlugin
        plugin = HookPlugin(name="audit", hooks={"ask_start": lambda p, c: None, "ask_end": lambda p, c: None})
        host = _make_host(tmp_path, ScriptedBackend())

        with pytest.raises(ChannelSecurityError):
            await host.start([_chat_plugin([], fail_start=ChannelSecurityError("blank secret"))], hook_plugins=[plugin])
        assert host.hooks.handler_count() == 0
        assert host.hooks.snapshot()["plugins"] == []

        assert await host.start([_chat_plugin([])], hook_plugins=[plugin]) is True
        assert host.hooks.handler_count() == 2


# ── Model selection ──────────────────────────────────────────

class TestModelSelection:
    @pytest.mark.asyncio
    async def test_falls_back_to_runtime_model_when_catalog_unreadable(self, tmp_path):
        from idlehands.agent.host import AgentHost
        from idlehands.services.model_discovery import ModelClient
        base = _make_host(tmp_path, ScriptedBackend())
        base.settings.model = ""
        transport = httpx.MockTransport(lambda r: httpx.Response(500))
        host = AgentHost(
            base.settings, store=base.store, backend=ScriptedBackend(),
            model_client=ModelClient("http://h", transport=transport),
        )
        assert await host.start([]) is True
        assert host.model == "qwen3-8b"

    @pytest.mark.asyncio
    async def test_no_catalog_and_no_enabled_runtime_model(self, tmp_path):
        from idlehands.agent.host import AgentHost
        from idlehands.services.model_discovery import ModelClient, NoModelsAvailable
        from idlehands.services.runtime_store import RuntimeConfig
        base = _make_host(tmp_path, ScriptedBackend())
        base.settings.model = ""
        base.store.save(RuntimeConfig.model_validate({
            "hosts": [{"id": "box"}],
            "backends": [{"id": "cpu"}],
            "models": [{"id": "qwen3-8b", "enabled": False}],
        }))
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"data": []}))
        host = AgentHost(
            base.settings, store=base.store, backend=ScriptedBackend(),
            model_client=ModelClient("http://h", transport=transport),
        )
        with pytest.raises(NoModelsAvailable):
            await host.start([])


# ── Runner ───────────────────────────────────────────────────

class TestAgentRunner:
    def _runner(self, backend, hooks):
        from idlehands.agent.agent_runner import AgentRunner
        from idlehands.agent.tool_executor import ToolExecutor
        return AgentRunner(backend, ToolExecutor(), hooks, model="m", session_id="chat:default")

    @pytest.mark.asyncio
    async def test_cancelled_turn_still_fires_ask_end(self):
        from idlehands.agent.hooks import HookBus
        from idlehands.agent.loop_control import TurnStatus
        events = []
        hooks = HookBus()
        hooks.on("ask_start", lambda p, c: events.append("ask_start"))
        hooks.on("ask_end", lambda p, c: events.append(("ask_end", p["status"])))
        started = asyncio.Event()

        async def hang(messages):
            started.set()
            await asyncio.sleep(10)

        runner = self._runner(ScriptedBackend(hang), hooks)
        task = asyncio.create_task(runner.run("hi"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert events == ["ask_start", ("ask_end", "aborted")]
        assert runner.state == TurnStatus.ABORTED

    @pytest.mark.asyncio
    async def test_tool_loop_error_from_backend_is_abort(self):
        from idlehands.agent.hooks import HookBus
        runner = self._runner(ScriptedBackend(RuntimeError("exec: tool-loop detected")), HookBus())
        result = await runner.run("hi")
        assert result.aborted
        assert result.error == "exec: tool-loop detected"

    @pytest.mark.asyncio
    async def test_runner_reusable_after_turn(self):
        from idlehands.agent.hooks import HookBus
        runner = self._runner(ScriptedBackend("one", "two"), HookBus())
        assert (await runner.run("a")).text == "one"
        assert (await runner.run("b")).text == "two"
