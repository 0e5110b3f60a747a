"""
Hook Bus Tests — ordered fan-out, failure isolation, loop-break propagation,
capability redaction, strict mode, snapshot.
"""

import asyncio

import pytest


class TestHookBusDispatch:
    @pytest.mark.asyncio
    async def test_handlers_run_in_registration_order(self):
        from idlehands.agent.hooks import HookBus, HookEvent, HookPlugin
        bus = HookBus()
        order = []

        async def first(payload, ctx):
            order.append("first")

        def second(payload, ctx):
            order.append("second")

        bus.register_plugin(HookPlugin(name="a", hooks={"ask_start": first}))
        bus.register_plugin(HookPlugin(name="b", hooks={HookEvent.ASK_START: [second, first]}))
        await bus.emit(HookEvent.ASK_START, {"ask_id": "1"})
        assert order == ["first", "second", "first"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        from idlehands.agent.hooks import HookBus, HookPlugin
        bus = HookBus()
        seen = []

        def broken(payload, ctx):
            raise ValueError("observer bug")

        bus.register_plugin(HookPlugin(name="broken", hooks={"ask_end": broken}))
        bus.register_plugin(HookPlugin(name="ok", hooks={"ask_end": lambda p, c: seen.append(p["ask_id"])}))
        await bus.emit("ask_end", {"ask_id": "a1", "turns": 1, "tool_calls": 0})
        assert seen == ["a1"]
        assert "observer bug" in bus.snapshot()["recent_errors"][0]

    @pytest.mark.asyncio
    async def test_hanging_handler_times_out(self):
        from idlehands.agent.hooks import HookBus, HookPlugin
        bus = HookBus(handler_timeout=0.05, warn_ms=0)
        seen = []

        async def hang(payload, ctx):
            await asyncio.sleep(10)

        bus.register_plugin(HookPlugin(name="hang", hooks={"turn_start": hang}))
        bus.on("turn_start", lambda p, c: seen.append("after"))
        await bus.emit("turn_start", {})
        assert seen == ["after"]
        assert "timed out" in bus.snapshot()["recent_errors"][0]

    @pytest.mark.asyncio
    async def test_loop_break_propagates(self):
        from idlehands.agent.hooks import HookBus, HookPlugin
        from idlehands.agent.loop_control import AgentLoopBreak
        bus = HookBus()
        later = []

        def stop(payload, ctx):
            raise AgentLoopBreak("policy violation")

        bus.register_plugin(HookPlugin(name="guard", hooks={"ask_start": stop}))
        bus.on("ask_start", lambda p, c: later.append(1))
        with pytest.raises(AgentLoopBreak, match="policy violation"):
            await bus.emit("ask_start", {"ask_id": "x", "instruction": "hi"})
        assert later == []

    @pytest.mark.asyncio
    async def test_context_passed_to_handlers(self):
        from idlehands.agent.hooks import HookBus, HookContext
        bus = HookBus(context=lambda: HookContext(model="global"))
        models = []
        bus.on("ask_start", lambda p, c: models.append(c.model))
        await bus.emit("ask_start", {})
        await bus.emit("ask_start", {}, context=HookContext(model="qwen3", session_id="line:default"))
        assert models == ["global", "qwen3"]

    @pytest.mark.asyncio
    async def test_slow_handler_recorded(self):
        from idlehands.agent.hooks import HookBus
        bus = HookBus(warn_ms=1)

        async def slow(payload, ctx):
            await asyncio.sleep(0.02)

        bus.on("tool_call", slow, source="slowpoke")
        await bus.emit("tool_call", {})
        assert "slowpoke" in bus.snapshot()["recent_slow_handlers"][0]


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_observe_only_sees_redacted_payloads(self):
        from idlehands.agent.hooks import HookBus, HookPlugin
        bus = HookBus()
        seen = {}

        bus.register_plugin(HookPlugin(name="obs", hooks={
            "ask_start": lambda p, c: seen.setdefault("start", p),
            "ask_end": lambda p, c: seen.setdefault("end", p),
            "tool_call": lambda p, c: seen.setdefault("call", p),
            "tool_result": lambda p, c: seen.setdefault("result", p),
        }))
        await bus.emit("ask_start", {"ask_id": "1", "instruction": "secret prompt"})
        await bus.emit("ask_end", {"ask_id": "1", "text": "secret answer", "turns": 2})
        await bus.emit("tool_call", {"call": {"name": "exec", "args": {"cmd": "cat key"}}})
        await bus.emit("tool_result", {"result": {"content": "KEY=1", "status": "ok"}})

        assert "redacted" in seen["start"]["instruction"]
        assert "redacted" in seen["end"]["text"] and seen["end"]["turns"] == 2
        assert seen["call"]["call"] == {"name": "exec", "args": {}}
        assert "redacted" in seen["result"]["result"]["content"]

    @pytest.mark.asyncio
    async def test_granted_capability_sees_raw_prompt(self):
        from idlehands.agent.hooks import HookBus, HookPlugin
        bus = HookBus(allowed_capabilities=["observe", "read_prompts"])
        seen = []
        bus.register_plugin(HookPlugin(
            name="audit",
            hooks={"ask_start": lambda p, c: seen.append(p["instruction"])},
            capabilities=["read_prompts"],
        ))
        await bus.emit("ask_start", {"instruction": "hello"})
        assert seen == ["hello"]

    @pytest.mark.asyncio
    async def test_handlers_get_a_copy(self):
        from idlehands.agent.hooks import HookBus
        bus = HookBus()

        def mutate(payload, ctx):
            payload["turns"] = 99

        bus.on("ask_end", mutate)
        payload = {"turns": 1}
        await bus.emit("ask_end", payload)
        assert payload["turns"] == 1

    def test_denied_capability_logged_not_granted(self):
        from idlehands.agent.hooks import HookBus, HookPlugin
        bus = HookBus()
        bus.register_plugin(HookPlugin(name="greedy", hooks={}, capabilities=["read_responses", "bogus"]))
        plugin = bus.snapshot()["plugins"][0]
        assert plugin["granted_capabilities"] == ["observe"]
        assert plugin["denied_capabilities"] == ["read_responses"]


class TestStrictMode:
    @pytest.mark.asyncio
    async def test_handler_failure_raises(self):
        from idlehands.agent.hooks import HookBus, HookError
        bus = HookBus(strict=True)
        bus.on("ask_end", lambda p, c: 1 / 0)
        with pytest.raises(HookError, match="ask_end handler failed"):
            await bus.emit("ask_end", {})

    def test_denied_capability_raises(self):
        from idlehands.agent.hooks import HookBus, HookError, HookPlugin
        bus = HookBus(strict=True)
        with pytest.raises(HookError, match="denied capabilities"):
            bus.register_plugin(HookPlugin(name="p", capabilities=["read_tool_args"]))

    def test_unknown_event_raises(self):
        from idlehands.agent.hooks import HookBus, HookError, HookPlugin
        bus = HookBus(strict=True)
        with pytest.raises(HookError, match="unknown event"):
            bus.register_plugin(HookPlugin(name="p", hooks={"before_everything": lambda p, c: None}))


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_disabled_bus_ignores_everything(self):
        from idlehands.agent.hooks import HookBus
        bus = HookBus(enabled=False)
        calls = []
        bus.on("ask_start", lambda p, c: calls.append(1))
        await bus.emit("ask_start", {})
        assert calls == [] and bus.handler_count() == 0

    @pytest.mark.asyncio
    async def test_snapshot_and_unregister(self):
        from idlehands.agent.hooks import HookBus
        bus = HookBus()

        def handler(p, c):
            return None

        bus.on("ask_start", handler, source="me")
        await bus.emit("ask_start", {})
        snap = bus.snapshot()
        assert snap["handlers"] == [{"event": "ask_start", "source": "me"}]
        assert snap["event_counts"] == {"ask_start": 1}
        assert bus.unregister("ask_start", handler) is True
        assert bus.handler_count("ask_start") == 0

    def test_unregister_plugin_removes_its_handlers_only(self):
        from idlehands.agent.hooks import HookBus, HookPlugin
        bus = HookBus()
        bus.register_plugin(HookPlugin(name="a", hooks={"ask_start": lambda p, c: None, "ask_end": lambda p, c: None}))
        bus.register_plugin(HookPlugin(name="b", hooks={"ask_start": lambda p, c: None}))
        assert bus.unregister_plugin("a") == 2
        assert bus.handler_count() == 1
        assert [p["name"] for p in bus.snapshot()["plugins"]] == ["b"]
