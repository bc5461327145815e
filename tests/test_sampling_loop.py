from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from computer_use_runtime.core.sampling_loop import SamplingLoop, SamplingSettings
from computer_use_runtime.llm.fake import FakeMessagesBackend, FakeMessagesCall
from computer_use_runtime.llm.retry import RetryPolicy
from computer_use_runtime.prompts.history import HistorySettings
from computer_use_runtime.signals.bus import SignalBus
from computer_use_runtime.signals.events import SignalEvent, SignalEventKind
from computer_use_runtime.tools.dispatcher import ToolDispatcher
from computer_use_runtime.tools.protocol import FunctionTool, ToolExecutionContext, ToolResult


class _RecordingTool(FunctionTool):
    """记录调用并可在执行中触发回调的测试工具。"""

    name = "lookup"
    description = "test lookup"

    def __init__(self, hook: Optional[Callable[[ToolExecutionContext], None]] = None, fail: bool = False) -> None:
        self.hook = hook
        self.fail = fail
        self.contexts: List[ToolExecutionContext] = []

    async def call(self, args: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        self.contexts.append(ctx)
        if self.hook is not None:
            self.hook(ctx)
        if self.fail:
            raise RuntimeError("lookup exploded")
        return ToolResult(output=f"looked up {args.get('q')}", base64_image="SU1H")


def _tool_use(tool_id: str, q: str = "x") -> FakeMessagesCall:
    return FakeMessagesCall(
        content=[
            {"type": "text", "text": "working"},
            {"type": "thinking", "thinking": "plan", "signature": "sig"},
            {"type": "tool_use", "id": tool_id, "name": "lookup", "input": {"q": q}},
        ],
        stop_reason="tool_use",
    )


def _done(text: str = "all done") -> FakeMessagesCall:
    return FakeMessagesCall(content=[{"type": "text", "text": text}], stop_reason="end_turn")


def _loop(
    backend: FakeMessagesBackend,
    tool: _RecordingTool,
    bus: Optional[SignalBus] = None,
    **settings: Any,
) -> SamplingLoop:
    return SamplingLoop(
        backend=backend,
        dispatcher=ToolDispatcher([tool]),
        bus=bus or SignalBus(),
        system_prompt="be helpful",
        settings=SamplingSettings(model="test-model", **settings),
        retry_policy=RetryPolicy(initial_delay_ms=1),
        page="page-handle",
        run_id="run-1",
    )


def _start() -> List[Dict[str, Any]]:
    return [{"role": "user", "content": "find the price"}]


def _record(bus: SignalBus) -> List[SignalEvent]:
    events: List[SignalEvent] = []
    for kind in SignalEventKind:
        bus.on(kind, events.append)
    return events


# ----------------------------------------------------------------------
# 基本流程
# ----------------------------------------------------------------------


def test_loop_alternates_model_calls_and_tool_results() -> None:
    backend = FakeMessagesBackend([_tool_use("t1", "a"), _tool_use("t2", "b"), _done()])
    tool = _RecordingTool()
    bus = SignalBus()

    messages = asyncio.run(_loop(backend, tool, bus).run(_start()))

    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant", "user", "assistant"]
    assert backend.calls_made == 3
    # reasoning 排在最前
    assert [b["type"] for b in messages[1]["content"]] == ["thinking", "text", "tool_use"]
    results = messages[2]["content"]
    assert len(results) == 1
    assert results[0]["tool_use_id"] == "t1"
    assert results[0]["content"][0] == {"type": "text", "text": "looked up a"}
    assert messages[-1]["content"] == [{"type": "text", "text": "all done"}]
    assert bus.step == 2
    assert [c.step for c in tool.contexts] == [0, 1]
    assert tool.contexts[0].page == "page-handle"
    assert tool.contexts[0].run_id == "run-1"
    assert tool.contexts[0].cancellation_token is bus.cancellation_token


def test_request_carries_betas_system_cache_and_tools() -> None:
    backend = FakeMessagesBackend([_done()])
    asyncio.run(_loop(backend, _RecordingTool(), thinking_budget=1024, token_efficient_tools_beta=True).run(_start()))

    req = backend.requests[0]
    assert req.model == "test-model"
    assert req.betas == ["computer-use-2025-01-24", "prompt-caching-2024-07-31", "token-efficient-tools-2025-02-19"]
    assert req.system == [{"type": "text", "text": "be helpful", "cache_control": {"type": "ephemeral"}}]
    assert req.thinking == {"type": "enabled", "budget_tokens": 1024}
    assert [t["name"] for t in req.tools] == ["lookup"]


def test_prompt_caching_off_skips_cache_hints() -> None:
    backend = FakeMessagesBackend([_tool_use("t1"), _done()])
    asyncio.run(_loop(backend, _RecordingTool(), prompt_caching=False).run(_start()))

    second = backend.requests[1]
    assert "prompt-caching-2024-07-31" not in second.betas
    assert "cache_control" not in second.system[0]
    assert "cache_control" not in second.messages[-1]["content"][-1]


def test_history_is_prepared_before_each_call() -> None:
    calls = [_tool_use(f"t{i}") for i in range(4)] + [_done()]
    backend = FakeMessagesBackend(calls)
    settings = HistorySettings(max_messages=5, images_to_keep=1, min_image_removal_threshold=1)

    asyncio.run(_loop(backend, _RecordingTool(), history=settings).run(_start()))

    last = backend.requests[-1].messages
    assert len(last) <= 5
    assert last[0]["content"] == "find the price"
    images = [
        item
        for m in last
        if isinstance(m["content"], list)
        for b in m["content"]
        if b.get("type") == "tool_result"
        for item in b["content"]
        if item.get("type") == "image"
    ]
    assert len(images) == 1
    assert last[-1]["content"][-1]["cache_control"] == {"type": "ephemeral"}


def test_no_tool_use_without_end_turn_still_ends() -> None:
    backend = FakeMessagesBackend([FakeMessagesCall(content=[{"type": "text", "text": "partial"}], stop_reason="max_tokens")])
    messages = asyncio.run(_loop(backend, _RecordingTool()).run(_start()))
    assert messages[-1]["role"] == "assistant"
    assert backend.calls_made == 1


def test_transient_model_errors_are_retried() -> None:
    backend = FakeMessagesBackend([FakeMessagesCall(error=RuntimeError("Connection error")), _done()])
    messages = asyncio.run(_loop(backend, _RecordingTool()).run(_start()))
    assert backend.calls_made == 2
    assert messages[-1]["content"][0]["text"] == "all done"


def test_invalid_backend_is_rejected() -> None:
    class _NoCreate:
        pass

    with pytest.raises(ValueError, match="protocol mismatch"):
        _loop(_NoCreate(), _RecordingTool())  # type: ignore[arg-type]


# ----------------------------------------------------------------------
# 信号
# ----------------------------------------------------------------------


def test_cancel_before_start_makes_no_model_call() -> None:
    backend = FakeMessagesBackend([_done()])
    bus = SignalBus()
    bus.send("cancel")
    messages = asyncio.run(_loop(backend, _RecordingTool(), bus).run(_start()))
    assert messages == _start()
    assert backend.calls_made == 0


def test_cancel_during_tool_stops_before_next_model_call() -> None:
    bus = SignalBus()
    events = _record(bus)
    backend = FakeMessagesBackend([_tool_use("t1"), _done()])
    tool = _RecordingTool(hook=lambda ctx: bus.send("cancel", reason="user"))

    messages = asyncio.run(_loop(backend, tool, bus).run(_start()))

    assert backend.calls_made == 1
    # 结果仍然成对回注
    assert messages[-1]["role"] == "user"
    assert messages[-1]["content"][0]["tool_use_id"] == "t1"
    assert [e.kind for e in events] == [SignalEventKind.CANCEL]
    assert tool.contexts[0].cancellation_token is not None
    assert tool.contexts[0].cancellation_token.cancelled


def test_pause_suspends_until_resume() -> None:
    bus = SignalBus()
    events = _record(bus)
    backend = FakeMessagesBackend([_tool_use("t1"), _done()])

    def _pause_then_schedule_resume(_ctx: ToolExecutionContext) -> None:
        bus.send("pause")
        asyncio.get_running_loop().call_later(0.02, bus.send, "resume")

    tool = _RecordingTool(hook=_pause_then_schedule_resume)
    messages = asyncio.run(_loop(backend, tool, bus).run(_start()))

    assert backend.calls_made == 2
    assert messages[-1]["content"][0]["text"] == "all done"
    assert [e.kind for e in events] == [SignalEventKind.PAUSE, SignalEventKind.RESUME]
    assert all(e.step == 1 for e in events)


def test_cancel_while_paused_ends_run() -> None:
    bus = SignalBus()
    events = _record(bus)
    backend = FakeMessagesBackend([_tool_use("t1"), _done()])

    def _pause_then_schedule_cancel(_ctx: ToolExecutionContext) -> None:
        bus.send("pause")
        asyncio.get_running_loop().call_later(0.02, bus.send, "cancel")

    asyncio.run(_loop(backend, _RecordingTool(hook=_pause_then_schedule_cancel), bus).run(_start()))

    assert backend.calls_made == 1
    assert [e.kind for e in events] == [SignalEventKind.PAUSE, SignalEventKind.CANCEL]


def test_tool_failure_emits_error_and_aborts_without_partial_results() -> None:
    bus = SignalBus()
    events = _record(bus)
    backend = FakeMessagesBackend([_tool_use("t1"), _done()])
    messages = _start()

    with pytest.raises(RuntimeError, match="lookup exploded"):
        asyncio.run(_loop(backend, _RecordingTool(fail=True), bus).run(messages))

    assert messages[-1]["role"] == "assistant"
    assert backend.calls_made == 1
    assert len(events) == 1
    assert events[0].kind is SignalEventKind.ERROR
    assert str(getattr(events[0], "error")) == "lookup exploded"


def test_unknown_tool_request_is_a_hard_error() -> None:
    bus = SignalBus()
    events = _record(bus)
    call = FakeMessagesCall(
        content=[{"type": "tool_use", "id": "t1", "name": "ghost", "input": {}}],
        stop_reason="tool_use",
    )
    with pytest.raises(Exception, match="Tool ghost not found"):
        asyncio.run(_loop(FakeMessagesBackend([call]), _RecordingTool(), bus).run(_start()))
    assert [e.kind for e in events] == [SignalEventKind.ERROR]


def test_cancelled_flag_reflects_checkpoint_exit() -> None:
    bus = SignalBus()
    bus.send("cancel")
    loop = _loop(FakeMessagesBackend([_done()]), _RecordingTool(), bus)
    asyncio.run(loop.run(_start()))
    assert loop.cancelled


def test_cancel_during_last_model_call_is_not_a_cancelled_exit() -> None:
    bus = SignalBus()

    class _CancellingBackend(FakeMessagesBackend):
        async def create_message(self, request):  # type: ignore[no-untyped-def]
            bus.send("cancel")
            return await super().create_message(request)

    loop = _loop(_CancellingBackend([_done("final")]), _RecordingTool(), bus)
    messages = asyncio.run(loop.run(_start()))

    assert not loop.cancelled
    assert bus.is_cancelling()
    assert messages[-1]["content"] == [{"type": "text", "text": "final"}]


def test_metadata_is_passed_to_tool_context() -> None:
    tool = _RecordingTool()
    loop = SamplingLoop(
        backend=FakeMessagesBackend([_tool_use("t1"), _done()]),
        dispatcher=ToolDispatcher([tool]),
        bus=SignalBus(),
        system_prompt="be helpful",
        settings=SamplingSettings(model="test-model"),
        retry_policy=RetryPolicy(initial_delay_ms=1),
        metadata={"session": "s-1"},
    )
    asyncio.run(loop.run(_start()))
    assert tool.contexts[0].metadata == {"session": "s-1"}
