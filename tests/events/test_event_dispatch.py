"""Tests for event types, processors and the dispatcher."""

from __future__ import annotations

import pytest

from runledger.events import (
    AsyncEventProcessor,
    EventDispatcher,
    EventProcessor,
    IterationStartEvent,
    RunEndEvent,
    RunStartEvent,
    ToolCallEvent,
    TypedEventProcessor,
)
from runledger.types import LoopOutcome


class _Collecting(EventProcessor):
    def __init__(self):
        self.events = []
        self.shut_down = False

    def on_event(self, event):
        self.events.append(event)

    def shutdown(self):
        self.shut_down = True


class _AsyncCollecting(AsyncEventProcessor):
    def __init__(self):
        self.events = []
        self.shut_down = False

    def on_event(self, event):
        raise AssertionError("async processors get on_event_async")

    async def on_event_async(self, event):
        self.events.append(event)

    async def shutdown_async(self):
        self.shut_down = True


class _Failing(EventProcessor):
    def on_event(self, event):
        raise RuntimeError("processor exploded")


class TestEventTypes:
    def test_span_ids_are_unique(self):
        a = RunStartEvent(run_id="r")
        b = RunStartEvent(run_id="r")
        assert a.span_id != b.span_id
        assert len(a.span_id) == 16

    def test_run_end_accepts_outcome_value(self):
        event = RunEndEvent(run_id="r", outcome="cancelled")
        assert event.outcome is LoopOutcome.CANCELLED

    def test_frozen(self):
        event = IterationStartEvent(run_id="r", iteration=1)
        with pytest.raises(AttributeError):
            event.iteration = 2  # type: ignore[misc]


class TestTypedEventProcessor:
    def test_dispatches_by_type(self):
        seen = []

        class Handler(TypedEventProcessor):
            def on_run_start(self, event):
                seen.append(("start", event.agent_kind))

            def on_tool_call(self, event):
                seen.append(("tool", event.tool))

        handler = Handler()
        handler.on_event(RunStartEvent(run_id="r", agent_kind="support"))
        handler.on_event(ToolCallEvent(run_id="r", tool="search"))
        handler.on_event(IterationStartEvent(run_id="r", iteration=1))
        assert seen == [("start", "support"), ("tool", "search")]


class TestEventDispatcher:
    def test_inactive_without_processors(self):
        assert not EventDispatcher().active
        assert EventDispatcher([_Collecting()]).active

    def test_emit_fans_out(self):
        first, second = _Collecting(), _Collecting()
        event = RunStartEvent(run_id="r")
        EventDispatcher([first, second]).emit(event)
        assert first.events == [event]
        assert second.events == [event]

    async def test_emit_async_prefers_async_handlers(self):
        sync_proc, async_proc = _Collecting(), _AsyncCollecting()
        event = IterationStartEvent(run_id="r", iteration=3)
        await EventDispatcher([sync_proc, async_proc]).emit_async(event)
        assert sync_proc.events == [event]
        assert async_proc.events == [event]

    def test_failing_processor_is_logged(self, caplog):
        survivor = _Collecting()
        EventDispatcher([_Failing(), survivor]).emit(RunStartEvent(run_id="r"))
        assert len(survivor.events) == 1
        assert "failed on RunStartEvent" in caplog.text

    def test_strict_mode_raises(self):
        with pytest.raises(RuntimeError, match="processor exploded"):
            EventDispatcher([_Failing()], strict=True).emit(RunStartEvent(run_id="r"))

    async def test_shutdown_async(self):
        sync_proc, async_proc = _Collecting(), _AsyncCollecting()
        await EventDispatcher([sync_proc, async_proc]).shutdown_async()
        assert sync_proc.shut_down
        assert async_proc.shut_down
