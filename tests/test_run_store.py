"""Tests for the run lifecycle service."""

import asyncio
from datetime import timedelta

import pytest

from runledger.exceptions import InvalidTransition, RunNotFoundError, ValidationError
from runledger.types import RunStatus


class TestStart:
    async def test_creates_pending_run(self, run_store, clock):
        run = await run_store.start("key-1", "support-agent", "react", {"message": "hi"})
        assert run.status is RunStatus.PENDING
        assert run.input == {"message": "hi"}
        assert run.current_iteration == 0
        assert run.created_at == clock.now
        assert run.timeout_at is None

    async def test_timeout_from_seconds(self, run_store, clock):
        run = await run_store.start("key-1", "a", "react", {}, 30)
        assert run.timeout_at == clock.now + timedelta(seconds=30)

    async def test_timeout_from_timedelta(self, run_store, clock):
        run = await run_store.start("key-1", "a", "react", {}, timedelta(minutes=2))
        assert run.timeout_at == clock.now + timedelta(minutes=2)

    async def test_same_key_returns_same_run(self, run_store):
        first = await run_store.start("key-1", "a", "react", {"n": 1})
        second = await run_store.start("key-1", "b", "plan", {"n": 2})
        assert second.id == first.id
        assert second.agent_kind == "a"
        assert second.input == {"n": 1}
        assert len(await run_store.list_runs()) == 1

    async def test_concurrent_same_key_creates_one_run(self, run_store):
        runs = await asyncio.gather(*(run_store.start("key-1", "a", "react", {}) for _ in range(10)))
        assert len({r.id for r in runs}) == 1
        assert len(await run_store.list_runs()) == 1

    async def test_initial_context(self, run_store):
        run = await run_store.start("key-1", "a", "react", {}, context={"tenant": "acme"})
        assert run.context == {"tenant": "acme"}

    @pytest.mark.parametrize(
        ("key", "agent", "loop", "payload"),
        [
            ("", "a", "react", {}),
            ("   ", "a", "react", {}),
            ("k" * 129, "a", "react", {}),
            ("key", "", "react", {}),
            ("key", "a", None, {}),
            ("key", "a", "react", "not a dict"),
            ("key", "a", "react", {"obj": object()}),
        ],
    )
    async def test_invalid_input_writes_nothing(self, run_store, key, agent, loop, payload):
        with pytest.raises(ValidationError):
            await run_store.start(key, agent, loop, payload)
        assert await run_store.list_runs() == []

    @pytest.mark.parametrize("timeout", [0, -5, timedelta(0), "30", True])
    async def test_invalid_timeout(self, run_store, timeout):
        with pytest.raises(ValidationError):
            await run_store.start("key-1", "a", "react", {}, timeout)


class TestReads:
    async def test_get_unknown(self, run_store):
        with pytest.raises(RunNotFoundError):
            await run_store.get("nope")

    async def test_list_filters(self, run_store):
        await run_store.start("k1", "support", "react", {})
        other = await run_store.start("k2", "billing", "react", {})
        await run_store.cancel(other)

        assert [r.caller_idempotency_key for r in await run_store.list_runs(agent_kind="billing")] == ["k2"]
        assert [r.caller_idempotency_key for r in await run_store.list_runs(status=RunStatus.PENDING)] == ["k1"]
        assert len(await run_store.list_runs(limit=1)) == 1


class TestTransitions:
    async def test_mark_running(self, run_store, clock):
        run = await run_store.start("key-1", "a", "react", {})
        clock.advance(5)
        running = await run_store.mark_running(run)
        assert running.status is RunStatus.RUNNING
        assert running.started_at == clock.now

    async def test_mark_running_twice(self, run_store):
        run = await run_store.mark_running(await run_store.start("key-1", "a", "react", {}))
        with pytest.raises(InvalidTransition) as exc_info:
            await run_store.mark_running(run)
        assert exc_info.value.run.status is RunStatus.RUNNING

    async def test_mark_completed(self, run_store, running_run):
        done = await run_store.mark_completed(running_run, "The answer", 3)
        assert done.status is RunStatus.COMPLETED
        assert done.output == {"text": "The answer", "iterations": 3}
        assert done.completed_at is not None

    async def test_mark_completed_twice_keeps_first_output(self, run_store, running_run):
        await run_store.mark_completed(running_run, "first", 1)
        with pytest.raises(InvalidTransition) as exc_info:
            await run_store.mark_completed(running_run, "second", 2)
        assert exc_info.value.run.output == {"text": "first", "iterations": 1}
        assert (await run_store.refresh(running_run)).output == {"text": "first", "iterations": 1}

    async def test_mark_completed_from_pending(self, run_store):
        run = await run_store.start("key-1", "a", "react", {})
        with pytest.raises(InvalidTransition):
            await run_store.mark_completed(run, "x", 1)

    async def test_mark_failed(self, run_store, running_run):
        failed = await run_store.mark_failed(running_run, "model unavailable")
        assert failed.status is RunStatus.FAILED
        assert failed.error == "model unavailable"
        assert failed.completed_at is not None

    async def test_mark_failed_from_pending(self, run_store):
        run = await run_store.start("key-1", "a", "react", {})
        assert (await run_store.mark_failed(run, "bad input")).status is RunStatus.FAILED

    async def test_stale_record_is_not_trusted(self, run_store, running_run):
        await run_store.cancel(running_run)
        # running_run still says RUNNING; the stored status wins
        with pytest.raises(InvalidTransition) as exc_info:
            await run_store.mark_completed(running_run, "x", 1)
        assert exc_info.value.run.status is RunStatus.CANCELLED


class TestCancel:
    async def test_cancel_pending(self, run_store, clock):
        run = await run_store.start("key-1", "a", "react", {})
        cancelled = await run_store.cancel(run)
        assert cancelled.status is RunStatus.CANCELLED
        assert cancelled.cancelled_at == clock.now

    async def test_cancel_is_idempotent(self, run_store, running_run, clock):
        first = await run_store.cancel(running_run)
        clock.advance(10)
        second = await run_store.cancel(running_run)
        assert second.status is RunStatus.CANCELLED
        assert second.cancelled_at == first.cancelled_at

    async def test_cancel_completed_run(self, run_store, running_run):
        await run_store.mark_completed(running_run, "done", 1)
        with pytest.raises(InvalidTransition) as exc_info:
            await run_store.cancel(running_run)
        assert exc_info.value.run.status is RunStatus.COMPLETED
        assert (await run_store.refresh(running_run)).status is RunStatus.COMPLETED

    async def test_is_cancelled_rereads(self, run_store, running_run):
        assert not await run_store.is_cancelled(running_run)
        await run_store.cancel(running_run)
        assert await run_store.is_cancelled(running_run)

    async def test_racing_complete_and_cancel(self, run_store, running_run):
        results = await asyncio.gather(
            run_store.mark_completed(running_run, "done", 1),
            run_store.cancel(running_run),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        final = await run_store.refresh(running_run)
        assert final.status is winners[0].status


class TestTimeout:
    async def test_no_timeout(self, run_store, clock):
        run = await run_store.start("key-1", "a", "react", {})
        clock.advance(10_000)
        assert not run_store.is_timed_out(run)

    async def test_evaluated_at_call_time(self, run_store, clock):
        run = await run_store.start("key-1", "a", "react", {}, 60)
        assert not run_store.is_timed_out(run)
        clock.advance(60)
        assert not run_store.is_timed_out(run)
        clock.advance(1)
        assert run_store.is_timed_out(run)


class TestMutableState:
    async def test_merge_context_is_shallow(self, run_store):
        run = await run_store.start("key-1", "a", "react", {}, context={"a": {"x": 1}, "b": 2})
        merged = await run_store.merge_context(run, {"a": {"y": 2}, "c": 3})
        assert merged.context == {"a": {"y": 2}, "b": 2, "c": 3}

    async def test_merge_context_unknown_run(self, run_store, running_run):
        from dataclasses import replace

        with pytest.raises(RunNotFoundError):
            await run_store.merge_context(replace(running_run, id="nope"), {"a": 1})

    async def test_advance_iteration_is_monotonic(self, run_store, running_run):
        run = await run_store.advance_iteration(running_run, 3)
        assert run.current_iteration == 3
        run = await run_store.advance_iteration(run, 2)
        assert run.current_iteration == 3

    async def test_advance_iteration_requires_running(self, run_store, running_run):
        await run_store.cancel(running_run)
        with pytest.raises(InvalidTransition):
            await run_store.advance_iteration(running_run, 1)


class TestContinueFrom:
    async def test_inherits_input_and_conversation(self, run_store, running_run):
        running_run = await run_store.merge_context(running_run, {"conversation_id": "conv-7"})
        cancelled = await run_store.cancel(running_run)

        follow_up = await run_store.continue_from(cancelled, "key-2")
        assert follow_up.id != cancelled.id
        assert follow_up.status is RunStatus.PENDING
        assert follow_up.input == cancelled.input
        assert follow_up.agent_kind == cancelled.agent_kind
        assert follow_up.context == {"resumed_from": cancelled.id, "conversation_id": "conv-7"}

    async def test_from_failed_run(self, run_store, running_run):
        failed = await run_store.mark_failed(running_run, "boom")
        follow_up = await run_store.continue_from(failed, "key-2", timeout=30)
        assert follow_up.context == {"resumed_from": failed.id}
        assert follow_up.timeout_at is not None

    async def test_not_from_active_or_completed(self, run_store, running_run):
        with pytest.raises(InvalidTransition):
            await run_store.continue_from(running_run, "key-2")
        await run_store.mark_completed(running_run, "done", 1)
        with pytest.raises(InvalidTransition):
            await run_store.continue_from(running_run, "key-2")
