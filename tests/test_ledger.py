"""Tests for the append-only checkpoint ledger."""

import asyncio

import pytest

from runledger.exceptions import RunNotFoundError, ValidationError
from runledger.idempotency import tool_call_key
from runledger.types import CheckpointStatus, CheckpointType


class TestAppend:
    async def test_sequences_start_at_one(self, ledger, running_run):
        first = await ledger.append(running_run.id, "iteration_start", {"iteration": 1}, 1)
        second = await ledger.append(
            running_run.id,
            CheckpointType.THOUGHT,
            {"text": "done", "has_tool_calls": False, "tool_count": 0, "iteration": 1},
            1,
        )
        assert (first.sequence, second.sequence) == (1, 2)
        assert second.type is CheckpointType.THOUGHT
        assert second.status is CheckpointStatus.COMPLETED

    async def test_durable_before_return(self, ledger, running_run):
        checkpoint = await ledger.append(running_run.id, "iteration_start", {"iteration": 1}, 1)
        assert await ledger.list_for_run(running_run.id) == [checkpoint]

    async def test_concurrent_appends_are_gapless(self, ledger, running_run):
        await asyncio.gather(
            *(ledger.append(running_run.id, "iteration_start", {"iteration": i}, i) for i in range(1, 11))
        )
        checkpoints = await ledger.list_for_run(running_run.id)
        assert [c.sequence for c in checkpoints] == list(range(1, 11))

    async def test_runs_are_numbered_independently(self, ledger, run_store):
        a = await run_store.mark_running(await run_store.start("a", "agent", "react", {}))
        b = await run_store.mark_running(await run_store.start("b", "agent", "react", {}))
        await ledger.append(a.id, "iteration_start", {"iteration": 1}, 1)
        await ledger.append(a.id, "iteration_start", {"iteration": 2}, 2)
        only_b = await ledger.append(b.id, "iteration_start", {"iteration": 1}, 1)
        assert only_b.sequence == 1

    async def test_unknown_run(self, ledger):
        with pytest.raises(RunNotFoundError):
            await ledger.append("missing", "iteration_start", {"iteration": 1}, 1)

    async def test_invalid_payload_writes_nothing(self, ledger, running_run):
        with pytest.raises(ValidationError):
            await ledger.append(running_run.id, "thought", {"text": "x"}, 1)
        assert await ledger.list_for_run(running_run.id) == []

    async def test_unknown_type(self, ledger, running_run):
        with pytest.raises(ValidationError, match="Unknown checkpoint type"):
            await ledger.append(running_run.id, "reflection", {}, 1)

    @pytest.mark.parametrize("iteration", [-1, 1.5, True, "1"])
    async def test_bad_iteration(self, ledger, running_run, iteration):
        with pytest.raises(ValidationError):
            await ledger.append(running_run.id, "observation", {"text": "x", "iteration": 1}, iteration)

    async def test_key_only_on_tool_checkpoints(self, ledger, running_run):
        with pytest.raises(ValidationError, match="only allowed on tool checkpoints"):
            await ledger.append(running_run.id, "observation", {"text": "x", "iteration": 1}, 1, "some-key")

    async def test_failed_status(self, ledger, running_run):
        checkpoint = await ledger.append(
            running_run.id,
            "tool_result",
            {"tool": "t", "args": {}, "result": {"error": "x"}, "iteration": 1},
            1,
            "k",
            status=CheckpointStatus.FAILED,
        )
        assert checkpoint.status is CheckpointStatus.FAILED


class TestListForRun:
    async def test_after_sequence(self, ledger, running_run):
        for i in range(1, 5):
            await ledger.append(running_run.id, "iteration_start", {"iteration": i}, i)
        tail = await ledger.list_for_run(running_run.id, after_sequence=2)
        assert [c.sequence for c in tail] == [3, 4]

    async def test_repeatable(self, ledger, running_run):
        await ledger.append(running_run.id, "iteration_start", {"iteration": 1}, 1)
        assert await ledger.list_for_run(running_run.id) == await ledger.list_for_run(running_run.id)

    async def test_empty(self, ledger, running_run):
        assert await ledger.list_for_run(running_run.id) == []


class TestToolCalls:
    async def test_record_call_and_result(self, ledger, running_run):
        key, start = await ledger.record_tool_call(running_run.id, 1, "search", {"q": "x"})
        assert key == tool_call_key(running_run.id, 1, "search", {"q": "x"})
        assert start.type is CheckpointType.TOOL_CALL_START
        assert start.idempotency_key == key

        result = await ledger.record_tool_result(running_run.id, 1, "search", {"q": "x"}, ["hit"])
        assert result.idempotency_key == key
        assert result.data == {"tool": "search", "args": {"q": "x"}, "result": ["hit"], "iteration": 1}

    async def test_find_by_key_matches_results_only(self, ledger, running_run):
        key, start = await ledger.record_tool_call(running_run.id, 1, "search", {"q": "x"})
        assert await ledger.find_by_idempotency_key(key) is None
        assert await ledger.find_by_idempotency_key(key, checkpoint_type=None) == start

        result = await ledger.record_tool_result(running_run.id, 1, "search", {"q": "x"}, 42)
        assert await ledger.find_by_idempotency_key(key) == result

    async def test_find_unknown_key(self, ledger):
        assert await ledger.find_by_idempotency_key("run:1:tool:abc") is None

    async def test_failed_result_is_found(self, ledger, running_run):
        key, _ = await ledger.record_tool_call(running_run.id, 1, "charge", {"amount": 5})
        await ledger.record_tool_result(running_run.id, 1, "charge", {"amount": 5}, {"error": "declined"}, failed=True)
        found = await ledger.find_by_idempotency_key(key)
        assert found.status is CheckpointStatus.FAILED
        assert found.data["result"] == {"error": "declined"}

    async def test_explicit_key(self, ledger, running_run):
        key, _ = await ledger.record_tool_call(running_run.id, 2, "search", {"q": "x"})
        result = await ledger.record_tool_result(running_run.id, 2, "search", {"q": "x"}, "ok", idempotency_key=key)
        assert result.idempotency_key == key
