"""Shared fixtures: storage backends, a controllable clock, and fake collaborators.

The fakes stand in for the model, the tools and the conversation store so
the loop can be exercised end to end without external services.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from runledger.exceptions import ToolExecutionError
from runledger.ledger import CheckpointLedger
from runledger.loop import NextAction, ToolCall
from runledger.run_store import RunStore
from runledger.storage import InMemoryStorage


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTools:
    """Tool invoker backed by plain functions; records every invocation."""

    def __init__(self, **handlers: Callable[..., Any]):
        self.handlers = handlers
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def invoke(self, name: str, args: dict[str, Any]) -> Any:
        self.calls.append((name, args))
        handler = self.handlers.get(name)
        if handler is None:
            raise ToolExecutionError(name, "unknown tool")
        return handler(**args)

    def count(self, name: str) -> int:
        return sum(1 for called, _ in self.calls if called == name)


class ScriptedModel:
    """Model that replays a fixed list of actions, one per call."""

    def __init__(self, actions: list[NextAction]):
        self.actions = list(actions)
        self.calls: list[list[dict[str, Any]]] = []

    async def complete(self, instructions: str, history: list[dict[str, Any]]) -> NextAction:
        self.calls.append(list(history))
        if not self.actions:
            return NextAction(text="still thinking", tool_calls=(ToolCall("noop"),))
        return self.actions.pop(0)


class MemoryHistory:
    """Conversation store keeping messages in a dict."""

    def __init__(self) -> None:
        self.conversations: dict[str, list[dict[str, Any]]] = {}

    async def create(self) -> str:
        conversation_id = f"conv-{len(self.conversations) + 1}"
        self.conversations[conversation_id] = []
        return conversation_id

    async def load(self, conversation_id: str) -> list[dict[str, Any]]:
        return list(self.conversations[conversation_id])

    async def append(self, conversation_id: str, message: dict[str, Any]) -> None:
        self.conversations[conversation_id].append(message)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
async def storage(request, tmp_path):
    """Every storage-backed test runs against both backends."""
    if request.param == "memory":
        yield InMemoryStorage()
        return
    pytest.importorskip("aiosqlite")
    from runledger.storage import SqliteStorage

    backend = SqliteStorage(str(tmp_path / "ledger.db"))
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def run_store(storage, clock):
    return RunStore(storage, clock=clock)


@pytest.fixture
def ledger(storage):
    return CheckpointLedger(storage)


@pytest.fixture
async def running_run(run_store):
    """A run already in ``running``."""
    run = await run_store.start("key-1", "support-agent", "react", {"message": "hello"})
    return await run_store.mark_running(run)


@pytest.fixture
def history():
    return MemoryHistory()


@pytest.fixture
def scripted_model():
    """Factory: ``scripted_model([NextAction(...), ...])``."""
    return ScriptedModel


@pytest.fixture
def fake_tools():
    """Factory: ``fake_tools(search=lambda q: ...)``."""
    return FakeTools
