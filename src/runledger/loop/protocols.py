"""Capabilities the execution loop consumes but does not implement."""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NextAction:
    """What the model wants to do next.

    No tool calls means *text* is the final answer.
    """

    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


class ToolInvoker(Protocol):
    """Runs tools. Failures are reported by raising ``ToolExecutionError``.

    ``invoke`` may be a coroutine function or a plain function.
    """

    def invoke(self, name: str, args: dict[str, Any]) -> Any | Awaitable[Any]: ...


class ModelCompletion(Protocol):
    """Produces the next action from instructions and conversation history."""

    def complete(self, instructions: str, history: list[dict[str, Any]]) -> NextAction | Awaitable[NextAction]: ...


class HistoryStore(Protocol):
    """Holds conversation messages, addressed by an opaque id.

    The ledger only ever stores the id (in the run's ``context``).
    """

    def create(self) -> str | Awaitable[str]: ...

    def load(self, conversation_id: str) -> list[dict[str, Any]] | Awaitable[list[dict[str, Any]]]: ...

    def append(self, conversation_id: str, message: dict[str, Any]) -> None | Awaitable[None]: ...
