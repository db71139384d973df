"""Event types emitted while a run is driven."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from runledger.types import LoopOutcome


def _generate_span_id() -> str:
    """Generate a unique span ID."""
    return uuid.uuid4().hex[:16]


def _now() -> float:
    """Current timestamp."""
    return time.time()


@dataclass(frozen=True)
class BaseEvent:
    """Base class for all execution events.

    Attributes:
        run_id: Run that produced this event.
        span_id: Unique identifier for this event's scope.
        parent_span_id: Span ID of the enclosing scope, or None for the run itself.
        timestamp: Unix timestamp when the event was created.
    """

    run_id: str
    span_id: str = field(default_factory=_generate_span_id)
    parent_span_id: str | None = None
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class RunStartEvent(BaseEvent):
    """Emitted when an executor starts (or resumes) driving a run.

    Attributes:
        agent_kind: Agent being run.
        loop_kind: Loop strategy.
        start_iteration: First iteration this executor will run.
        max_iterations: Iteration bound in force.
        resumed: Whether the ledger already had checkpoints.
    """

    agent_kind: str = ""
    loop_kind: str = ""
    start_iteration: int = 1
    max_iterations: int = 0
    resumed: bool = False


@dataclass(frozen=True)
class IterationStartEvent(BaseEvent):
    """Emitted when an iteration begins."""

    iteration: int = 0


@dataclass(frozen=True)
class CheckpointEvent(BaseEvent):
    """Emitted after every checkpoint is durably appended.

    Attributes:
        sequence: The checkpoint's sequence number.
        checkpoint_type: Its type value (``thought``, ``tool_result``, ...).
        iteration: Iteration it belongs to.
        data: Its payload.
        status: ``completed`` or ``failed``.
    """

    sequence: int = 0
    checkpoint_type: str = ""
    iteration: int = 0
    data: dict[str, Any] = field(default_factory=dict)
    status: str = "completed"


@dataclass(frozen=True)
class ToolCallEvent(BaseEvent):
    """Emitted when a tool call is resolved.

    Attributes:
        tool: Tool name.
        args: Arguments it was called with.
        idempotency_key: The call's key.
        iteration: Iteration it belongs to.
        failed: Whether the recorded result is a failure.
        replayed: The result came from the ledger; the tool was not invoked.
        duration_ms: Invocation time (0 when replayed).
    """

    tool: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str = ""
    iteration: int = 0
    failed: bool = False
    replayed: bool = False
    duration_ms: float = 0.0


@dataclass(frozen=True)
class RunEndEvent(BaseEvent):
    """Emitted when an executor stops driving a run.

    Attributes:
        outcome: How the drive ended.
        iterations: Iterations run so far.
        text: Final text, if any.
        error: Error message, if the run failed.
        duration_ms: Time spent in this drive.
    """

    outcome: LoopOutcome = LoopOutcome.COMPLETED
    iterations: int = 0
    text: str | None = None
    error: str | None = None
    duration_ms: float = 0.0

    def __post_init__(self) -> None:
        if isinstance(self.outcome, str):
            object.__setattr__(self, "outcome", LoopOutcome(self.outcome))


Event = RunStartEvent | IterationStartEvent | CheckpointEvent | ToolCallEvent | RunEndEvent
