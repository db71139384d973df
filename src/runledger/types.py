"""Record types for runs, checkpoints and leases."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from runledger.payloads import Payload


def utcnow() -> datetime:
    """UTC-aware datetime (avoids deprecated utcnow)."""
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


class RunStatus(Enum):
    """Lifecycle status of a run.

    ``pending → running → {completed, failed, cancelled}``. ``pending`` may
    also go straight to ``failed`` (pre-flight failure) or ``cancelled``.
    Terminal statuses have no outgoing transitions.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class CheckpointType(Enum):
    """Kind of event a checkpoint records."""

    ITERATION_START = "iteration_start"
    THOUGHT = "thought"
    TOOL_CALL_START = "tool_call_start"
    TOOL_RESULT = "tool_result"
    OBSERVATION = "observation"
    COMPLETE = "complete"
    MAX_ITERATIONS = "max_iterations"


# Only these carry an idempotency key
TOOL_CHECKPOINT_TYPES = frozenset({CheckpointType.TOOL_CALL_START, CheckpointType.TOOL_RESULT})

# Checkpoints that close a run's ledger
FINAL_CHECKPOINT_TYPES = frozenset({CheckpointType.COMPLETE, CheckpointType.MAX_ITERATIONS})


class CheckpointStatus(Enum):
    """Outcome of the event itself (a tool call's own result), not the run's."""

    COMPLETED = "completed"
    FAILED = "failed"


class ToolCallState(Enum):
    """What the ledger knows about one idempotency key."""

    DONE = "done"
    IN_FLIGHT = "in_flight"
    NOT_ATTEMPTED = "not_attempted"


class LoopOutcome(Enum):
    """How one ``ExecutionLoop.drive`` call ended.

    Values:
        COMPLETED: The model gave a final answer.
        FAILED: The run was marked failed (policy or error).
        CANCELLED: The run was cancelled before or while it was driven.
        TIMED_OUT: The deadline passed; the run is marked failed.
        MAX_ITERATIONS: The iteration bound was reached.
    """

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    MAX_ITERATIONS = "max_iterations"


@dataclass(frozen=True)
class Run:
    """One durable execution of an agent task.

    Plain record: the ``RunStore`` enforces lifecycle rules and always
    returns fresh copies read back from storage.

    Attributes:
        id: Opaque unique id, generated at creation.
        caller_idempotency_key: Caller-supplied key, unique across runs.
        agent_kind: Which agent to run (opaque to the ledger).
        loop_kind: Which loop strategy to use (opaque to the ledger).
        status: Current lifecycle status.
        input: Immutable input payload.
        output: ``{"text", "iterations"}`` once completed.
        context: Mutable cross-cutting state, e.g. ``conversation_id``.
        current_iteration: Highest iteration started, never decreases.
        timeout_at: Absolute deadline, if any.
        created_at: When the run row was written.
        started_at: When the run entered ``running``.
        completed_at: When the run completed or failed.
        cancelled_at: When the run was cancelled.
        error: Failure message, only when ``status`` is FAILED.
    """

    id: str
    caller_idempotency_key: str
    agent_kind: str
    loop_kind: str
    status: RunStatus
    input: dict[str, Any]
    output: dict[str, Any] | None = None
    context: dict[str, Any] = field(default_factory=dict)
    current_iteration: int = 0
    timeout_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    error: str | None = None

    @property
    def conversation_id(self) -> str | None:
        """Pointer to externally stored history, if one was recorded."""
        return self.context.get("conversation_id")

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable dict with only primitive types."""
        return {
            "id": self.id,
            "caller_idempotency_key": self.caller_idempotency_key,
            "agent_kind": self.agent_kind,
            "loop_kind": self.loop_kind,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "context": self.context,
            "current_iteration": self.current_iteration,
            "timeout_at": _iso(self.timeout_at),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "error": self.error,
        }


@dataclass(frozen=True)
class Checkpoint:
    """Immutable, ordered record of one event within a run.

    Attributes:
        id: Unique id.
        run_id: Owning run.
        sequence: 1-based position in the run's ledger, gapless.
        type: Event kind; determines the shape of ``data``.
        iteration: Loop iteration the event belongs to.
        data: Validated payload (see ``runledger.payloads``).
        status: Outcome of the recorded event.
        idempotency_key: Only on ``tool_call_start`` / ``tool_result``.
        created_at: When the checkpoint was written.
    """

    id: str
    run_id: str
    sequence: int
    type: CheckpointType
    iteration: int
    data: dict[str, Any]
    status: CheckpointStatus = CheckpointStatus.COMPLETED
    idempotency_key: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def payload(self) -> Payload:
        """Typed view of ``data``."""
        from runledger.payloads import parse_payload

        return parse_payload(self.type, self.data)

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable dict with only primitive types."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "sequence": self.sequence,
            "type": self.type.value,
            "iteration": self.iteration,
            "data": self.data,
            "status": self.status.value,
            "idempotency_key": self.idempotency_key,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Lease:
    """Claim on a run by a single executor, valid until ``expires_at``."""

    run_id: str
    owner: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "owner": self.owner,
            "acquired_at": _iso(self.acquired_at),
            "expires_at": _iso(self.expires_at),
        }
