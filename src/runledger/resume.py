"""Rebuild a run's working state from its checkpoint ledger."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from runledger.exceptions import LedgerIntegrityError
from runledger.ledger import CheckpointLedger
from runledger.run_store import RunStore
from runledger.types import (
    FINAL_CHECKPOINT_TYPES,
    Checkpoint,
    CheckpointType,
    Run,
    ToolCallState,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResumeState:
    """What a resumed executor needs to continue a run.

    Attributes:
        run: The run as currently stored.
        checkpoints: Its full ledger, in sequence order.
        last_iteration: Highest iteration with any checkpoint (0 if none).
        completed_iteration: Highest iteration whose work is confirmed.
        satisfied: Idempotency key → the ``tool_result`` recorded for it.
        in_flight: Idempotency key → a ``tool_call_start`` with no result.
        terminal_checkpoint: The ``complete``/``max_iterations`` checkpoint, if written.
    """

    run: Run
    checkpoints: list[Checkpoint]
    last_iteration: int = 0
    completed_iteration: int = 0
    satisfied: dict[str, Checkpoint] = field(default_factory=dict)
    in_flight: dict[str, Checkpoint] = field(default_factory=dict)
    terminal_checkpoint: Checkpoint | None = None

    @property
    def next_iteration(self) -> int:
        """Iteration the loop should run next."""
        return self.completed_iteration + 1

    @property
    def next_sequence(self) -> int:
        """Sequence the next checkpoint will get if nothing else writes first."""
        return len(self.checkpoints) + 1

    @property
    def unobserved_results(self) -> list[Checkpoint]:
        """Tool results of the last confirmed iteration if it never wrote its observation.

        A crash between recording a result and closing the iteration leaves
        the results in the ledger but not in the conversation, so the
        executor has to hand them to the model before moving on.
        """
        iteration = self.completed_iteration
        mine = [c for c in self.checkpoints if c.iteration == iteration]
        if not iteration or any(c.type is CheckpointType.OBSERVATION for c in mine):
            return []
        return [c for c in mine if c.type is CheckpointType.TOOL_RESULT]

    @property
    def conversation_id(self) -> str | None:
        return self.run.conversation_id

    @property
    def is_finished(self) -> bool:
        """The loop already wrote its final checkpoint."""
        return self.terminal_checkpoint is not None

    def tool_call_state(self, idempotency_key: str) -> ToolCallState:
        if idempotency_key in self.satisfied:
            return ToolCallState.DONE
        if idempotency_key in self.in_flight:
            return ToolCallState.IN_FLIGHT
        return ToolCallState.NOT_ATTEMPTED

    def prior_result(self, idempotency_key: str) -> Any:
        """Recorded result for a satisfied key. Raises KeyError otherwise."""
        return self.satisfied[idempotency_key].data["result"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run.id,
            "status": self.run.status.value,
            "checkpoints": len(self.checkpoints),
            "last_iteration": self.last_iteration,
            "completed_iteration": self.completed_iteration,
            "next_iteration": self.next_iteration,
            "next_sequence": self.next_sequence,
            "conversation_id": self.conversation_id,
            "finished": self.is_finished,
            "satisfied": sorted(self.satisfied),
            "in_flight": sorted(self.in_flight),
        }


class ResumeLoader:
    """Reads a run's ledger and works out where to pick up.

    The loader only reports; what to do with in-flight calls (re-attempt
    or give up on them) is the orchestrator's decision.
    """

    def __init__(self, run_store: RunStore, ledger: CheckpointLedger):
        self._run_store = run_store
        self._ledger = ledger

    async def load(self, run_id: str) -> ResumeState:
        """Reconstruct the resumable state of *run_id*.

        Raises:
            RunNotFoundError: No such run.
            LedgerIntegrityError: The stored sequence isn't 1..n.
        """
        run = await self._run_store.get(run_id)
        checkpoints = await self._ledger.list_for_run(run_id)
        return build_resume_state(run, checkpoints)


def build_resume_state(run: Run, checkpoints: list[Checkpoint]) -> ResumeState:
    """Pure reconstruction from a run and its ordered checkpoints."""
    sequences = [c.sequence for c in checkpoints]
    if sequences != list(range(1, len(checkpoints) + 1)):
        raise LedgerIntegrityError(run.id, sequences)

    starts: dict[str, Checkpoint] = {}
    satisfied: dict[str, Checkpoint] = {}
    terminal: Checkpoint | None = None
    by_iteration: dict[int, list[Checkpoint]] = defaultdict(list)

    for checkpoint in checkpoints:
        if checkpoint.type in FINAL_CHECKPOINT_TYPES:
            terminal = terminal or checkpoint
            continue
        by_iteration[checkpoint.iteration].append(checkpoint)
        key = checkpoint.idempotency_key
        if key is None:
            continue
        if checkpoint.type is CheckpointType.TOOL_CALL_START:
            starts.setdefault(key, checkpoint)
        elif checkpoint.type is CheckpointType.TOOL_RESULT:
            satisfied.setdefault(key, checkpoint)

    in_flight = {key: start for key, start in starts.items() if key not in satisfied}
    for key, start in in_flight.items():
        logger.warning(
            "Run %s: tool call %s (%s) started at #%d has no recorded result",
            run.id,
            key,
            start.data.get("tool"),
            start.sequence,
        )

    iterations = sorted(by_iteration)
    last_iteration = iterations[-1] if iterations else 0
    in_flight_iterations = {c.iteration for c in in_flight.values()}

    completed_iteration = 0
    for iteration in iterations:
        later_started = iteration < last_iteration
        if iteration not in in_flight_iterations and (later_started or _iteration_confirmed(by_iteration[iteration])):
            completed_iteration = iteration

    return ResumeState(
        run=run,
        checkpoints=checkpoints,
        last_iteration=last_iteration,
        completed_iteration=completed_iteration,
        satisfied=satisfied,
        in_flight=in_flight,
        terminal_checkpoint=terminal,
    )


def _iteration_confirmed(checkpoints: list[Checkpoint]) -> bool:
    """Whether an iteration with no in-flight calls finished its work.

    Confirmed when it recorded an observation, or when every tool call its
    thought announced has a result. Without a thought, recorded results
    for every started call are enough.
    """
    types = [c.type for c in checkpoints]
    if CheckpointType.OBSERVATION in types:
        return True
    results = {c.idempotency_key for c in checkpoints if c.type is CheckpointType.TOOL_RESULT}
    thoughts = [c for c in checkpoints if c.type is CheckpointType.THOUGHT]
    if thoughts:
        expected = thoughts[-1].data["tool_count"]
        return expected > 0 and len(results) >= expected
    return bool(results)
