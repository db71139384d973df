"""Loop policy and result types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from runledger.exceptions import ValidationError
from runledger.types import LoopOutcome, Run

if TYPE_CHECKING:
    from runledger.config import LedgerConfig

InFlightPolicy = Literal["retry", "fail"]
MaxIterationsPolicy = Literal["complete", "fail"]


@dataclass(frozen=True)
class LoopPolicy:
    """Decisions the ledger leaves to the orchestrator.

    Attributes:
        max_iterations: Iteration bound.
        in_flight: What to do with a tool call that started but has no
            recorded result after a restart. ``retry`` invokes it again
            with the recorded arguments; ``fail`` records a failed result
            without invoking.
        on_max_iterations: Whether running out of iterations completes
            the run (degraded success) or fails it.
        thought_text_limit: Characters of model text kept in ``thought``
            checkpoints.
    """

    max_iterations: int = 10
    in_flight: InFlightPolicy = "retry"
    on_max_iterations: MaxIterationsPolicy = "complete"
    thought_text_limit: int = 300

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValidationError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.in_flight not in ("retry", "fail"):
            raise ValidationError(f"in_flight must be 'retry' or 'fail', got {self.in_flight!r}")
        if self.on_max_iterations not in ("complete", "fail"):
            raise ValidationError(f"on_max_iterations must be 'complete' or 'fail', got {self.on_max_iterations!r}")
        if self.thought_text_limit < 0:
            raise ValidationError(f"thought_text_limit must be >= 0, got {self.thought_text_limit}")

    @classmethod
    def from_config(cls, config: LedgerConfig) -> LoopPolicy:
        return cls(
            max_iterations=config.max_iterations,
            in_flight=config.in_flight_policy,  # type: ignore[arg-type]
            on_max_iterations=config.max_iterations_policy,  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class LoopResult:
    """Outcome of one ``ExecutionLoop.drive`` call.

    Attributes:
        run: The run as stored when the drive ended.
        outcome: How it ended.
        iterations: The run's ``current_iteration`` at the end.
        text: Final (or last) model text, when there is one.
    """

    run: Run
    outcome: LoopOutcome
    iterations: int
    text: str | None = None
