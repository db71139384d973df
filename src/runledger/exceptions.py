"""Exceptions for the run ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from runledger.types import Run, RunStatus


class RunLedgerError(Exception):
    """Base class for all runledger errors."""


class ValidationError(RunLedgerError, ValueError):
    """Input rejected before anything was written.

    Raised for malformed run start requests, checkpoint payloads that
    don't match their type, and idempotency keys on non-tool checkpoints.
    """


class RunNotFoundError(RunLedgerError, LookupError):
    """No run exists with the given id.

    Attributes:
        run_id: The id that was looked up
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")


class InvalidTransition(RunLedgerError):
    """Illegal lifecycle call on a run.

    Not fatal: the run is left untouched and its current state is
    carried on the exception so callers can decide what to do next.

    Attributes:
        run: Current state of the run, as read from storage
        action: Name of the rejected operation (e.g. ``"mark_completed"``)
        allowed: Statuses the operation is allowed from
        message: Human-readable error message
    """

    def __init__(
        self,
        run: Run,
        action: str,
        allowed: Iterable[RunStatus],
        message: str | None = None,
    ) -> None:
        self.run = run
        self.action = action
        self.allowed = frozenset(allowed)
        self.message = message or self._default_message()
        super().__init__(self.message)

    def _default_message(self) -> str:
        allowed_str = ", ".join(sorted(s.value for s in self.allowed))
        return f"Cannot {self.action} run '{self.run.id}' in status '{self.run.status.value}' (allowed from: {allowed_str})"


class ToolExecutionError(RunLedgerError):
    """A tool invocation failed.

    Raised by ``ToolInvoker`` implementations. The execution loop records
    it as a failed ``tool_result`` and carries on with a degraded
    observation instead of aborting the run.

    Attributes:
        tool: Name of the tool that failed
        message: Human-readable error message
    """

    def __init__(self, tool: str, message: str) -> None:
        self.tool = tool
        self.message = message
        super().__init__(f"Tool '{tool}' failed: {message}")


class PersistenceError(RunLedgerError):
    """A durable read or write failed.

    Fatal to the current step: the crash-consistency guarantee depends on
    every checkpoint being written before the action it records, so this
    is never swallowed. Retrying is the caller's job.
    """


class LedgerIntegrityError(PersistenceError):
    """Stored checkpoints violate the ledger's ordering invariant.

    Attributes:
        run_id: Run whose ledger is inconsistent
        sequences: The sequence numbers actually found, in order
    """

    def __init__(self, run_id: str, sequences: list[int]) -> None:
        self.run_id = run_id
        self.sequences = sequences
        super().__init__(
            f"Checkpoint sequence for run '{run_id}' is not 1..{len(sequences)} "
            f"without gaps: {sequences[:20]}{'…' if len(sequences) > 20 else ''}"
        )


class ConflictError(RunLedgerError):
    """A uniqueness constraint rejected a write.

    Storage backends raise the subclasses below; the services resolve
    them with a re-read or a retry, so callers rarely see them.
    """


class DuplicateRunKeyError(ConflictError):
    """A run with this caller idempotency key already exists."""

    def __init__(self, caller_idempotency_key: str) -> None:
        self.caller_idempotency_key = caller_idempotency_key
        super().__init__(f"A run with idempotency key '{caller_idempotency_key}' already exists")


class SequenceConflictError(ConflictError):
    """Another writer already took this ``(run_id, sequence)`` slot."""

    def __init__(self, run_id: str, sequence: int) -> None:
        self.run_id = run_id
        self.sequence = sequence
        super().__init__(f"Sequence {sequence} already taken for run '{run_id}'")


class LeaseHeldError(RunLedgerError):
    """Another executor holds an unexpired lease on the run.

    Attributes:
        run_id: The contested run
        owner: Current lease holder
    """

    def __init__(self, run_id: str, owner: str) -> None:
        self.run_id = run_id
        self.owner = owner
        super().__init__(f"Run '{run_id}' is leased by '{owner}'")


class LeaseLostError(RunLedgerError):
    """The executor's lease expired and was taken over (or released)."""

    def __init__(self, run_id: str, owner: str) -> None:
        self.run_id = run_id
        self.owner = owner
        super().__init__(f"Lease on run '{run_id}' is no longer held by '{owner}'")
