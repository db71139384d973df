"""Storage backend interface.

The run store and the checkpoint ledger are stateless services; all state
lives behind this interface as plain records. Every method is a single
bounded round-trip to the backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection
from datetime import datetime
from typing import Any

from runledger.types import Checkpoint, CheckpointType, Lease, Run, RunStatus

# Columns a status transition may set alongside the new status
TRANSITION_FIELDS = frozenset({"started_at", "completed_at", "cancelled_at", "output", "error"})


def check_transition_fields(fields: dict[str, Any]) -> None:
    unknown = fields.keys() - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Cannot set {sorted(unknown)} in a status transition. Allowed: {sorted(TRANSITION_FIELDS)}")


class Storage(ABC):
    """Base class for durable run and checkpoint storage.

    Implementations must enforce two uniqueness constraints at the storage
    layer: one run per caller idempotency key, and one checkpoint per
    ``(run_id, sequence)``. Violations are reported as
    ``DuplicateRunKeyError`` / ``SequenceConflictError`` so the services
    can resolve races with a re-read or a retry.

    Backend failures surface as ``PersistenceError``.
    """

    # === Runs ===

    @abstractmethod
    async def insert_run(self, run: Run) -> None:
        """Insert a new run. Raises DuplicateRunKeyError on a key clash."""
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Run | None:
        """Get a run by id. Returns None if not found."""
        ...

    @abstractmethod
    async def get_run_by_key(self, caller_idempotency_key: str) -> Run | None:
        """Get the run created for a caller idempotency key."""
        ...

    @abstractmethod
    async def transition_run(
        self,
        run_id: str,
        from_statuses: Collection[RunStatus],
        to_status: RunStatus,
        **fields: Any,
    ) -> Run | None:
        """Compare-and-set the run's status.

        Applies ``to_status`` and *fields* only if the stored status is in
        *from_statuses*. Returns the updated run, or None when the stored
        status didn't match (or the run doesn't exist).
        """
        ...

    @abstractmethod
    async def advance_iteration(self, run_id: str, iteration: int) -> Run | None:
        """Raise ``current_iteration`` to *iteration* if it is higher.

        Only applies to running runs. Returns the run as stored afterwards.
        """
        ...

    @abstractmethod
    async def merge_context(self, run_id: str, partial: dict[str, Any]) -> Run | None:
        """Shallow-merge *partial* into the run's context atomically."""
        ...

    @abstractmethod
    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        agent_kind: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Run]:
        """List runs, newest first, with optional filters."""
        ...

    # === Checkpoints ===

    @abstractmethod
    async def insert_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Insert a checkpoint durably.

        Raises:
            SequenceConflictError: ``(run_id, sequence)`` already taken.
            RunNotFoundError: The owning run doesn't exist.
        """
        ...

    @abstractmethod
    async def max_sequence(self, run_id: str) -> int:
        """Highest sequence stored for the run, 0 if none."""
        ...

    @abstractmethod
    async def list_checkpoints(self, run_id: str, *, after_sequence: int = 0) -> list[Checkpoint]:
        """Checkpoints with sequence > *after_sequence*, ascending."""
        ...

    @abstractmethod
    async def find_checkpoint_by_key(
        self,
        idempotency_key: str,
        *,
        checkpoint_type: CheckpointType | None = None,
    ) -> Checkpoint | None:
        """Earliest checkpoint carrying *idempotency_key*, optionally of one type."""
        ...

    # === Leases ===

    @abstractmethod
    async def acquire_lease(self, run_id: str, owner: str, *, now: datetime, expires_at: datetime) -> Lease:
        """Try to claim the run for *owner*.

        Succeeds if there is no lease, the lease is already *owner*'s, or it
        expired at or before *now*. Returns the lease as stored afterwards;
        the caller compares ``owner`` to see whether it won.
        """
        ...

    @abstractmethod
    async def renew_lease(self, run_id: str, owner: str, *, expires_at: datetime) -> Lease | None:
        """Extend *owner*'s lease. Returns None if *owner* no longer holds it."""
        ...

    @abstractmethod
    async def release_lease(self, run_id: str, owner: str) -> bool:
        """Drop *owner*'s lease. Returns False if it wasn't held."""
        ...

    @abstractmethod
    async def get_lease(self, run_id: str) -> Lease | None:
        """Current lease row for the run, expired or not."""
        ...

    # === Lifecycle ===

    async def initialize(self) -> None:  # noqa: B027
        """Initialize the backend (create tables, etc.)."""

    async def close(self) -> None:  # noqa: B027
        """Clean up resources (close connections, etc.)."""
