"""Append-only checkpoint ledger."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from runledger.exceptions import ValidationError
from runledger.idempotency import tool_call_key
from runledger.payloads import validate_payload
from runledger.sequence import SequenceAllocator
from runledger.storage.base import Storage
from runledger.types import (
    TOOL_CHECKPOINT_TYPES,
    Checkpoint,
    CheckpointStatus,
    CheckpointType,
    utcnow,
)

logger = logging.getLogger(__name__)


class CheckpointLedger:
    """Per-run ordered log of typed events.

    Checkpoints are validated against their payload shape, numbered by the
    ``SequenceAllocator`` and written durably before ``append`` returns, so
    the ledger never claims less than what actually happened. Nothing is
    ever updated or deleted.

    Args:
        storage: Backend holding the checkpoints.
        allocator: Sequence allocator (default: one over *storage*).
    """

    def __init__(self, storage: Storage, *, allocator: SequenceAllocator | None = None):
        self._storage = storage
        self._allocator = allocator or SequenceAllocator(storage)

    async def append(
        self,
        run_id: str,
        checkpoint_type: CheckpointType | str,
        data: dict[str, Any],
        iteration: int,
        idempotency_key: str | None = None,
        *,
        status: CheckpointStatus = CheckpointStatus.COMPLETED,
    ) -> Checkpoint:
        """Validate and durably append one checkpoint.

        Raises:
            ValidationError: Bad payload, or a key on a non-tool checkpoint.
            RunNotFoundError: No such run.
            PersistenceError: The write failed; nothing may proceed as if
                this checkpoint existed.
        """
        try:
            checkpoint_type = CheckpointType(checkpoint_type)
        except ValueError as e:
            raise ValidationError(f"Unknown checkpoint type {checkpoint_type!r}") from e
        if isinstance(iteration, bool) or not isinstance(iteration, int) or iteration < 0:
            raise ValidationError(f"iteration must be a non-negative integer, got {iteration!r}")
        if idempotency_key is not None and checkpoint_type not in TOOL_CHECKPOINT_TYPES:
            raise ValidationError(f"Idempotency keys are only allowed on tool checkpoints, not {checkpoint_type.value}")
        payload = validate_payload(checkpoint_type, data, iteration=iteration)
        status = CheckpointStatus(status)

        async def write(sequence: int) -> Checkpoint:
            checkpoint = Checkpoint(
                id=str(uuid.uuid4()),
                run_id=run_id,
                sequence=sequence,
                type=checkpoint_type,
                iteration=iteration,
                data=payload,
                status=status,
                idempotency_key=idempotency_key,
                created_at=utcnow(),
            )
            await self._storage.insert_checkpoint(checkpoint)
            return checkpoint

        checkpoint = await self._allocator.allocate(run_id, write)
        logger.debug("Run %s checkpoint #%d %s (iteration %d)", run_id, checkpoint.sequence, checkpoint_type.value, iteration)
        return checkpoint

    async def find_by_idempotency_key(
        self,
        idempotency_key: str,
        *,
        checkpoint_type: CheckpointType | None = CheckpointType.TOOL_RESULT,
    ) -> Checkpoint | None:
        """Find the recorded outcome for a tool call.

        By default only ``tool_result`` checkpoints match: a key with a
        result must not be invoked again, and its ``data["result"]`` is
        what the caller reuses. Pass ``checkpoint_type=None`` to match any
        checkpoint carrying the key.
        """
        found = await self._storage.find_checkpoint_by_key(idempotency_key, checkpoint_type=checkpoint_type)
        if found is not None:
            logger.debug("Idempotency key %s already recorded at #%d", idempotency_key, found.sequence)
        return found

    async def list_for_run(self, run_id: str, *, after_sequence: int = 0) -> list[Checkpoint]:
        """All checkpoints of a run in sequence order. Read-only; safe to repeat."""
        return await self._storage.list_checkpoints(run_id, after_sequence=after_sequence)

    # === Tool-call helpers ===

    async def record_tool_call(
        self,
        run_id: str,
        iteration: int,
        tool: str,
        args: dict[str, Any],
    ) -> tuple[str, Checkpoint]:
        """Write the ``tool_call_start`` that must precede an invocation.

        Returns the call's idempotency key and the checkpoint.
        """
        key = tool_call_key(run_id, iteration, tool, args)
        checkpoint = await self.append(
            run_id,
            CheckpointType.TOOL_CALL_START,
            {"tool": tool, "args": args, "iteration": iteration},
            iteration,
            key,
        )
        return key, checkpoint

    async def record_tool_result(
        self,
        run_id: str,
        iteration: int,
        tool: str,
        args: dict[str, Any],
        result: Any,
        *,
        failed: bool = False,
        idempotency_key: str | None = None,
    ) -> Checkpoint:
        """Write the ``tool_result`` that confirms a call.

        *idempotency_key* defaults to the key derived from the call itself;
        pass the recorded key when settling a call from an earlier attempt.
        """
        key = idempotency_key or tool_call_key(run_id, iteration, tool, args)
        return await self.append(
            run_id,
            CheckpointType.TOOL_RESULT,
            {"tool": tool, "args": args, "result": result, "iteration": iteration},
            iteration,
            key,
            status=CheckpointStatus.FAILED if failed else CheckpointStatus.COMPLETED,
        )
