"""Gapless per-run sequence allocation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from runledger.exceptions import PersistenceError, SequenceConflictError
from runledger.storage.base import Storage

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 32


class SequenceAllocator:
    """Hands out sequence numbers 1, 2, 3, … per run with no gaps.

    Reading the current maximum and inserting ``max + 1`` races when two
    writers append to the same run. The storage layer rejects the loser
    with ``SequenceConflictError`` (unique ``(run_id, sequence)``), and the
    allocator re-reads and tries the next slot. A number is only consumed
    by a successful insert, so no gaps appear.

    Runs never contend with each other; there is no cross-run state here.

    Args:
        storage: Backend providing ``max_sequence`` and the uniqueness check.
        max_attempts: Conflicts tolerated before giving up.
    """

    def __init__(self, storage: Storage, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._storage = storage
        self._max_attempts = max_attempts

    async def next_sequence(self, run_id: str) -> int:
        """Candidate for the next slot. Only a successful write claims it."""
        return await self._storage.max_sequence(run_id) + 1

    async def allocate(self, run_id: str, write: Callable[[int], Awaitable[T]]) -> T:
        """Call ``write(sequence)`` with the next free sequence, retrying on conflict.

        Raises:
            PersistenceError: Every attempt collided with another writer.
        """
        for attempt in range(1, self._max_attempts + 1):
            sequence = await self.next_sequence(run_id)
            try:
                return await write(sequence)
            except SequenceConflictError:
                logger.debug("Sequence %d for run %s taken (attempt %d/%d), retrying", sequence, run_id, attempt, self._max_attempts)
                # Let the competing writer finish before re-reading
                await asyncio.sleep(0)

        logger.error("Gave up allocating a sequence for run %s after %d conflicts", run_id, self._max_attempts)
        raise PersistenceError(f"Could not allocate a checkpoint sequence for run '{run_id}' after {self._max_attempts} attempts")
