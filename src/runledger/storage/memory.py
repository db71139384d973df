"""In-memory storage backend.

Dict-based, lives for the process lifetime. Useful for tests and for
single-process use where durability across restarts isn't needed.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Collection
from dataclasses import replace
from datetime import datetime
from typing import Any

from runledger.exceptions import DuplicateRunKeyError, RunNotFoundError, SequenceConflictError
from runledger.storage.base import Storage, check_transition_fields
from runledger.types import Checkpoint, CheckpointType, Lease, Run, RunStatus


class InMemoryStorage(Storage):
    """Dict-backed storage with the same constraints as the SQL backends.

    Records are deep-copied on the way in and out, so callers can't
    mutate stored state through a returned object. A lock makes each
    method atomic across threads; under asyncio every method is atomic
    anyway since none of them awaits.

    Example::

        storage = InMemoryStorage()
        store = RunStore(storage)
        run = await store.start("key-1", "react-agent", "react", {"task": "hi"})
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = {}
        self._run_ids_by_key: dict[str, str] = {}
        self._checkpoints: dict[str, list[Checkpoint]] = {}
        self._checkpoints_by_key: dict[str, list[Checkpoint]] = {}
        self._leases: dict[str, Lease] = {}

    # === Runs ===

    async def insert_run(self, run: Run) -> None:
        with self._lock:
            if run.caller_idempotency_key in self._run_ids_by_key:
                raise DuplicateRunKeyError(run.caller_idempotency_key)
            self._runs[run.id] = copy.deepcopy(run)
            self._run_ids_by_key[run.caller_idempotency_key] = run.id
            self._checkpoints[run.id] = []

    async def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run is not None else None

    async def get_run_by_key(self, caller_idempotency_key: str) -> Run | None:
        with self._lock:
            run_id = self._run_ids_by_key.get(caller_idempotency_key)
            return copy.deepcopy(self._runs[run_id]) if run_id is not None else None

    async def transition_run(
        self,
        run_id: str,
        from_statuses: Collection[RunStatus],
        to_status: RunStatus,
        **fields: Any,
    ) -> Run | None:
        check_transition_fields(fields)
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status not in from_statuses:
                return None
            updated = replace(run, status=to_status, **copy.deepcopy(fields))
            self._runs[run_id] = updated
            return copy.deepcopy(updated)

    async def advance_iteration(self, run_id: str, iteration: int) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            if run.status is RunStatus.RUNNING and iteration > run.current_iteration:
                run = replace(run, current_iteration=iteration)
                self._runs[run_id] = run
            return copy.deepcopy(run)

    async def merge_context(self, run_id: str, partial: dict[str, Any]) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            run = replace(run, context={**run.context, **copy.deepcopy(partial)})
            self._runs[run_id] = run
            return copy.deepcopy(run)

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        agent_kind: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Run]:
        with self._lock:
            runs = [
                r
                for r in self._runs.values()
                if (status is None or r.status is status)
                and (agent_kind is None or r.agent_kind == agent_kind)
                and (since is None or r.created_at >= since)
            ]
            runs.sort(key=lambda r: r.created_at, reverse=True)
            return copy.deepcopy(runs[:limit])

    # === Checkpoints ===

    async def insert_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            existing = self._checkpoints.get(checkpoint.run_id)
            if existing is None:
                raise RunNotFoundError(checkpoint.run_id)
            if any(c.sequence == checkpoint.sequence for c in existing):
                raise SequenceConflictError(checkpoint.run_id, checkpoint.sequence)
            stored = copy.deepcopy(checkpoint)
            existing.append(stored)
            existing.sort(key=lambda c: c.sequence)
            if stored.idempotency_key is not None:
                self._checkpoints_by_key.setdefault(stored.idempotency_key, []).append(stored)

    async def max_sequence(self, run_id: str) -> int:
        with self._lock:
            existing = self._checkpoints.get(run_id) or []
            return existing[-1].sequence if existing else 0

    async def list_checkpoints(self, run_id: str, *, after_sequence: int = 0) -> list[Checkpoint]:
        with self._lock:
            existing = self._checkpoints.get(run_id) or []
            return copy.deepcopy([c for c in existing if c.sequence > after_sequence])

    async def find_checkpoint_by_key(
        self,
        idempotency_key: str,
        *,
        checkpoint_type: CheckpointType | None = None,
    ) -> Checkpoint | None:
        with self._lock:
            matches = [
                c
                for c in self._checkpoints_by_key.get(idempotency_key, [])
                if checkpoint_type is None or c.type is checkpoint_type
            ]
            if not matches:
                return None
            return copy.deepcopy(min(matches, key=lambda c: c.sequence))

    # === Leases ===

    async def acquire_lease(self, run_id: str, owner: str, *, now: datetime, expires_at: datetime) -> Lease:
        with self._lock:
            if run_id not in self._runs:
                raise RunNotFoundError(run_id)
            current = self._leases.get(run_id)
            if current is None or current.owner == owner or current.is_expired(now):
                current = Lease(run_id=run_id, owner=owner, acquired_at=now, expires_at=expires_at)
                self._leases[run_id] = current
            return current

    async def renew_lease(self, run_id: str, owner: str, *, expires_at: datetime) -> Lease | None:
        with self._lock:
            current = self._leases.get(run_id)
            if current is None or current.owner != owner:
                return None
            current = replace(current, expires_at=expires_at)
            self._leases[run_id] = current
            return current

    async def release_lease(self, run_id: str, owner: str) -> bool:
        with self._lock:
            current = self._leases.get(run_id)
            if current is None or current.owner != owner:
                return False
            del self._leases[run_id]
            return True

    async def get_lease(self, run_id: str) -> Lease | None:
        with self._lock:
            return self._leases.get(run_id)
