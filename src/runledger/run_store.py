"""Run lifecycle service."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Collection
from datetime import datetime, timedelta
from typing import Any

from runledger.exceptions import DuplicateRunKeyError, InvalidTransition, RunNotFoundError, ValidationError
from runledger.storage.base import Storage
from runledger.types import Run, RunStatus, utcnow

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 128
MAX_KIND_LENGTH = 255

_ACTIVE = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
_RESUMABLE = frozenset({RunStatus.CANCELLED, RunStatus.FAILED})


def _require_name(field_name: str, value: Any, max_length: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string, got {value!r}")
    if len(value) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters, got {len(value)}")


def _require_json_object(field_name: str, value: Any) -> None:
    if not isinstance(value, dict):
        raise ValidationError(f"{field_name} must be a dict, got {type(value).__name__}")
    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field_name} is not JSON-serializable: {e}") from e


def _to_timedelta(timeout: timedelta | float | None) -> timedelta | None:
    if timeout is None:
        return None
    if isinstance(timeout, bool) or not isinstance(timeout, (timedelta, int, float)):
        raise ValidationError(f"timeout must be a timedelta or seconds, got {type(timeout).__name__}")
    delta = timeout if isinstance(timeout, timedelta) else timedelta(seconds=timeout)
    if delta <= timedelta(0):
        raise ValidationError(f"timeout must be positive, got {delta}")
    return delta


class RunStore:
    """Owns run lifecycle state and its transitions.

    Stateless: all state lives in *storage*. Every transition is a single
    compare-and-set on the stored status, so a terminal status is written
    exactly once even when several processes race (an executor completing
    while an operator cancels, for example). Operations take a ``Run`` and
    return the fresh record; the passed-in record is never trusted for the
    current status.

    Args:
        storage: Backend holding run records.
        clock: Source of "now" (UTC-aware). Override in tests.
    """

    def __init__(self, storage: Storage, *, clock: Callable[[], datetime] = utcnow):
        self._storage = storage
        self._clock = clock

    # === Creation ===

    async def start(
        self,
        caller_idempotency_key: str,
        agent_kind: str,
        loop_kind: str,
        input: dict[str, Any],
        timeout: timedelta | float | None = None,
        *,
        context: dict[str, Any] | None = None,
    ) -> Run:
        """Create a pending run, or return the one already created for this key.

        A repeated key returns the existing run unchanged, whatever the
        other arguments say. Concurrent starts with one key race on the
        storage uniqueness constraint; losers re-read and return the
        winner's run.

        Args:
            caller_idempotency_key: Caller-chosen key, unique across runs.
            agent_kind: Which agent to run.
            loop_kind: Which loop strategy to use.
            input: Structured input payload (JSON-serializable dict).
            timeout: Time budget from now, as timedelta or seconds.
            context: Initial context entries.

        Raises:
            ValidationError: Bad arguments; nothing is written.
        """
        _require_name("caller_idempotency_key", caller_idempotency_key, MAX_KEY_LENGTH)
        _require_name("agent_kind", agent_kind, MAX_KIND_LENGTH)
        _require_name("loop_kind", loop_kind, MAX_KIND_LENGTH)
        _require_json_object("input", input)
        if context is not None:
            _require_json_object("context", context)
        delta = _to_timedelta(timeout)

        existing = await self._storage.get_run_by_key(caller_idempotency_key)
        if existing is not None:
            logger.debug("Start with known key %s returns run %s", caller_idempotency_key, existing.id)
            return existing

        now = self._clock()
        run = Run(
            id=str(uuid.uuid4()),
            caller_idempotency_key=caller_idempotency_key,
            agent_kind=agent_kind,
            loop_kind=loop_kind,
            status=RunStatus.PENDING,
            input=input,
            context=dict(context or {}),
            timeout_at=now + delta if delta is not None else None,
            created_at=now,
        )
        try:
            await self._storage.insert_run(run)
        except DuplicateRunKeyError:
            winner = await self._storage.get_run_by_key(caller_idempotency_key)
            if winner is None:
                raise
            logger.warning("Concurrent start for key %s resolved to run %s", caller_idempotency_key, winner.id)
            return winner

        logger.info("Started run %s (%s/%s)", run.id, agent_kind, loop_kind)
        return await self.get(run.id)

    async def continue_from(
        self,
        run: Run,
        caller_idempotency_key: str,
        timeout: timedelta | float | None = None,
    ) -> Run:
        """Start a new run that picks up where a cancelled or failed one stopped.

        The new run gets the same kinds and input, and its context points
        at the previous conversation plus ``resumed_from``.

        Raises:
            InvalidTransition: *run* is not cancelled or failed.
        """
        current = await self.refresh(run)
        if current.status not in _RESUMABLE:
            raise InvalidTransition(current, "continue_from", _RESUMABLE)
        context = {"resumed_from": current.id}
        if current.conversation_id is not None:
            context["conversation_id"] = current.conversation_id
        return await self.start(
            caller_idempotency_key,
            current.agent_kind,
            current.loop_kind,
            current.input,
            timeout,
            context=context,
        )

    # === Reads ===

    async def get(self, run_id: str) -> Run:
        """Read a run. Raises RunNotFoundError."""
        run = await self._storage.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def refresh(self, run: Run) -> Run:
        """Re-read *run* from storage."""
        return await self.get(run.id)

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        agent_kind: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Run]:
        """List runs, newest first."""
        return await self._storage.list_runs(status=status, agent_kind=agent_kind, since=since, limit=limit)

    async def is_cancelled(self, run: Run) -> bool:
        """Whether the run is cancelled right now.

        Reads the stored status, since cancellation usually comes from
        another process than the one driving the run.
        """
        return (await self.refresh(run)).status is RunStatus.CANCELLED

    def is_timed_out(self, run: Run) -> bool:
        """Whether the run's deadline has passed.

        ``timeout_at`` never changes, so no read is needed; the comparison
        uses the clock at call time and is never cached.
        """
        return run.timeout_at is not None and self._clock() > run.timeout_at

    # === Transitions ===

    async def mark_running(self, run: Run) -> Run:
        """pending → running. Sets ``started_at``."""
        return await self._transition(run, "mark_running", {RunStatus.PENDING}, RunStatus.RUNNING, started_at=self._clock())

    async def mark_completed(self, run: Run, output_text: str, iterations: int) -> Run:
        """running → completed. Sets ``output`` and ``completed_at``.

        A second call raises InvalidTransition and leaves ``output`` alone.
        """
        return await self._transition(
            run,
            "mark_completed",
            {RunStatus.RUNNING},
            RunStatus.COMPLETED,
            output={"text": output_text, "iterations": iterations},
            completed_at=self._clock(),
        )

    async def mark_failed(self, run: Run, error: str) -> Run:
        """pending|running → failed. Sets ``error`` and ``completed_at``."""
        return await self._transition(
            run,
            "mark_failed",
            _ACTIVE,
            RunStatus.FAILED,
            error=str(error),
            completed_at=self._clock(),
        )

    async def cancel(self, run: Run) -> Run:
        """pending|running → cancelled. Sets ``cancelled_at``.

        Cancelling an already-cancelled run returns it unchanged.
        """
        try:
            return await self._transition(run, "cancel", _ACTIVE, RunStatus.CANCELLED, cancelled_at=self._clock())
        except InvalidTransition as e:
            if e.run.status is RunStatus.CANCELLED:
                return e.run
            raise

    # === Mutable state ===

    async def merge_context(self, run: Run, partial: dict[str, Any]) -> Run:
        """Shallow-merge *partial* into the run's context."""
        _require_json_object("context", partial)
        updated = await self._storage.merge_context(run.id, partial)
        if updated is None:
            raise RunNotFoundError(run.id)
        return updated

    async def advance_iteration(self, run: Run, iteration: int) -> Run:
        """Record that *iteration* started. Lower values than the stored one are ignored.

        Raises:
            InvalidTransition: The run is not running.
        """
        updated = await self._storage.advance_iteration(run.id, iteration)
        if updated is None:
            raise RunNotFoundError(run.id)
        if updated.status is not RunStatus.RUNNING:
            raise InvalidTransition(updated, "advance_iteration", {RunStatus.RUNNING})
        return updated

    # === Internal ===

    async def _transition(
        self,
        run: Run,
        action: str,
        allowed: Collection[RunStatus],
        to_status: RunStatus,
        **fields: Any,
    ) -> Run:
        updated = await self._storage.transition_run(run.id, allowed, to_status, **fields)
        if updated is not None:
            logger.info("Run %s → %s", run.id, to_status.value)
            return updated
        current = await self.get(run.id)
        raise InvalidTransition(current, action, allowed)
