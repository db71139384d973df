"""Reference orchestrator that drives a run through the ledger."""

from __future__ import annotations

import inspect
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from runledger.events.dispatcher import EventDispatcher
from runledger.events.types import (
    CheckpointEvent,
    IterationStartEvent,
    RunEndEvent,
    RunStartEvent,
    ToolCallEvent,
    _generate_span_id,
)
from runledger.exceptions import InvalidTransition, ToolExecutionError
from runledger.idempotency import tool_call_key
from runledger.loop.types import LoopPolicy, LoopResult
from runledger.resume import ResumeLoader, ResumeState
from runledger.types import (
    Checkpoint,
    CheckpointStatus,
    CheckpointType,
    LoopOutcome,
    Run,
    RunStatus,
)

if TYPE_CHECKING:
    from runledger.events.processor import EventProcessor
    from runledger.lease import LeaseManager
    from runledger.ledger import CheckpointLedger
    from runledger.loop.protocols import HistoryStore, ModelCompletion, NextAction, ToolCall, ToolInvoker
    from runledger.run_store import RunStore
    from runledger.types import Lease

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "Run timed out"
UNCONFIRMED_TOOL_CALL = "No result was recorded for this call before the executor stopped"

_OUTCOME_FOR_STATUS = {
    RunStatus.CANCELLED: LoopOutcome.CANCELLED,
    RunStatus.FAILED: LoopOutcome.FAILED,
    RunStatus.COMPLETED: LoopOutcome.COMPLETED,
}


async def _resolve(value: Any) -> Any:
    """Await *value* if the collaborator returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


def _summarize(result: Any, limit: int) -> str:
    text = result if isinstance(result, str) else json.dumps(result, default=str)
    return text if len(text) <= limit else text[:limit] + "…"


def _observation_line(tool: str, result: Any, failed: bool, limit: int) -> str:
    return f"{tool} ({'failed' if failed else 'ok'}): {_summarize(result, limit)}"


def _tool_message(tool: str, result: Any, failed: bool) -> dict[str, Any]:
    return {"role": "tool", "name": tool, "content": result, "failed": failed}


def _assistant_message(action: NextAction) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": action.text}
    if action.tool_calls:
        message["tool_calls"] = [{"name": c.name, "args": c.args} for c in action.tool_calls]
    return message


class ExecutionLoop:
    """Drives runs iteration by iteration, checkpointing every step.

    The loop is stateless across runs and safe to reuse. ``drive`` works
    the same for a fresh run and for one an earlier executor left behind:
    it reads the ledger, settles tool calls that never got a result,
    replays recorded tool results instead of re-invoking, and continues
    from the first unconfirmed iteration.

    Cancellation and timeout are polled at every iteration boundary, never
    mid-step. A ``PersistenceError`` aborts the drive and propagates; the
    run stays ``running`` so a later drive can resume it.

    Args:
        run_store: Run lifecycle service.
        ledger: Checkpoint ledger.
        model: Produces the next action.
        tools: Executes tool calls.
        history: Conversation store; only its id lives in the run.
        instructions: System instructions passed to the model.
        policy: Iteration bound and the orchestrator-level decisions.
        leases: When given, the drive holds the run's lease throughout.
        dispatcher: Receives progress events. Its processors are shut down
            after every drive.

    Example::

        loop = ExecutionLoop(store, ledger, model=model, tools=tools, history=history)
        result = await loop.drive(await store.start("req-1", "support", "react", {"message": "hi"}))
        result.outcome  # LoopOutcome.COMPLETED
    """

    def __init__(
        self,
        run_store: RunStore,
        ledger: CheckpointLedger,
        *,
        model: ModelCompletion,
        tools: ToolInvoker,
        history: HistoryStore,
        instructions: str = "",
        policy: LoopPolicy | None = None,
        leases: LeaseManager | None = None,
        dispatcher: EventDispatcher | None = None,
    ):
        self.run_store = run_store
        self.ledger = ledger
        self.model = model
        self.tools = tools
        self.history = history
        self.instructions = instructions
        self.policy = policy or LoopPolicy()
        self.leases = leases
        self.dispatcher = dispatcher or EventDispatcher()
        self.loader = ResumeLoader(run_store, ledger)

    async def drive(self, run: Run, *, event_processors: list[EventProcessor] | None = None) -> LoopResult:
        """Run (or resume) *run* until it terminates or is interrupted.

        Args:
            run: The run to drive; its stored row is reloaded first.
            event_processors: Receive this drive's events instead of the
                loop's own dispatcher.

        Raises:
            LeaseHeldError: Another executor holds the run.
            LeaseLostError: The lease was taken over mid-drive.
            PersistenceError: A durable write failed.
        """
        dispatcher = EventDispatcher(event_processors) if event_processors is not None else self.dispatcher
        try:
            if self.leases is None:
                return await _Drive(self, run, None, dispatcher).execute()
            async with self.leases.hold(run.id) as lease:
                return await _Drive(self, run, lease, dispatcher).execute()
        finally:
            if dispatcher.active:
                await dispatcher.shutdown_async()


class _Drive:
    """State of one ``drive`` call."""

    def __init__(self, loop: ExecutionLoop, run: Run, lease: Lease | None, dispatcher: EventDispatcher):
        self.loop = loop
        self.run = run
        self.lease = lease
        self.dispatcher = dispatcher
        self.span_id = _generate_span_id()
        self.started = time.perf_counter()
        self.last_text: str | None = None

    async def execute(self) -> LoopResult:
        self.run = await self.loop.run_store.refresh(self.run)
        if self.run.status.is_terminal:
            logger.debug("Run %s is already %s", self.run.id, self.run.status.value)
            return self._result(_OUTCOME_FOR_STATUS[self.run.status], self.run)
        try:
            return await self._execute()
        except InvalidTransition as e:
            # Another process moved the run to a terminal status under us
            if not e.run.status.is_terminal:
                raise
            logger.info("Run %s became %s while being driven", e.run.id, e.run.status.value)
            return await self._end(_OUTCOME_FOR_STATUS[e.run.status], e.run, error=e.run.error)

    async def _execute(self) -> LoopResult:
        store = self.loop.run_store
        policy = self.loop.policy

        if self.run.status is RunStatus.PENDING:
            self.run = await store.mark_running(self.run)

        state = await self.loop.loader.load(self.run.id)
        await self._emit(
            RunStartEvent(
                run_id=self.run.id,
                span_id=self.span_id,
                agent_kind=self.run.agent_kind,
                loop_kind=self.run.loop_kind,
                start_iteration=state.next_iteration,
                max_iterations=policy.max_iterations,
                resumed=bool(state.checkpoints),
            )
        )
        if state.checkpoints:
            logger.info("Resuming run %s at iteration %d (%d checkpoints)", self.run.id, state.next_iteration, len(state.checkpoints))

        if state.terminal_checkpoint is not None:
            return await self._finish_recorded(state.terminal_checkpoint)

        conversation_id = await self._ensure_conversation()

        if state.in_flight:
            await self._settle_in_flight(state)
            state = await self.loop.loader.load(self.run.id)
        if state.unobserved_results:
            await self._observe_recorded(state.unobserved_results, conversation_id)

        iteration = state.next_iteration
        while iteration <= policy.max_iterations:
            if await store.is_cancelled(self.run):
                logger.info("Run %s cancelled before iteration %d", self.run.id, iteration)
                return await self._end(LoopOutcome.CANCELLED, await store.refresh(self.run))
            if store.is_timed_out(self.run):
                logger.info("Run %s timed out before iteration %d", self.run.id, iteration)
                run = await store.mark_failed(self.run, TIMEOUT_ERROR)
                return await self._end(LoopOutcome.TIMED_OUT, run, error=TIMEOUT_ERROR)

            if self.lease is not None:
                self.lease = await self.loop.leases.renew(self.lease)  # type: ignore[union-attr]
            self.run = await store.advance_iteration(self.run, iteration)

            result = await self._iterate(conversation_id, iteration)
            if result is not None:
                return result
            iteration += 1

        return await self._exhausted(policy.max_iterations)

    # === One iteration ===

    async def _iterate(self, conversation_id: str, iteration: int) -> LoopResult | None:
        loop = self.loop
        await self._emit(IterationStartEvent(run_id=self.run.id, parent_span_id=self.span_id, iteration=iteration))
        await self._append(CheckpointType.ITERATION_START, {"iteration": iteration}, iteration)

        history = await _resolve(loop.history.load(conversation_id))
        action: NextAction = await _resolve(loop.model.complete(loop.instructions, history))
        self.last_text = action.text
        await self._append(
            CheckpointType.THOUGHT,
            {
                "text": action.text[: loop.policy.thought_text_limit],
                "has_tool_calls": not action.is_final,
                "tool_count": len(action.tool_calls),
                "iteration": iteration,
            },
            iteration,
        )
        await _resolve(loop.history.append(conversation_id, _assistant_message(action)))

        if action.is_final:
            await self._append(CheckpointType.COMPLETE, {"text": action.text, "iterations": iteration}, iteration)
            return await self._complete(action.text, iteration)

        lines = []
        for call in action.tool_calls:
            result, failed = await self._call_tool(call, iteration)
            await _resolve(loop.history.append(conversation_id, _tool_message(call.name, result, failed)))
            lines.append(_observation_line(call.name, result, failed, loop.policy.thought_text_limit))
        await self._append(CheckpointType.OBSERVATION, {"text": "\n".join(lines), "iteration": iteration}, iteration)
        return None

    async def _call_tool(self, call: ToolCall, iteration: int) -> tuple[Any, bool]:
        """Reuse a recorded result for this call, or make it and record it."""
        key = tool_call_key(self.run.id, iteration, call.name, call.args)
        prior = await self.loop.ledger.find_by_idempotency_key(key)
        if prior is not None:
            failed = prior.status is CheckpointStatus.FAILED
            logger.debug("Run %s: replaying recorded result for %s", self.run.id, key)
            await self._emit_tool_call(call.name, call.args, key, iteration, failed=failed, replayed=True)
            return prior.data["result"], failed

        key, checkpoint = await self.loop.ledger.record_tool_call(self.run.id, iteration, call.name, call.args)
        await self._emit_checkpoint(checkpoint)
        return await self._invoke_and_record(call.name, call.args, iteration, key)

    async def _invoke_and_record(self, tool: str, args: dict[str, Any], iteration: int, key: str) -> tuple[Any, bool]:
        started = time.perf_counter()
        failed = False
        try:
            result = await _resolve(self.loop.tools.invoke(tool, args))
        except ToolExecutionError as e:
            logger.warning("Run %s: tool %s failed: %s", self.run.id, tool, e.message)
            result = {"error": e.message}
            failed = True
        duration_ms = (time.perf_counter() - started) * 1000

        checkpoint = await self.loop.ledger.record_tool_result(
            self.run.id, iteration, tool, args, result, failed=failed, idempotency_key=key
        )
        await self._emit_checkpoint(checkpoint)
        await self._emit_tool_call(tool, args, key, iteration, failed=failed, duration_ms=duration_ms)
        return result, failed

    # === Resume ===

    async def _settle_in_flight(self, state: ResumeState) -> None:
        """Give every unconfirmed tool call a result, per the in-flight policy.

        Only the ledger is written here; the results reach the conversation
        when their iteration is observed or re-run.
        """
        for key, start in sorted(state.in_flight.items(), key=lambda item: item[1].sequence):
            tool, args = start.data["tool"], start.data["args"]
            if self.loop.policy.in_flight == "retry":
                logger.info("Run %s: re-invoking unconfirmed call %s", self.run.id, key)
                await self._invoke_and_record(tool, args, start.iteration, key)
            else:
                logger.info("Run %s: recording unconfirmed call %s as failed", self.run.id, key)
                checkpoint = await self.loop.ledger.record_tool_result(
                    self.run.id, start.iteration, tool, args, {"error": UNCONFIRMED_TOOL_CALL}, failed=True, idempotency_key=key
                )
                await self._emit_checkpoint(checkpoint)
                await self._emit_tool_call(tool, args, key, start.iteration, failed=True)

    async def _observe_recorded(self, results: list[Checkpoint], conversation_id: str) -> None:
        """Close a confirmed iteration that stopped before its observation.

        Its recorded results go into the conversation first, so the next
        model call sees them and does not ask for the same calls again.
        """
        iteration = results[0].iteration
        logger.info("Run %s: writing the missing observation for iteration %d", self.run.id, iteration)
        lines = []
        for checkpoint in results:
            tool, result = checkpoint.data["tool"], checkpoint.data["result"]
            failed = checkpoint.status is CheckpointStatus.FAILED
            await _resolve(self.loop.history.append(conversation_id, _tool_message(tool, result, failed)))
            lines.append(_observation_line(tool, result, failed, self.loop.policy.thought_text_limit))
        await self._append(CheckpointType.OBSERVATION, {"text": "\n".join(lines), "iteration": iteration}, iteration)

    async def _ensure_conversation(self) -> str:
        conversation_id = self.run.conversation_id
        if conversation_id is not None:
            return conversation_id
        history = self.loop.history
        conversation_id = await _resolve(history.create())
        await _resolve(history.append(conversation_id, {"role": "user", "content": self.run.input}))
        self.run = await self.loop.run_store.merge_context(self.run, {"conversation_id": conversation_id})
        return conversation_id

    # === Termination ===

    async def _complete(self, text: str, iterations: int) -> LoopResult:
        run = await self.loop.run_store.mark_completed(self.run, text, iterations)
        return await self._end(LoopOutcome.COMPLETED, run, text=text)

    async def _exhausted(self, iterations: int) -> LoopResult:
        text = self.last_text or f"Stopped after {iterations} iterations"
        await self._append(CheckpointType.MAX_ITERATIONS, {"iterations": iterations, "text": text}, iterations)
        return await self._apply_max_iterations(text, iterations)

    async def _apply_max_iterations(self, text: str, iterations: int) -> LoopResult:
        store = self.loop.run_store
        if self.loop.policy.on_max_iterations == "complete":
            run = await store.mark_completed(self.run, text, iterations)
            return await self._end(LoopOutcome.MAX_ITERATIONS, run, text=text)
        error = f"Reached max iterations ({iterations})"
        run = await store.mark_failed(self.run, error)
        return await self._end(LoopOutcome.MAX_ITERATIONS, run, text=text, error=error)

    async def _finish_recorded(self, checkpoint: Checkpoint) -> LoopResult:
        """The final checkpoint was written but the run was never closed."""
        logger.info("Run %s: closing from recorded %s checkpoint", self.run.id, checkpoint.type.value)
        data = checkpoint.data
        if checkpoint.type is CheckpointType.COMPLETE:
            return await self._complete(data["text"], data["iterations"])
        return await self._apply_max_iterations(data["text"], data["iterations"])

    async def _end(self, outcome: LoopOutcome, run: Run, *, text: str | None = None, error: str | None = None) -> LoopResult:
        self.run = run
        logger.info("Run %s drive ended: %s after %d iteration(s)", run.id, outcome.value, run.current_iteration)
        await self._emit(
            RunEndEvent(
                run_id=run.id,
                span_id=self.span_id,
                outcome=outcome,
                iterations=run.current_iteration,
                text=text,
                error=error,
                duration_ms=(time.perf_counter() - self.started) * 1000,
            )
        )
        return self._result(outcome, run, text)

    def _result(self, outcome: LoopOutcome, run: Run, text: str | None = None) -> LoopResult:
        if text is None and run.output is not None:
            text = run.output.get("text")
        return LoopResult(run=run, outcome=outcome, iterations=run.current_iteration, text=text)

    # === Checkpoints and events ===

    async def _append(self, checkpoint_type: CheckpointType, data: dict[str, Any], iteration: int) -> Checkpoint:
        checkpoint = await self.loop.ledger.append(self.run.id, checkpoint_type, data, iteration)
        await self._emit_checkpoint(checkpoint)
        return checkpoint

    async def _emit_checkpoint(self, checkpoint: Checkpoint) -> None:
        await self._emit(
            CheckpointEvent(
                run_id=checkpoint.run_id,
                parent_span_id=self.span_id,
                sequence=checkpoint.sequence,
                checkpoint_type=checkpoint.type.value,
                iteration=checkpoint.iteration,
                data=checkpoint.data,
                status=checkpoint.status.value,
            )
        )

    async def _emit_tool_call(
        self,
        tool: str,
        args: dict[str, Any],
        key: str,
        iteration: int,
        *,
        failed: bool,
        replayed: bool = False,
        duration_ms: float = 0.0,
    ) -> None:
        await self._emit(
            ToolCallEvent(
                run_id=self.run.id,
                parent_span_id=self.span_id,
                tool=tool,
                args=args,
                idempotency_key=key,
                iteration=iteration,
                failed=failed,
                replayed=replayed,
                duration_ms=duration_ms,
            )
        )

    async def _emit(self, event: Any) -> None:
        if self.dispatcher.active:
            await self.dispatcher.emit_async(event)
