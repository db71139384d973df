"""OpenTelemetry export processor: turns run events into OTel spans.

Opt-in via::

    pip install runledger[otel]

Usage::

    from runledger.events.otel import OpenTelemetryProcessor

    loop = ExecutionLoop(..., dispatcher=EventDispatcher([OpenTelemetryProcessor()]))

Spans go to whatever OTel backend is configured. The checkpoint ledger is
still the durable record; spans are for looking at it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from runledger.events.processor import TypedEventProcessor

if TYPE_CHECKING:
    from runledger.events.types import (
        CheckpointEvent,
        IterationStartEvent,
        RunEndEvent,
        RunStartEvent,
        ToolCallEvent,
    )


def _require_opentelemetry() -> None:
    """Raise a clear error if opentelemetry is not installed."""
    try:
        import opentelemetry  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'opentelemetry' package is required for OpenTelemetryProcessor. "
            "Install with: pip install 'runledger[otel]' "
            "or: pip install opentelemetry-api opentelemetry-sdk"
        ) from None


def _ns(timestamp: float) -> int:
    return int(timestamp * 1_000_000_000)


class OpenTelemetryProcessor(TypedEventProcessor):
    """Converts run events to OpenTelemetry spans.

    Mapping:
        RunStartEvent       → root span (``run:{agent_kind}``)
        IterationStartEvent → span event on the run span
        CheckpointEvent     → span event on the run span
        ToolCallEvent       → child span (``tool:{tool}``), back-dated by its duration
        RunEndEvent         → end root span
    """

    def __init__(self, tracer_name: str = "runledger", *, tracer_provider: Any = None) -> None:
        _require_opentelemetry()
        from opentelemetry import trace
        from opentelemetry.trace import StatusCode

        # None means the globally configured provider
        self._tracer = trace.get_tracer(tracer_name, tracer_provider=tracer_provider)
        self._trace = trace
        self._StatusCode = StatusCode
        self._spans: dict[str, Any] = {}  # span_id → OTel Span
        self._contexts: dict[str, Any] = {}  # span_id → OTel Context

    def on_run_start(self, event: RunStartEvent) -> None:
        span = self._tracer.start_span(
            name=f"run:{event.agent_kind}",
            start_time=_ns(event.timestamp),
            attributes={
                "runledger.run_id": event.run_id,
                "runledger.agent_kind": event.agent_kind,
                "runledger.loop_kind": event.loop_kind,
                "runledger.start_iteration": event.start_iteration,
                "runledger.resumed": event.resumed,
            },
        )
        self._spans[event.span_id] = span
        self._contexts[event.span_id] = self._trace.set_span_in_context(span)

    def on_iteration_start(self, event: IterationStartEvent) -> None:
        run_span = self._spans.get(event.parent_span_id) if event.parent_span_id else None
        if run_span is not None:
            run_span.add_event("iteration_start", attributes={"iteration": event.iteration}, timestamp=_ns(event.timestamp))

    def on_checkpoint(self, event: CheckpointEvent) -> None:
        run_span = self._spans.get(event.parent_span_id) if event.parent_span_id else None
        if run_span is None:
            return
        run_span.add_event(
            f"checkpoint:{event.checkpoint_type}",
            attributes={"sequence": event.sequence, "iteration": event.iteration, "status": event.status},
            timestamp=_ns(event.timestamp),
        )

    def on_tool_call(self, event: ToolCallEvent) -> None:
        parent_ctx = self._contexts.get(event.parent_span_id) if event.parent_span_id else None
        end = _ns(event.timestamp)
        span = self._tracer.start_span(
            name=f"tool:{event.tool}",
            context=parent_ctx,
            start_time=end - int(event.duration_ms * 1_000_000),
            attributes={
                "runledger.tool": event.tool,
                "runledger.idempotency_key": event.idempotency_key,
                "runledger.iteration": event.iteration,
                "runledger.replayed": event.replayed,
            },
        )
        if event.failed:
            span.set_status(self._StatusCode.ERROR, "tool call failed")
        span.end(end_time=end)

    def on_run_end(self, event: RunEndEvent) -> None:
        span = self._spans.pop(event.span_id, None)
        self._contexts.pop(event.span_id, None)
        if span is None:
            return
        span.set_attribute("runledger.duration_ms", event.duration_ms)
        span.set_attribute("runledger.outcome", event.outcome.value)
        span.set_attribute("runledger.iterations", event.iterations)
        if event.error:
            span.set_status(self._StatusCode.ERROR, event.error)
        span.end(end_time=_ns(event.timestamp))

    def shutdown(self) -> None:
        """End any spans left open by a drive that raised."""
        for span in self._spans.values():
            span.end()
        self._spans.clear()
        self._contexts.clear()
