"""Live progress for runs being driven.

One bar per run in a terminal (rich), one timestamped line per step when
output is piped or captured.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from runledger.events.processor import TypedEventProcessor
from runledger.types import LoopOutcome

if TYPE_CHECKING:
    from runledger.events.types import (
        IterationStartEvent,
        RunEndEvent,
        RunStartEvent,
        ToolCallEvent,
    )

_OK_OUTCOMES = frozenset({LoopOutcome.COMPLETED, LoopOutcome.MAX_ITERATIONS})


def _require_rich() -> None:
    try:
        import rich  # noqa: F401
    except ImportError:
        raise ImportError(
            "RichProgressProcessor needs 'rich' for terminal output. "
            "Install it with: pip install 'runledger[progress]' or pip install rich"
        ) from None


def _stdout_is_terminal() -> bool:
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


@dataclass
class _RunBar:
    """What the view knows about one drive."""

    label: str
    task_id: Any = None
    replayed: int = 0


class _LineView:
    """Plain ``[HH:MM:SS] message`` lines."""

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def _line(self, message: str) -> None:
        print(f"{datetime.now():[%H:%M:%S]} {message}", flush=True)

    def run_started(self, bar: _RunBar, event: RunStartEvent) -> None:
        how = f"resumed at iteration {event.start_iteration}" if event.resumed else "started"
        self._line(f"▶ {bar.label} {how}")

    def iteration(self, bar: _RunBar, iteration: int) -> None:
        self._line(f"  {bar.label}: iteration {iteration}")

    def tool_call(self, bar: _RunBar, event: ToolCallEvent, mark: str) -> None:
        self._line(f"  {mark} {event.tool}" + (" (replayed)" if event.replayed else ""))

    def run_ended(self, bar: _RunBar, event: RunEndEvent, ok: bool, detail: str) -> None:
        self._line(f"{'✓' if ok else '✗'} {bar.label} {event.outcome.value} after {event.iterations} iteration(s){detail}")


class _BarView:
    """A rich ``Progress`` with one task per run, sized by the iteration bound."""

    def __init__(self, transient: bool):
        _require_rich()
        from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            transient=transient,
        )

    def open(self) -> None:
        self.progress.start()

    def close(self) -> None:
        self.progress.stop()

    def run_started(self, bar: _RunBar, event: RunStartEvent) -> None:
        bar.task_id = self.progress.add_task(
            f"📒 {bar.label}",
            total=event.max_iterations or None,
            completed=max(event.start_iteration - 1, 0),
        )

    def iteration(self, bar: _RunBar, iteration: int) -> None:
        self.progress.update(bar.task_id, completed=iteration - 1, description=f"📒 {bar.label} · iteration {iteration}")

    def tool_call(self, bar: _RunBar, event: ToolCallEvent, mark: str) -> None:
        replayed = f" [dim]({bar.replayed} replayed)[/dim]" if bar.replayed else ""
        self.progress.update(
            bar.task_id,
            description=f"📒 {bar.label} · iteration {event.iteration} · {mark} {event.tool}{replayed}",
        )

    def run_ended(self, bar: _RunBar, event: RunEndEvent, ok: bool, detail: str) -> None:
        self.progress.update(bar.task_id, completed=event.iterations)
        style = "bold green" if ok else "bold red"
        self.progress.console.print(f"[{style}]{'✓' if ok else '✗'} {bar.label} {event.outcome.value}{detail}[/{style}]")


class RichProgressProcessor(TypedEventProcessor):
    """Shows how far each run being driven has got.

    In a terminal every run gets a bar whose total is the iteration bound;
    a resumed run starts partly filled, and tool calls whose results were
    replayed from the ledger are counted on the bar. Elsewhere (CI, piped
    output) the same information is printed as plain timestamped lines.

    Args:
        transient: Remove the bars once the display stops.
        force_mode: ``"tty"`` or ``"non-tty"`` to override detection.
    """

    def __init__(
        self,
        *,
        transient: bool = True,
        force_mode: Literal["tty", "non-tty", "auto"] = "auto",
    ) -> None:
        tty = _stdout_is_terminal() if force_mode == "auto" else force_mode == "tty"
        self._view: _BarView | _LineView = _BarView(transient) if tty else _LineView()
        self._bars: dict[str, _RunBar] = {}  # run span_id → bar
        self._open = False

    def _bar_for(self, parent_span_id: str | None) -> _RunBar | None:
        return self._bars.get(parent_span_id or "")

    def on_run_start(self, event: RunStartEvent) -> None:
        if not self._open:
            self._view.open()
            self._open = True
        bar = _RunBar(label=f"{event.agent_kind or 'run'} {event.run_id[:8]}")
        self._bars[event.span_id] = bar
        self._view.run_started(bar, event)

    def on_iteration_start(self, event: IterationStartEvent) -> None:
        bar = self._bar_for(event.parent_span_id)
        if bar is not None:
            self._view.iteration(bar, event.iteration)

    def on_tool_call(self, event: ToolCallEvent) -> None:
        bar = self._bar_for(event.parent_span_id)
        if bar is None:
            return
        if event.replayed:
            bar.replayed += 1
            mark = "↺"
        else:
            mark = "✗" if event.failed else "✓"
        self._view.tool_call(bar, event, mark)

    def on_run_end(self, event: RunEndEvent) -> None:
        bar = self._bars.pop(event.span_id, None)
        if bar is None:
            return
        ok = event.outcome in _OK_OUTCOMES and not event.error
        self._view.run_ended(bar, event, ok, f": {event.error}" if event.error else "")

    def shutdown(self) -> None:
        """Stop the live display. A later run start reopens it."""
        if self._open:
            self._view.close()
            self._open = False
