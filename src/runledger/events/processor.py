"""Base classes for event consumers."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from runledger.events.types import (
        CheckpointEvent,
        Event,
        IterationStartEvent,
        RunEndEvent,
        RunStartEvent,
        ToolCallEvent,
    )


@lru_cache(maxsize=None)
def _handler_name(event_class_name: str) -> str:
    """``RunStartEvent`` -> ``on_run_start``."""
    stem = event_class_name.removesuffix("Event")
    return "on_" + re.sub(r"(?<!^)(?=[A-Z])", "_", stem).lower()


class EventProcessor:
    """Receives every event of a drive through ``on_event``.

    ``shutdown`` is called once the drive is over, whatever its outcome.
    """

    def on_event(self, event: Event) -> None:
        pass

    def shutdown(self) -> None:
        pass


class AsyncEventProcessor(EventProcessor):
    """A processor whose handlers are coroutines.

    The dispatcher awaits ``on_event_async`` and ``shutdown_async`` instead
    of calling the sync methods.
    """

    async def on_event_async(self, event: Event) -> None:
        pass

    async def shutdown_async(self) -> None:
        pass


class TypedEventProcessor(EventProcessor):
    """Routes each event to an ``on_<kind>`` method named after its class.

    Override only the handlers you need; the rest are no-ops.
    """

    def on_event(self, event: Event) -> None:
        handler = getattr(self, _handler_name(type(event).__name__), None)
        if handler is not None:
            handler(event)

    def on_run_start(self, event: RunStartEvent) -> None: ...
    def on_run_end(self, event: RunEndEvent) -> None: ...
    def on_iteration_start(self, event: IterationStartEvent) -> None: ...
    def on_checkpoint(self, event: CheckpointEvent) -> None: ...
    def on_tool_call(self, event: ToolCallEvent) -> None: ...
