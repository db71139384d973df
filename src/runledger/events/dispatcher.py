"""Fan-out of loop events to registered processors."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from runledger.events.processor import AsyncEventProcessor, EventProcessor

if TYPE_CHECKING:
    from runledger.events.types import Event

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Delivers each event to every processor in registration order.

    Delivery is best-effort: the ledger is the record of a run, so a broken
    processor is logged and skipped rather than failing the drive. Pass
    ``strict=True`` to let processor errors propagate (useful in tests).
    """

    def __init__(self, processors: list[EventProcessor] | None = None, *, strict: bool = False) -> None:
        self._processors = list(processors or ())
        self._strict = strict

    @property
    def active(self) -> bool:
        """Whether anything is listening."""
        return bool(self._processors)

    @contextmanager
    def _isolated(self, processor: EventProcessor, what: str) -> Iterator[None]:
        try:
            yield
        except Exception:
            if self._strict:
                raise
            logger.warning("EventProcessor %r failed on %s", processor, what, exc_info=True)

    def emit(self, event: Event) -> None:
        name = type(event).__name__
        for processor in self._processors:
            with self._isolated(processor, name):
                processor.on_event(event)

    async def emit_async(self, event: Event) -> None:
        """Like :meth:`emit`, awaiting processors that handle events asynchronously."""
        name = type(event).__name__
        for processor in self._processors:
            with self._isolated(processor, name):
                if isinstance(processor, AsyncEventProcessor):
                    await processor.on_event_async(event)
                else:
                    processor.on_event(event)

    async def shutdown_async(self) -> None:
        for processor in self._processors:
            with self._isolated(processor, "shutdown"):
                if isinstance(processor, AsyncEventProcessor):
                    await processor.shutdown_async()
                else:
                    processor.shutdown()
