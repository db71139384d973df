"""Event system for observing runs as they are driven."""

from runledger.events.dispatcher import EventDispatcher
from runledger.events.processor import (
    AsyncEventProcessor,
    EventProcessor,
    TypedEventProcessor,
)
from runledger.events.types import (
    BaseEvent,
    CheckpointEvent,
    Event,
    IterationStartEvent,
    RunEndEvent,
    RunStartEvent,
    ToolCallEvent,
)

__all__ = [
    # Event types
    "BaseEvent",
    "CheckpointEvent",
    "Event",
    "IterationStartEvent",
    "RunEndEvent",
    "RunStartEvent",
    "ToolCallEvent",
    # Processor interfaces
    "AsyncEventProcessor",
    "EventProcessor",
    "TypedEventProcessor",
    # Dispatcher
    "EventDispatcher",
]
