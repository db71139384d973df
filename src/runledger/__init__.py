"""runledger - A durable execution ledger for agent runs."""

from runledger.config import LedgerConfig, load_config
from runledger.events import (
    AsyncEventProcessor,
    BaseEvent,
    CheckpointEvent,
    Event,
    EventDispatcher,
    EventProcessor,
    IterationStartEvent,
    RunEndEvent,
    RunStartEvent,
    ToolCallEvent,
    TypedEventProcessor,
)
from runledger.events.rich_progress import RichProgressProcessor
from runledger.exceptions import (
    ConflictError,
    DuplicateRunKeyError,
    InvalidTransition,
    LeaseHeldError,
    LeaseLostError,
    LedgerIntegrityError,
    PersistenceError,
    RunLedgerError,
    RunNotFoundError,
    SequenceConflictError,
    ToolExecutionError,
    ValidationError,
)
from runledger.idempotency import ToolCallKey, args_hash, parse_tool_call_key, tool_call_key
from runledger.lease import LeaseManager
from runledger.ledger import CheckpointLedger
from runledger.loop import (
    ExecutionLoop,
    HistoryStore,
    LoopPolicy,
    LoopResult,
    ModelCompletion,
    NextAction,
    ToolCall,
    ToolInvoker,
)
from runledger.payloads import parse_payload, validate_payload
from runledger.resume import ResumeLoader, ResumeState
from runledger.run_store import RunStore
from runledger.sequence import SequenceAllocator
from runledger.storage import InMemoryStorage, SqliteStorage, Storage
from runledger.types import (
    Checkpoint,
    CheckpointStatus,
    CheckpointType,
    Lease,
    LoopOutcome,
    Run,
    RunStatus,
    ToolCallState,
)

__all__ = [
    # Services
    "CheckpointLedger",
    "ExecutionLoop",
    "LeaseManager",
    "ResumeLoader",
    "RunStore",
    "SequenceAllocator",
    # Storage
    "InMemoryStorage",
    "SqliteStorage",
    "Storage",
    # Records
    "Checkpoint",
    "CheckpointStatus",
    "CheckpointType",
    "Lease",
    "ResumeState",
    "Run",
    "RunStatus",
    "ToolCallState",
    # Idempotency and payloads
    "ToolCallKey",
    "args_hash",
    "parse_payload",
    "parse_tool_call_key",
    "tool_call_key",
    "validate_payload",
    # Loop
    "HistoryStore",
    "LoopOutcome",
    "LoopPolicy",
    "LoopResult",
    "ModelCompletion",
    "NextAction",
    "ToolCall",
    "ToolInvoker",
    # Config
    "LedgerConfig",
    "load_config",
    # Events
    "AsyncEventProcessor",
    "BaseEvent",
    "CheckpointEvent",
    "Event",
    "EventDispatcher",
    "EventProcessor",
    "IterationStartEvent",
    "RichProgressProcessor",
    "RunEndEvent",
    "RunStartEvent",
    "ToolCallEvent",
    "TypedEventProcessor",
    # Exceptions
    "ConflictError",
    "DuplicateRunKeyError",
    "InvalidTransition",
    "LeaseHeldError",
    "LeaseLostError",
    "LedgerIntegrityError",
    "PersistenceError",
    "RunLedgerError",
    "RunNotFoundError",
    "SequenceConflictError",
    "ToolExecutionError",
    "ValidationError",
]
