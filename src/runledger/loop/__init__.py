"""Reference execution loop over the run store and checkpoint ledger."""

from runledger.loop.protocols import HistoryStore, ModelCompletion, NextAction, ToolCall, ToolInvoker
from runledger.loop.runner import ExecutionLoop
from runledger.loop.types import LoopPolicy, LoopResult
from runledger.types import LoopOutcome

__all__ = [
    "ExecutionLoop",
    "HistoryStore",
    "LoopOutcome",
    "LoopPolicy",
    "LoopResult",
    "ModelCompletion",
    "NextAction",
    "ToolCall",
    "ToolInvoker",
]
