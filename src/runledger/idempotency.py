"""Idempotency keys for tool calls.

A tool call is identified by ``{run_id}:{iteration}:{tool}:{args_hash}``.
The same key is written on the ``tool_call_start`` and on its matching
``tool_result``; a stored result under a key means the call must not be
made again.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, NamedTuple

from runledger.exceptions import ValidationError


class ToolCallKey(NamedTuple):
    """Parsed components of a tool-call idempotency key."""

    run_id: str
    iteration: int
    tool: str
    args_hash: str


def args_hash(args: dict[str, Any]) -> str:
    """Stable hash of tool arguments, independent of key order."""
    canonical = json.dumps(args, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def tool_call_key(run_id: str, iteration: int, tool: str, args: dict[str, Any]) -> str:
    """Build the idempotency key for one tool call."""
    if ":" in run_id:
        raise ValidationError(f"run_id must not contain ':', got {run_id!r}")
    return f"{run_id}:{iteration}:{tool}:{args_hash(args)}"


def parse_tool_call_key(key: str) -> ToolCallKey:
    """Split a key back into its parts.

    Tool names may contain ``:``; run ids and hashes never do.
    """
    head, sep, digest = key.rpartition(":")
    run_id, _, rest = head.partition(":")
    iteration_str, _, tool = rest.partition(":")
    if not sep or not run_id or not tool or not digest or not iteration_str.isdigit():
        raise ValidationError(f"Malformed tool-call key: {key!r}")
    return ToolCallKey(run_id=run_id, iteration=int(iteration_str), tool=tool, args_hash=digest)
