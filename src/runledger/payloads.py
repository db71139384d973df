"""Typed checkpoint payloads.

Every checkpoint type has one fixed payload shape. Payloads are validated
when the checkpoint is written, so resume logic can rely on them instead
of probing an untyped dict.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from typing import Any, Union

from runledger.exceptions import ValidationError
from runledger.types import CheckpointType


def _require_str(cls_name: str, name: str, value: Any) -> None:
    if not isinstance(value, str):
        raise ValidationError(f"{cls_name}.{name} must be a string, got {type(value).__name__}")


def _require_count(cls_name: str, name: str, value: Any) -> None:
    # bool is an int subclass; a flag is never a valid count
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{cls_name}.{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValidationError(f"{cls_name}.{name} must be >= 0, got {value}")


def _require_tool(cls_name: str, tool: Any, args: Any) -> None:
    _require_str(cls_name, "tool", tool)
    if not tool:
        raise ValidationError(f"{cls_name}.tool must not be empty")
    if not isinstance(args, dict):
        raise ValidationError(f"{cls_name}.args must be a dict, got {type(args).__name__}")
    _require_json(cls_name, "args", args)


def _require_json(cls_name: str, name: str, value: Any) -> None:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{cls_name}.{name} is not JSON-serializable: {e}") from e


@dataclass(frozen=True)
class IterationStartPayload:
    iteration: int

    def __post_init__(self) -> None:
        _require_count(type(self).__name__, "iteration", self.iteration)


@dataclass(frozen=True)
class ThoughtPayload:
    """Model output for one iteration (text truncated by the writer)."""

    text: str
    has_tool_calls: bool
    tool_count: int
    iteration: int

    def __post_init__(self) -> None:
        name = type(self).__name__
        _require_str(name, "text", self.text)
        if not isinstance(self.has_tool_calls, bool):
            raise ValidationError(f"{name}.has_tool_calls must be a bool, got {type(self.has_tool_calls).__name__}")
        _require_count(name, "tool_count", self.tool_count)
        _require_count(name, "iteration", self.iteration)
        if self.has_tool_calls != (self.tool_count > 0):
            raise ValidationError(f"{name}: has_tool_calls={self.has_tool_calls} contradicts tool_count={self.tool_count}")


@dataclass(frozen=True)
class ToolCallStartPayload:
    tool: str
    args: dict[str, Any]
    iteration: int

    def __post_init__(self) -> None:
        name = type(self).__name__
        _require_tool(name, self.tool, self.args)
        _require_count(name, "iteration", self.iteration)


@dataclass(frozen=True)
class ToolResultPayload:
    """Recorded tool outcome. ``result`` is reused verbatim on resume."""

    tool: str
    args: dict[str, Any]
    result: Any
    iteration: int

    def __post_init__(self) -> None:
        name = type(self).__name__
        _require_tool(name, self.tool, self.args)
        _require_json(name, "result", self.result)
        _require_count(name, "iteration", self.iteration)


@dataclass(frozen=True)
class ObservationPayload:
    text: str
    iteration: int

    def __post_init__(self) -> None:
        _require_str(type(self).__name__, "text", self.text)
        _require_count(type(self).__name__, "iteration", self.iteration)


@dataclass(frozen=True)
class CompletePayload:
    text: str
    iterations: int

    def __post_init__(self) -> None:
        _require_str(type(self).__name__, "text", self.text)
        _require_count(type(self).__name__, "iterations", self.iterations)


@dataclass(frozen=True)
class MaxIterationsPayload:
    iterations: int
    text: str

    def __post_init__(self) -> None:
        _require_count(type(self).__name__, "iterations", self.iterations)
        _require_str(type(self).__name__, "text", self.text)


Payload = Union[
    IterationStartPayload,
    ThoughtPayload,
    ToolCallStartPayload,
    ToolResultPayload,
    ObservationPayload,
    CompletePayload,
    MaxIterationsPayload,
]

PAYLOAD_TYPES: dict[CheckpointType, type] = {
    CheckpointType.ITERATION_START: IterationStartPayload,
    CheckpointType.THOUGHT: ThoughtPayload,
    CheckpointType.TOOL_CALL_START: ToolCallStartPayload,
    CheckpointType.TOOL_RESULT: ToolResultPayload,
    CheckpointType.OBSERVATION: ObservationPayload,
    CheckpointType.COMPLETE: CompletePayload,
    CheckpointType.MAX_ITERATIONS: MaxIterationsPayload,
}


def parse_payload(checkpoint_type: CheckpointType | str, data: Any) -> Payload:
    """Build the typed payload for *checkpoint_type* from a dict.

    Raises:
        ValidationError: Unknown type, missing or unexpected keys, or
            a field of the wrong type.
    """
    try:
        checkpoint_type = CheckpointType(checkpoint_type)
    except ValueError as e:
        valid = ", ".join(t.value for t in CheckpointType)
        raise ValidationError(f"Unknown checkpoint type {checkpoint_type!r}. Must be one of: {valid}") from e

    cls = PAYLOAD_TYPES[checkpoint_type]
    if not isinstance(data, dict):
        raise ValidationError(f"{checkpoint_type.value} payload must be a dict, got {type(data).__name__}")

    expected = {f.name for f in fields(cls)}
    missing = expected - data.keys()
    unexpected = data.keys() - expected
    if missing:
        raise ValidationError(f"{checkpoint_type.value} payload missing fields: {sorted(missing)}")
    if unexpected:
        raise ValidationError(f"{checkpoint_type.value} payload has unexpected fields: {sorted(unexpected)}")
    return cls(**data)


def validate_payload(checkpoint_type: CheckpointType | str, data: Any, *, iteration: int | None = None) -> dict[str, Any]:
    """Validate *data* and return it as a plain dict ready for storage.

    When *iteration* is given, a payload that carries its own
    ``iteration`` field must agree with it.
    """
    payload = parse_payload(checkpoint_type, data)
    if iteration is not None and hasattr(payload, "iteration") and payload.iteration != iteration:
        raise ValidationError(f"Payload iteration {payload.iteration} does not match checkpoint iteration {iteration}")
    return asdict(payload)
