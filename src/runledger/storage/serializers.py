"""Serializers for structured payload columns."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any


class Serializer(ABC):
    """Base class for payload serialization.

    Storage backends use serializers to turn run input/output/context and
    checkpoint data into text columns and back.
    """

    @abstractmethod
    def serialize(self, value: Any) -> str:
        """Convert value to text for storage."""
        ...

    @abstractmethod
    def deserialize(self, data: str) -> Any:
        """Convert stored text back to a value."""
        ...


class JsonSerializer(Serializer):
    """JSON serializer (default). Safe, human-readable, inspectable.

    Raises TypeError on non-JSON-serializable values; payloads are
    validated before they get here, so that only happens for bad input
    or context values.
    """

    def __init__(self, *, sort_keys: bool = False):
        self._sort_keys = sort_keys

    def serialize(self, value: Any) -> str:
        return json.dumps(value, sort_keys=self._sort_keys, ensure_ascii=False)

    def deserialize(self, data: str) -> Any:
        return json.loads(data)
