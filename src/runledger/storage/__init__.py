"""Storage backends for runs, checkpoints and leases.

Provides the ``Storage`` ABC, an in-memory backend and an aiosqlite
backend, plus the payload serializers they share.
"""

from runledger.storage.base import Storage
from runledger.storage.memory import InMemoryStorage
from runledger.storage.serializers import JsonSerializer, Serializer
from runledger.storage.sqlite import SqliteStorage

__all__ = [
    "InMemoryStorage",
    "JsonSerializer",
    "Serializer",
    "SqliteStorage",
    "Storage",
]
