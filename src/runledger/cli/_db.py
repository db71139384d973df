"""Database access helpers for CLI commands."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from runledger.config import load_config
from runledger.storage.sqlite import SqliteStorage


def _require_aiosqlite() -> None:
    """Check that aiosqlite is available."""
    try:
        import aiosqlite  # noqa: F401
    except ImportError:
        print("Error: aiosqlite is required for the CLI. Install with: pip install runledger[cli]", file=sys.stderr)
        raise SystemExit(1) from None


def resolve_db(db: str | None) -> str:
    """--db if given, else ``db`` from [tool.runledger], else ./runs.db."""
    return db if db else load_config().db


def run_async(coro: Any) -> Any:
    """Run an async coroutine from sync CLI context."""
    return asyncio.run(coro)


def open_storage(db: str | None) -> SqliteStorage:
    """Storage for the sync read helpers (``run``, ``runs``, ``checkpoints``)."""
    _require_aiosqlite()
    return SqliteStorage(resolve_db(db))


@asynccontextmanager
async def async_storage(db: str | None) -> AsyncIterator[SqliteStorage]:
    """Initialized storage for commands that write, closed on exit."""
    _require_aiosqlite()
    storage = SqliteStorage(resolve_db(db))
    await storage.initialize()
    try:
        yield storage
    finally:
        await storage.close()
