"""SQLite-based storage using aiosqlite."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Collection
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from runledger.exceptions import (
    DuplicateRunKeyError,
    PersistenceError,
    RunNotFoundError,
    SequenceConflictError,
)
from runledger.storage._migrate import ensure_schema
from runledger.storage.base import Storage, check_transition_fields
from runledger.storage.serializers import JsonSerializer, Serializer
from runledger.types import (
    Checkpoint,
    CheckpointStatus,
    CheckpointType,
    Lease,
    Run,
    RunStatus,
)

logger = logging.getLogger(__name__)

# Explicit column lists for SELECT queries, so results do not depend on column order
_RUNS_COLS = (
    "id, caller_idempotency_key, agent_kind, loop_kind, status, input, output, context, "
    "current_iteration, timeout_at, created_at, started_at, completed_at, cancelled_at, error"
)
_CHECKPOINTS_COLS = "id, run_id, type, sequence, iteration, idempotency_key, data, status, created_at"
_LEASES_COLS = "run_id, owner, acquired_at, expires_at"

_DATETIME_FIELDS = frozenset({"started_at", "completed_at", "cancelled_at"})


def _require_aiosqlite() -> Any:
    """Import aiosqlite with a clear error message if not installed."""
    try:
        import aiosqlite

        return aiosqlite
    except ImportError:
        raise ImportError("SqliteStorage requires aiosqlite. Install it with: pip install runledger[sqlite]") from None


def _to_iso(dt: datetime | None) -> str | None:
    """Normalize to UTC with fixed precision so stored strings sort chronologically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _persistence_error(action: str, error: sqlite3.Error) -> PersistenceError:
    logger.error("SQLite failed to %s: %s", action, error)
    return PersistenceError(f"Failed to {action}: {error}")


class SqliteStorage(Storage):
    """SQLite-based run and checkpoint persistence.

    Best for: local development, single-server deployments, several worker
    processes sharing one database file.

    The async connection runs in autocommit mode; read-modify-write
    operations take ``BEGIN IMMEDIATE`` so they are atomic across
    processes too. Every write is committed before the method returns.

    Args:
        path: Path to SQLite database file.
        serializer: Payload serializer (default: JSON).
        busy_timeout_ms: How long to wait on a locked database.

    Example::

        storage = SqliteStorage("./runs.db")
        await storage.initialize()
        store = RunStore(storage)
        ledger = CheckpointLedger(storage)

        # Query later, synchronously
        run = storage.run(run_id)
        checkpoints = storage.checkpoints(run_id)
    """

    def __init__(
        self,
        path: str,
        *,
        serializer: Serializer | None = None,
        busy_timeout_ms: int = 5000,
    ):
        if path == ":memory:":
            raise ValueError("SqliteStorage needs a database file; use InMemoryStorage for in-process storage.")
        self._path = path
        self._serializer = serializer or JsonSerializer()
        self._busy_timeout_ms = busy_timeout_ms
        self._db: Any = None
        self._sync_conn: Any = None
        self._lock = asyncio.Lock()
        self._aiosqlite = _require_aiosqlite()

    @property
    def path(self) -> str:
        return self._path

    async def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        if self._db is not None:
            return
        try:
            self._ensure_sync_schema()
            db = await self._aiosqlite.connect(self._path, isolation_level=None)
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            await db.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise _persistence_error("open database", e) from e
        self._db = db

    def _ensure_sync_schema(self) -> None:
        """Set up schema using sync connection (migration logic is sync)."""
        conn = sqlite3.connect(self._path, timeout=self._busy_timeout_ms / 1000)
        try:
            ensure_schema(conn)
        finally:
            conn.close()

    async def close(self) -> None:
        """Close database connections."""
        if self._sync_conn is not None:
            self._sync_conn.close()
            self._sync_conn = None
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _ensure_db(self) -> None:
        """Lazy-initialize on first use."""
        if self._db is None:
            await self.initialize()

    @asynccontextmanager
    async def _session(self, action: str, *, write: bool = False) -> AsyncIterator[Any]:
        """Serialize access to the shared connection and map driver errors.

        With ``write=True`` the body runs inside ``BEGIN IMMEDIATE`` and is
        committed on success, rolled back on any exception.
        """
        await self._ensure_db()
        async with self._lock:
            try:
                if write:
                    await self._db.execute("BEGIN IMMEDIATE")
                try:
                    yield self._db
                except BaseException:
                    if write:
                        await self._db.execute("ROLLBACK")
                    raise
                if write:
                    await self._db.execute("COMMIT")
            except sqlite3.Error as e:
                raise _persistence_error(action, e) from e

    # === Runs ===

    async def insert_run(self, run: Run) -> None:
        async with self._session("insert run") as db:
            try:
                await db.execute(
                    f"INSERT INTO runs ({_RUNS_COLS}) VALUES ({', '.join('?' * 15)})",
                    self._run_params(run),
                )
            except sqlite3.IntegrityError as e:
                if "caller_idempotency_key" in str(e):
                    raise DuplicateRunKeyError(run.caller_idempotency_key) from e
                raise

    async def get_run(self, run_id: str) -> Run | None:
        async with self._session("read run") as db:
            return await self._fetch_run(db, "id = ?", (run_id,))

    async def get_run_by_key(self, caller_idempotency_key: str) -> Run | None:
        async with self._session("read run") as db:
            return await self._fetch_run(db, "caller_idempotency_key = ?", (caller_idempotency_key,))

    async def transition_run(
        self,
        run_id: str,
        from_statuses: Collection[RunStatus],
        to_status: RunStatus,
        **fields: Any,
    ) -> Run | None:
        check_transition_fields(fields)
        statuses = [s.value for s in from_statuses]
        if not statuses:
            return None

        # Build SET clause dynamically based on what's provided
        sets = ["status = ?"]
        params: list[Any] = [to_status.value]
        for name, value in fields.items():
            sets.append(f"{name} = ?")
            params.append(self._encode_field(name, value))
        params.append(run_id)
        params.extend(statuses)

        async with self._session("update run status", write=True) as db:
            cursor = await db.execute(
                f"UPDATE runs SET {', '.join(sets)} WHERE id = ? AND status IN ({', '.join('?' * len(statuses))})",
                params,
            )
            if cursor.rowcount != 1:
                return None
            return await self._fetch_run(db, "id = ?", (run_id,))

    async def advance_iteration(self, run_id: str, iteration: int) -> Run | None:
        async with self._session("advance iteration", write=True) as db:
            await db.execute(
                "UPDATE runs SET current_iteration = MAX(current_iteration, ?) WHERE id = ? AND status = ?",
                (iteration, run_id, RunStatus.RUNNING.value),
            )
            return await self._fetch_run(db, "id = ?", (run_id,))

    async def merge_context(self, run_id: str, partial: dict[str, Any]) -> Run | None:
        async with self._session("merge run context", write=True) as db:
            cursor = await db.execute("SELECT context FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
            if row is None:
                return None
            context = self._serializer.deserialize(row[0]) if row[0] else {}
            context.update(partial)
            await db.execute(
                "UPDATE runs SET context = ? WHERE id = ?",
                (self._serializer.serialize(context), run_id),
            )
            return await self._fetch_run(db, "id = ?", (run_id,))

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        agent_kind: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Run]:
        where, params = self._run_filters(status=status, agent_kind=agent_kind, since=since)
        params.append(limit)
        async with self._session("list runs") as db:
            cursor = await db.execute(
                f"SELECT {_RUNS_COLS} FROM runs{where} ORDER BY created_at DESC LIMIT ?",
                params,
            )
            rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    # === Checkpoints ===

    async def insert_checkpoint(self, checkpoint: Checkpoint) -> None:
        async with self._session("append checkpoint") as db:
            try:
                await db.execute(
                    f"INSERT INTO checkpoints ({_CHECKPOINTS_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        checkpoint.id,
                        checkpoint.run_id,
                        checkpoint.type.value,
                        checkpoint.sequence,
                        checkpoint.iteration,
                        checkpoint.idempotency_key,
                        self._serializer.serialize(checkpoint.data),
                        checkpoint.status.value,
                        _to_iso(checkpoint.created_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                message = str(e)
                if "checkpoints.run_id, checkpoints.sequence" in message:
                    raise SequenceConflictError(checkpoint.run_id, checkpoint.sequence) from e
                if "FOREIGN KEY" in message:
                    raise RunNotFoundError(checkpoint.run_id) from e
                raise

    async def max_sequence(self, run_id: str) -> int:
        async with self._session("read max sequence") as db:
            cursor = await db.execute("SELECT COALESCE(MAX(sequence), 0) FROM checkpoints WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
        return row[0]

    async def list_checkpoints(self, run_id: str, *, after_sequence: int = 0) -> list[Checkpoint]:
        async with self._session("list checkpoints") as db:
            cursor = await db.execute(
                f"SELECT {_CHECKPOINTS_COLS} FROM checkpoints WHERE run_id = ? AND sequence > ? ORDER BY sequence",
                (run_id, after_sequence),
            )
            rows = await cursor.fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    async def find_checkpoint_by_key(
        self,
        idempotency_key: str,
        *,
        checkpoint_type: CheckpointType | None = None,
    ) -> Checkpoint | None:
        sql = f"SELECT {_CHECKPOINTS_COLS} FROM checkpoints WHERE idempotency_key = ?"
        params: list[Any] = [idempotency_key]
        if checkpoint_type is not None:
            sql += " AND type = ?"
            params.append(checkpoint_type.value)
        sql += " ORDER BY sequence LIMIT 1"

        async with self._session("look up idempotency key") as db:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
        return self._row_to_checkpoint(row) if row is not None else None

    # === Leases ===

    async def acquire_lease(self, run_id: str, owner: str, *, now: datetime, expires_at: datetime) -> Lease:
        async with self._session("acquire lease", write=True) as db:
            try:
                await db.execute(
                    """
                    INSERT INTO run_leases (run_id, owner, acquired_at, expires_at) VALUES (?, ?, ?, ?)
                    ON CONFLICT(run_id) DO UPDATE SET
                        owner = excluded.owner,
                        acquired_at = excluded.acquired_at,
                        expires_at = excluded.expires_at
                    WHERE run_leases.owner = excluded.owner OR run_leases.expires_at <= ?
                    """,
                    (run_id, owner, _to_iso(now), _to_iso(expires_at), _to_iso(now)),
                )
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise RunNotFoundError(run_id) from e
                raise
            cursor = await db.execute(f"SELECT {_LEASES_COLS} FROM run_leases WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
        return self._row_to_lease(row)

    async def renew_lease(self, run_id: str, owner: str, *, expires_at: datetime) -> Lease | None:
        async with self._session("renew lease", write=True) as db:
            cursor = await db.execute(
                "UPDATE run_leases SET expires_at = ? WHERE run_id = ? AND owner = ?",
                (_to_iso(expires_at), run_id, owner),
            )
            if cursor.rowcount != 1:
                return None
            cursor = await db.execute(f"SELECT {_LEASES_COLS} FROM run_leases WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
        return self._row_to_lease(row)

    async def release_lease(self, run_id: str, owner: str) -> bool:
        async with self._session("release lease") as db:
            cursor = await db.execute("DELETE FROM run_leases WHERE run_id = ? AND owner = ?", (run_id, owner))
            return cursor.rowcount == 1

    async def get_lease(self, run_id: str) -> Lease | None:
        async with self._session("read lease") as db:
            cursor = await db.execute(f"SELECT {_LEASES_COLS} FROM run_leases WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
        return self._row_to_lease(row) if row is not None else None

    # === Internal ===

    async def _fetch_run(self, db: Any, where: str, params: tuple[Any, ...]) -> Run | None:
        cursor = await db.execute(f"SELECT {_RUNS_COLS} FROM runs WHERE {where}", params)
        row = await cursor.fetchone()
        return self._row_to_run(row) if row is not None else None

    def _run_params(self, run: Run) -> tuple[Any, ...]:
        return (
            run.id,
            run.caller_idempotency_key,
            run.agent_kind,
            run.loop_kind,
            run.status.value,
            self._serializer.serialize(run.input),
            self._serializer.serialize(run.output) if run.output is not None else None,
            self._serializer.serialize(run.context),
            run.current_iteration,
            _to_iso(run.timeout_at),
            _to_iso(run.created_at),
            _to_iso(run.started_at),
            _to_iso(run.completed_at),
            _to_iso(run.cancelled_at),
            run.error,
        )

    def _encode_field(self, name: str, value: Any) -> Any:
        if value is None:
            return None
        if name in _DATETIME_FIELDS:
            return _to_iso(value)
        if name == "output":
            return self._serializer.serialize(value)
        return value

    @staticmethod
    def _run_filters(
        *,
        status: RunStatus | None,
        agent_kind: str | None,
        since: datetime | None,
    ) -> tuple[str, list[Any]]:
        conditions = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if agent_kind is not None:
            conditions.append("agent_kind = ?")
            params.append(agent_kind)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_to_iso(since))
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    def _row_to_run(self, row: tuple[Any, ...]) -> Run:
        """Convert a database row to Run (column order of ``_RUNS_COLS``)."""
        return Run(
            id=row[0],
            caller_idempotency_key=row[1],
            agent_kind=row[2],
            loop_kind=row[3],
            status=RunStatus(row[4]),
            input=self._serializer.deserialize(row[5]),
            output=self._serializer.deserialize(row[6]) if row[6] is not None else None,
            context=self._serializer.deserialize(row[7]) if row[7] else {},
            current_iteration=row[8],
            timeout_at=_from_iso(row[9]),
            created_at=_from_iso(row[10]),
            started_at=_from_iso(row[11]),
            completed_at=_from_iso(row[12]),
            cancelled_at=_from_iso(row[13]),
            error=row[14],
        )

    def _row_to_checkpoint(self, row: tuple[Any, ...]) -> Checkpoint:
        """Convert a database row to Checkpoint (column order of ``_CHECKPOINTS_COLS``)."""
        return Checkpoint(
            id=row[0],
            run_id=row[1],
            type=CheckpointType(row[2]),
            sequence=row[3],
            iteration=row[4],
            idempotency_key=row[5],
            data=self._serializer.deserialize(row[6]),
            status=CheckpointStatus(row[7]),
            created_at=_from_iso(row[8]),
        )

    @staticmethod
    def _row_to_lease(row: tuple[Any, ...]) -> Lease:
        return Lease(
            run_id=row[0],
            owner=row[1],
            acquired_at=_from_iso(row[2]),
            expires_at=_from_iso(row[3]),
        )

    # === Sync Reads ===

    def _sync_db(self):
        """Open a sync sqlite3 connection (lazy, cached).

        Creates/migrates schema if needed so sync reads work standalone.
        """
        if self._sync_conn is None:
            # WAL mode allows concurrent readers alongside async writes
            # without "database is locked" errors
            conn = sqlite3.connect(self._path, timeout=self._busy_timeout_ms / 1000)
            conn.execute("PRAGMA journal_mode=WAL")
            ensure_schema(conn)
            self._sync_conn = conn
        return self._sync_conn

    def run(self, run_id: str) -> Run | None:
        """Get a run synchronously."""
        row = self._sync_db().execute(f"SELECT {_RUNS_COLS} FROM runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row is not None else None

    def runs(
        self,
        *,
        status: RunStatus | None = None,
        agent_kind: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Run]:
        """List runs synchronously with optional filters."""
        where, params = self._run_filters(status=status, agent_kind=agent_kind, since=since)
        params.append(limit)
        cursor = self._sync_db().execute(
            f"SELECT {_RUNS_COLS} FROM runs{where} ORDER BY created_at DESC LIMIT ?",
            params,
        )
        return [self._row_to_run(row) for row in cursor.fetchall()]

    def checkpoints(self, run_id: str) -> list[Checkpoint]:
        """Get a run's checkpoints synchronously, in sequence order."""
        cursor = self._sync_db().execute(
            f"SELECT {_CHECKPOINTS_COLS} FROM checkpoints WHERE run_id = ? ORDER BY sequence",
            (run_id,),
        )
        return [self._row_to_checkpoint(row) for row in cursor.fetchall()]

    def lease(self, run_id: str) -> Lease | None:
        """Get the run's lease row synchronously."""
        row = self._sync_db().execute(f"SELECT {_LEASES_COLS} FROM run_leases WHERE run_id = ?", (run_id,)).fetchone()
        return self._row_to_lease(row) if row is not None else None
