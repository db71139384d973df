"""Schema setup for SQLite ledger databases.

A database is at one of three versions:

- 0: empty, nothing created yet
- 1: ``runs`` and ``checkpoints`` with a plain ``(run_id, sequence)`` index
  and no lease table
- 2: current; unique ``(run_id, sequence)``, ``run_leases``, and a
  ``_schema_version`` row

``ensure_schema`` brings any of them to the current version.
"""

from __future__ import annotations

import logging
from typing import Any

from runledger.exceptions import LedgerIntegrityError, PersistenceError

logger = logging.getLogger("runledger.storage")

SCHEMA_VERSION = 2


def detect_schema_version(conn: Any) -> int:
    tables = {name for (name,) in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    if "_schema_version" not in tables:
        return 1 if {"runs", "checkpoints"} <= tables else 0
    row = conn.execute("SELECT version FROM _schema_version").fetchone()
    return row[0] if row else 0


def _stamp_version(conn: Any) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS _schema_version (version INTEGER NOT NULL)")
    conn.execute("DELETE FROM _schema_version")
    conn.execute("INSERT INTO _schema_version (version) VALUES (?)", (SCHEMA_VERSION,))


def _check_unique_sequences(conn: Any) -> None:
    """Raise LedgerIntegrityError for the first run with a repeated sequence."""
    row = conn.execute("SELECT run_id FROM checkpoints GROUP BY run_id, sequence HAVING COUNT(*) > 1 LIMIT 1").fetchone()
    if row is None:
        return
    (run_id,) = row
    sequences = [seq for (seq,) in conn.execute("SELECT sequence FROM checkpoints WHERE run_id = ? ORDER BY sequence", (run_id,))]
    raise LedgerIntegrityError(run_id, sequences)


def migrate_v1_to_v2(conn: Any) -> None:
    """Upgrade a v1 database in place.

    Fails with LedgerIntegrityError, leaving the database untouched, when a
    run already has two checkpoints with the same sequence.
    """
    logger.warning("Migrating ledger database from schema v1 to v2 (unique checkpoint sequences, run_leases table)")
    _check_unique_sequences(conn)
    conn.execute("DROP INDEX IF EXISTS idx_checkpoints_run")
    conn.execute(_CREATE_LEASES)
    _create_v2_indexes(conn)
    _stamp_version(conn)
    conn.commit()
    logger.info("Ledger database migrated to schema v%d", SCHEMA_VERSION)


def create_v2_schema(conn: Any) -> None:
    for ddl in (_CREATE_RUNS, _CREATE_CHECKPOINTS, _CREATE_LEASES):
        conn.execute(ddl)
    _create_v2_indexes(conn)
    _stamp_version(conn)
    conn.commit()
    logger.info("Created ledger schema v%d", SCHEMA_VERSION)


def ensure_schema(conn: Any) -> None:
    version = detect_schema_version(conn)
    if version == 0:
        create_v2_schema(conn)
    elif version == 1:
        migrate_v1_to_v2(conn)
    elif version > SCHEMA_VERSION:
        raise PersistenceError(f"Ledger database has schema v{version}; this runledger supports up to v{SCHEMA_VERSION}")


_CREATE_RUNS = """
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    caller_idempotency_key TEXT NOT NULL UNIQUE,
    agent_kind TEXT NOT NULL,
    loop_kind TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    input TEXT NOT NULL,
    output TEXT,
    context TEXT NOT NULL DEFAULT '{}',
    current_iteration INTEGER NOT NULL DEFAULT 0,
    timeout_at TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT,
    error TEXT
)
"""

_CREATE_CHECKPOINTS = """
CREATE TABLE IF NOT EXISTS checkpoints (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    iteration INTEGER NOT NULL DEFAULT 0,
    idempotency_key TEXT,
    data TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    created_at TEXT NOT NULL
)
"""

_CREATE_LEASES = """
CREATE TABLE IF NOT EXISTS run_leases (
    run_id TEXT PRIMARY KEY REFERENCES runs(id) ON DELETE CASCADE,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
)
"""


def _create_v2_indexes(conn: Any) -> None:
    """Create the sequence constraint and indexes for common lookups."""
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_checkpoints_run_sequence ON checkpoints(run_id, sequence)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_checkpoints_key ON checkpoints(idempotency_key)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status, created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_agent ON runs(agent_kind)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_created ON runs(created_at DESC)")
