"""SQLite database schema and connection manager for Tripwire.

Provides the SQLiteDB class, the single entry point for all relational
persistence. Enables WAL mode and foreign keys on connect. Creates the
full schema (5 tables) on initialization.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Sequence


_SCHEMA_SQL = """
-- Watchlist entities, one row per (dataset, record id)
CREATE TABLE IF NOT EXISTS watchlist_record (
    dataset TEXT NOT NULL,
    id TEXT NOT NULL,
    party_type TEXT NOT NULL,
    primary_name TEXT NOT NULL,
    aliases TEXT NOT NULL DEFAULT '[]',
    birth_date TEXT,
    birth_place TEXT,
    addresses TEXT NOT NULL DEFAULT '[]',
    identifiers TEXT NOT NULL DEFAULT '[]',
    remarks TEXT,
    source_list TEXT NOT NULL,
    extra TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (dataset, id)
);

-- Exact-match identifier index derived from watchlist_record.identifiers
CREATE TABLE IF NOT EXISTS watchlist_identifier (
    dataset TEXT NOT NULL,
    record_id TEXT NOT NULL,
    identifier_type TEXT,
    identifier_raw TEXT NOT NULL,
    identifier_norm TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_watchlist_identifier_norm
    ON watchlist_identifier(identifier_norm);
CREATE INDEX IF NOT EXISTS idx_watchlist_identifier_record
    ON watchlist_identifier(dataset, record_id);

-- Ingestion runs and their progress
CREATE TABLE IF NOT EXISTS ingestion_run (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    dataset TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_url TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('pending','running','completed','failed')),
    started_at TEXT NOT NULL,
    finished_at TEXT,
    progress_phase TEXT,
    progress_records_processed INTEGER NOT NULL DEFAULT 0,
    progress_total_estimate INTEGER NOT NULL DEFAULT 0,
    progress_percentage INTEGER NOT NULL DEFAULT 0,
    progress_current_batch INTEGER NOT NULL DEFAULT 0,
    progress_updated_at TEXT,
    vectorize_job_id TEXT,
    stats TEXT,
    error_message TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ingestion_run_status ON ingestion_run(status);

-- Screening queries, used as search ids for live event streams
CREATE TABLE IF NOT EXISTS search_query (
    id TEXT PRIMARY KEY,
    query TEXT NOT NULL,
    birth_date TEXT,
    identifiers TEXT,
    status TEXT NOT NULL,
    match_count INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    pep_status TEXT NOT NULL DEFAULT 'skipped',
    pep_result TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Key/value cache entries with optional expiry (epoch seconds)
CREATE TABLE IF NOT EXISTS cache_entry (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL
);
"""


class SQLiteDB:
    """SQLite connection manager with schema auto-creation.

    Usage:
        db = SQLiteDB("/path/to/db.sqlite")
        db.execute("INSERT INTO ...", params)
        rows = db.fetchall("SELECT * FROM ...")

    Or as a context manager:
        with SQLiteDB("/path/to/db.sqlite") as db:
            db.execute(...)

    The connection is shared between the event loop and worker threads,
    so every call is serialized on a re-entrant lock.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._in_transaction = False
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        """Enable WAL mode and foreign keys."""
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

    def _create_schema(self) -> None:
        """Create all tables if they don't exist."""
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.commit()

    def _commit(self) -> None:
        if not self._in_transaction:
            self._conn.commit()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute a single SQL statement and commit."""
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._commit()
            return cursor

    def executemany(self, sql: str, params_seq: Sequence[Sequence[Any]]) -> sqlite3.Cursor:
        """Execute a SQL statement for each set of params and commit."""
        with self._lock:
            cursor = self._conn.executemany(sql, params_seq)
            self._commit()
            return cursor

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        """Execute a query and return the first row as a dict, or None."""
        with self._lock:
            cursor = self._conn.execute(sql, params)
            row = cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Execute a query and return all rows as a list of dicts."""
        with self._lock:
            cursor = self._conn.execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator["SQLiteDB"]:
        """Group several statements into one atomic commit.

        Rolls back everything executed inside the block if it raises.
        """
        with self._lock:
            if self._in_transaction:
                yield self
                return
            self._in_transaction = True
            try:
                yield self
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                self._in_transaction = False

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SQLiteDB":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
