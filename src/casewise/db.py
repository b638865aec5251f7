# Copyright (c) Syntropy Systems
"""SQLite database layer with WAL mode and atomic operations."""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# SQL schema for casewise database
SCHEMA = """
-- Source files (one row per loaded dataset)
CREATE TABLE IF NOT EXISTS source_files (
    data_source TEXT PRIMARY KEY,
    checksum TEXT NOT NULL,
    n_records INTEGER NOT NULL,
    loaded_at TEXT NOT NULL
);

-- Source records (immutable after load)
CREATE TABLE IF NOT EXISTS source_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    data_source TEXT NOT NULL REFERENCES source_files(data_source),
    case_id TEXT NOT NULL,
    category TEXT NOT NULL,
    text TEXT,
    checksum TEXT NOT NULL,
    loaded_at TEXT NOT NULL,
    UNIQUE(data_source, case_id, category)
);

-- Experiments (one row per run, resumed in place)
CREATE TABLE IF NOT EXISTS experiments (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    config_fingerprint TEXT NOT NULL,
    config TEXT,  -- JSON
    data_source TEXT NOT NULL,
    dataset_checksum TEXT,

    status TEXT NOT NULL DEFAULT 'created'
        CHECK(status IN ('created', 'running', 'completed', 'failed')),

    -- Progress
    total_items INTEGER NOT NULL DEFAULT 0,
    completed_items INTEGER NOT NULL DEFAULT 0,

    -- Timestamps
    created_at TEXT NOT NULL,
    started_at TEXT,
    resumed_at TEXT,
    resumed_items INTEGER NOT NULL DEFAULT 0,
    last_progress_at TEXT,
    estimated_completion_at TEXT,
    finished_at TEXT,
    duration_seconds REAL,

    -- Failure diagnosis
    failed_stage TEXT,
    error_message TEXT,

    summary TEXT,  -- JSON, reconciled decision counts
    hostname TEXT
);

-- Result ledger (append-only, one row per experiment/case/category)
CREATE TABLE IF NOT EXISTS results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id TEXT NOT NULL REFERENCES experiments(id),
    case_id TEXT NOT NULL,
    category TEXT NOT NULL,
    detected INTEGER,  -- 1, 0 or NULL (unknown)
    confidence REAL CHECK(confidence IS NULL OR (confidence >= 0 AND confidence <= 1)),
    raw_output TEXT,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 1,
    response_seconds REAL,
    tokens_used INTEGER,
    created_at TEXT NOT NULL,
    UNIQUE(experiment_id, case_id, category)
);

-- Resume locks (ephemeral, deleted on release)
CREATE TABLE IF NOT EXISTS resume_locks (
    experiment_id TEXT PRIMARY KEY,
    holder_pid INTEGER NOT NULL,
    hostname TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_source_records_category ON source_records(data_source, category);
CREATE INDEX IF NOT EXISTS idx_experiments_status ON experiments(status);
CREATE INDEX IF NOT EXISTS idx_results_experiment ON results(experiment_id);
CREATE INDEX IF NOT EXISTS idx_results_case ON results(experiment_id, case_id);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string (microsecond precision)."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime the way timestamps are stored."""
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware datetime."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def begin_immediate(conn: sqlite3.Connection) -> None:
    """Start a write transaction, taking the database write lock up front."""
    conn.execute("BEGIN IMMEDIATE")
