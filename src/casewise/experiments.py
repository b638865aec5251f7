# Copyright (c) Syntropy Systems
"""Experiment record lifecycle: created -> running -> completed | failed."""

from __future__ import annotations

import json
import socket
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from casewise.db import begin_immediate, format_timestamp, parse_timestamp, utcnow
from casewise.errors import ExperimentStateError
from casewise.ledger import count_completed
from casewise.models.db import ExperimentRecord

if TYPE_CHECKING:
    from casewise.models.base import JSONValue
    from casewise.models.config import ExperimentConfig

STATUSES = ("created", "running", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")


def _require(conn: sqlite3.Connection, experiment_id: str) -> ExperimentRecord:
    experiment = get_experiment(conn, experiment_id)
    if experiment is None:
        msg = f"Experiment {experiment_id} not found"
        raise ExperimentStateError(msg, experiment_id=experiment_id)
    return experiment


def _advance(last: Optional[str], now: datetime) -> str:
    """Return a timestamp strictly after `last` (bumped by 1us if the clock has not moved)."""
    previous = parse_timestamp(last)
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return format_timestamp(now)


def estimate_completion(
    now: datetime,
    resumed_at: Optional[datetime],
    resumed_items: int,
    completed_items: int,
    total_items: int,
) -> Optional[datetime]:
    """
    Extrapolate the completion time from this session's throughput.

    Throughput is measured from the last (re)start so that time spent
    stopped between resumes does not skew the estimate.
    """
    if completed_items >= total_items:
        return now
    if resumed_at is None:
        return None

    done = completed_items - resumed_items
    elapsed = (now - resumed_at).total_seconds()
    if done <= 0 or elapsed <= 0:
        return None

    seconds_per_item = elapsed / done
    remaining = total_items - completed_items
    return now + timedelta(seconds=remaining * seconds_per_item)


def create_experiment(
    conn: sqlite3.Connection,
    config: ExperimentConfig,
    dataset_checksum: Optional[str],
    total_items: int,
    experiment_id: Optional[str] = None,
) -> ExperimentRecord:
    """Create a new experiment in the 'created' state."""
    experiment_id = experiment_id or config.experiment_id or str(uuid.uuid4())
    try:
        conn.execute(
            """
            INSERT INTO experiments (
                id, name, config_fingerprint, config, data_source,
                dataset_checksum, status, total_items, created_at, hostname
            )
            VALUES (?, ?, ?, ?, ?, ?, 'created', ?, ?, ?)
            """,
            (
                experiment_id,
                config.name,
                config.fingerprint(),
                config.model_dump_json(),
                config.data_source,
                dataset_checksum,
                total_items,
                utcnow(),
                socket.gethostname(),
            ),
        )
    except sqlite3.IntegrityError as e:
        msg = f"Experiment {experiment_id} already exists"
        raise ExperimentStateError(msg, experiment_id=experiment_id) from e

    return _require(conn, experiment_id)


def get_experiment(conn: sqlite3.Connection, experiment_id: str) -> Optional[ExperimentRecord]:
    """Get an experiment by ID."""
    row = conn.execute(
        "SELECT * FROM experiments WHERE id = ?",
        (experiment_id,),
    ).fetchone()

    if row is None:
        return None

    return ExperimentRecord.model_validate(dict(row))


def get_experiments(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[ExperimentRecord]:
    """Get experiments with optional status filter, newest first."""
    query = "SELECT * FROM experiments WHERE 1=1"
    params: list[Any] = []

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [ExperimentRecord.model_validate(dict(row)) for row in rows]


def start_experiment(
    conn: sqlite3.Connection,
    experiment_id: str,
    total_items: Optional[int] = None,
    reverified: bool = False,
) -> ExperimentRecord:
    """
    Move an experiment to 'running'.

    Allowed from 'created', from 'running' (resume after a crash) and from
    'failed' only once the caller has re-verified the dataset. Progress
    counters are re-synced from the ledger.
    """
    try:
        begin_immediate(conn)
        experiment = _require(conn, experiment_id)

        if experiment.status == "completed":
            msg = "Experiment already completed"
            raise ExperimentStateError(msg, experiment_id=experiment_id, stage="start")
        if experiment.status == "failed" and not reverified:
            msg = "Failed experiment must be re-verified before it can run again"
            raise ExperimentStateError(msg, experiment_id=experiment_id, stage="start")

        now = datetime.now(timezone.utc)
        completed = max(experiment.completed_items, count_completed(conn, experiment_id))
        total = experiment.total_items if total_items is None else total_items
        started_at = experiment.started_at or format_timestamp(now)

        conn.execute(
            """
            UPDATE experiments
            SET status = 'running',
                total_items = ?,
                completed_items = ?,
                started_at = ?,
                resumed_at = ?,
                resumed_items = ?,
                last_progress_at = ?,
                estimated_completion_at = NULL,
                finished_at = NULL,
                failed_stage = NULL,
                error_message = NULL
            WHERE id = ?
            """,
            (
                total,
                completed,
                started_at,
                format_timestamp(now),
                completed,
                _advance(experiment.last_progress_at, now),
                experiment_id,
            ),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    return _require(conn, experiment_id)


def update_progress(
    conn: sqlite3.Connection,
    experiment_id: str,
    delta: int = 0,
) -> ExperimentRecord:
    """
    Record progress for a running experiment.

    completed_items never decreases and always equals the number of pairs
    in the ledger; last_progress_at always advances. The ETA is refreshed.

    `delta` is the number of pairs the caller has just written. It is only
    validated: the count itself is always re-read from the ledger, so an
    over- or under-reported delta cannot skew completed_items.
    """
    if delta < 0:
        msg = f"Progress delta must be non-negative, got {delta}"
        raise ValueError(msg)

    try:
        begin_immediate(conn)
        experiment = _require(conn, experiment_id)
        if experiment.status != "running":
            msg = f"Cannot update progress of a {experiment.status} experiment"
            raise ExperimentStateError(msg, experiment_id=experiment_id, stage="progress")

        now = datetime.now(timezone.utc)
        completed = max(experiment.completed_items, count_completed(conn, experiment_id))
        eta = estimate_completion(
            now,
            parse_timestamp(experiment.resumed_at),
            experiment.resumed_items,
            completed,
            experiment.total_items,
        )

        conn.execute(
            """
            UPDATE experiments
            SET completed_items = ?,
                last_progress_at = ?,
                estimated_completion_at = ?
            WHERE id = ?
            """,
            (
                completed,
                _advance(experiment.last_progress_at, now),
                format_timestamp(eta) if eta is not None else None,
                experiment_id,
            ),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    return _require(conn, experiment_id)


def complete_experiment(
    conn: sqlite3.Connection,
    experiment_id: str,
    summary: Optional[dict[str, JSONValue]] = None,
) -> ExperimentRecord:
    """Mark a running experiment completed; every required pair must be in the ledger."""
    try:
        begin_immediate(conn)
        experiment = _require(conn, experiment_id)
        if experiment.status != "running":
            msg = f"Cannot complete a {experiment.status} experiment"
            raise ExperimentStateError(msg, experiment_id=experiment_id, stage="complete")

        completed = max(experiment.completed_items, count_completed(conn, experiment_id))
        if completed < experiment.total_items:
            msg = f"{experiment.total_items - completed} item(s) still remaining"
            raise ExperimentStateError(msg, experiment_id=experiment_id, stage="complete")

        now = datetime.now(timezone.utc)
        started = parse_timestamp(experiment.started_at)
        duration = (now - started).total_seconds() if started else None

        conn.execute(
            """
            UPDATE experiments
            SET status = 'completed',
                completed_items = ?,
                last_progress_at = ?,
                estimated_completion_at = ?,
                finished_at = ?,
                duration_seconds = ?,
                summary = ?
            WHERE id = ?
            """,
            (
                completed,
                _advance(experiment.last_progress_at, now),
                format_timestamp(now),
                format_timestamp(now),
                duration,
                json.dumps(summary) if summary is not None else None,
                experiment_id,
            ),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    return _require(conn, experiment_id)


def fail_experiment(
    conn: sqlite3.Connection,
    experiment_id: str,
    stage: str,
    reason: str,
) -> ExperimentRecord:
    """Mark an experiment failed, keeping the stage and reason for diagnosis."""
    experiment = _require(conn, experiment_id)
    if experiment.status == "completed":
        msg = "Cannot fail a completed experiment"
        raise ExperimentStateError(msg, experiment_id=experiment_id, stage=stage)

    now = utcnow()
    conn.execute(
        """
        UPDATE experiments
        SET status = 'failed', finished_at = ?, failed_stage = ?, error_message = ?,
            estimated_completion_at = NULL
        WHERE id = ?
        """,
        (now, stage, reason, experiment_id),
    )
    return _require(conn, experiment_id)
