# Copyright (c) Syntropy Systems
"""Result ledger: append-only, one row per (experiment, case, category)."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from casewise.db import utcnow
from casewise.models.db import ResultRecord

if TYPE_CHECKING:
    import sqlite3

    from casewise.models.outcome import ClassifierOutcome


class WriteStatus(str, Enum):
    """Outcome of a ledger write."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"


def record_result(
    conn: sqlite3.Connection,
    experiment_id: str,
    case_id: str,
    category: str,
    outcome: ClassifierOutcome,
    attempts: int = 1,
    response_seconds: Optional[float] = None,
) -> WriteStatus:
    """
    Write the outcome for one pair.

    The UNIQUE constraint makes the write idempotent: a second write for the
    same key leaves the stored row untouched and reports DUPLICATE.
    """
    cursor = conn.execute(
        """
        INSERT INTO results (
            experiment_id, case_id, category, detected, confidence,
            raw_output, error, attempts, response_seconds, tokens_used, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(experiment_id, case_id, category) DO NOTHING
        """,
        (
            experiment_id,
            case_id,
            category,
            None if outcome.detected is None else int(outcome.detected),
            outcome.confidence,
            outcome.raw_output,
            outcome.error,
            attempts,
            response_seconds,
            outcome.tokens_used,
            utcnow(),
        ),
    )
    if cursor.rowcount == 1:
        return WriteStatus.INSERTED
    return WriteStatus.DUPLICATE


def get_completed_pairs(conn: sqlite3.Connection, experiment_id: str) -> set[tuple[str, str]]:
    """Every (case_id, category) pair with a stored result."""
    rows = conn.execute(
        "SELECT case_id, category FROM results WHERE experiment_id = ?",
        (experiment_id,),
    ).fetchall()
    return {(row["case_id"], row["category"]) for row in rows}


def count_completed(conn: sqlite3.Connection, experiment_id: str) -> int:
    """Distinct count of pairs with a stored result."""
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM results WHERE experiment_id = ?",
        (experiment_id,),
    ).fetchone()
    return int(row["n"])


def count_errors(conn: sqlite3.Connection, experiment_id: str) -> int:
    """Number of pairs recorded with an error outcome."""
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM results WHERE experiment_id = ? AND error IS NOT NULL",
        (experiment_id,),
    ).fetchone()
    return int(row["n"])


def get_results(
    conn: sqlite3.Connection,
    experiment_id: str,
    case_id: Optional[str] = None,
    category: Optional[str] = None,
    errors_only: bool = False,
    limit: Optional[int] = None,
) -> list[ResultRecord]:
    """Get ledger rows for an experiment, ordered by (case_id, category)."""
    query = "SELECT * FROM results WHERE experiment_id = ?"
    params: list[Any] = [experiment_id]

    if case_id is not None:
        query += " AND case_id = ?"
        params.append(case_id)

    if category is not None:
        query += " AND category = ?"
        params.append(category)

    if errors_only:
        query += " AND error IS NOT NULL"

    query += " ORDER BY case_id, category"

    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [ResultRecord.model_validate(dict(row)) for row in rows]
