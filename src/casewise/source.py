# Copyright (c) Syntropy Systems
"""Source data store: immutable records loaded once per data source."""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Union

from pydantic import ValidationError

from casewise.checksum import compute_checksum, record_checksum
from casewise.db import begin_immediate, utcnow
from casewise.errors import IntegrityError, SourceFormatError
from casewise.models.db import SourceFileRecord, SourceRecord

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable, Sequence

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("case_id", "category", "text")


def _build_record(row: dict[str, Any], line: int, path: Path) -> SourceRecord:
    missing = [c for c in ("case_id", "category") if row.get(c) in (None, "")]
    if missing:
        msg = f"{path}:{line}: missing {', '.join(missing)}"
        raise SourceFormatError(msg, stage="load")

    text = row.get("text")
    if text is not None and not isinstance(text, str):
        text = str(text)
    if text == "":
        text = None

    try:
        return SourceRecord(
            case_id=row["case_id"],
            category=row["category"],
            text=text,
            checksum=record_checksum(text),
        )
    except ValidationError as e:
        msg = f"{path}:{line}: invalid record: {e}"
        raise SourceFormatError(msg, stage="load") from e


def _read_csv(path: Path) -> list[SourceRecord]:
    records: list[SourceRecord] = []
    with path.open(newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        columns = reader.fieldnames or []
        missing = [c for c in REQUIRED_COLUMNS if c not in columns]
        if missing:
            msg = f"{path}: missing columns: {', '.join(missing)}"
            raise SourceFormatError(msg, stage="load")
        for line, row in enumerate(reader, start=2):
            records.append(_build_record(row, line, path))
    return records


def _read_jsonl(path: Path) -> list[SourceRecord]:
    records: list[SourceRecord] = []
    with path.open(encoding="utf-8-sig") as f:
        for line, raw in enumerate(f, start=1):
            if not raw.strip():
                continue
            try:
                row = json.loads(raw)
            except json.JSONDecodeError as e:
                msg = f"{path}:{line}: invalid JSON: {e.msg}"
                raise SourceFormatError(msg, stage="load") from e
            if not isinstance(row, dict):
                msg = f"{path}:{line}: expected a JSON object"
                raise SourceFormatError(msg, stage="load")
            records.append(_build_record(row, line, path))
    return records


def read_source_file(path: Union[str, Path]) -> list[SourceRecord]:
    """
    Read a CSV or JSONL file into source records.

    Each row carries case_id, category and text. Empty text is stored as
    None. A (case_id, category) pair may appear only once per file.
    """
    path = Path(path)
    if not path.exists():
        msg = f"Data file not found: {path}"
        raise SourceFormatError(msg, stage="load")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        reader = _read_csv
    elif suffix in (".jsonl", ".ndjson"):
        reader = _read_jsonl
    else:
        msg = f"Unsupported data file type: {path.suffix} (expected .csv or .jsonl)"
        raise SourceFormatError(msg, stage="load")

    try:
        records = reader(path)
    except UnicodeDecodeError as e:
        msg = f"{path}: not valid UTF-8 text (byte offset {e.start})"
        raise SourceFormatError(msg, stage="load") from e

    seen: set[tuple[str, str]] = set()
    for record in records:
        if record.key in seen:
            msg = f"{path}: duplicate record for case {record.case_id!r}, category {record.category!r}"
            raise SourceFormatError(msg, stage="load")
        seen.add(record.key)

    return records


def get_source_file(conn: sqlite3.Connection, data_source: str) -> Optional[SourceFileRecord]:
    """Get the stored fingerprint and count for a data source."""
    row = conn.execute(
        "SELECT * FROM source_files WHERE data_source = ?",
        (data_source,),
    ).fetchone()

    if row is None:
        return None

    return SourceFileRecord.model_validate(dict(row))


def list_source_files(conn: sqlite3.Connection) -> list[SourceFileRecord]:
    """List every loaded data source."""
    rows = conn.execute("SELECT * FROM source_files ORDER BY data_source").fetchall()
    return [SourceFileRecord.model_validate(dict(row)) for row in rows]


def _insert_records(
    conn: sqlite3.Connection,
    data_source: str,
    records: Iterable[SourceRecord],
    loaded_at: str,
) -> None:
    conn.executemany(
        """
        INSERT INTO source_records (data_source, case_id, category, text, checksum, loaded_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [
            (data_source, r.case_id, r.category, r.text, r.checksum, loaded_at)
            for r in records
        ],
    )


def load_source(
    conn: sqlite3.Connection,
    path: Union[str, Path],
    data_source: Optional[str] = None,
    force: bool = False,
) -> int:
    """
    Load a data file into the source store and return the record count.

    Loading the same content twice is a no-op. Loading different content
    under an already loaded data source raises IntegrityError unless force
    is set, in which case the stored records are replaced atomically.
    """
    data_source = data_source or str(path)
    records = read_source_file(path)
    checksum = compute_checksum(records)

    existing = get_source_file(conn, data_source)
    if existing is not None and existing.checksum == checksum:
        logger.debug("Source %s already loaded (%d records)", data_source, existing.n_records)
        return existing.n_records

    if existing is not None and not force:
        msg = f"Source {data_source} was loaded with different content; use force to reload"
        raise IntegrityError(msg, stage="load")

    loaded_at = utcnow()
    try:
        begin_immediate(conn)
        if existing is not None:
            logger.warning("Replacing records of changed source %s", data_source)
            conn.execute("DELETE FROM source_records WHERE data_source = ?", (data_source,))
            conn.execute(
                "UPDATE source_files SET checksum = ?, n_records = ?, loaded_at = ? WHERE data_source = ?",
                (checksum, len(records), loaded_at, data_source),
            )
        else:
            conn.execute(
                "INSERT INTO source_files (data_source, checksum, n_records, loaded_at) VALUES (?, ?, ?, ?)",
                (data_source, checksum, len(records), loaded_at),
            )
        _insert_records(conn, data_source, records, loaded_at)
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    logger.info("Loaded %d records from %s", len(records), data_source)
    return len(records)


def query_sources(
    conn: sqlite3.Connection,
    data_source: Optional[str] = None,
    categories: Optional[Sequence[str]] = None,
    case_ids: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
) -> list[SourceRecord]:
    """Query source records, ordered by (case_id, category)."""
    query = "SELECT * FROM source_records WHERE 1=1"
    params: list[Any] = []

    if data_source is not None:
        query += " AND data_source = ?"
        params.append(data_source)

    if categories:
        query += f" AND category IN ({', '.join('?' for _ in categories)})"
        params.extend(categories)

    if case_ids:
        query += f" AND case_id IN ({', '.join('?' for _ in case_ids)})"
        params.extend(case_ids)

    query += " ORDER BY case_id, category"

    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [SourceRecord.model_validate(dict(row)) for row in rows]


def get_categories(conn: sqlite3.Connection, data_source: str) -> list[str]:
    """Distinct categories present in a data source."""
    rows = conn.execute(
        "SELECT DISTINCT category FROM source_records WHERE data_source = ? ORDER BY category",
        (data_source,),
    ).fetchall()
    return [row["category"] for row in rows]
