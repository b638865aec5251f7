# Copyright (c) Syntropy Systems
"""Dataset fingerprints for detecting drift between runs."""

from __future__ import annotations

import hashlib
import json
import unicodedata
from enum import Enum
from typing import TYPE_CHECKING, Optional

from casewise.errors import IntegrityError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from casewise.models.db import SourceRecord


class ChecksumStatus(str, Enum):
    """Result of comparing a stored fingerprint with the current dataset."""

    MATCH = "match"
    MISMATCH = "mismatch"
    ABSENT = "absent"


def _normalize(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return unicodedata.normalize("NFC", text)


def record_checksum(text: Optional[str]) -> str:
    """Fingerprint the text of a single record."""
    normalized = _normalize(text)
    payload = "\x00" if normalized is None else "\x01" + normalized
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_checksum(records: Iterable[SourceRecord]) -> str:
    """
    Fingerprint a dataset.

    Records are ordered by (case_id, category) and each is written as a
    canonical JSON line, so the digest does not depend on load order but
    changes with any character of any key or text.
    """
    digest = hashlib.sha256()
    for record in sorted(records, key=lambda r: (r.case_id, r.category)):
        line = json.dumps(
            [record.case_id, record.category, _normalize(record.text)],
            ensure_ascii=False,
            separators=(",", ":"),
        )
        digest.update(line.encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


def verify_checksum(stored: Optional[str], records: Iterable[SourceRecord]) -> ChecksumStatus:
    """Compare a stored fingerprint with the current dataset."""
    if stored is None:
        return ChecksumStatus.ABSENT
    if compute_checksum(records) == stored:
        return ChecksumStatus.MATCH
    return ChecksumStatus.MISMATCH


def require_match(
    stored: Optional[str],
    records: Iterable[SourceRecord],
    experiment_id: Optional[str] = None,
) -> ChecksumStatus:
    """Raise IntegrityError if the dataset no longer matches the stored fingerprint."""
    status = verify_checksum(stored, records)
    if status is ChecksumStatus.MISMATCH:
        msg = "Source data changed since the experiment started; refusing to resume"
        raise IntegrityError(msg, experiment_id=experiment_id, stage="checksum")
    return status
