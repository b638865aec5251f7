# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Optional, cast

from pydantic import Field, TypeAdapter, field_validator

from .base import FrozenModel, JSONValue

_JSON_OBJECT_ADAPTER = TypeAdapter(dict[str, JSONValue])


def _parse_json_object(value: object) -> Optional[dict[str, JSONValue]]:
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        return _JSON_OBJECT_ADAPTER.validate_json(value)
    return cast("dict[str, JSONValue]", value)


class SourceRecord(FrozenModel):
    """One analyzable record: the text of one case for one category."""

    case_id: str
    category: str
    text: Optional[str] = None
    checksum: str = ""
    data_source: Optional[str] = None
    loaded_at: Optional[str] = None

    @field_validator("case_id", "category", mode="before")
    @classmethod
    def _coerce_key(cls, value: object) -> str:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value)) if float(value).is_integer() else str(value)
        return cast(str, value)

    @property
    def key(self) -> tuple[str, str]:
        return (self.case_id, self.category)

    @property
    def has_text(self) -> bool:
        return self.text is not None and self.text.strip() != ""


class SourceFileRecord(FrozenModel):
    """Database source file record."""

    data_source: str
    checksum: str
    n_records: int
    loaded_at: str


class ExperimentRecord(FrozenModel):
    """Database experiment record."""

    id: str
    name: str
    config_fingerprint: str
    config: Optional[dict[str, JSONValue]] = None
    data_source: str
    dataset_checksum: Optional[str] = None
    status: str
    total_items: int = 0
    completed_items: int = 0
    created_at: str
    started_at: Optional[str] = None
    resumed_at: Optional[str] = None
    resumed_items: int = 0
    last_progress_at: Optional[str] = None
    estimated_completion_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    summary: Optional[dict[str, JSONValue]] = None
    hostname: Optional[str] = None

    @field_validator("config", "summary", mode="before")
    @classmethod
    def _parse_json(cls, value: object) -> Optional[dict[str, JSONValue]]:
        return _parse_json_object(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    @property
    def remaining_items(self) -> int:
        return max(0, self.total_items - self.completed_items)


class ResultRecord(FrozenModel):
    """Ledger row: the outcome for one (experiment, case, category)."""

    id: Optional[int] = None
    experiment_id: str
    case_id: str
    category: str
    detected: Optional[bool] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    raw_output: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1
    response_seconds: Optional[float] = None
    tokens_used: Optional[int] = None
    created_at: Optional[str] = None

    @property
    def is_determinate(self) -> bool:
        """True when the record carries a usable detection; confidence may be absent."""
        return self.error is None and self.detected is not None


class LockRecord(FrozenModel):
    """Database resume lock record."""

    experiment_id: str
    holder_pid: int
    hostname: str
    acquired_at: str
