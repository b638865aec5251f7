# Copyright (c) Syntropy Systems
"""Pydantic models for classifier outcomes, decisions and run summaries."""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from .base import FrozenModel


class ClassifierOutcome(FrozenModel):
    """What the classifier said about one text for one category."""

    detected: Optional[bool] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    raw_output: Optional[str] = None
    error: Optional[str] = None
    tokens_used: Optional[int] = None

    @classmethod
    def failure(cls, error: str, raw_output: Optional[str] = None) -> ClassifierOutcome:
        """Build the error outcome recorded after retries are exhausted."""
        return cls(detected=None, confidence=None, raw_output=raw_output, error=error)


class ReconciledDecision(FrozenModel):
    """Case-level decision combined from per-category results."""

    experiment_id: Optional[str] = None
    case_id: str
    combined_detected: Optional[bool] = None
    combined_confidence: Optional[float] = None
    contributing_categories: tuple[str, ...] = ()

    @property
    def is_unknown(self) -> bool:
        return self.combined_detected is None


class RunOutcome(FrozenModel):
    """Summary returned by the controller for one invocation."""

    experiment_id: str
    status: str
    resumed: bool = False
    total_items: int = 0
    completed_items: int = 0
    skipped: int = 0
    processed: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    successes: int = 0
    elapsed_seconds: float = 0.0
    decisions: dict[str, int] = Field(default_factory=dict)
