# Copyright (c) Syntropy Systems
"""Pydantic models for experiment configuration documents."""

from __future__ import annotations

import hashlib
import json
import logging
import math
from collections.abc import Mapping
from typing import Optional

from pydantic import Field, field_validator, model_validator
from typing_extensions import Self

from .base import JSONValue, StrictModel

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.7
WEIGHT_SUM_TOLERANCE = 1e-9


def weight_warnings(weights: Mapping[str, float]) -> list[str]:
    """Warnings for weights that do not sum to 1.0. They are still used as given."""
    if not weights:
        return []
    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        return [f"weights sum to {total:g}, not 1.0; using them as given"]
    return []


class ClassifierSpec(StrictModel):
    """Import path of the classifier and the options passed to its factory."""

    target: str
    options: dict[str, JSONValue] = Field(default_factory=dict)

    @field_validator("target")
    @classmethod
    def _check_target(cls, value: str) -> str:
        module, sep, attr = value.partition(":")
        if not sep or not module or not attr:
            msg = f"classifier.target must look like 'package.module:attribute', got {value!r}"
            raise ValueError(msg)
        return value


class RetrySettings(StrictModel):
    """Retry-with-backoff settings applied to every classifier call."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)


class ExperimentConfig(StrictModel):
    """Validated experiment configuration."""

    name: str = Field(min_length=1)
    data_source: str = Field(min_length=1)
    classifier: Optional[ClassifierSpec] = None
    categories: Optional[list[str]] = None
    weights: dict[str, float] = Field(default_factory=dict)
    threshold: float = Field(default=DEFAULT_THRESHOLD, ge=0.0, le=1.0)
    resume: bool = True
    experiment_id: Optional[str] = None
    max_items: Optional[int] = Field(default=None, ge=1)
    progress_every: int = Field(default=10, ge=1)
    max_consecutive_failures: Optional[int] = Field(default=25, ge=1)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("weights")
    @classmethod
    def _check_weights(cls, value: dict[str, float]) -> dict[str, float]:
        for category, weight in value.items():
            if weight < 0 or math.isnan(weight):
                msg = f"weight for category '{category}' must be >= 0, got {weight}"
                raise ValueError(msg)
        return value

    @field_validator("categories")
    @classmethod
    def _check_categories(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return None
        if not value:
            msg = "categories must not be empty when given"
            raise ValueError(msg)
        if len(set(value)) != len(value):
            msg = "categories must not repeat"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _check_category_weights(self) -> Self:
        if self.weights and self.categories:
            missing = [c for c in self.categories if c not in self.weights]
            if missing:
                msg = f"no weight configured for categories: {', '.join(missing)}"
                raise ValueError(msg)
        for warning in self.weight_warnings():
            logger.warning(warning)
        return self

    def weight_warnings(self) -> list[str]:
        """Return configuration warnings about the weights (never fatal)."""
        return weight_warnings(self.weights)

    def fingerprint(self) -> str:
        """Digest of the settings that determine what gets classified and how."""
        payload = {
            "data_source": self.data_source,
            "categories": sorted(self.categories) if self.categories else None,
            "classifier": self.classifier.model_dump(mode="json") if self.classifier else None,
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
