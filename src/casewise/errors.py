# Copyright (c) Syntropy Systems
"""Error taxonomy for casewise runs."""

from __future__ import annotations


class CasewiseError(Exception):
    """Base error carrying enough context for an operator to diagnose."""

    def __init__(
        self,
        message: str,
        *,
        experiment_id: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.experiment_id = experiment_id
        self.stage = stage

    def __str__(self) -> str:
        parts: list[str] = []
        if self.experiment_id:
            parts.append(f"experiment {self.experiment_id}")
        if self.stage:
            parts.append(f"stage {self.stage}")
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class ConfigError(CasewiseError):
    """Experiment configuration is missing required fields or is invalid."""


class SourceFormatError(CasewiseError):
    """Source file could not be parsed into records."""


class IntegrityError(CasewiseError):
    """Dataset changed since the experiment (or source) was recorded."""


class ContentionError(CasewiseError):
    """Resume lock is held by another live process."""


class ExperimentStateError(CasewiseError):
    """Requested lifecycle transition is not allowed."""


class ClassifierError(CasewiseError):
    """Base class for failures raised by a classifier."""


class TransientClassifierError(ClassifierError):
    """Timeout or malformed output; safe to retry."""


class SystemicClassifierError(ClassifierError):
    """Failure affecting every item (auth, configuration); aborts the run."""
