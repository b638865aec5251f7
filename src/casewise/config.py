# Copyright (c) Syntropy Systems
"""Configuration management for casewise."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml
from pydantic import ValidationError

from casewise.errors import ConfigError
from casewise.models.config import ExperimentConfig


@dataclass
class CasewiseConfig:
    """Project settings for casewise."""

    # Record progress every N classified items
    progress_every: int = 10

    # How long a run waits for another process's resume lock (seconds)
    lock_wait_seconds: float = 0.0

    # Log level for the command line
    log_level: str = "INFO"


def find_casewise_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .casewise directory by walking up from start_path.

    Returns None if no .casewise directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        casewise_dir = current / ".casewise"
        if casewise_dir.is_dir():
            return casewise_dir
        current = current.parent

    # Check root
    casewise_dir = current / ".casewise"
    if casewise_dir.is_dir():
        return casewise_dir

    return None


def load_config(casewise_dir: Path | None = None) -> CasewiseConfig:
    """Load project settings from .casewise/config.yaml or defaults."""
    config = CasewiseConfig()

    if casewise_dir is None:
        casewise_dir = find_casewise_dir()
    if casewise_dir is None:
        return config

    config_path = casewise_dir / "config.yaml"
    if not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    progress_every = data.get("progress_every")
    if isinstance(progress_every, int) and progress_every > 0:
        config.progress_every = progress_every
    lock_wait_seconds = data.get("lock_wait_seconds")
    if isinstance(lock_wait_seconds, (int, float)) and lock_wait_seconds >= 0:
        config.lock_wait_seconds = float(lock_wait_seconds)
    log_level = data.get("log_level")
    if isinstance(log_level, str):
        config.log_level = log_level.upper()

    return config


def get_db_path(casewise_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if casewise_dir is None:
        casewise_dir = require_casewise_dir()

    return casewise_dir / "casewise.db"


def require_casewise_dir() -> Path:
    """Get casewise directory or raise an error if not found."""
    casewise_dir = find_casewise_dir()
    if casewise_dir is None:
        msg = "No .casewise directory found. Run 'casewise init' first."
        raise RuntimeError(
            msg
        )
    return casewise_dir


def parse_experiment_config(data: object) -> ExperimentConfig:
    """Validate a loaded configuration document."""
    if not isinstance(data, dict):
        msg = "Experiment config must be a mapping"
        raise ConfigError(msg, stage="config")
    try:
        return ExperimentConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        msg = f"Invalid experiment config: {problems}"
        raise ConfigError(msg, stage="config") from e


def load_experiment_config(path: Path) -> ExperimentConfig:
    """Load and validate an experiment configuration from YAML."""
    if not path.exists():
        msg = f"Config file not found: {path}"
        raise ConfigError(msg, stage="config")

    with path.open() as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f"Config file is not valid YAML: {e}"
            raise ConfigError(msg, stage="config") from e

    return parse_experiment_config(data)
