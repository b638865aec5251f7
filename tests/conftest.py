# Copyright (c) Syntropy Systems
"""Pytest fixtures for casewise tests."""

import csv
import os
import sqlite3
import subprocess
import sys
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

# Store original cwd at module load time
_original_cwd = Path.cwd()

SAMPLE_ROWS = [
    {"case_id": "c1", "category": "cme", "text": "Autopsy notes a positive toxicology screen"},
    {"case_id": "c1", "category": "le", "text": "Scene was quiet, nothing further"},
    {"case_id": "c2", "category": "cme", "text": "Routine findings"},
    {"case_id": "c2", "category": "le", "text": "Officers report a positive prior contact"},
    {"case_id": "c3", "category": "cme", "text": ""},
    {"case_id": "c3", "category": "le", "text": "Witness statement positive for prior threats"},
]


def write_csv(path: Path, rows: list[dict[str, Any]]) -> Path:
    """Write source rows as CSV."""
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=["case_id", "category", "text"])
        writer.writeheader()
        writer.writerows(rows)
    return path


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def casewise_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary casewise project directory."""
    from casewise.db import init_db

    casewise_dir = temp_dir / ".casewise"
    casewise_dir.mkdir()

    # Initialize database
    db_path = casewise_dir / "casewise.db"
    init_db(db_path)

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_path(casewise_project: Path) -> Path:
    return casewise_project / ".casewise" / "casewise.db"


@pytest.fixture
def db_connection(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from casewise.db import get_connection

    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def source_file(casewise_project: Path) -> Path:
    """Three cases over two categories; c3/cme has no text."""
    return write_csv(casewise_project / "cases.csv", SAMPLE_ROWS)


@pytest.fixture
def make_config(source_file: Path) -> Callable[..., Any]:
    """Build an ExperimentConfig over the sample source."""
    from casewise.models.config import ExperimentConfig

    def _make(**overrides: Any) -> ExperimentConfig:
        data: dict[str, Any] = {
            "name": "baseline",
            "data_source": str(source_file),
            "weights": {"le": 0.4, "cme": 0.6},
            "threshold": 0.7,
            "experiment_id": "exp-1",
        }
        data.update(overrides)
        return ExperimentConfig.model_validate(data)

    return _make


@pytest.fixture
def live_pid() -> Generator[int, None, None]:
    """PID of another process that stays alive for the test."""
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield proc.pid
    proc.terminate()
    proc.wait()


@pytest.fixture
def dead_pid() -> int:
    """PID of a process that has already exited."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid
