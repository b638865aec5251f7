"""Tests for casewise CLI commands."""

import os
from pathlib import Path

import pytest
import yaml
from fake_classifiers import InterruptingClassifier
from typer.testing import CliRunner

from casewise.cli.main import app
from casewise.config import load_experiment_config
from casewise.controller import ExperimentController
from casewise.db import get_connection
from casewise.experiments import get_experiment
from casewise.ledger import count_completed
from casewise.lock import acquire_lock

runner = CliRunner()


def _interrupt(project: Path, experiment_file: Path) -> None:
    """Leave exp-1 half done, as if the first run was stopped with Ctrl-C."""
    conn = get_connection(project / ".casewise" / "casewise.db")
    try:
        with pytest.raises(KeyboardInterrupt):
            ExperimentController(conn, InterruptingClassifier(stop_after=2)).run(
                load_experiment_config(experiment_file)
            )
    finally:
        conn.close()


@pytest.fixture
def experiment_file(casewise_project: Path, source_file: Path) -> Path:
    path = casewise_project / "experiment.yaml"
    path.write_text(
        yaml.dump(
            {
                "name": "baseline",
                "data_source": "cases.csv",
                "classifier": {"target": "fake_classifiers:make_classifier", "options": {"confidence": 0.9}},
                "weights": {"le": 0.4, "cme": 0.6},
                "experiment_id": "exp-1",
                "retry": {"max_attempts": 1},
            }
        )
    )
    return path


class TestInitCommand:
    """Tests for casewise init command."""

    def test_init_creates_directory(self, temp_dir: Path) -> None:
        """Test that init creates .casewise directory."""
        os.chdir(temp_dir)

        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert (temp_dir / ".casewise").exists()
        assert (temp_dir / ".casewise" / "casewise.db").exists()
        assert (temp_dir / ".casewise" / "config.yaml").exists()

    def test_init_already_initialized(self, casewise_project: Path) -> None:
        """Test init when already initialized."""
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Already initialized" in result.stdout


class TestLoadCommand:
    """Tests for casewise load command."""

    def test_load(self, casewise_project: Path, source_file: Path) -> None:
        result = runner.invoke(app, ["load", "cases.csv"])

        assert result.exit_code == 0
        assert "Loaded" in result.stdout
        assert "6 records" in result.stdout
        assert "cme, le" in result.stdout

    def test_load_changed_without_force(self, casewise_project: Path, source_file: Path) -> None:
        runner.invoke(app, ["load", "cases.csv"])
        source_file.write_text("case_id,category,text\nc1,le,changed\n")

        result = runner.invoke(app, ["load", "cases.csv"])
        assert result.exit_code == 1
        assert "different content" in result.stdout

        result = runner.invoke(app, ["load", "cases.csv", "--force"])
        assert result.exit_code == 0
        assert "1 records" in result.stdout

    def test_load_undecodable_file(self, casewise_project: Path, source_file: Path) -> None:
        source_file.write_bytes(b"case_id,category,text\nc1,le,caf\xe9\n")

        result = runner.invoke(app, ["load", "cases.csv"])

        assert result.exit_code == 1
        assert "not valid UTF-8" in result.stdout

    def test_load_outside_project(self, temp_dir: Path) -> None:
        os.chdir(temp_dir)
        result = runner.invoke(app, ["load", "cases.csv"])

        assert result.exit_code == 1
        assert "casewise init" in result.stdout


class TestRunCommand:
    """Tests for casewise run command."""

    def test_run(self, casewise_project: Path, experiment_file: Path) -> None:
        result = runner.invoke(app, ["run", str(experiment_file)])

        assert result.exit_code == 0, result.stdout
        assert "Ran experiment" in result.stdout
        assert "5/5" in result.stdout
        assert "detected=1" in result.stdout

        conn = get_connection(casewise_project / ".casewise" / "casewise.db")
        try:
            assert get_experiment(conn, "exp-1").status == "completed"
            assert count_completed(conn, "exp-1") == 5
        finally:
            conn.close()

    def test_rerun_completed_is_noop(self, casewise_project: Path, experiment_file: Path) -> None:
        result = runner.invoke(app, ["run", str(experiment_file), "--id", "exp-2", "--max-items", "2"])
        assert result.exit_code == 0, result.stdout
        assert "2/2" in result.stdout

        result = runner.invoke(app, ["run", str(experiment_file), "--id", "exp-2"])
        assert result.exit_code == 0, result.stdout
        assert "0 processed, 2 skipped" in result.stdout

    def test_resume_interrupted(self, casewise_project: Path, experiment_file: Path) -> None:
        """Test running the same config again picks up where the last run stopped."""
        _interrupt(casewise_project, experiment_file)

        result = runner.invoke(app, ["run", str(experiment_file)])

        assert result.exit_code == 0, result.stdout
        assert "Resumed experiment" in result.stdout
        assert "3 processed, 2 skipped" in result.stdout

    def test_run_contention(self, casewise_project: Path, experiment_file: Path, live_pid: int) -> None:
        _interrupt(casewise_project, experiment_file)
        conn = get_connection(casewise_project / ".casewise" / "casewise.db")
        try:
            acquire_lock(conn, "exp-1", pid=live_pid)
        finally:
            conn.close()

        result = runner.invoke(app, ["run", str(experiment_file)])

        assert result.exit_code == 1
        assert "Resume lock is held" in result.stdout

    def test_invalid_config(self, casewise_project: Path) -> None:
        path = casewise_project / "bad.yaml"
        path.write_text(yaml.dump({"name": "missing-data-source"}))

        result = runner.invoke(app, ["run", str(path)])

        assert result.exit_code == 1
        assert "data_source" in result.stdout

    def test_missing_classifier(self, casewise_project: Path, source_file: Path) -> None:
        path = casewise_project / "bare.yaml"
        path.write_text(yaml.dump({"name": "bare", "data_source": "cases.csv"}))

        result = runner.invoke(app, ["run", str(path)])

        assert result.exit_code == 1
        assert "classifier" in result.stdout


class TestStatusCommand:
    """Tests for casewise status command."""

    def test_status_empty(self, casewise_project: Path) -> None:
        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "No experiments found" in result.stdout

    def test_status_list_and_detail(self, casewise_project: Path, experiment_file: Path) -> None:
        runner.invoke(app, ["run", str(experiment_file)])

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "exp-1" in result.stdout
        assert "completed" in result.stdout

        result = runner.invoke(app, ["status", "exp-1"])
        assert result.exit_code == 0
        assert "Experiment exp-1" in result.stdout
        assert "5/5 (100%)" in result.stdout
        assert "Summary" in result.stdout

    def test_status_unknown(self, casewise_project: Path) -> None:
        result = runner.invoke(app, ["status", "nope"])

        assert result.exit_code == 1
        assert "not found" in result.stdout


class TestReconcileCommand:
    """Tests for casewise reconcile command."""

    def test_reconcile_with_stored_weights(self, casewise_project: Path, experiment_file: Path) -> None:
        runner.invoke(app, ["run", str(experiment_file)])

        result = runner.invoke(app, ["reconcile", "exp-1", "--cases"])

        assert result.exit_code == 0, result.stdout
        assert "threshold 0.7" in result.stdout
        assert "0.620" in result.stdout
        assert "detected: 1" in result.stdout

    def test_reconcile_override_threshold(self, casewise_project: Path, experiment_file: Path) -> None:
        runner.invoke(app, ["run", str(experiment_file)])

        result = runner.invoke(app, ["reconcile", "exp-1", "--threshold", "0.45"])

        assert result.exit_code == 0, result.stdout
        assert "detected: 3" in result.stdout

    def test_reconcile_missing_weight(self, casewise_project: Path, experiment_file: Path) -> None:
        runner.invoke(app, ["run", str(experiment_file)])

        result = runner.invoke(app, ["reconcile", "exp-1", "-w", "le=1.0"])

        assert result.exit_code == 1
        assert "No weight configured" in result.stdout

    def test_reconcile_bad_weight(self, casewise_project: Path) -> None:
        result = runner.invoke(app, ["reconcile", "exp-1", "-w", "le"])

        assert result.exit_code != 0
