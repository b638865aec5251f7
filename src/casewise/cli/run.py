# Copyright (c) Syntropy Systems
"""casewise run command."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from casewise.classifier import load_classifier
from casewise.config import get_db_path, load_config, load_experiment_config, require_casewise_dir
from casewise.controller import ExperimentController
from casewise.db import get_connection, init_db
from casewise.errors import CasewiseError, ConfigError
from casewise.retry import RetryPolicy

if TYPE_CHECKING:
    from casewise.models.db import ExperimentRecord

console = Console()


def setup_logging(level: str) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def run(
    config_path: Path = typer.Argument(
        ...,
        help="Experiment configuration (YAML)",
    ),
    experiment_id: Optional[str] = typer.Option(
        None,
        "--id",
        help="Experiment ID to create or resume (overrides the config)",
    ),
    max_items: Optional[int] = typer.Option(
        None,
        "--max-items", "-n",
        min=1,
        help="Only classify the first N items",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Log debug output",
    ),
) -> None:
    """
    Run or resume a classification experiment.

    Work already in the ledger is skipped, so an interrupted run can be
    continued by running the same command with the experiment ID.
    """
    try:
        casewise_dir = require_casewise_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    settings = load_config(casewise_dir)
    setup_logging("DEBUG" if verbose else settings.log_level)

    try:
        config = load_experiment_config(config_path)
        overrides: dict[str, object] = {}
        if experiment_id is not None:
            overrides["experiment_id"] = experiment_id
        if max_items is not None:
            overrides["max_items"] = max_items
        if overrides:
            config = config.model_copy(update=overrides)
        if config.classifier is None:
            msg = "Experiment config has no classifier.target"
            raise ConfigError(msg, stage="config")
        classifier = load_classifier(config.classifier)
    except CasewiseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    db_path = get_db_path(casewise_dir)
    init_db(db_path)
    conn = get_connection(db_path)

    current: list[str] = []

    def remember(experiment: ExperimentRecord) -> None:
        if not current:
            current.append(experiment.id)

    progress_every = settings.progress_every
    if "progress_every" in config.model_fields_set:
        progress_every = config.progress_every

    controller = ExperimentController(
        conn,
        classifier,
        retry_policy=RetryPolicy.from_settings(config.retry),
        progress_every=progress_every,
        lock_wait_seconds=settings.lock_wait_seconds,
        on_progress=remember,
    )

    try:
        outcome = controller.run(config)
    except CasewiseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        resume_id = current[0] if current else config.experiment_id
        console.print("\n[yellow]Interrupted.[/yellow] Completed work is saved.")
        if resume_id:
            console.print(f"  Resume with: casewise run {config_path} --id {resume_id}")
        raise typer.Exit(130) from None
    finally:
        conn.close()

    verb = "Resumed" if outcome.resumed else "Ran"
    console.print(f"[green]{verb} experiment[/green] {outcome.experiment_id}")
    console.print(f"  [dim]status:[/dim] {outcome.status}")
    console.print(f"  [dim]items:[/dim] {outcome.completed_items}/{outcome.total_items}")
    console.print(
        f"  [dim]this run:[/dim] {outcome.processed} processed, "
        f"{outcome.skipped} skipped, {outcome.errors} errors"
    )
    console.print(f"  [dim]elapsed:[/dim] {outcome.elapsed_seconds:.1f}s")
    if outcome.decisions:
        parts = [f"{k}={v}" for k, v in outcome.decisions.items()]
        console.print(f"  [dim]decisions:[/dim] {', '.join(parts)}")
