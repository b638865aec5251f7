# Copyright (c) Syntropy Systems
"""casewise reconcile command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from casewise.config import get_db_path, require_casewise_dir
from casewise.db import get_connection, init_db
from casewise.experiments import get_experiment
from casewise.models.config import DEFAULT_THRESHOLD
from casewise.reconcile import check_weights, reconcile_experiment, summarize_decisions

console = Console()


def parse_weights(values: list[str]) -> dict[str, float]:
    """Parse repeated CATEGORY=WEIGHT options."""
    weights: dict[str, float] = {}
    for value in values:
        category, sep, raw = value.partition("=")
        if not sep or not category:
            msg = f"Expected CATEGORY=WEIGHT, got '{value}'"
            raise typer.BadParameter(msg)
        try:
            weight = float(raw)
        except ValueError as e:
            msg = f"Weight for '{category}' is not a number: '{raw}'"
            raise typer.BadParameter(msg) from e
        if weight < 0:
            msg = f"Weight for '{category}' must be >= 0"
            raise typer.BadParameter(msg)
        weights[category] = weight
    return weights


def reconcile(
    experiment_id: str = typer.Argument(
        ...,
        help="Experiment ID to reconcile",
    ),
    weight: list[str] = typer.Option(
        [],
        "--weight", "-w",
        help="Category weight as CATEGORY=WEIGHT (repeatable; default: experiment config)",
    ),
    threshold: Optional[float] = typer.Option(
        None,
        "--threshold", "-t",
        min=0.0,
        max=1.0,
        help="Decision threshold for blended confidence (default: experiment config)",
    ),
    show_cases: bool = typer.Option(
        False,
        "--cases", "-c",
        help="List every case decision",
    ),
) -> None:
    """Combine per-category results into one decision per case.

    Reads only the ledger, so it can be re-run with other weights.
    """
    try:
        casewise_dir = require_casewise_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    weights = parse_weights(weight)

    db_path = get_db_path(casewise_dir)
    init_db(db_path)
    conn = get_connection(db_path)

    try:
        experiment = get_experiment(conn, experiment_id)
        if experiment is None:
            console.print(f"[red]Error:[/red] Experiment '{experiment_id}' not found")
            raise typer.Exit(1)

        stored = experiment.config or {}
        if not weights:
            stored_weights = stored.get("weights")
            if isinstance(stored_weights, dict):
                weights = {str(k): float(v) for k, v in stored_weights.items() if isinstance(v, (int, float))}
        if threshold is None:
            stored_threshold = stored.get("threshold")
            threshold = float(stored_threshold) if isinstance(stored_threshold, (int, float)) else DEFAULT_THRESHOLD

        for warning in check_weights(weights):
            console.print(f"[yellow]Warning:[/yellow] {warning}")

        try:
            decisions = reconcile_experiment(conn, experiment.id, weights, threshold)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
    finally:
        conn.close()

    if show_cases:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Case")
        table.add_column("Decision")
        table.add_column("Confidence")
        table.add_column("Categories", style="dim")

        for decision in decisions:
            if decision.combined_detected is None:
                label = "[dim]unknown[/dim]"
            elif decision.combined_detected:
                label = "[green]detected[/green]"
            else:
                label = "not detected"
            confidence = (
                f"{decision.combined_confidence:.3f}" if decision.combined_confidence is not None else "-"
            )
            table.add_row(
                decision.case_id,
                label,
                confidence,
                ", ".join(decision.contributing_categories) or "-",
            )
        console.print(table)

    summary = summarize_decisions(decisions)
    console.print(f"\n[bold]Experiment {experiment.id}[/bold] (threshold {threshold:g})")
    for key, value in summary.items():
        console.print(f"  [dim]{key}:[/dim] {value}")
