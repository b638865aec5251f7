# Copyright (c) Syntropy Systems
"""casewise status command."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from casewise.config import get_db_path, require_casewise_dir
from casewise.db import get_connection, init_db, parse_timestamp
from casewise.experiments import get_experiment, get_experiments
from casewise.ledger import count_errors
from casewise.lock import get_lock
from casewise.models.db import ExperimentRecord

console = Console()

STATUS_STYLES = {
    "created": "yellow",
    "running": "blue",
    "completed": "green",
    "failed": "red",
}


def format_seconds(total_seconds: int) -> str:
    """Format a span of seconds as 42s, 3m 5s or 2h 10m."""
    if total_seconds < 60:
        return f"{total_seconds}s"
    if total_seconds < 3600:
        minutes, seconds = divmod(total_seconds, 60)
        return f"{minutes}m {seconds}s"
    hours, rem = divmod(total_seconds, 3600)
    return f"{hours}h {rem // 60}m"


def format_duration(started_at: Optional[str], finished_at: Optional[str] = None) -> str:
    """Format duration from started_at to now or finished_at."""
    start = parse_timestamp(started_at)
    if start is None:
        return "-"
    end = parse_timestamp(finished_at) or datetime.now(timezone.utc)
    return format_seconds(max(0, int((end - start).total_seconds())))


def format_time_ago(timestamp: Optional[str]) -> str:
    """Format a timestamp as time ago."""
    ts = parse_timestamp(timestamp)
    if ts is None:
        return "-"

    total_seconds = int((datetime.now(timezone.utc) - ts).total_seconds())
    if total_seconds < 60:
        return "just now"
    if total_seconds < 3600:
        return f"{total_seconds // 60}m ago"
    if total_seconds < 86400:
        return f"{total_seconds // 3600}h ago"
    return f"{total_seconds // 86400}d ago"


def format_eta(timestamp: Optional[str]) -> str:
    """Format an estimated completion time relative to now."""
    eta = parse_timestamp(timestamp)
    if eta is None:
        return "-"
    remaining = int((eta - datetime.now(timezone.utc)).total_seconds())
    if remaining <= 0:
        return "any moment"
    return f"in {format_seconds(remaining)}"


def format_progress(experiment: ExperimentRecord) -> str:
    if experiment.total_items == 0:
        return "0/0"
    pct = 100 * experiment.completed_items / experiment.total_items
    return f"{experiment.completed_items}/{experiment.total_items} ({pct:.0f}%)"


def status(
    experiment_id: Optional[str] = typer.Argument(
        None,
        help="Experiment ID to show details for",
    ),
    status_filter: Optional[str] = typer.Option(
        None,
        "--status", "-s",
        help="Filter by status (created, running, completed, failed)",
    ),
    last: int = typer.Option(
        20,
        "--last", "-n",
        help="Number of experiments to show",
    ),
) -> None:
    """
    Show experiment status.

    Without arguments, lists recent experiments.
    With an experiment ID, shows progress, ETA and failure details.
    """
    try:
        casewise_dir = require_casewise_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    db_path = get_db_path(casewise_dir)
    init_db(db_path)
    conn = get_connection(db_path)

    try:
        if experiment_id is not None:
            experiment = get_experiment(conn, experiment_id)
            if experiment is None:
                matches = [e for e in get_experiments(conn, limit=1000) if e.id.startswith(experiment_id)]
                if len(matches) > 1:
                    console.print(f"[yellow]Ambiguous ID '{experiment_id}', matches:[/yellow]")
                    for match in matches[:5]:
                        console.print(f"  {match.id} ({match.name})")
                    raise typer.Exit(1)
                experiment = matches[0] if matches else None
            if experiment is None:
                console.print(f"[red]Error:[/red] Experiment '{experiment_id}' not found")
                raise typer.Exit(1)

            lock = get_lock(conn, experiment.id)
            errors = count_errors(conn, experiment.id)
            _show_experiment_details(experiment, errors, lock.holder_pid if lock else None)
        else:
            _show_experiment_table(get_experiments(conn, status=status_filter, limit=last))
    finally:
        conn.close()


def _show_experiment_table(experiments: list[ExperimentRecord]) -> None:
    """Display experiments in a table."""
    if not experiments:
        console.print("[dim]No experiments found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress")
    table.add_column("Runtime")
    table.add_column("Created")

    for experiment in experiments:
        style = STATUS_STYLES.get(experiment.status, "white")
        table.add_row(
            experiment.id[:8] if len(experiment.id) > 8 else experiment.id,
            experiment.name,
            f"[{style}]{experiment.status}[/{style}]",
            format_progress(experiment),
            format_duration(experiment.started_at, experiment.finished_at),
            format_time_ago(experiment.created_at),
        )

    console.print(table)


def _show_experiment_details(
    experiment: ExperimentRecord,
    errors: int,
    lock_pid: Optional[int],
) -> None:
    """Display detailed experiment information."""
    style = STATUS_STYLES.get(experiment.status, "white")

    console.print(f"\n[bold]Experiment {experiment.id}[/bold]")
    console.print(f"  [dim]name:[/dim] {experiment.name}")
    console.print(f"  [dim]status:[/dim] [{style}]{experiment.status}[/{style}]")
    console.print(f"  [dim]data:[/dim] {experiment.data_source}")
    console.print(f"  [dim]progress:[/dim] {format_progress(experiment)}")
    console.print(f"  [dim]errors:[/dim] {errors}")

    console.print()
    console.print(f"  [dim]created:[/dim] {format_time_ago(experiment.created_at)}")
    if experiment.started_at:
        console.print(f"  [dim]started:[/dim] {format_time_ago(experiment.started_at)}")
        console.print(
            f"  [dim]runtime:[/dim] {format_duration(experiment.started_at, experiment.finished_at)}"
        )
    if experiment.last_progress_at:
        console.print(f"  [dim]last progress:[/dim] {format_time_ago(experiment.last_progress_at)}")
    if experiment.status == "running":
        console.print(f"  [dim]eta:[/dim] {format_eta(experiment.estimated_completion_at)}")
    if experiment.finished_at:
        console.print(f"  [dim]finished:[/dim] {format_time_ago(experiment.finished_at)}")
    if lock_pid is not None:
        console.print(f"  [dim]locked by pid:[/dim] {lock_pid}")

    if experiment.failed_stage or experiment.error_message:
        console.print(f"  [dim]failed at:[/dim] {experiment.failed_stage or '-'}")
        console.print(f"  [dim]error:[/dim] {experiment.error_message or '-'}")

    if experiment.summary:
        console.print("\n[bold]Summary[/bold]")
        for key, value in experiment.summary.items():
            console.print(f"  {key}: {value}")

    console.print()
