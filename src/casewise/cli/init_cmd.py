# Copyright (c) Syntropy Systems
"""casewise init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from casewise.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new casewise project.

    Creates a .casewise directory with settings and the database.
    """
    target = path.resolve()
    casewise_dir = target / ".casewise"

    if casewise_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {casewise_dir}")
        return

    casewise_dir.mkdir(parents=True)

    settings = {
        "progress_every": 10,
        "lock_wait_seconds": 0,
        "log_level": "INFO",
    }

    config_path = casewise_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(settings, f, default_flow_style=False)

    db_path = casewise_dir / "casewise.db"
    init_db(db_path)

    console.print(f"[green]Initialized casewise project:[/green] {casewise_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
