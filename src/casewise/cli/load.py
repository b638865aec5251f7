# Copyright (c) Syntropy Systems
"""casewise load command."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from casewise.config import get_db_path, require_casewise_dir
from casewise.db import get_connection, init_db
from casewise.errors import CasewiseError
from casewise.source import get_categories, load_source

console = Console()


def load(
    path: Path = typer.Argument(
        ...,
        help="CSV or JSONL file with case_id, category and text",
    ),
    data_source: Optional[str] = typer.Option(
        None,
        "--as",
        help="Name to store the data under (default: the path as given)",
    ),
    force: bool = typer.Option(
        False,
        "--force", "-f",
        help="Replace previously loaded records whose content changed",
    ),
) -> None:
    """Load a data file into the source store.

    Loading unchanged content again does nothing.
    """
    try:
        casewise_dir = require_casewise_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    db_path = get_db_path(casewise_dir)
    init_db(db_path)
    conn = get_connection(db_path)

    name = data_source or str(path)
    try:
        count = load_source(conn, path, data_source=name, force=force)
        categories = get_categories(conn, name)
    except CasewiseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(f"[green]Loaded[/green] {count} records from {name}")
    if categories:
        console.print(f"  [dim]categories:[/dim] {', '.join(categories)}")
