# Copyright (c) Syntropy Systems
"""Main CLI entry point for casewise."""

import typer

from casewise.cli.init_cmd import init
from casewise.cli.load import load
from casewise.cli.reconcile import reconcile
from casewise.cli.run import run
from casewise.cli.status import status

app = typer.Typer(
    name="casewise",
    help=(
        "Resumable LLM classification experiments. Classify every case once, "
        "survive interruptions, reconcile the verdicts."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(load)
_ = app.command()(run)
_ = app.command()(status)
_ = app.command()(reconcile)


if __name__ == "__main__":
    app()
