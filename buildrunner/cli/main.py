"""Typer CLI for buildrunner: wiring hub for command modules."""

from __future__ import annotations

from typing import Annotated

import typer

from buildrunner.cli._helpers import console

app = typer.Typer(
    name="buildrunner",
    help="Run declarative build pipelines in isolated environments.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    if value:
        from buildrunner import __version__

        console.print(f"buildrunner {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable debug logging"),
    ] = False,
) -> None:
    """buildrunner: run declarative build pipelines in isolated environments."""
    from buildrunner._log import setup_logging

    setup_logging(verbose=verbose)


# ---------------------------------------------------------------------------
# Command registrations: plain functions from *_cmd modules
# ---------------------------------------------------------------------------

from buildrunner.cli.history_cmd import fingerprint, history, prune  # noqa: E402
from buildrunner.cli.run_cmd import run, validate  # noqa: E402

app.command()(run)
app.command()(validate)
app.command()(history)
app.command()(fingerprint)
app.command()(prune)
