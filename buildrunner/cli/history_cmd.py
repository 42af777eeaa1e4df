"""History commands: history, fingerprint, prune."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from buildrunner.cli._helpers import console, open_existing_audit_db


def _outcome_markup(outcome: str) -> str:
    color = {"succeeded": "green", "failed": "red"}.get(outcome, "yellow")
    return f"[{color}]{outcome}[/{color}]"


def history(
    pipeline: Annotated[str | None, typer.Option(help="Filter by pipeline name")] = None,
    outcome: Annotated[
        str | None, typer.Option(help="Filter by outcome: succeeded, failed, error")
    ] = None,
    limit: Annotated[int, typer.Option(help="Max runs to show")] = 20,
    audit_db: Annotated[Path | None, typer.Option(help="Path to audit database")] = None,
) -> None:
    """Show recent pipeline runs."""
    with open_existing_audit_db(audit_db) as audit:
        records = audit.query_runs(pipeline_name=pipeline, outcome=outcome, limit=limit)

    if not records:
        console.print("No runs recorded.")
        return

    table = Table(title="Run history")
    table.add_column("Run", style="cyan")
    table.add_column("Pipeline")
    table.add_column("Started")
    table.add_column("Outcome")
    table.add_column("Duration")
    table.add_column("Warnings", justify="right")

    for r in records:
        outcome_text = _outcome_markup(r.outcome)
        if r.failed_stage is not None:
            outcome_text += f" (stage {r.failed_stage})"
        warnings = len(json.loads(r.warnings)) if r.warnings else 0
        table.add_row(
            r.run_id,
            r.pipeline_name,
            r.timestamp[:19],
            outcome_text,
            f"{r.duration_ms}ms",
            str(warnings),
        )
    console.print(table)


def fingerprint(
    target: Annotated[str, typer.Argument(help="File path or SHA-256 digest")],
    audit_db: Annotated[Path | None, typer.Option(help="Path to audit database")] = None,
) -> None:
    """Show which runs archived a file (by content)."""
    from buildrunner.pipeline.artifacts import fingerprint_file, is_sha256

    path = Path(target)
    if path.is_file():
        digest = fingerprint_file(path)
    elif is_sha256(target.lower()):
        digest = target.lower()
    else:
        console.print(
            f"[red]Error:[/red] '{target}' is neither an existing file nor a SHA-256 digest"
        )
        raise typer.Exit(1)

    with open_existing_audit_db(audit_db) as audit:
        records = audit.lookup_fingerprint(digest)

    console.print(f"sha256:{digest}")
    if not records:
        console.print("[yellow]Not archived by any recorded run.[/yellow]")
        raise typer.Exit(1)

    table = Table()
    table.add_column("Pipeline", style="cyan")
    table.add_column("Run")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("Archived")
    for r in records:
        table.add_row(r.pipeline_name, r.run_id, r.path, str(r.size), r.timestamp[:19])
    console.print(table)


def prune(
    retention_days: Annotated[
        int, typer.Option(help="Delete records older than this many days")
    ] = 90,
    audit_db: Annotated[Path | None, typer.Option(help="Path to audit database")] = None,
) -> None:
    """Prune old run history and fingerprint records."""
    if retention_days < 1:
        console.print("[red]Error:[/red] --retention-days must be at least 1")
        raise typer.Exit(1)

    with open_existing_audit_db(audit_db) as audit:
        deleted = audit.prune(retention_days=retention_days)

    console.print(f"[green]Pruned[/green] {deleted} run(s).")
