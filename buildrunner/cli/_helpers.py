"""Shared CLI helpers: console, pipeline loading, audit logger creation."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console

if TYPE_CHECKING:
    from buildrunner.audit.logger import AuditLogger
    from buildrunner.pipeline.schema import PipelineSpec

console = Console()

# Exit codes of `buildrunner run`.
EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_ERROR = 2


def load_pipeline_or_exit(pipeline_file: Path, name: str | None = None) -> PipelineSpec:
    from buildrunner.errors import PipelineLoadError
    from buildrunner.pipeline.loader import load_pipeline

    try:
        return load_pipeline(pipeline_file, name)
    except PipelineLoadError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_ERROR) from None


def create_audit_logger(audit_db: Path | None, no_audit: bool) -> AuditLogger | None:
    if no_audit:
        return None
    from buildrunner.audit.logger import AuditLogger

    return AuditLogger(audit_db)


def open_existing_audit_db(audit_db: Path | None) -> AuditLogger:
    """Open the audit DB for reading, exiting when it has never been created."""
    from buildrunner.audit.logger import AuditLogger
    from buildrunner.config import get_audit_db_path

    db_path = audit_db or get_audit_db_path()
    if not db_path.exists():
        console.print(f"[red]Error:[/red] Audit database not found at {db_path}")
        raise typer.Exit(1)
    return AuditLogger(db_path)
