"""Run commands: run, validate."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.table import Table

from buildrunner.cli._helpers import (
    EXIT_ERROR,
    console,
    create_audit_logger,
    load_pipeline_or_exit,
)
from buildrunner.pipeline.executor import StageResult
from buildrunner.pipeline.runner import RunReport
from buildrunner.pipeline.schema import PipelineSpec, StageSpec


def _print_stage_event(event: str, payload: Any, index: int) -> None:
    if event == "stage_start":
        stage: StageSpec = payload
        console.print(f"[bold cyan]>> Stage {index + 1}:[/bold cyan] {stage.name}")
        return
    result: StageResult = payload
    for step in result.step_results:
        marker = "[green]ok[/green]" if step.ok else f"[red]exit {step.exit_code}[/red]"
        console.print(f"   $ {step.command}  {marker}", highlight=False)
        if not step.ok and step.output:
            console.print(step.output.rstrip(), markup=False, highlight=False)


def _display_plan(pipe: PipelineSpec) -> None:
    table = Table(title=f"Pipeline: {pipe.name}")
    table.add_column("#", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Steps")
    for i, stage in enumerate(pipe.stages, start=1):
        table.add_row(str(i), stage.name, "\n".join(stage.steps))
    console.print(table)

    agent = pipe.agent
    args = " ".join(agent.args) if agent.args else "(none)"
    console.print(f"[bold]Agent:[/bold] {agent.image}  args: {args}  workdir: {agent.workdir}")

    opts = pipe.options
    if opts.disable_concurrent_builds:
        concurrency = f"one at a time ({opts.concurrency_policy})"
    else:
        concurrency = "concurrent builds allowed"
    timeout = f"{opts.timeout_seconds:g}s" if opts.timeout_seconds else "none"
    console.print(f"[bold]Concurrency:[/bold] {concurrency}  [bold]Timeout:[/bold] {timeout}")

    post = pipe.post
    artifacts = post.artifacts or "(none)"
    console.print(
        f"[bold]Post:[/bold] archive {artifacts} on {post.trigger}"
        f"  fingerprint: {'yes' if post.fingerprint else 'no'}"
        f"  cleanup workspace: {'yes' if post.cleanup_workspace else 'no'}"
    )


def _display_report(report: RunReport) -> None:
    table = Table(title=f"Pipeline: {report.pipeline_name} ({report.run_id})")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Duration")

    for sr in report.stage_results:
        if sr.skipped:
            status = "[dim]SKIP[/dim]"
        elif sr.success:
            status = "[green]PASS[/green]"
        else:
            status = f"[red]FAIL[/red] ({sr.cause})"
        table.add_row(sr.name, status, f"{sr.duration_ms}ms")
    console.print(table)

    for artifact in report.artifacts:
        digest = f"  sha256:{artifact.sha256}" if artifact.sha256 else ""
        console.print(f"[green]Archived[/green] {artifact.path} ({artifact.size} bytes){digest}")
    for warning in report.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning.message}")

    total = f"[bold]Total: {report.duration_ms}ms[/bold]"
    if report.success:
        console.print(f"\n{total} [green]Succeeded[/green]")
    else:
        console.print(
            f"\n{total} [red]Failed[/red] at stage {report.failed_stage}: {report.cause}"
        )


def run(
    pipeline_file: Annotated[Path, typer.Argument(help="Path to pipeline YAML")],
    runtime: Annotated[
        str | None,
        typer.Option(help="Execution runtime: docker or local (default: $BUILDRUNNER_RUNTIME)"),
    ] = None,
    name: Annotated[
        str | None, typer.Option(help="Pipeline identity (default: file name)")
    ] = None,
    timeout: Annotated[
        float | None, typer.Option(help="Run timeout in seconds (overrides timeoutSeconds)")
    ] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Validate and show the stage plan without running")
    ] = False,
    workspace_root: Annotated[
        Path | None, typer.Option(help="Directory for per-run workspaces")
    ] = None,
    audit_db: Annotated[Path | None, typer.Option(help="Path to audit database")] = None,
    no_audit: Annotated[bool, typer.Option(help="Disable run history")] = False,
) -> None:
    """Run a build pipeline."""
    from buildrunner._signal import cancel_on_signal
    from buildrunner.config import RUNTIMES
    from buildrunner.errors import GateBlocked, ProvisionError
    from buildrunner.pipeline.agents import build_runtime
    from buildrunner.pipeline.runner import run_pipeline

    pipe = load_pipeline_or_exit(pipeline_file, name)

    if dry_run:
        _display_plan(pipe)
        return

    if runtime is not None and runtime not in RUNTIMES:
        console.print(
            f"[red]Error:[/red] Unknown runtime '{runtime}'. Use: {', '.join(RUNTIMES)}"
        )
        raise typer.Exit(EXIT_ERROR)
    if timeout is not None and timeout <= 0:
        console.print("[red]Error:[/red] --timeout must be positive")
        raise typer.Exit(EXIT_ERROR)

    agent_runtime = build_runtime(runtime)
    audit_logger = create_audit_logger(audit_db, no_audit)
    cancel_event = threading.Event()

    console.print(
        f"Running [cyan]{pipe.name}[/cyan] on {agent_runtime.name} ({pipe.agent.image})"
    )
    try:
        with cancel_on_signal(
            cancel_event,
            on_first_signal=lambda: console.print(
                "\n[yellow]Cancelling... (Ctrl-C again to force)[/yellow]"
            ),
        ):
            report = run_pipeline(
                pipe,
                runtime=agent_runtime,
                workspace_root=workspace_root,
                audit_logger=audit_logger,
                cancel_event=cancel_event,
                on_event=_print_stage_event,
                timeout_seconds=timeout,
            )
    except (GateBlocked, ProvisionError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_ERROR) from None
    finally:
        if audit_logger is not None:
            audit_logger.close()

    _display_report(report)
    if not report.success:
        raise typer.Exit(report.exit_code)


def validate(
    pipeline_file: Annotated[Path, typer.Argument(help="Path to pipeline YAML")],
    name: Annotated[
        str | None, typer.Option(help="Pipeline identity (default: file name)")
    ] = None,
) -> None:
    """Validate a pipeline definition."""
    pipe = load_pipeline_or_exit(pipeline_file, name)
    _display_plan(pipe)
    console.print(f"\n[green]Valid[/green] ({len(pipe.stages)} stage(s))")
