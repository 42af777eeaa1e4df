"""End-to-end pipeline runs.

gate acquire -> provision -> stages -> post-run (archive + cleanup) -> gate release
"""

from __future__ import annotations

import threading
import time
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from buildrunner._log import get_logger
from buildrunner.errors import ProvisionError
from buildrunner.pipeline.agents import AgentProvisioner, AgentRuntime, build_runtime
from buildrunner.pipeline.artifacts import ArtifactStore, LocalArtifactStore, StoredArtifact
from buildrunner.pipeline.executor import (
    RunOutcome,
    RunState,
    StageEventCallback,
    StageResult,
    execute_stages,
)
from buildrunner.pipeline.gate import ConcurrencyGate, get_default_gate
from buildrunner.pipeline.post import PostRunHandler, PostRunReport, RunWarning
from buildrunner.pipeline.schema import PipelineSpec

if TYPE_CHECKING:
    from buildrunner.audit.logger import AuditLogger

logger = get_logger("runner")


@dataclass
class RunReport:
    run_id: str
    pipeline_name: str
    outcome: RunOutcome
    failed_stage: int | None = None
    cause: str | None = None
    stage_results: list[StageResult] = field(default_factory=list)
    artifacts: list[StoredArtifact] = field(default_factory=list)
    warnings: list[RunWarning] = field(default_factory=list)
    archival_attempted: bool = False
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.outcome is RunOutcome.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @classmethod
    def from_state(cls, state: RunState, post: PostRunReport, duration_ms: int) -> RunReport:
        return cls(
            run_id=state.run_id,
            pipeline_name=state.pipeline_name,
            outcome=state.outcome,
            failed_stage=state.failed_stage,
            cause=state.cause,
            stage_results=list(state.stage_results),
            artifacts=list(post.archived),
            warnings=list(post.warnings),
            archival_attempted=post.archival_attempted,
            cancelled=state.cancelled,
            duration_ms=duration_ms,
        )


def _record_provision_error(
    audit_logger: AuditLogger,
    pipeline: PipelineSpec,
    run_id: str,
    runtime: AgentRuntime,
    error: ProvisionError,
    duration_ms: int,
) -> None:
    from buildrunner.audit.logger import RunRecord

    audit_logger.log_run(
        RunRecord(
            run_id=run_id,
            pipeline_name=pipeline.name,
            timestamp=datetime.now(UTC).isoformat(),
            outcome="error",
            duration_ms=duration_ms,
            cause=str(error),
            runtime=runtime.name,
            image=pipeline.agent.image,
        )
    )


def run_pipeline(
    pipeline: PipelineSpec,
    *,
    runtime: AgentRuntime | None = None,
    gate: ConcurrencyGate | None = None,
    store: ArtifactStore | None = None,
    workspace_root: Path | None = None,
    audit_logger: AuditLogger | None = None,
    cancel_event: threading.Event | None = None,
    on_event: StageEventCallback | None = None,
    timeout_seconds: float | None = None,
    gate_timeout: float | None = None,
) -> RunReport:
    """Execute *pipeline* once and return its report.

    *timeout_seconds* overrides ``options.timeoutSeconds``. Runs of the same
    pipeline are serialized through *gate* (the process-wide gate by default)
    unless the pipeline allows concurrent builds.

    Raises:
        GateBlocked: If the gate rejects the run or *gate_timeout* expires.
        ProvisionError: If no environment could be provisioned. No stage has
            run and the gate has been released.
    """
    from buildrunner import config

    runtime = runtime or build_runtime()
    gate = gate or get_default_gate()
    store = store or LocalArtifactStore(config.get_artifacts_dir())
    workspace_root = workspace_root or config.get_workspaces_dir()
    options = pipeline.options
    if timeout_seconds is None:
        timeout_seconds = options.timeout_seconds

    run_id = uuid.uuid4().hex[:12]
    provisioner = AgentProvisioner(runtime, workspace_root)
    handler = PostRunHandler(store, provisioner)

    scope = (
        gate.hold(pipeline.name, policy=options.concurrency_policy, timeout=gate_timeout)
        if options.disable_concurrent_builds
        else nullcontext()
    )
    with scope:
        start = time.monotonic()
        logger.info("Starting run %s of '%s'", run_id, pipeline.name)
        try:
            env = provisioner.provision(pipeline.agent, pipeline_name=pipeline.name, run_id=run_id)
        except ProvisionError as e:
            logger.error("Run %s of '%s' aborted: %s", run_id, pipeline.name, e)
            if audit_logger is not None:
                duration_ms = int((time.monotonic() - start) * 1000)
                _record_provision_error(audit_logger, pipeline, run_id, runtime, e, duration_ms)
            raise

        state = RunState(run_id=run_id, pipeline_name=pipeline.name)
        post = PostRunReport()
        try:
            execute_stages(
                pipeline,
                env,
                state,
                timeout_seconds=timeout_seconds,
                cancel_event=cancel_event,
                on_event=on_event,
            )
        finally:
            post = handler.run(state, pipeline.post, env)

        report = RunReport.from_state(state, post, int((time.monotonic() - start) * 1000))
        logger.info("Run %s of '%s' %s", run_id, pipeline.name, report.outcome)

        if audit_logger is not None:
            from buildrunner.audit.logger import RunRecord

            audit_logger.log_run(
                RunRecord.from_report(report, runtime=runtime.name, image=pipeline.agent.image)
            )
            audit_logger.log_fingerprints(pipeline.name, run_id, report.artifacts)

    return report
