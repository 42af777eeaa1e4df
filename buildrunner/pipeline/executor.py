"""Sequential, fail-fast stage execution.

Stages run strictly in declaration order and the steps of a stage run in
order inside it. The first failing step fails its stage and the run;
nothing after it executes. Failures are recorded on the
:class:`RunState`, never raised, so post-run handling always follows.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from buildrunner._log import get_logger
from buildrunner._subprocess import SubprocessCancelled, SubprocessTimeout
from buildrunner.pipeline.agents import CommandResult
from buildrunner.pipeline.schema import PipelineSpec, StageSpec

if TYPE_CHECKING:
    from buildrunner.pipeline.agents import ExecutionEnvironment

logger = get_logger("executor")

StageEventCallback = Callable[[str, Any, int], None]


class RunOutcome(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class StageResult:
    name: str
    index: int
    success: bool = True
    cause: str | None = None
    step_results: list[CommandResult] = field(default_factory=list)
    duration_ms: int = 0
    skipped: bool = False


@dataclass
class RunState:
    run_id: str
    pipeline_name: str
    stage_index: int = 0
    outcome: RunOutcome = RunOutcome.PENDING
    failed_stage: int | None = None
    cause: str | None = None
    stage_results: list[StageResult] = field(default_factory=list)
    environment: ExecutionEnvironment | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.SUCCEEDED

    def mark_failed(self, stage_number: int, cause: str) -> None:
        self.outcome = RunOutcome.FAILED
        self.failed_stage = stage_number
        self.cause = cause


def _interrupt_cause(
    deadline: float | None,
    timeout_seconds: float | None,
    cancel_event: threading.Event | None,
) -> str | None:
    """Return why the run must stop now, or None to keep going."""
    if cancel_event is not None and cancel_event.is_set():
        return "cancelled"
    if deadline is not None and time.monotonic() >= deadline:
        return f"timed out after {timeout_seconds:g}s"
    return None


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return max(deadline - time.monotonic(), 0.001)


def _run_stage(
    stage: StageSpec,
    index: int,
    env: ExecutionEnvironment,
    variables: dict[str, str],
    *,
    deadline: float | None,
    timeout_seconds: float | None,
    cancel_event: threading.Event | None,
) -> StageResult:
    """Run every step of *stage*, stopping at the first failure."""
    start = time.monotonic()
    result = StageResult(name=stage.name, index=index)
    stage_env = {**variables, "BUILDRUNNER_STAGE": stage.name}

    for command in stage.steps:
        if cause := _interrupt_cause(deadline, timeout_seconds, cancel_event):
            result.success = False
            result.cause = cause
            break

        logger.debug("[%s] $ %s", stage.name, command)
        try:
            step = env.exec(
                command,
                env=stage_env,
                timeout=_remaining(deadline),
                cancel_event=cancel_event,
            )
        except SubprocessTimeout as e:
            result.step_results.append(CommandResult(command=command, exit_code=-1))
            result.success = False
            limit = timeout_seconds if timeout_seconds is not None else e.timeout
            result.cause = f"timed out after {limit:g}s"
            break
        except SubprocessCancelled:
            result.step_results.append(CommandResult(command=command, exit_code=-1))
            result.success = False
            result.cause = "cancelled"
            break
        except Exception as e:
            result.step_results.append(CommandResult(command=command, exit_code=-1))
            result.success = False
            result.cause = f"runtime error: {e}"
            break

        result.step_results.append(step)
        if not step.ok:
            result.success = False
            result.cause = f"'{command}' exited with code {step.exit_code}"
            break

    result.duration_ms = int((time.monotonic() - start) * 1000)
    return result


def execute_stages(
    pipeline: PipelineSpec,
    env: ExecutionEnvironment,
    state: RunState,
    *,
    timeout_seconds: float | None = None,
    cancel_event: threading.Event | None = None,
    on_event: StageEventCallback | None = None,
) -> RunState:
    """Run the pipeline's stages in *env*, recording the outcome on *state*.

    *timeout_seconds* bounds the whole run; it is checked before each stage
    and step, and the remaining time is the current command's hard limit.
    Stages after a failure are recorded as skipped, never executed.
    """
    state.environment = env
    state.outcome = RunOutcome.RUNNING
    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    variables = {
        **pipeline.environment,
        "BUILDRUNNER_RUN_ID": state.run_id,
        "BUILDRUNNER_PIPELINE": state.pipeline_name,
    }

    for index, stage in enumerate(pipeline.stages):
        number = index + 1
        if state.outcome is RunOutcome.FAILED:
            state.stage_results.append(StageResult(name=stage.name, index=index, skipped=True))
            continue

        state.stage_index = index
        if cause := _interrupt_cause(deadline, timeout_seconds, cancel_event):
            state.cancelled = cause == "cancelled"
            state.mark_failed(number, cause)
            state.stage_results.append(
                StageResult(name=stage.name, index=index, success=False, cause=cause)
            )
            continue

        if on_event is not None:
            on_event("stage_start", stage, index)
        result = _run_stage(
            stage,
            index,
            env,
            variables,
            deadline=deadline,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
        )
        state.stage_results.append(result)
        if on_event is not None:
            on_event("stage_end", result, index)

        if not result.success:
            state.cancelled = result.cause == "cancelled"
            state.mark_failed(number, result.cause or "failed")
            logger.info("Stage %d '%s' failed: %s", number, stage.name, result.cause)

    if state.outcome is RunOutcome.RUNNING:
        state.outcome = RunOutcome.SUCCEEDED
    return state
