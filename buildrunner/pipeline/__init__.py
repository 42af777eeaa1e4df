"""Pipeline module: declarative, sequential build pipelines."""

from buildrunner.errors import GateBlocked, PipelineLoadError, ProvisionError
from buildrunner.pipeline.executor import RunOutcome, RunState, StageResult, execute_stages
from buildrunner.pipeline.gate import ConcurrencyGate, ConcurrencyToken
from buildrunner.pipeline.loader import load_pipeline, parse_pipeline
from buildrunner.pipeline.runner import RunReport, run_pipeline
from buildrunner.pipeline.schema import (
    AgentSpec,
    PipelineOptions,
    PipelineSpec,
    PostActionSpec,
    PostTrigger,
    StageSpec,
)

__all__ = [
    "AgentSpec",
    "ConcurrencyGate",
    "ConcurrencyToken",
    "GateBlocked",
    "PipelineLoadError",
    "PipelineOptions",
    "PipelineSpec",
    "PostActionSpec",
    "PostTrigger",
    "ProvisionError",
    "RunOutcome",
    "RunReport",
    "RunState",
    "StageResult",
    "StageSpec",
    "execute_stages",
    "load_pipeline",
    "parse_pipeline",
    "run_pipeline",
]
