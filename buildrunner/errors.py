"""buildrunner exception hierarchy.

Only failures that stop a run before its post-run phase are exceptions.
Stage failures, archival warnings and cleanup failures are recorded as
run data instead (see :mod:`buildrunner.pipeline.executor` and
:mod:`buildrunner.pipeline.post`).
"""

from __future__ import annotations

from enum import StrEnum


class BuildRunnerError(Exception):
    """Base exception for all buildrunner errors."""


class LoadErrorKind(StrEnum):
    MALFORMED_SPEC = "malformed-spec"
    INVALID_OPTION = "invalid-option"


class LoadError(BuildRunnerError):
    """A pipeline definition could not be loaded."""

    def __init__(self, message: str, kind: LoadErrorKind = LoadErrorKind.MALFORMED_SPEC) -> None:
        self.kind = kind
        super().__init__(message)


class PipelineLoadError(LoadError):
    """Raised when a pipeline YAML file cannot be read or validated."""


class ProvisionErrorKind(StrEnum):
    ENVIRONMENT_UNAVAILABLE = "environment-unavailable"


class ProvisionError(BuildRunnerError):
    """No execution environment could be obtained for a run."""

    def __init__(
        self,
        message: str,
        kind: ProvisionErrorKind = ProvisionErrorKind.ENVIRONMENT_UNAVAILABLE,
    ) -> None:
        self.kind = kind
        super().__init__(message)


class RuntimeCommandError(BuildRunnerError):
    """The execution runtime itself failed (not the build command)."""


class GateBlocked(BuildRunnerError):
    """Another run of the same pipeline holds the concurrency gate."""

    def __init__(self, pipeline_id: str, reason: str = "a run is already in progress") -> None:
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline '{pipeline_id}' is blocked: {reason}")
