"""Pydantic models for pipeline YAML definitions.

Every model is frozen and rejects unknown keys, so a loaded
:class:`PipelineSpec` is an immutable tree that has already been
validated in full.
"""

from __future__ import annotations

import shlex
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class PostTrigger(StrEnum):
    SUCCESS = "success"
    ALWAYS = "always"


_TRIGGER_ALIASES = {
    "on-success-only": PostTrigger.SUCCESS,
    "onlyifsuccessful": PostTrigger.SUCCESS,
}


class AgentSpec(_Frozen):
    image: str = Field(min_length=1)
    args: tuple[str, ...] = ()
    workdir: str = "/workspace"

    @field_validator("args", mode="before")
    @classmethod
    def _split_args(cls, v: object) -> object:
        # Jenkins-style agents give args as a single command-line string.
        if isinstance(v, str):
            return tuple(shlex.split(v))
        return v

    @field_validator("workdir")
    @classmethod
    def _absolute_workdir(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"workdir must be an absolute path, got '{v}'")
        return v


class PipelineOptions(_Frozen):
    disable_concurrent_builds: bool = Field(True, alias="disableConcurrentBuilds")
    concurrency_policy: Literal["queue", "reject"] = Field("queue", alias="concurrencyPolicy")
    timeout_seconds: float | None = Field(None, alias="timeoutSeconds", gt=0)


class StageSpec(_Frozen):
    name: str = Field(min_length=1)
    steps: tuple[str, ...] = Field(min_length=1)

    @field_validator("steps")
    @classmethod
    def _non_blank_steps(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for i, step in enumerate(v, start=1):
            if not step.strip():
                raise ValueError(f"step {i} is empty")
        return v


class PostActionSpec(_Frozen):
    trigger: PostTrigger = PostTrigger.ALWAYS
    artifacts: str | None = None
    fingerprint: bool = False
    cleanup_workspace: bool = Field(True, alias="cleanupWorkspace")

    @field_validator("trigger", mode="before")
    @classmethod
    def _normalize_trigger(cls, v: object) -> object:
        if isinstance(v, str):
            return _TRIGGER_ALIASES.get(v.strip().lower(), v)
        return v

    @property
    def archives_on_failure(self) -> bool:
        return self.trigger is PostTrigger.ALWAYS


class PipelineSpec(_Frozen):
    name: str = Field(pattern=_NAME_PATTERN)
    agent: AgentSpec
    options: PipelineOptions = PipelineOptions()
    environment: dict[str, str] = {}
    stages: tuple[StageSpec, ...] = Field(min_length=1)
    post: PostActionSpec = PostActionSpec()

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, v: object) -> object:
        if isinstance(v, dict):
            return {
                k: str(val).lower() if isinstance(val, bool) else str(val)
                for k, val in v.items()
                if val is not None
            }
        return v

    @model_validator(mode="after")
    def _unique_stage_names(self) -> PipelineSpec:
        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"Duplicate stage name: '{stage.name}'")
            seen.add(stage.name)
        return self

    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]
