"""Shared test fixtures and helpers."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any

import pytest

from buildrunner.errors import RuntimeCommandError
from buildrunner.pipeline.agents import AgentProvisioner, AgentRuntime
from buildrunner.pipeline.artifacts import LocalArtifactStore
from buildrunner.pipeline.gate import ConcurrencyGate
from buildrunner.pipeline.loader import parse_pipeline
from buildrunner.pipeline.schema import PipelineSpec


class FakeRuntime(AgentRuntime):
    """Recording runtime: commands "succeed" unless listed in *failing*.

    *files* maps a command to ``{relative path: content}`` written into the
    workspace when that command runs. *raise_on* maps a command to an
    exception raised instead of running it. *delays* makes a command
    take that many seconds.
    """

    name = "fake"

    def __init__(
        self,
        *,
        failing: tuple[str, ...] | list[str] = (),
        exit_code: int = 1,
        files: dict[str, dict[str, str]] | None = None,
        raise_on: dict[str, Exception] | None = None,
        delays: dict[str, float] | None = None,
        provision_error: str | None = None,
        teardown_error: str | None = None,
    ) -> None:
        self.failing = set(failing)
        self.exit_code = exit_code
        self.files = files or {}
        self.raise_on = raise_on or {}
        self.delays = delays or {}
        self.provision_error = provision_error
        self.teardown_error = teardown_error
        self.provisioned: list[str] = []
        self.provision_calls: list[dict[str, Any]] = []
        self.executed: list[str] = []
        self.exec_envs: list[dict[str, str]] = []
        self.teardowns: list[str] = []
        self._lock = threading.Lock()

    def provision(self, image, args, *, workspace, workdir, label):
        with self._lock:
            self.provision_calls.append(
                {"image": image, "args": args, "workspace": workspace, "label": label}
            )
            if self.provision_error is not None:
                raise RuntimeCommandError(self.provision_error)
            handle = f"env-{len(self.provisioned) + 1}"
            self.provisioned.append(handle)
            return handle

    def exec(self, handle, command, *, workspace, workdir, env, timeout=None, cancel_event=None):
        with self._lock:
            self.executed.append(command)
            self.exec_envs.append(dict(env))
        if command in self.delays:
            time.sleep(self.delays[command])
        if command in self.raise_on:
            raise self.raise_on[command]
        for rel, content in self.files.get(command, {}).items():
            target = Path(workspace) / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        if command in self.failing:
            return f"{command}: failed", self.exit_code
        return f"{command}: ok", 0

    def teardown(self, handle):
        with self._lock:
            self.teardowns.append(handle)
        if self.teardown_error is not None:
            raise RuntimeCommandError(self.teardown_error)


def pipeline_data(
    stages: list[tuple[str, list[str]]] | None = None,
    *,
    name: str = "hoard",
    trigger: str = "always",
    artifacts: str | None = None,
    fingerprint: bool = False,
    cleanup_workspace: bool = True,
    **options: Any,
) -> dict[str, Any]:
    """Build a raw pipeline mapping as it would appear in YAML."""
    stages = stages if stages is not None else [("build", ["echo ok"])]
    post: dict[str, Any] = {
        "trigger": trigger,
        "fingerprint": fingerprint,
        "cleanupWorkspace": cleanup_workspace,
    }
    if artifacts is not None:
        post["artifacts"] = artifacts
    data: dict[str, Any] = {
        "name": name,
        "agent": {"image": "rust:latest", "args": ["-v", "/tmp:/tmp"]},
        "stages": [{"name": n, "steps": steps} for n, steps in stages],
        "post": post,
    }
    if options:
        data["options"] = options
    return data


def make_pipeline(
    stages: list[tuple[str, list[str]]] | None = None,
    **kwargs: Any,
) -> PipelineSpec:
    """Build a validated PipelineSpec for tests."""
    return parse_pipeline(pipeline_data(stages, **kwargs))


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Point BUILDRUNNER_HOME at a temp dir so no test touches ~/.buildrunner."""
    from buildrunner.config import get_home_dir

    monkeypatch.setenv("BUILDRUNNER_HOME", str(tmp_path / "home"))
    get_home_dir.cache_clear()
    yield
    get_home_dir.cache_clear()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def gate() -> ConcurrencyGate:
    return ConcurrencyGate()


@pytest.fixture
def store(tmp_path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def provisioner(runtime, tmp_path) -> AgentProvisioner:
    return AgentProvisioner(runtime, tmp_path / "workspaces")
