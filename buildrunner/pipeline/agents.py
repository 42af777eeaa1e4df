"""Agent provisioning: isolated execution environments for pipeline runs.

A runtime is the opaque capability that creates, runs commands in, and
destroys environments. :class:`AgentProvisioner` sits in front of it and
guarantees each run gets a fresh environment and workspace, and that
teardown happens at most once per environment.
"""

from __future__ import annotations

import os
import shutil
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from buildrunner._log import get_logger
from buildrunner._subprocess import SubprocessTimeout, run_cancellable, run_subprocess_text
from buildrunner.errors import ProvisionError, RuntimeCommandError
from buildrunner.pipeline.schema import AgentSpec

logger = get_logger("agents")

_MAX_OUTPUT_BYTES = 64 * 1024


@dataclass
class CommandResult:
    command: str
    exit_code: int
    output: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class AgentRuntime(ABC):
    """External container/agent runtime boundary."""

    name: str = "runtime"

    @abstractmethod
    def provision(
        self,
        image: str,
        args: tuple[str, ...],
        *,
        workspace: Path,
        workdir: str,
        label: str,
    ) -> str:
        """Start a new environment and return its handle.

        Raises:
            RuntimeCommandError: If the environment cannot be started.
        """

    @abstractmethod
    def exec(
        self,
        handle: str,
        command: str,
        *,
        workspace: Path,
        workdir: str,
        env: dict[str, str],
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, int]:
        """Run a shell command in the environment, returning ``(output, exit_code)``.

        Raises:
            SubprocessTimeout: If *timeout* elapses; the command is killed.
            SubprocessCancelled: If *cancel_event* fires; the command is killed.
            RuntimeCommandError: If the runtime itself cannot run the command.
        """

    @abstractmethod
    def teardown(self, handle: str) -> None:
        """Destroy the environment behind *handle*."""


class DockerRuntime(AgentRuntime):
    """Runs each build in a throwaway container with the workspace bind-mounted."""

    name = "docker"

    def __init__(
        self,
        binary: str | None = None,
        *,
        start_timeout: float = 600,
        stop_timeout: float = 60,
    ) -> None:
        if binary is None:
            from buildrunner.config import get_docker_binary

            binary = get_docker_binary()
        self.binary = binary
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout

    def _control(self, args: list[str], timeout: float) -> str:
        cmd = [self.binary, *args]
        try:
            stdout, stderr, returncode = run_subprocess_text(cmd, timeout=timeout)
        except FileNotFoundError:
            raise RuntimeCommandError(f"docker binary '{self.binary}' not found") from None
        except OSError as e:
            raise RuntimeCommandError(f"Cannot run docker binary '{self.binary}': {e}") from None
        except SubprocessTimeout as e:
            raise RuntimeCommandError(f"'{' '.join(cmd[:2])}' {e}") from None
        if returncode != 0:
            detail = stderr.strip() or stdout.strip() or f"exit code {returncode}"
            raise RuntimeCommandError(f"'{' '.join(cmd[:2])}' failed: {detail}")
        return stdout.strip()

    def provision(
        self,
        image: str,
        args: tuple[str, ...],
        *,
        workspace: Path,
        workdir: str,
        label: str,
    ) -> str:
        container_id = self._control(
            [
                "run",
                "-d",
                "-t",
                "--name",
                label,
                "-v",
                f"{workspace}:{workdir}",
                "-w",
                workdir,
                *args,
                image,
                "cat",
            ],
            self.start_timeout,
        )
        if not container_id:
            raise RuntimeCommandError("'docker run' returned no container id")
        return container_id.splitlines()[-1]

    def exec(
        self,
        handle: str,
        command: str,
        *,
        workspace: Path,
        workdir: str,
        env: dict[str, str],
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, int]:
        env_args: list[str] = []
        for key, value in env.items():
            env_args.extend(["-e", f"{key}={value}"])
        cmd = [self.binary, "exec", *env_args, "-w", workdir, handle, "sh", "-c", command]
        try:
            return run_cancellable(
                cmd,
                timeout=timeout,
                cancel_event=cancel_event,
                max_output_bytes=_MAX_OUTPUT_BYTES,
            )
        except FileNotFoundError:
            raise RuntimeCommandError(f"docker binary '{self.binary}' not found") from None
        except OSError as e:
            raise RuntimeCommandError(f"Cannot run docker binary '{self.binary}': {e}") from None

    def teardown(self, handle: str) -> None:
        self._control(["rm", "-f", handle], self.stop_timeout)


class LocalRuntime(AgentRuntime):
    """Runs steps directly on the host, inside the per-run workspace.

    The image is ignored. Useful where no container runtime is available.
    """

    name = "local"

    def provision(
        self,
        image: str,
        args: tuple[str, ...],
        *,
        workspace: Path,
        workdir: str,
        label: str,
    ) -> str:
        if args:
            logger.warning("Local runtime ignores agent args: %s", " ".join(args))
        return label

    def exec(
        self,
        handle: str,
        command: str,
        *,
        workspace: Path,
        workdir: str,
        env: dict[str, str],
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, int]:
        try:
            return run_cancellable(
                ["sh", "-c", command],
                timeout=timeout,
                cwd=str(workspace),
                env={**os.environ, **env},
                cancel_event=cancel_event,
                max_output_bytes=_MAX_OUTPUT_BYTES,
            )
        except OSError as e:
            raise RuntimeCommandError(f"Cannot start shell: {e}") from None

    def teardown(self, handle: str) -> None:
        return None


def build_runtime(name: str | None = None) -> AgentRuntime:
    """Return the runtime called *name*, defaulting to the configured one."""
    if name is None:
        from buildrunner.config import get_runtime_name

        name = get_runtime_name()
    if name == "docker":
        return DockerRuntime()
    if name == "local":
        return LocalRuntime()
    raise ValueError(f"Unknown runtime '{name}' (expected 'docker' or 'local')")


@dataclass
class ExecutionEnvironment:
    """One provisioned environment. Never shared between runs."""

    runtime: AgentRuntime
    handle: str
    image: str
    workspace: Path
    workdir: str
    torn_down: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def exec(
        self,
        command: str,
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CommandResult:
        start = time.monotonic()
        output, exit_code = self.runtime.exec(
            self.handle,
            command,
            workspace=self.workspace,
            workdir=self.workdir,
            env=env or {},
            timeout=timeout,
            cancel_event=cancel_event,
        )
        return CommandResult(
            command=command,
            exit_code=exit_code,
            output=output,
            duration_ms=int((time.monotonic() - start) * 1000),
        )


class AgentProvisioner:
    """Creates a fresh workspace and environment per run."""

    def __init__(self, runtime: AgentRuntime, workspace_root: Path) -> None:
        self.runtime = runtime
        self.workspace_root = workspace_root

    def provision(
        self,
        agent: AgentSpec,
        *,
        pipeline_name: str,
        run_id: str,
    ) -> ExecutionEnvironment:
        """Acquire a new environment for one run.

        Raises:
            ProvisionError: If the workspace or environment cannot be created.
                Nothing is left behind in that case.
        """
        workspace = self.workspace_root / pipeline_name / run_id
        try:
            workspace.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise ProvisionError(f"Cannot create workspace {workspace}: {e}") from e

        label = f"buildrunner-{pipeline_name}-{run_id}"
        try:
            handle = self.runtime.provision(
                agent.image,
                agent.args,
                workspace=workspace.resolve(),
                workdir=agent.workdir,
                label=label,
            )
        except (RuntimeCommandError, OSError) as e:
            shutil.rmtree(workspace, ignore_errors=True)
            raise ProvisionError(
                f"Environment unavailable for image '{agent.image}' ({self.runtime.name}): {e}"
            ) from e

        logger.info("Provisioned %s environment %s for '%s'", self.runtime.name, handle, label)
        return ExecutionEnvironment(
            runtime=self.runtime,
            handle=handle,
            image=agent.image,
            workspace=workspace,
            workdir=agent.workdir,
        )

    def teardown(self, env: ExecutionEnvironment) -> None:
        """Destroy *env*. Only the first call reaches the runtime."""
        with env._lock:
            if env.torn_down:
                return
            env.torn_down = True
        logger.debug("Tearing down environment %s", env.handle)
        self.runtime.teardown(env.handle)

    @staticmethod
    def remove_workspace(env: ExecutionEnvironment) -> None:
        """Delete the run's workspace directory."""
        if env.workspace.exists():
            shutil.rmtree(env.workspace)
