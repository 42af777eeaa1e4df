"""Post-run handling: artifact archival followed by unconditional cleanup."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from buildrunner._log import get_logger
from buildrunner.pipeline.artifacts import ArtifactStore, StoredArtifact
from buildrunner.pipeline.executor import RunState
from buildrunner.pipeline.schema import PostActionSpec

if TYPE_CHECKING:
    from buildrunner.pipeline.agents import AgentProvisioner, ExecutionEnvironment

logger = get_logger("post")


class WarningKind(StrEnum):
    PATTERN_MATCHED_NOTHING = "archival:pattern-matched-nothing"
    ARCHIVAL_FAILED = "archival:failed"
    CLEANUP_FAILED = "cleanup:failed"


@dataclass(frozen=True)
class RunWarning:
    kind: WarningKind
    message: str

    @property
    def is_archival(self) -> bool:
        return self.kind.startswith("archival:")


@dataclass
class PostRunReport:
    archival_attempted: bool = False
    archived: list[StoredArtifact] = field(default_factory=list)
    warnings: list[RunWarning] = field(default_factory=list)
    cleanup_ok: bool = True


class PostRunHandler:
    """Archives artifacts per the trigger policy, then always cleans up.

    Nothing raised here may change the run's outcome: archival problems and
    cleanup failures are logged and returned as warnings.
    """

    def __init__(self, store: ArtifactStore, provisioner: AgentProvisioner) -> None:
        self.store = store
        self.provisioner = provisioner

    def run(
        self,
        state: RunState,
        post: PostActionSpec,
        env: ExecutionEnvironment,
    ) -> PostRunReport:
        report = PostRunReport()
        try:
            self._archive(state, post, env, report)
        finally:
            self._cleanup(post, env, report)
        return report

    def _archive(
        self,
        state: RunState,
        post: PostActionSpec,
        env: ExecutionEnvironment,
        report: PostRunReport,
    ) -> None:
        if not post.artifacts:
            return
        if not state.succeeded and not post.archives_on_failure:
            logger.debug("Skipping archival of '%s': run did not succeed", post.artifacts)
            return

        report.archival_attempted = True
        try:
            stored = self.store.store(
                env,
                post.artifacts,
                pipeline_name=state.pipeline_name,
                run_id=state.run_id,
                fingerprint=post.fingerprint,
            )
        except Exception as e:
            logger.warning("Archival of '%s' failed: %s", post.artifacts, e)
            report.warnings.append(
                RunWarning(
                    WarningKind.ARCHIVAL_FAILED,
                    f"Archiving '{post.artifacts}' failed: {e}",
                )
            )
            return

        if not stored:
            logger.warning("No artifacts found matching '%s'", post.artifacts)
            report.warnings.append(
                RunWarning(
                    WarningKind.PATTERN_MATCHED_NOTHING,
                    f"No artifacts found matching '{post.artifacts}'",
                )
            )
            return
        report.archived.extend(stored)

    def _cleanup(
        self,
        post: PostActionSpec,
        env: ExecutionEnvironment,
        report: PostRunReport,
    ) -> None:
        try:
            self.provisioner.teardown(env)
        except Exception as e:
            logger.error("Environment teardown failed for %s: %s", env.handle, e)
            report.cleanup_ok = False
            report.warnings.append(
                RunWarning(WarningKind.CLEANUP_FAILED, f"Environment teardown failed: {e}")
            )

        if not post.cleanup_workspace:
            return
        try:
            self.provisioner.remove_workspace(env)
        except Exception as e:
            logger.error("Workspace cleanup failed for %s: %s", env.workspace, e)
            report.cleanup_ok = False
            report.warnings.append(
                RunWarning(WarningKind.CLEANUP_FAILED, f"Workspace cleanup failed: {e}")
            )
