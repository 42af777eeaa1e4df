"""Artifact archival with optional SHA-256 fingerprinting.

Archived files are copied out of the run's workspace to
``<root>/<pipeline>/<run_id>/<relative path>``. When fingerprinting is on,
each file's content is also linked into a content-addressed object store,
``<root>/objects/<2 hex>/<62 hex>``, so the same bytes produced by
different runs are stored once and can be traced back by digest.
"""

from __future__ import annotations

import hashlib
import os
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from buildrunner._log import get_logger

if TYPE_CHECKING:
    from buildrunner.pipeline.agents import ExecutionEnvironment

logger = get_logger("artifacts")

_SHA256_RE = re.compile(r"^[a-f0-9]{64}$")
_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class StoredArtifact:
    path: str  # relative to the workspace, posix separators
    stored_path: Path
    size: int
    sha256: str | None = None


def is_sha256(value: str) -> bool:
    return bool(_SHA256_RE.match(value))


def fingerprint_file(path: Path) -> str:
    """Return the hex SHA-256 digest of *path*'s content."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def split_patterns(pattern: str) -> list[str]:
    """Split a comma-separated artifact pattern list, Jenkins style."""
    return [p.strip() for p in pattern.split(",") if p.strip()]


def _check_pattern(pattern: str) -> None:
    pure = PurePosixPath(pattern)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"Artifact pattern must stay inside the workspace: '{pattern}'")


def _inside(path: Path, root: Path) -> bool:
    if path.is_symlink():
        logger.warning("Skipping symlinked artifact %s", path)
        return False
    if not path.resolve().is_relative_to(root):
        logger.warning("Skipping artifact outside the workspace: %s", path)
        return False
    return True


def match_artifacts(workspace: Path, pattern: str) -> list[Path]:
    """Return workspace files matching any of the comma-separated globs, sorted.

    Symlinks and files that resolve outside the workspace are never matched.
    """
    root = workspace.resolve()
    matches: set[Path] = set()
    for single in split_patterns(pattern):
        _check_pattern(single)
        matches.update(
            p for p in workspace.glob(single) if p.is_file() and _inside(p, root)
        )
    return sorted(matches)


def _link_or_copy(src: Path, dst: Path) -> None:
    """Hard-link *src* to *dst*, copying when linking is not possible."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    if dst.exists():
        if dst.stat().st_ino == src.stat().st_ino:
            return
        dst.unlink()
    try:
        os.link(src, dst)
    except OSError:
        shutil.copy2(src, dst)


class ArtifactStore(ABC):
    """External artifact-storage boundary."""

    @abstractmethod
    def store(
        self,
        env: ExecutionEnvironment,
        pattern: str,
        *,
        pipeline_name: str,
        run_id: str,
        fingerprint: bool = False,
    ) -> list[StoredArtifact]:
        """Archive files matching *pattern*. An empty list means nothing matched."""


class LocalArtifactStore(ArtifactStore):
    """Filesystem-backed artifact store."""

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def objects_dir(self) -> Path:
        return self.root / "objects"

    def object_path(self, digest: str) -> Path:
        return self.objects_dir / digest[:2] / digest[2:]

    def run_dir(self, pipeline_name: str, run_id: str) -> Path:
        return self.root / pipeline_name / run_id

    def store(
        self,
        env: ExecutionEnvironment,
        pattern: str,
        *,
        pipeline_name: str,
        run_id: str,
        fingerprint: bool = False,
    ) -> list[StoredArtifact]:
        workspace = env.workspace
        files = match_artifacts(workspace, pattern)
        if not files:
            return []

        dest_root = self.run_dir(pipeline_name, run_id)
        stored: list[StoredArtifact] = []
        for src in files:
            rel = src.relative_to(workspace)
            dest = dest_root / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)

            digest = None
            if fingerprint:
                digest = fingerprint_file(dest)
                _link_or_copy(dest, self.object_path(digest))

            stored.append(
                StoredArtifact(
                    path=rel.as_posix(),
                    stored_path=dest,
                    size=dest.stat().st_size,
                    sha256=digest,
                )
            )
            logger.debug("Archived %s -> %s", rel.as_posix(), dest)
        return stored
