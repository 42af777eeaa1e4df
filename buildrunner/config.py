"""Process-level configuration for buildrunner.

Paths respect ``BUILDRUNNER_HOME``, then ``XDG_DATA_HOME/buildrunner``,
and fall back to ``~/.buildrunner``. The execution runtime and docker
binary can be chosen with ``BUILDRUNNER_RUNTIME`` and ``BUILDRUNNER_DOCKER``.
"""

from __future__ import annotations

import os
import sys
from functools import lru_cache
from pathlib import Path

RUNTIMES = ("docker", "local")
DEFAULT_RUNTIME = "docker"


@lru_cache(maxsize=1)
def get_home_dir() -> Path:
    """Return the buildrunner data directory.

    Resolution order:
    1. ``BUILDRUNNER_HOME`` environment variable
    2. ``XDG_DATA_HOME/buildrunner`` (if ``XDG_DATA_HOME`` is set)
    3. ``~/.buildrunner``
    """
    env = os.environ.get("BUILDRUNNER_HOME")
    if env:
        return Path(env)
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "buildrunner"
    return Path.home() / ".buildrunner"


def get_workspaces_dir() -> Path:
    return get_home_dir() / "workspaces"


def get_artifacts_dir() -> Path:
    return get_home_dir() / "artifacts"


def get_audit_db_path() -> Path:
    return get_home_dir() / "audit.db"


def get_runtime_name() -> str:
    """Return the configured runtime name, defaulting to ``docker``."""
    value = os.environ.get("BUILDRUNNER_RUNTIME", "").strip().lower()
    return value if value in RUNTIMES else DEFAULT_RUNTIME


def get_docker_binary() -> str:
    return os.environ.get("BUILDRUNNER_DOCKER") or "docker"


def ensure_private_dir(path: Path) -> None:
    """Create (or tighten) a directory to mode 0o700."""
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    if sys.platform != "win32":
        path.chmod(0o700)


def secure_database(db_path: Path) -> None:
    """chmod an existing database file to 0o600 (owner-only)."""
    if sys.platform != "win32" and db_path.exists():
        db_path.chmod(0o600)
