"""Shared subprocess helpers for execution runtimes."""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
import time

_POLL_INTERVAL = 0.2
_TRUNCATION_PREFIX = "[truncated]\n"


class SubprocessTimeout(Exception):
    """Raised when a subprocess exceeds its timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Execution timed out after {timeout:g}s")


class SubprocessCancelled(Exception):
    """Raised when a subprocess is killed because its run was cancelled."""

    def __init__(self) -> None:
        super().__init__("Execution cancelled")


def truncate_tail(text: str, max_bytes: int) -> str:
    """Keep the last *max_bytes* of *text*; build failures are reported at the end."""
    encoded = text.encode("utf-8", errors="replace")
    if max_bytes <= 0 or len(encoded) <= max_bytes:
        return text
    tail = encoded[-max_bytes:].decode("utf-8", errors="ignore")
    return _TRUNCATION_PREFIX + tail


def _kill(proc: subprocess.Popen[bytes]) -> None:
    """Hard-kill *proc* and its process group, then reap it."""
    try:
        if sys.platform != "win32":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        proc.kill()
    proc.communicate()


def run_cancellable(
    cmd: list[str],
    *,
    timeout: float | None = None,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    cancel_event: threading.Event | None = None,
    max_output_bytes: int = 0,
) -> tuple[str, int]:
    """Run *cmd* and return ``(combined output, returncode)``.

    stdout and stderr are merged in order. The process runs in its own
    session so a timeout or cancellation kills everything it spawned.

    Raises:
        SubprocessTimeout: If the command exceeds *timeout* seconds.
        SubprocessCancelled: If *cancel_event* is set while it runs.
    """
    proc = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=cwd,
        env=env,
        start_new_session=sys.platform != "win32",
    )
    deadline = None if timeout is None else time.monotonic() + timeout

    while True:
        wait = _POLL_INTERVAL
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _kill(proc)
                raise SubprocessTimeout(timeout)  # type: ignore[arg-type]
            wait = min(wait, remaining)
        try:
            stdout, _ = proc.communicate(timeout=wait)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                _kill(proc)
                raise SubprocessCancelled() from None

    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    return truncate_tail(output, max_output_bytes), proc.returncode


def run_subprocess_text(
    cmd: list[str],
    *,
    timeout: float,
    cwd: str | None = None,
) -> tuple[str, str, int]:
    """Run a short control command and return ``(stdout, stderr, returncode)``.

    Raises:
        SubprocessTimeout: If the subprocess exceeds *timeout* seconds.
    """
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout, cwd=cwd)
    except subprocess.TimeoutExpired:
        raise SubprocessTimeout(timeout) from None
    return (
        result.stdout.decode("utf-8", errors="replace"),
        result.stderr.decode("utf-8", errors="replace"),
        result.returncode,
    )
