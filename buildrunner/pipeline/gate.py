"""Per-pipeline concurrency gate.

One lock per pipeline identity, created lazily and never removed, so
runs of different pipelines hosted by one process never contend.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Literal

from buildrunner._log import get_logger
from buildrunner.errors import GateBlocked

logger = get_logger("gate")

GatePolicy = Literal["queue", "reject"]


@dataclass
class ConcurrencyToken:
    """Lease on a pipeline's lock. Valid until released."""

    pipeline_id: str
    token_id: int
    released: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class ConcurrencyGate:
    """Keyed mutual exclusion: at most one outstanding token per pipeline id."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._counter = 0

    def _lock_for(self, pipeline_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(pipeline_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[pipeline_id] = lock
            return lock

    def _next_token(self, pipeline_id: str) -> ConcurrencyToken:
        with self._registry_lock:
            self._counter += 1
            return ConcurrencyToken(pipeline_id=pipeline_id, token_id=self._counter)

    def acquire(
        self,
        pipeline_id: str,
        *,
        policy: GatePolicy = "queue",
        timeout: float | None = None,
    ) -> ConcurrencyToken:
        """Take the lease for *pipeline_id*.

        ``queue`` waits for the current holder (up to *timeout* seconds when
        given); ``reject`` fails at once. Raises :class:`GateBlocked` when the
        lease could not be taken.
        """
        lock = self._lock_for(pipeline_id)
        if policy == "reject":
            acquired = lock.acquire(blocking=False)
        else:
            if lock.locked():
                logger.info("Waiting for running build of '%s'", pipeline_id)
            acquired = lock.acquire(timeout=-1 if timeout is None else timeout)

        if not acquired:
            reason = (
                "a run is already in progress"
                if policy == "reject"
                else f"timed out after {timeout}s waiting for the running build"
            )
            raise GateBlocked(pipeline_id, reason)

        token = self._next_token(pipeline_id)
        logger.debug("Acquired gate for '%s' (token %d)", pipeline_id, token.token_id)
        return token

    def release(self, token: ConcurrencyToken) -> None:
        """Release *token*. Releasing an already-released token does nothing."""
        with token._lock:
            if token.released:
                return
            token.released = True
        self._lock_for(token.pipeline_id).release()
        logger.debug("Released gate for '%s' (token %d)", token.pipeline_id, token.token_id)

    def is_held(self, pipeline_id: str) -> bool:
        with self._registry_lock:
            lock = self._locks.get(pipeline_id)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(
        self,
        pipeline_id: str,
        *,
        policy: GatePolicy = "queue",
        timeout: float | None = None,
    ) -> Iterator[ConcurrencyToken]:
        """Hold the lease for the duration of the block, releasing on any exit."""
        token = self.acquire(pipeline_id, policy=policy, timeout=timeout)
        try:
            yield token
        finally:
            self.release(token)


_default_gate = ConcurrencyGate()


def get_default_gate() -> ConcurrencyGate:
    """Return the process-wide gate shared by every run hosted in this process."""
    return _default_gate
