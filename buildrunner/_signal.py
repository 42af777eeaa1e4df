"""Double-Ctrl-C cancellation for a running build."""

from __future__ import annotations

import os
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager


@contextmanager
def cancel_on_signal(
    cancel_event: threading.Event,
    *,
    on_first_signal: Callable[[], None] | None = None,
) -> Iterator[threading.Event]:
    """Set *cancel_event* on SIGINT/SIGTERM while the block runs.

    First signal: calls *on_first_signal* (if given), then sets *cancel_event*
    so the executor stops after killing the current command and post-run
    cleanup still happens. Second signal: ``os._exit(1)`` immediately.

    Previous handlers are restored on exit. Outside the main thread no
    handler can be installed and the block runs unchanged.
    """
    if threading.current_thread() is not threading.main_thread():
        yield cancel_event
        return

    def _handler(signum: int, frame: object) -> None:
        if cancel_event.is_set():
            print("\nForce shutdown.", file=sys.stderr, flush=True)
            os._exit(1)
        if on_first_signal is not None:
            on_first_signal()
        cancel_event.set()

    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, _handler),
        signal.SIGTERM: signal.signal(signal.SIGTERM, _handler),
    }
    try:
        yield cancel_event
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
