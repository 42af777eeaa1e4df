"""Centralized logging for buildrunner."""

from __future__ import annotations

import logging
import sys
import threading

_ROOT = "buildrunner"

_lock = threading.Lock()
_setup_done = False


class _Formatter(logging.Formatter):
    """Format records as ``[tag] message`` with the ``buildrunner.`` prefix removed."""

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        if name.startswith(f"{_ROOT}."):
            name = name[len(_ROOT) + 1 :]
        record.msg = f"[{name}] {record.msg}"
        return super().format(record)


def setup_logging(verbose: bool = False) -> None:
    """Configure the ``buildrunner`` logger once per process.

    A single stderr handler at WARNING, or DEBUG when *verbose* is set.
    Records do not propagate to the root logger. Calling again with
    ``verbose=True`` after a quiet setup only lowers the level.
    """
    global _setup_done
    with _lock:
        logger = logging.getLogger(_ROOT)
        if _setup_done:
            if verbose:
                logger.setLevel(logging.DEBUG)
            return
        logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_Formatter())
        logger.addHandler(handler)
        logger.propagate = False
        _setup_done = True


def get_logger(name: str) -> logging.Logger:
    """Return the ``buildrunner.<name>`` logger, setting up output on first use."""
    setup_logging()
    return logging.getLogger(f"{_ROOT}.{name}")
