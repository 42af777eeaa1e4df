"""Append-only SQLite run history and fingerprint index."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from buildrunner._log import get_logger
from buildrunner.config import ensure_private_dir, secure_database

if TYPE_CHECKING:
    from buildrunner.pipeline.artifacts import StoredArtifact
    from buildrunner.pipeline.runner import RunReport

logger = get_logger("audit")


@dataclass
class RunRecord:
    run_id: str
    pipeline_name: str
    timestamp: str
    outcome: str  # "succeeded" | "failed" | "error"
    duration_ms: int
    failed_stage: int | None = None
    cause: str | None = None
    warnings: str | None = None  # JSON list of warning messages
    runtime: str | None = None
    image: str | None = None

    @classmethod
    def from_report(
        cls,
        report: RunReport,
        *,
        runtime: str | None = None,
        image: str | None = None,
    ) -> RunRecord:
        """Build a RunRecord from a finished run."""
        warnings = [w.message for w in report.warnings]
        return cls(
            run_id=report.run_id,
            pipeline_name=report.pipeline_name,
            timestamp=datetime.now(UTC).isoformat(),
            outcome=str(report.outcome),
            duration_ms=report.duration_ms,
            failed_stage=report.failed_stage,
            cause=report.cause,
            warnings=json.dumps(warnings) if warnings else None,
            runtime=runtime,
            image=image,
        )


@dataclass
class FingerprintRecord:
    sha256: str
    path: str
    size: int
    pipeline_name: str
    run_id: str
    timestamp: str


_CREATE_RUNS_TABLE = """\
CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    pipeline_name TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    outcome TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    failed_stage INTEGER,
    cause TEXT,
    warnings TEXT,
    runtime TEXT,
    image TEXT
);
"""

_CREATE_FINGERPRINTS_TABLE = """\
CREATE TABLE IF NOT EXISTS fingerprints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sha256 TEXT NOT NULL,
    path TEXT NOT NULL,
    size INTEGER NOT NULL,
    pipeline_name TEXT NOT NULL,
    run_id TEXT NOT NULL,
    timestamp TEXT NOT NULL
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_runs_pipeline ON runs (pipeline_name);",
    "CREATE INDEX IF NOT EXISTS idx_runs_timestamp ON runs (timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_runs_run_id ON runs (run_id);",
    "CREATE INDEX IF NOT EXISTS idx_fp_sha256 ON fingerprints (sha256);",
    "CREATE INDEX IF NOT EXISTS idx_fp_run_id ON fingerprints (run_id);",
]

_INSERT_RUN = """\
INSERT INTO runs (
    run_id, pipeline_name, timestamp, outcome, duration_ms,
    failed_stage, cause, warnings, runtime, image
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_INSERT_FINGERPRINT = """\
INSERT INTO fingerprints (sha256, path, size, pipeline_name, run_id, timestamp)
VALUES (?, ?, ?, ?, ?, ?);
"""


def _build_where(
    filters: list[tuple[str, object]],
) -> tuple[str, list[object]]:
    """Build a WHERE clause from (column_expr, value) pairs."""
    clauses = [clause for clause, _ in filters]
    params = [value for _, value in filters]
    where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    return where, params


def _row_to_run(row: sqlite3.Row) -> RunRecord:
    return RunRecord(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        timestamp=row["timestamp"],
        outcome=row["outcome"],
        duration_ms=row["duration_ms"],
        failed_stage=row["failed_stage"],
        cause=row["cause"],
        warnings=row["warnings"],
        runtime=row["runtime"],
        image=row["image"],
    )


def _row_to_fingerprint(row: sqlite3.Row) -> FingerprintRecord:
    return FingerprintRecord(
        sha256=row["sha256"],
        path=row["path"],
        size=row["size"],
        pipeline_name=row["pipeline_name"],
        run_id=row["run_id"],
        timestamp=row["timestamp"],
    )


_T = TypeVar("_T")


class AuditLogger:
    """Append-only run history backed by SQLite."""

    def __init__(self, db_path: Path | None = None) -> None:
        if db_path is None:
            from buildrunner.config import get_audit_db_path

            db_path = get_audit_db_path()
        self._db_path = db_path
        ensure_private_dir(db_path.parent)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
        try:
            secure_database(db_path)
            self._conn.row_factory = sqlite3.Row
            self._lock = threading.Lock()
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute(_CREATE_RUNS_TABLE)
            self._conn.execute(_CREATE_FINGERPRINTS_TABLE)
            for idx in _CREATE_INDEXES:
                self._conn.execute(idx)
            self._conn.commit()
        except Exception:
            self._conn.close()
            raise

    def _execute_locked(self, sql: str, rows: list[tuple], *, error_label: str) -> None:
        """Execute an INSERT for each row under lock. Never raises."""
        try:
            with self._lock:
                self._conn.executemany(sql, rows)
                self._conn.commit()
        except Exception as e:
            logger.error("Failed to write %s: %s", error_label, e)

    def log_run(self, record: RunRecord) -> None:
        """Insert a run record. Never raises."""
        self._execute_locked(
            _INSERT_RUN,
            [
                (
                    record.run_id,
                    record.pipeline_name,
                    record.timestamp,
                    record.outcome,
                    record.duration_ms,
                    record.failed_stage,
                    record.cause,
                    record.warnings,
                    record.runtime,
                    record.image,
                )
            ],
            error_label="run record",
        )

    def log_fingerprints(
        self,
        pipeline_name: str,
        run_id: str,
        artifacts: list[StoredArtifact],
    ) -> None:
        """Record the digest of every fingerprinted artifact. Never raises."""
        ts = datetime.now(UTC).isoformat()
        rows = [
            (a.sha256, a.path, a.size, pipeline_name, run_id, ts)
            for a in artifacts
            if a.sha256 is not None
        ]
        if rows:
            self._execute_locked(_INSERT_FINGERPRINT, rows, error_label="fingerprints")

    def _query_table(
        self,
        table: str,
        filter_clauses: list[tuple[str, object | None]],
        limit: int,
        row_mapper: Callable[[sqlite3.Row], _T],
    ) -> list[_T]:
        """Generic filtered query on *table*. Skips clauses whose value is ``None``."""
        filters = [(clause, val) for clause, val in filter_clauses if val is not None]
        where, params = _build_where(filters)
        sql = f"SELECT * FROM {table} {where} ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [row_mapper(row) for row in rows]

    def query_runs(
        self,
        *,
        pipeline_name: str | None = None,
        outcome: str | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        """Query run records, newest first."""
        return self._query_table(
            "runs",
            [
                ("pipeline_name = ?", pipeline_name),
                ("outcome = ?", outcome),
                ("run_id = ?", run_id),
            ],
            limit,
            _row_to_run,
        )

    def lookup_fingerprint(self, sha256: str, *, limit: int = 100) -> list[FingerprintRecord]:
        """Return every archival of content with digest *sha256*, newest first."""
        return self._query_table(
            "fingerprints",
            [("sha256 = ?", sha256.lower())],
            limit,
            _row_to_fingerprint,
        )

    def prune(self, retention_days: int = 90) -> int:
        """Delete run and fingerprint records older than *retention_days*."""
        cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).isoformat()
        with self._lock:
            cursor = self._conn.execute("DELETE FROM runs WHERE timestamp < ?", (cutoff,))
            deleted = cursor.rowcount
            self._conn.execute("DELETE FROM fingerprints WHERE timestamp < ?", (cutoff,))
            self._conn.commit()
        return deleted

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
