"""End-to-end tests for run_pipeline with a fake runtime."""

import json
import threading

import pytest

from buildrunner.audit.logger import AuditLogger
from buildrunner.errors import GateBlocked, ProvisionError
from buildrunner.pipeline.executor import RunOutcome
from buildrunner.pipeline.post import WarningKind
from buildrunner.pipeline.runner import run_pipeline
from tests.conftest import FakeRuntime, make_pipeline


@pytest.fixture
def audit(tmp_path):
    logger = AuditLogger(tmp_path / "audit.db")
    yield logger
    logger.close()


def _run(pipeline, runtime, gate, store, tmp_path, **kwargs):
    return run_pipeline(
        pipeline,
        runtime=runtime,
        gate=gate,
        store=store,
        workspace_root=tmp_path / "ws",
        **kwargs,
    )


class TestScenarios:
    def test_single_stage_success_archives_and_cleans_up(self, gate, store, tmp_path):
        runtime = FakeRuntime(files={"echo ok": {"out/result.txt": "ok"}})
        pipeline = make_pipeline([("build", ["echo ok"])], artifacts="out/*.txt")
        report = _run(pipeline, runtime, gate, store, tmp_path)
        assert report.outcome is RunOutcome.SUCCEEDED
        assert report.success and report.exit_code == 0
        assert report.archival_attempted is True
        assert [a.path for a in report.artifacts] == ["out/result.txt"]
        assert runtime.teardowns == runtime.provisioned
        assert not (tmp_path / "ws" / "hoard" / report.run_id).exists()
        assert not gate.is_held("hoard")

    def test_first_stage_failure_skips_rest_and_archival(self, gate, store, tmp_path):
        runtime = FakeRuntime(
            failing=["cargo build"], files={"cargo build": {"target/hoard": "partial"}}
        )
        pipeline = make_pipeline(
            [("build", ["cargo build"]), ("test", ["cargo test"])],
            trigger="on-success-only",
            artifacts="target/hoard",
        )
        report = _run(pipeline, runtime, gate, store, tmp_path)
        assert report.outcome is RunOutcome.FAILED
        assert report.exit_code == 1
        assert report.failed_stage == 1
        assert "cargo test" not in runtime.executed
        assert report.archival_attempted is False
        assert report.artifacts == []
        assert runtime.teardowns == runtime.provisioned

    def test_empty_glob_on_success_is_warning(self, gate, store, tmp_path):
        pipeline = make_pipeline(artifacts="target/release/hoard")
        report = _run(pipeline, FakeRuntime(), gate, store, tmp_path)
        assert report.outcome is RunOutcome.SUCCEEDED
        assert len(report.warnings) == 1
        assert report.warnings[0].kind is WarningKind.PATTERN_MATCHED_NOTHING

    def test_provision_failure_runs_nothing_and_releases_gate(self, gate, store, tmp_path):
        runtime = FakeRuntime(provision_error="pull access denied")
        with pytest.raises(ProvisionError, match="pull access denied"):
            _run(make_pipeline(), runtime, gate, store, tmp_path)
        assert runtime.executed == []
        assert not gate.is_held("hoard")


class TestRunner:
    def test_failed_run_archives_with_always_trigger(self, gate, store, tmp_path):
        runtime = FakeRuntime(
            failing=["cargo test"], files={"cargo test": {"target/report.xml": "<xml/>"}}
        )
        pipeline = make_pipeline([("test", ["cargo test"])], artifacts="target/*.xml")
        report = _run(pipeline, runtime, gate, store, tmp_path)
        assert report.outcome is RunOutcome.FAILED
        assert [a.path for a in report.artifacts] == ["target/report.xml"]

    def test_archival_problem_does_not_change_outcome(self, gate, store, tmp_path):
        pipeline = make_pipeline(artifacts="../outside")
        report = _run(pipeline, FakeRuntime(), gate, store, tmp_path)
        assert report.outcome is RunOutcome.SUCCEEDED
        assert report.warnings[0].kind is WarningKind.ARCHIVAL_FAILED

    def test_cleanup_failure_does_not_change_outcome(self, gate, store, tmp_path):
        runtime = FakeRuntime(teardown_error="daemon gone")
        report = _run(make_pipeline(), runtime, gate, store, tmp_path)
        assert report.outcome is RunOutcome.SUCCEEDED
        assert report.warnings[0].kind is WarningKind.CLEANUP_FAILED

    def test_each_run_gets_fresh_environment(self, gate, store, tmp_path):
        runtime = FakeRuntime()
        first = _run(make_pipeline(), runtime, gate, store, tmp_path)
        second = _run(make_pipeline(), runtime, gate, store, tmp_path)
        assert first.run_id != second.run_id
        assert runtime.provisioned == ["env-1", "env-2"]
        assert runtime.teardowns == ["env-1", "env-2"]

    def test_keep_workspace(self, gate, store, tmp_path):
        pipeline = make_pipeline(cleanup_workspace=False)
        report = _run(pipeline, FakeRuntime(), gate, store, tmp_path)
        assert (tmp_path / "ws" / "hoard" / report.run_id).is_dir()

    def test_timeout_override(self, gate, store, tmp_path):
        runtime = FakeRuntime(delays={"echo ok": 0.3})
        pipeline = make_pipeline([("a", ["echo ok"]), ("b", ["make"])], timeoutSeconds=60)
        report = _run(pipeline, runtime, gate, store, tmp_path, timeout_seconds=0.1)
        assert report.failed_stage == 2
        assert report.cause == "timed out after 0.1s"

    def test_cancelled_run(self, gate, store, tmp_path):
        cancel = threading.Event()
        cancel.set()
        runtime = FakeRuntime()
        report = _run(make_pipeline(), runtime, gate, store, tmp_path, cancel_event=cancel)
        assert report.outcome is RunOutcome.FAILED
        assert report.cancelled is True
        assert runtime.executed == []
        assert runtime.teardowns == runtime.provisioned

    def test_defaults_use_home_dirs(self, gate, tmp_path):
        runtime = FakeRuntime(files={"echo ok": {"a.txt": "x"}})
        report = run_pipeline(make_pipeline(artifacts="a.txt"), runtime=runtime, gate=gate)
        assert report.artifacts[0].stored_path.is_relative_to(tmp_path / "home" / "artifacts")


class TestConcurrency:
    def test_reject_policy_while_running(self, gate, store, tmp_path):
        pipeline = make_pipeline(concurrencyPolicy="reject")
        with gate.hold("hoard"):
            with pytest.raises(GateBlocked):
                _run(pipeline, FakeRuntime(), gate, store, tmp_path)

    def test_queue_timeout(self, gate, store, tmp_path):
        with gate.hold("hoard"):
            with pytest.raises(GateBlocked, match="timed out"):
                _run(make_pipeline(), FakeRuntime(), gate, store, tmp_path, gate_timeout=0.1)

    def test_concurrent_builds_allowed_bypasses_gate(self, gate, store, tmp_path):
        pipeline = make_pipeline(disableConcurrentBuilds=False)
        with gate.hold("hoard"):
            report = _run(pipeline, FakeRuntime(), gate, store, tmp_path)
        assert report.success

    def test_gate_held_during_run(self, gate, store, tmp_path):
        observed = []

        def on_event(event, payload, index):
            observed.append(gate.is_held("hoard"))

        _run(make_pipeline(), FakeRuntime(), gate, store, tmp_path, on_event=on_event)
        assert observed and all(observed)
        assert not gate.is_held("hoard")

    def test_queued_runs_never_overlap(self, gate, store, tmp_path):
        runtime = FakeRuntime(delays={"echo ok": 0.05})
        active = 0
        max_active = 0
        lock = threading.Lock()

        def on_event(event, payload, index):
            nonlocal active, max_active
            with lock:
                active += 1 if event == "stage_start" else -1
                max_active = max(max_active, active)

        def worker():
            _run(make_pipeline(), runtime, gate, store, tmp_path, on_event=on_event)

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        assert max_active == 1
        assert len(runtime.provisioned) == 3


class TestAuditIntegration:
    def test_run_recorded(self, gate, store, tmp_path, audit):
        runtime = FakeRuntime(files={"echo ok": {"bin/hoard": "hello"}})
        pipeline = make_pipeline(artifacts="bin/hoard", fingerprint=True)
        report = _run(pipeline, runtime, gate, store, tmp_path, audit_logger=audit)
        records = audit.query_runs(run_id=report.run_id)
        assert len(records) == 1
        assert records[0].outcome == "succeeded"
        assert records[0].runtime == "fake"
        assert records[0].image == "rust:latest"
        prints = audit.lookup_fingerprint(report.artifacts[0].sha256)
        assert [(p.path, p.run_id) for p in prints] == [("bin/hoard", report.run_id)]

    def test_failure_and_warnings_recorded(self, gate, store, tmp_path, audit):
        pipeline = make_pipeline([("a", ["x"]), ("b", ["y"])], artifacts="nothing/*")
        runtime = FakeRuntime(failing=["y"])
        report = _run(pipeline, runtime, gate, store, tmp_path, audit_logger=audit)
        record = audit.query_runs(run_id=report.run_id)[0]
        assert record.outcome == "failed"
        assert record.failed_stage == 2
        assert record.cause == "'y' exited with code 1"
        assert json.loads(record.warnings) == ["No artifacts found matching 'nothing/*'"]

    def test_provision_error_recorded(self, gate, store, tmp_path, audit):
        runtime = FakeRuntime(provision_error="no such image")
        with pytest.raises(ProvisionError):
            _run(make_pipeline(), runtime, gate, store, tmp_path, audit_logger=audit)
        records = audit.query_runs(pipeline_name="hoard")
        assert len(records) == 1
        assert records[0].outcome == "error"
        assert "no such image" in records[0].cause
