"""Tests for the per-pipeline concurrency gate."""

import threading
import time

import pytest

from buildrunner.errors import GateBlocked
from buildrunner.pipeline.gate import ConcurrencyGate, get_default_gate


class TestAcquireRelease:
    def test_acquire_returns_token(self, gate):
        token = gate.acquire("hoard")
        assert token.pipeline_id == "hoard"
        assert token.released is False
        assert gate.is_held("hoard")
        gate.release(token)
        assert token.released is True
        assert not gate.is_held("hoard")

    def test_reject_policy_fails_immediately(self, gate):
        token = gate.acquire("hoard")
        with pytest.raises(GateBlocked, match="already in progress") as exc_info:
            gate.acquire("hoard", policy="reject")
        assert exc_info.value.pipeline_id == "hoard"
        gate.release(token)

    def test_queue_timeout(self, gate):
        token = gate.acquire("hoard")
        start = time.monotonic()
        with pytest.raises(GateBlocked, match="timed out"):
            gate.acquire("hoard", timeout=0.1)
        assert time.monotonic() - start >= 0.1
        gate.release(token)

    def test_different_pipelines_do_not_contend(self, gate):
        a = gate.acquire("hoard")
        b = gate.acquire("other", policy="reject")
        assert gate.is_held("hoard") and gate.is_held("other")
        gate.release(a)
        gate.release(b)

    def test_token_ids_unique(self, gate):
        t1 = gate.acquire("a")
        t2 = gate.acquire("b")
        assert t1.token_id != t2.token_id
        gate.release(t1)
        gate.release(t2)

    def test_unknown_pipeline_not_held(self, gate):
        assert gate.is_held("never-seen") is False


class TestIdempotentRelease:
    def test_double_release_is_noop(self, gate):
        token = gate.acquire("hoard")
        gate.release(token)
        gate.release(token)  # must not raise
        assert token.released is True

    def test_double_release_does_not_free_next_holder(self, gate):
        first = gate.acquire("hoard")
        gate.release(first)
        second = gate.acquire("hoard")
        # A stale release of the first token must not unlock the second holder.
        gate.release(first)
        assert gate.is_held("hoard")
        with pytest.raises(GateBlocked):
            gate.acquire("hoard", policy="reject")
        gate.release(second)
        assert not gate.is_held("hoard")


class TestHold:
    def test_releases_on_exit(self, gate):
        with gate.hold("hoard") as token:
            assert gate.is_held("hoard")
        assert token.released
        assert not gate.is_held("hoard")

    def test_releases_on_exception(self, gate):
        with pytest.raises(RuntimeError):
            with gate.hold("hoard"):
                raise RuntimeError("boom")
        assert not gate.is_held("hoard")


class TestConcurrentAcquire:
    def test_second_acquire_waits_for_release(self, gate):
        token = gate.acquire("hoard")
        acquired = threading.Event()
        order: list[str] = []

        def waiter():
            t = gate.acquire("hoard")
            order.append("waiter")
            acquired.set()
            gate.release(t)

        thread = threading.Thread(target=waiter)
        thread.start()
        assert not acquired.wait(0.2)
        order.append("holder-release")
        gate.release(token)
        assert acquired.wait(2)
        thread.join(2)
        assert order == ["holder-release", "waiter"]

    def test_never_two_holders(self, gate):
        active = 0
        max_active = 0
        counter_lock = threading.Lock()

        def worker():
            nonlocal active, max_active
            for _ in range(20):
                with gate.hold("hoard"):
                    with counter_lock:
                        active += 1
                        max_active = max(max_active, active)
                    time.sleep(0.001)
                    with counter_lock:
                        active -= 1

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        assert max_active == 1


def test_default_gate_is_shared():
    assert get_default_gate() is get_default_gate()
    assert isinstance(get_default_gate(), ConcurrencyGate)
