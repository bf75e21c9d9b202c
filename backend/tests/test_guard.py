"""
Tests for the per-configuration concurrency guard.
"""
import threading

from sentinelconnect.guard import ConcurrencyGuard


class TestConcurrencyGuard:
    """Admission semantics"""

    def test_acquire_and_release(self):
        g = ConcurrencyGuard()
        assert g.try_acquire("a") is True
        assert g.try_acquire("a") is False
        assert g.is_running("a")
        g.release("a")
        assert not g.is_running("a")
        assert g.try_acquire("a") is True

    def test_ids_are_independent(self):
        g = ConcurrencyGuard()
        assert g.try_acquire("a")
        assert g.try_acquire("b")
        assert g.running() == ["a", "b"]

    def test_release_unknown_id_is_noop(self):
        g = ConcurrencyGuard()
        g.release("missing")
        assert g.running() == []

    def test_held_releases_only_when_acquired(self):
        g = ConcurrencyGuard()
        with g.held("a") as ok:
            assert ok
            with g.held("a") as again:
                assert not again
            # the inner failed acquisition must not release the outer one
            assert g.is_running("a")
        assert not g.is_running("a")

    def test_concurrent_acquire_admits_exactly_one(self):
        g = ConcurrencyGuard()
        barrier = threading.Barrier(16)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            ok = g.try_acquire("cfg")
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert results.count(False) == 15
