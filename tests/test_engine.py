"""Tests for the processing queue, prediction cache and batched inference."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import numpy as np
import pytest

from cry_analyzer.engine.cache import PredictionCache
from cry_analyzer.engine.inference import BatchingInferenceRunner, InferenceEngine
from cry_analyzer.engine.processing_queue import ProcessingQueue
from cry_analyzer.engine.resources import AcceleratorMemoryGuard, ResourceMonitor
from cry_analyzer.exceptions import InferenceTimeoutError, QueueFullError


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.005)


class TestProcessingQueue:
    """Test cases for ProcessingQueue."""

    def test_capacity(self):
        """Test that the 1001st concurrent enqueue fails and the rest are kept."""
        queue = ProcessingQueue(capacity=1000)
        with ThreadPoolExecutor(max_workers=16) as pool:
            entries = list(pool.map(lambda i: queue.enqueue(f"sample-{i}"), range(1000)))

        with pytest.raises(QueueFullError):
            queue.enqueue("sample-1000")

        assert len(queue) == 1000
        assert {e.request_id for e in queue.entries()} == {e.request_id for e in entries}

    def test_concurrent_overflow(self):
        """Test that racing callers never exceed capacity."""
        queue = ProcessingQueue(capacity=50)
        results = []

        def attempt(i):
            try:
                queue.enqueue(str(i))
                results.append(True)
            except QueueFullError:
                results.append(False)

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(attempt, range(200)))

        assert results.count(True) == 50
        assert len(queue) == 50
        assert queue.rejected == 150

    def test_reserve_releases_on_error(self):
        """Test that a failed request frees its slot."""
        queue = ProcessingQueue(capacity=1)
        with pytest.raises(RuntimeError):
            with queue.reserve("a"):
                assert len(queue) == 1
                raise RuntimeError("boom")

        assert len(queue) == 0
        with queue.reserve("b"):
            pass

    def test_invalid_capacity(self):
        """Test that capacity must be positive."""
        with pytest.raises(ValueError):
            ProcessingQueue(capacity=0)


class TestPredictionCache:
    """Test cases for PredictionCache."""

    def test_ttl(self):
        """Test that entries expire after the TTL."""
        now = [0.0]
        cache = PredictionCache(ttl_ms=5000, clock=lambda: now[0])
        cache.put("key", "value")

        now[0] = 4.9
        assert cache.get("key") == "value"
        now[0] = 5.1
        assert cache.get("key") is None

    def test_get_or_compute_hit(self):
        """Test that a fresh entry is returned without computing."""
        cache = PredictionCache()
        compute = MagicMock(return_value="result")

        assert cache.get_or_compute("key", compute) == "result"
        assert cache.get_or_compute("key", compute) == "result"
        compute.assert_called_once()
        assert cache.hits == 1

    def test_single_flight(self):
        """Test that concurrent misses share one computation."""
        cache = PredictionCache()
        release = threading.Event()
        calls = []

        def compute():
            calls.append(1)
            release.wait(5)
            return object()

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(cache.get_or_compute, "key", compute) for _ in range(4)]
            wait_for(lambda: len(calls) == 1)
            time.sleep(0.05)
            release.set()
            results = [f.result() for f in futures]

        assert len(calls) == 1
        assert all(r is results[0] for r in results)

    def test_errors_not_cached(self):
        """Test that a failed computation is retried by the next caller."""
        cache = PredictionCache()
        with pytest.raises(ValueError):
            cache.get_or_compute("key", MagicMock(side_effect=ValueError("bad")))

        assert cache.get_or_compute("key", lambda: "ok") == "ok"

    def test_evict_expired(self):
        """Test that maintenance drops expired entries."""
        now = [0.0]
        cache = PredictionCache(ttl_ms=1000, clock=lambda: now[0])
        cache.put("old", 1)
        now[0] = 0.5
        cache.put("new", 2)
        now[0] = 1.2

        assert cache.evict_expired() == 1
        assert len(cache) == 1

    def test_expired_dropped_on_write(self):
        """Test that a write drops expired entries without maintenance."""
        now = [0.0]
        cache = PredictionCache(ttl_ms=1000, clock=lambda: now[0])
        for i in range(20):
            cache.put(f"key-{i}", i)
        now[0] = 2.0
        cache.put("fresh", 1)

        assert cache._entries.keys() == {"fresh"}

    def test_len_counts_live_entries(self):
        """Test that expired entries are not reported as cached."""
        now = [0.0]
        cache = PredictionCache(ttl_ms=1000, clock=lambda: now[0])
        cache.put("a", 1)
        now[0] = 1.5

        assert len(cache) == 0

    def test_max_entries(self):
        """Test that the oldest entries are dropped beyond the bound."""
        cache = PredictionCache(max_entries=3)
        for i in range(5):
            cache.put(f"key-{i}", i)

        assert len(cache) == 3
        assert cache.get("key-0") is None
        assert cache.get("key-4") == 4

    def test_invalid_max_entries(self):
        """Test that the bound must be positive."""
        with pytest.raises(ValueError):
            PredictionCache(max_entries=0)


def echo_engine(delay=0.0, gate=None):
    """Engine double whose scores are the first four inputs; the first call can wait on `gate`."""
    engine = MagicMock(spec=InferenceEngine)

    def predict_scores(batch):
        if gate is not None and engine.predict_scores.call_count == 1:
            gate.wait(5)
        time.sleep(delay)
        return np.asarray(batch)[:, :4] * 2.0

    engine.predict_scores.side_effect = predict_scores
    return engine


def start_blocking_call(runner, engine):
    """Occupy the inference worker with one request until the engine's gate opens."""
    thread = threading.Thread(target=runner.run, args=(engine, np.full(6, -1.0, np.float32)))
    thread.start()
    wait_for(lambda: engine.predict_scores.call_count == 1)
    return thread


class TestBatchingInferenceRunner:
    """Test cases for BatchingInferenceRunner."""

    def test_single_request(self):
        """Test that a lone request gets its own scores."""
        runner = BatchingInferenceRunner()
        scores = runner.run(echo_engine(), np.arange(6, dtype=np.float32))
        np.testing.assert_array_equal(scores, [0.0, 2.0, 4.0, 6.0])

    def test_without_batching(self):
        """Test the single-sample path."""
        engine = MagicMock(spec=InferenceEngine)
        engine.predict_scores.return_value = np.ones((1, 4))
        scores = BatchingInferenceRunner().run(engine, np.zeros(6), allow_batching=False)

        np.testing.assert_array_equal(scores, np.ones(4))
        assert engine.predict_scores.call_args[0][0].shape == (1, 6)

    def test_pending_requests_combined(self):
        """Test that requests pending together share one model call."""
        runner = BatchingInferenceRunner(timeout_ms=5000)
        gate = threading.Event()
        engine = echo_engine(gate=gate)
        results = {}

        blocker = start_blocking_call(runner, engine)
        threads = [
            threading.Thread(
                target=lambda i=i: results.__setitem__(i, runner.run(engine, np.full(6, i, np.float32)))
            )
            for i in range(3)
        ]
        for thread in threads:
            thread.start()
        wait_for(lambda: runner.pending == 3)
        gate.set()
        for thread in threads + [blocker]:
            thread.join()

        assert engine.predict_scores.call_count == 2
        assert engine.predict_scores.call_args[0][0].shape == (3, 6)
        for i in range(3):
            np.testing.assert_array_equal(results[i], np.full(4, 2.0 * i))

    def test_max_batch_size(self):
        """Test that a batch never exceeds max_batch_size."""
        runner = BatchingInferenceRunner(max_batch_size=2, timeout_ms=5000)
        gate = threading.Event()
        engine = echo_engine(gate=gate)

        blocker = start_blocking_call(runner, engine)
        threads = [threading.Thread(target=runner.run, args=(engine, np.zeros(6))) for _ in range(5)]
        for thread in threads:
            thread.start()
        wait_for(lambda: runner.pending == 5)
        gate.set()
        for thread in threads + [blocker]:
            thread.join()

        sizes = [c[0][0].shape[0] for c in engine.predict_scores.call_args_list[1:]]
        assert max(sizes) <= 2
        assert sum(sizes) == 5

    def test_timeout_releases_caller(self):
        """Test that a slow model call does not hold the caller past its deadline."""
        runner = BatchingInferenceRunner(timeout_ms=200)
        start = time.monotonic()
        with pytest.raises(InferenceTimeoutError) as exc_info:
            runner.run(echo_engine(delay=2.0), np.zeros(6))

        assert time.monotonic() - start < 1.0
        assert isinstance(exc_info.value, TimeoutError)
        assert runner.pending == 0
        runner.shutdown()

    def test_timeout_releases_caller_without_batching(self):
        """Test the deadline on the single-sample path."""
        runner = BatchingInferenceRunner(timeout_ms=200)
        start = time.monotonic()
        with pytest.raises(InferenceTimeoutError):
            runner.run(echo_engine(delay=2.0), np.zeros(6), allow_batching=False)

        assert time.monotonic() - start < 1.0
        runner.shutdown()

    def test_abandoned_slot_removed(self):
        """Test that a caller who times out before its turn withdraws its request."""
        runner = BatchingInferenceRunner(timeout_ms=5000)
        gate = threading.Event()
        engine = echo_engine(gate=gate)
        blocker = start_blocking_call(runner, engine)

        with pytest.raises(InferenceTimeoutError):
            runner.run(engine, np.zeros(6), timeout_ms=50)
        assert runner.pending == 0

        gate.set()
        blocker.join()
        assert engine.predict_scores.call_count == 1

    def test_late_result_does_not_block_next_request(self):
        """Test that the runner serves new requests after a timed-out one completes."""
        runner = BatchingInferenceRunner(timeout_ms=100)
        with pytest.raises(InferenceTimeoutError):
            runner.run(echo_engine(delay=0.3), np.zeros(6))

        scores = runner.run(echo_engine(), np.ones(6), timeout_ms=5000)
        np.testing.assert_array_equal(scores, np.full(4, 2.0))

    def test_engine_error_propagates(self):
        """Test that an inference failure reaches the caller."""
        engine = MagicMock(spec=InferenceEngine)
        engine.predict_scores.side_effect = RuntimeError("device lost")
        with pytest.raises(RuntimeError, match="device lost"):
            BatchingInferenceRunner().run(engine, np.zeros(6))


class TestResources:
    """Test cases for memory monitoring."""

    def test_memory_guard_without_accelerator(self):
        """Test that the accelerator check is a no-op without a GPU."""
        guard = AcceleratorMemoryGuard()
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("cry_analyzer.engine.resources.accelerator_devices", lambda: [])
            assert guard.check() is False
        assert guard.cleanups == 0

    def test_memory_guard_releases(self):
        """Test that usage above the limit triggers cleanup."""
        guard = AcceleratorMemoryGuard(limit=0.8)
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("cry_analyzer.engine.resources.accelerator_memory_fraction", lambda budget: 0.95)
            mp.setattr("cry_analyzer.engine.resources.release_transient_memory", MagicMock())
            assert guard.check() is True
        assert guard.cleanups == 1

    def test_memory_guard_throttled(self):
        """Test that checks run at most once per interval."""
        now = [0.0]
        guard = AcceleratorMemoryGuard(interval_s=5.0, clock=lambda: now[0])
        guard.check = MagicMock(return_value=False)

        guard.maybe_check()
        now[0] = 1.0
        guard.maybe_check()
        now[0] = 6.0
        guard.maybe_check()

        assert guard.check.call_count == 2

    def test_resource_monitor(self):
        """Test that the monitor samples memory and collects when above threshold."""
        monitor = ResourceMonitor(interval_s=60.0, threshold=0.0)
        with monitor:
            pass

        summary = monitor.summary()
        assert summary["peak_rss_mb"] > 0
        assert 0.0 <= summary["peak_system_memory_fraction"] <= 1.0
        assert monitor.collections >= 1
