import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..config import BATCH_SIZE, INFERENCE_TIMEOUT_MS, WARM_UP_ITERATIONS
from ..exceptions import InferenceTimeoutError
from ..model.architecture import CryClassifierModel

logger = logging.getLogger(__name__)


class InferenceEngine:
    """
    Runs the Keras classifier of one model artifact.
    Returns raw class scores; calibration happens downstream.
    """

    def __init__(self, classifier, artifact):
        self.classifier = classifier
        self.artifact = artifact
        self.input_dim = artifact.input_dim
        self.warmed_up = False

    @classmethod
    def from_artifact(cls, artifact):
        return cls(CryClassifierModel.from_artifact(artifact), artifact)

    @property
    def version(self):
        return self.artifact.version

    def warm_up(self, iterations=WARM_UP_ITERATIONS):
        """
        Run the model on zero-valued input so graph tracing and allocation
        happen before the first real request.
        """
        dummy_input = np.zeros((1, self.input_dim), dtype=np.float32)
        start_time = time.monotonic()
        for _ in range(iterations):
            scores = self.classifier.scores(dummy_input)
            if scores.shape != (1, self.artifact.num_classes) or not np.all(np.isfinite(scores)):
                raise ValueError(f"Warm-up produced invalid scores with shape {scores.shape}")
        self.warmed_up = True
        logger.info(
            f"Model {self.version} warmed up with {iterations} passes "
            f"in {(time.monotonic() - start_time) * 1000:.1f} ms"
        )

    def predict_scores(self, batch):
        """
        Run inference on a (n, input_dim) batch.
        Returns an (n, num_classes) array of raw scores.
        """
        batch = np.asarray(batch, dtype=np.float32)
        if batch.ndim == 1:
            batch = batch[np.newaxis, :]
        if batch.shape[1] != self.input_dim:
            raise ValueError(
                f"Model {self.version} expects {self.input_dim} features, got {batch.shape[1]}"
            )
        return self.classifier.scores(batch)

    def get_model_info(self):
        """
        Get model information for monitoring.
        """
        return {
            "version": self.version,
            "input_shape": [None, self.input_dim],
            "output_shape": [None, self.artifact.num_classes],
            "parameters": self.artifact.parameter_count,
            "warmed_up": self.warmed_up,
        }

    def benchmark_latency(self, num_runs=100):
        """
        Benchmark single-sample inference latency.
        """
        latencies = []
        dummy_input = np.random.rand(1, self.input_dim).astype(np.float32)

        for _ in range(num_runs):
            start_time = time.monotonic()
            self.predict_scores(dummy_input)
            latency = (time.monotonic() - start_time) * 1000  # Convert to ms
            latencies.append(latency)

        avg_latency = float(np.mean(latencies))
        max_latency = float(np.max(latencies))

        logger.info(f"Average latency: {avg_latency:.2f} ms")
        logger.info(f"Max latency: {max_latency:.2f} ms")

        return {
            "average_latency_ms": avg_latency,
            "max_latency_ms": max_latency,
            "meets_target": max_latency < INFERENCE_TIMEOUT_MS,
        }


@dataclass(eq=False)
class _Slot:
    engine: InferenceEngine
    values: np.ndarray
    done: threading.Event = field(default_factory=threading.Event)
    scores: Optional[np.ndarray] = None
    error: Optional[BaseException] = None


class BatchingInferenceRunner:
    """
    Combines inference requests that are pending at the same moment into a
    single model call.

    Model calls run on one dedicated worker thread, never on a caller's
    thread. A caller registers a slot and waits on it until its deadline.
    The worker drains up to `max_batch_size` pending slots per call, grouped
    by engine; slots that arrive while a batch runs go into the next one.
    A caller whose deadline passes stops waiting and withdraws its slot if
    the worker has not picked it up. A late result is discarded.
    """

    def __init__(self, max_batch_size=BATCH_SIZE, timeout_ms=INFERENCE_TIMEOUT_MS):
        self.max_batch_size = max_batch_size
        self.timeout_ms = timeout_ms
        self._pending = []
        self._lock = threading.Lock()
        self._draining = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")
        self.batches_run = 0
        self.samples_run = 0

    @property
    def pending(self):
        with self._lock:
            return len(self._pending)

    def run(self, engine, values, allow_batching=True, timeout_ms=None):
        """
        Raw scores for one feature vector.

        Raises:
            InferenceTimeoutError: no result within the timeout; the caller
                is released at the deadline even if the model is still running
        """
        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms
        values = np.asarray(values, dtype=np.float32)

        if not allow_batching:
            future = self._executor.submit(engine.predict_scores, values[np.newaxis, :])
            try:
                return future.result(timeout=timeout_ms / 1000.0)[0]
            except FuturesTimeoutError:
                future.cancel()
                raise InferenceTimeoutError(f"Inference exceeded {timeout_ms:.0f} ms")

        slot = _Slot(engine=engine, values=values)
        with self._lock:
            self._pending.append(slot)
            schedule = not self._draining
            self._draining = True
        if schedule:
            self._executor.submit(self._drain)

        if not slot.done.wait(timeout_ms / 1000.0):
            with self._lock:
                if slot in self._pending:
                    self._pending.remove(slot)
            raise InferenceTimeoutError(f"Inference exceeded {timeout_ms:.0f} ms")

        if slot.error is not None:
            raise slot.error
        return slot.scores

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _drain(self):
        while True:
            with self._lock:
                batch = self._pending[: self.max_batch_size]
                del self._pending[: len(batch)]
                if not batch:
                    self._draining = False
                    return
            self._run_batch(batch)

    def _run_batch(self, batch):
        groups = {}
        for slot in batch:
            groups.setdefault(id(slot.engine), []).append(slot)

        for slots in groups.values():
            try:
                scores = slots[0].engine.predict_scores(np.stack([s.values for s in slots]))
            except Exception as e:
                for slot in slots:
                    slot.error = e
            else:
                for slot, row in zip(slots, scores):
                    slot.scores = row
            finally:
                for slot in slots:
                    slot.done.set()

        self.batches_run += 1
        self.samples_run += len(batch)
        logger.debug(f"Ran inference batch of {len(batch)} sample(s) in {len(groups)} group(s)")
