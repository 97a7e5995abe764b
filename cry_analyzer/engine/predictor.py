"""
Real-time cry need prediction
Feature extraction, batched inference and calibration behind a bounded
queue, a fingerprint cache and per-stage timeouts
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone

import numpy as np

from ..config import (
    MAX_QUEUE_SIZE, CACHE_TTL_MS, EXTRACTION_TIMEOUT_MS, INFERENCE_TIMEOUT_MS,
    BATCH_SIZE, WARM_UP_ITERATIONS, PREDICTION_WORKERS, GPU_MEMORY_LIMIT,
    MEMORY_CHECK_INTERVAL_S, MAINTENANCE_INTERVAL_S, RETAINED_ENGINES, SAMPLE_RATE,
    EXTRACTOR_WARM_UP_TIMEOUT_MS
)
from ..exceptions import (
    ExtractionTimeoutError, ModelLoadError, NoModelLoadedError, PipelineTimeoutError,
    QueueFullError
)
from ..features.feature_extraction import ExtractionOptions, FeatureExtractor
from ..model.artifact import ModelArtifact, load_artifact
from ..model.calibration import calibrate, probabilities
from ..model.registry import ModelRegistry
from ..schema import AudioSample, PredictionResult
from .cache import PredictionCache
from .inference import BatchingInferenceRunner, InferenceEngine
from .processing_queue import ProcessingQueue
from .resources import AcceleratorMemoryGuard, PeriodicThread

logger = logging.getLogger(__name__)


class Predictor:
    """
    Classifies audio samples with the registry's current model.

    predict() is safe to call from many threads at once. The current
    artifact is captured once per request, so a model published mid-request
    does not affect that request.
    """

    def __init__(
        self,
        registry=None,
        extractor=None,
        queue_capacity=MAX_QUEUE_SIZE,
        cache_ttl_ms=CACHE_TTL_MS,
        extraction_timeout_ms=EXTRACTION_TIMEOUT_MS,
        inference_timeout_ms=INFERENCE_TIMEOUT_MS,
        max_batch_size=BATCH_SIZE,
        warm_up_iterations=WARM_UP_ITERATIONS,
        workers=PREDICTION_WORKERS,
        memory_limit=GPU_MEMORY_LIMIT,
        memory_check_interval_s=MEMORY_CHECK_INTERVAL_S,
        maintenance_interval_s=MAINTENANCE_INTERVAL_S,
        enable_noise_reduction=True,
    ):
        self.registry = registry or ModelRegistry()
        self.extractor = extractor or FeatureExtractor()
        self.extraction_timeout_ms = extraction_timeout_ms
        self.warm_up_iterations = warm_up_iterations
        self.enable_noise_reduction = enable_noise_reduction

        self.queue = ProcessingQueue(capacity=queue_capacity)
        self.cache = PredictionCache(ttl_ms=cache_ttl_ms)
        self.runner = BatchingInferenceRunner(
            max_batch_size=max_batch_size, timeout_ms=inference_timeout_ms
        )
        self.memory_guard = AcceleratorMemoryGuard(
            limit=memory_limit, interval_s=memory_check_interval_s
        )
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="extract")
        self._maintenance = PeriodicThread(
            maintenance_interval_s, self._run_maintenance, name="predictor-maintenance"
        )

        self._engines = {}
        self._engine_lock = threading.Lock()
        self._build_lock = threading.Lock()
        self._extractor_warmed = False

        self._stats_lock = threading.Lock()
        self._total_requests = 0
        self._computed = 0
        self._total_latency_ms = 0.0
        self._timeouts = 0
        self._rejections = 0

    # Lifecycle

    def start(self):
        self._maintenance.start()
        return self

    def shutdown(self):
        self._maintenance.stop()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.runner.shutdown()
        logger.info("Predictor shut down")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    # Model management

    def load_model(self, path_or_artifact):
        """
        Validate, warm up and publish a model.

        Args:
            path_or_artifact: ModelArtifact or directory written by save_artifact

        Raises:
            ArchitectureMismatchError: shapes do not fit the need types
            ModelLoadError: the artifact could not be read or failed warm-up;
                the previous model stays current
        """
        if isinstance(path_or_artifact, ModelArtifact):
            artifact = path_or_artifact
        else:
            artifact = load_artifact(path_or_artifact)

        self.registry.validate_architecture(artifact)
        engine = self._build_engine(artifact)
        self._warm_up_extractor()

        self._retain_engine(engine)
        self.registry.publish(artifact)
        self.clear_cache()
        return artifact

    def _build_engine(self, artifact):
        try:
            engine = InferenceEngine.from_artifact(artifact)
            engine.warm_up(self.warm_up_iterations)
        except Exception as e:
            logger.error(f"Model {artifact.version} failed to load: {e}")
            raise ModelLoadError(f"Model {artifact.version} failed warm-up: {e}") from e
        return engine

    def current_engine(self):
        """Inference engine of the current model, warmed up."""
        artifact = self.registry.current()
        if artifact is None:
            raise NoModelLoadedError("No model has been loaded")
        return self._engine_for(artifact)

    def _engine_for(self, artifact):
        # Artifacts published elsewhere (e.g. by a Trainer) are warmed up on first use
        engine = self._cached_engine(artifact)
        if engine is not None:
            return engine
        with self._build_lock:
            engine = self._cached_engine(artifact)
            if engine is None:
                engine = self._build_engine(artifact)
                self._retain_engine(engine)
        return engine

    def _cached_engine(self, artifact):
        with self._engine_lock:
            engine = self._engines.get(artifact.version)
        if engine is not None and engine.artifact is artifact:
            return engine
        return None

    def _retain_engine(self, engine):
        """Keep the newest engines so requests still on the previous model reuse it."""
        with self._engine_lock:
            self._engines.pop(engine.version, None)
            self._engines[engine.version] = engine
            while len(self._engines) > RETAINED_ENGINES:
                del self._engines[next(iter(self._engines))]

    def _warm_up_extractor(self):
        """Run one extraction so the first request does not pay librosa's setup cost."""
        if self._extractor_warmed:
            return
        t = np.arange(SAMPLE_RATE) / SAMPLE_RATE
        sample = AudioSample(
            samples=(0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32),
            sample_rate=SAMPLE_RATE,
        )
        start = time.monotonic()
        try:
            self.extractor.extract_raw(sample, ExtractionOptions(
                enable_noise_reduction=self.enable_noise_reduction,
                timeout_ms=EXTRACTOR_WARM_UP_TIMEOUT_MS,
            ))
        except Exception as e:
            logger.error(f"Feature extractor warm-up failed: {e}")
            raise ModelLoadError(f"Feature extractor warm-up failed: {e}") from e
        self._extractor_warmed = True
        logger.info(f"Feature extractor warmed up in {(time.monotonic() - start) * 1000:.1f} ms")

    # Prediction

    def predict(self, sample, allow_batching=True):
        """
        Classify one audio sample.

        Returns:
            PredictionResult

        Raises:
            InvalidInputError, FeatureQualityError: unusable sample
            NoModelLoadedError: nothing has been published
            QueueFullError: too many requests in flight
            ExtractionTimeoutError, InferenceTimeoutError: a stage exceeded its deadline
        """
        sample.validate()
        artifact = self.registry.current()
        version = artifact.version if artifact is not None else "none"
        key = f"{version}/{sample.fingerprint()}"

        with self._stats_lock:
            self._total_requests += 1
        try:
            return self.cache.get_or_compute(
                key, lambda: self._compute(sample, artifact, key, allow_batching)
            )
        except (QueueFullError, PipelineTimeoutError) as e:
            with self._stats_lock:
                if isinstance(e, PipelineTimeoutError):
                    self._timeouts += 1
                else:
                    self._rejections += 1
            logger.warning(f"Prediction rejected: {e}")
            raise

    def predict_batch(self, samples, allow_batching=True):
        """Classify a small batch concurrently; results keep the input order."""
        if not samples:
            return []
        with ThreadPoolExecutor(max_workers=len(samples), thread_name_prefix="predict") as pool:
            futures = [pool.submit(self.predict, s, allow_batching) for s in samples]
            return [f.result() for f in futures]

    def _compute(self, sample, artifact, key, allow_batching):
        if artifact is None:
            raise NoModelLoadedError("No model has been loaded")

        start = time.monotonic()
        with self.queue.reserve(key):
            engine = self._engine_for(artifact)
            features = self._extract(sample, artifact).ensure_usable()
            scores = self.runner.run(engine, features.values, allow_batching=allow_batching)

            distribution = probabilities(scores, artifact.calibration)
            need_type, confidence = calibrate(scores, artifact.calibration)
            self.memory_guard.maybe_check()

        elapsed_ms = (time.monotonic() - start) * 1000.0
        with self._stats_lock:
            self._computed += 1
            self._total_latency_ms += elapsed_ms

        return PredictionResult(
            need_type=need_type,
            confidence=confidence,
            probabilities=tuple(float(p) for p in np.asarray(distribution)),
            features=features,
            model_version=artifact.version,
            timestamp=datetime.now(timezone.utc),
            processing_time_ms=elapsed_ms,
        )

    def _extract(self, sample, artifact):
        options = artifact.extraction_options(ExtractionOptions(
            enable_noise_reduction=self.enable_noise_reduction,
            timeout_ms=self.extraction_timeout_ms,
        ))
        cancel_event = threading.Event()
        future = self._executor.submit(self.extractor.extract, sample, options, cancel_event)
        try:
            return future.result(timeout=self.extraction_timeout_ms / 1000.0)
        except ExtractionTimeoutError:
            raise
        except FuturesTimeoutError:
            cancel_event.set()
            future.cancel()
            raise ExtractionTimeoutError(
                f"Feature extraction exceeded {self.extraction_timeout_ms:.0f} ms"
            )

    # Monitoring

    def clear_cache(self):
        self.cache.clear()

    def stats(self):
        with self._stats_lock:
            computed = self._computed
            summary = {
                "total_predictions": self._total_requests,
                "computed_predictions": computed,
                "average_latency_ms": self._total_latency_ms / computed if computed else 0.0,
                "timeouts": self._timeouts,
                "rejections": self._rejections,
            }
        summary.update({
            "cache_hits": self.cache.hits,
            "cache_size": len(self.cache),
            "queue_depth": len(self.queue),
            "queue_capacity": self.queue.capacity,
            "batches_run": self.runner.batches_run,
            "memory_cleanups": self.memory_guard.cleanups,
        })
        return summary

    def _run_maintenance(self):
        self.cache.evict_expired()
        stats = self.stats()
        logger.info(
            f"Predictor stats: {stats['total_predictions']} predictions, "
            f"{stats['cache_hits']} cache hits, "
            f"avg latency {stats['average_latency_ms']:.1f} ms, "
            f"queue depth {stats['queue_depth']}"
        )
