"""
Resource sampling and background monitors
Process/system memory via psutil, accelerator memory via TensorFlow
"""

import gc
import logging
import threading
import time

import psutil
import tensorflow as tf

from ..config import (
    GPU_MEMORY_LIMIT, GPU_MEMORY_BUDGET_MB, MAX_MEMORY_USAGE, MEMORY_CHECK_INTERVAL_S,
    MEMORY_MONITOR_INTERVAL_S
)

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def sample_resource_usage(process=None):
    """Snapshot of process RSS (MB), system memory fraction and CPU percent."""
    process = process or psutil.Process()
    return {
        "rss_mb": process.memory_info().rss / BYTES_PER_MB,
        "system_memory_fraction": psutil.virtual_memory().percent / 100.0,
        "cpu_percent": psutil.cpu_percent(interval=None),
    }


def accelerator_devices():
    return tf.config.list_physical_devices("GPU")


def accelerator_memory_fraction(budget_mb=GPU_MEMORY_BUDGET_MB):
    """
    Current accelerator working-set memory as a fraction of its budget.
    Returns None when no accelerator is present.
    """
    if not accelerator_devices():
        return None
    info = tf.config.experimental.get_memory_info("GPU:0")
    return info["current"] / (budget_mb * BYTES_PER_MB)


def release_transient_memory():
    """Drop unreferenced tensors and reset peak statistics."""
    collected = gc.collect()
    if accelerator_devices():
        tf.config.experimental.reset_memory_stats("GPU:0")
    logger.debug(f"Released transient memory ({collected} objects collected)")
    return collected


class AcceleratorMemoryGuard:
    """
    Throttled accelerator memory check used on the prediction path.
    Only frees memory nobody references, so in-flight results are unaffected.
    """

    def __init__(self, limit=GPU_MEMORY_LIMIT, interval_s=MEMORY_CHECK_INTERVAL_S,
                 budget_mb=GPU_MEMORY_BUDGET_MB,
                 clock=None):
        self.limit = limit
        self.interval_s = interval_s
        self.budget_mb = budget_mb
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._last_check = None
        self.cleanups = 0

    def maybe_check(self):
        """Run check() if the interval has elapsed since the last one."""
        now = self._clock()
        with self._lock:
            if self._last_check is not None and now - self._last_check < self.interval_s:
                return False
            self._last_check = now
        return self.check()

    def check(self):
        fraction = accelerator_memory_fraction(self.budget_mb)
        if fraction is None or fraction <= self.limit:
            return False
        logger.warning(
            f"Accelerator memory at {fraction:.0%} of budget (limit {self.limit:.0%}), "
            "releasing transient tensors"
        )
        release_transient_memory()
        self.cleanups += 1
        return True


class PeriodicThread:
    """Daemon thread that calls `callback` every `interval_s` until stopped."""

    def __init__(self, interval_s, callback, name):
        self.interval_s = interval_s
        self.callback = callback
        self.name = name
        self._stop_event = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"{self.name} started (every {self.interval_s}s)")

    def stop(self, timeout=None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug(f"{self.name} stopped")

    def _run(self):
        while not self._stop_event.wait(self.interval_s):
            try:
                self.callback()
            except Exception as e:
                logger.error(f"{self.name} iteration failed: {e}")


class ResourceMonitor:
    """
    Samples memory while a training run is in progress and triggers garbage
    collection when system memory crosses the threshold. Runs on its own
    thread and never interrupts the training loop.
    """

    def __init__(self, interval_s=MEMORY_MONITOR_INTERVAL_S, threshold=MAX_MEMORY_USAGE):
        self.threshold = threshold
        self._process = psutil.Process()
        self._lock = threading.Lock()
        self._samples = []
        self.collections = 0
        self._thread = PeriodicThread(interval_s, self.sample, name="resource-monitor")

    def start(self):
        # Prime cpu_percent so the first periodic sample is meaningful
        psutil.cpu_percent(interval=None)
        self.sample()
        self._thread.start()
        return self

    def stop(self):
        self._thread.stop()
        self.sample()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def sample(self):
        usage = sample_resource_usage(self._process)
        with self._lock:
            self._samples.append(usage)
        if usage["system_memory_fraction"] > self.threshold:
            logger.warning(
                f"High memory usage: {usage['system_memory_fraction']:.0%} "
                f"(threshold {self.threshold:.0%}), running garbage collection"
            )
            gc.collect()
            self.collections += 1
        return usage

    def summary(self):
        """Peak values over every sample taken so far."""
        with self._lock:
            samples = list(self._samples)
        if not samples:
            return {}
        return {
            "peak_rss_mb": max(s["rss_mb"] for s in samples),
            "peak_system_memory_fraction": max(s["system_memory_fraction"] for s in samples),
            "cpu_percent": samples[-1]["cpu_percent"],
            "gc_collections": float(self.collections),
        }
