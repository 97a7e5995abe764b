"""
Model registry
Holds the current model artifact and swaps it atomically on publish
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone

from ..config import NUM_CLASSES, REGISTRY_HISTORY_LIMIT
from ..exceptions import ArchitectureMismatchError
from .artifact import load_artifact, save_artifact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchitectureSummary:
    input_dim: int
    num_classes: int
    parameter_count: int


class ModelRegistry:
    """
    Owner of the current ModelArtifact.

    Readers capture the reference returned by current() once and keep using
    it; publish() only rebinds the slot, so a prediction never sees half of
    an old artifact and half of a new one.
    """

    def __init__(self, num_classes=NUM_CLASSES, history_limit=REGISTRY_HISTORY_LIMIT):
        self.num_classes = num_classes
        self._lock = threading.Lock()
        self._current = None
        # Most recent publications only
        self._history = deque(maxlen=history_limit)

    def current(self):
        with self._lock:
            return self._current

    def publish(self, artifact):
        """Validate and make `artifact` current."""
        self.validate_architecture(artifact)
        with self._lock:
            previous = self._current
            self._current = artifact
            self._history.append((artifact.version, datetime.now(timezone.utc)))
        if previous is not None:
            logger.info(f"Model {artifact.version} published, replacing {previous.version}")
        else:
            logger.info(f"Model {artifact.version} published")

    def validate_architecture(self, artifact):
        """
        Check that the artifact's declared shapes and weights are consistent
        with each other and with the need-type classes.

        Returns:
            ArchitectureSummary

        Raises:
            ArchitectureMismatchError
        """
        if artifact.input_dim is None or artifact.num_classes is None:
            raise ArchitectureMismatchError(
                f"Model {artifact.version} does not declare its input/output shapes"
            )
        if artifact.num_classes != self.num_classes:
            raise ArchitectureMismatchError(
                f"Model {artifact.version} outputs {artifact.num_classes} classes, "
                f"expected {self.num_classes}"
            )
        if len(artifact.class_names) != self.num_classes:
            raise ArchitectureMismatchError(
                f"Model {artifact.version} names {len(artifact.class_names)} classes, "
                f"expected {self.num_classes}"
            )
        if not artifact.weights:
            raise ArchitectureMismatchError(f"Model {artifact.version} has no weights")

        first_kernel = artifact.weights[0]
        last_bias = artifact.weights[-1]
        if first_kernel.ndim != 2 or first_kernel.shape[0] != artifact.input_dim:
            raise ArchitectureMismatchError(
                f"Input layer weights {first_kernel.shape} do not accept "
                f"{artifact.input_dim} features"
            )
        if last_bias.shape != (artifact.num_classes,):
            raise ArchitectureMismatchError(
                f"Output layer bias {last_bias.shape} does not match "
                f"{artifact.num_classes} classes"
            )
        expected_layers = len(artifact.hidden_units) + 1
        if len(artifact.weights) != 2 * expected_layers:
            raise ArchitectureMismatchError(
                f"Expected {2 * expected_layers} weight arrays for hidden layers "
                f"{list(artifact.hidden_units)}, got {len(artifact.weights)}"
            )
        # Chain of dense layers: kernel (in, out) followed by bias (out,)
        width = artifact.input_dim
        for kernel, bias in zip(artifact.weights[::2], artifact.weights[1::2]):
            if kernel.ndim != 2 or kernel.shape[0] != width or bias.shape != (kernel.shape[1],):
                raise ArchitectureMismatchError(
                    f"Inconsistent layer weights {kernel.shape}/{bias.shape} after width {width}"
                )
            width = kernel.shape[1]
        if artifact.feature_names and len(artifact.feature_names) != artifact.input_dim:
            raise ArchitectureMismatchError(
                f"{len(artifact.feature_names)} feature names for input dimension "
                f"{artifact.input_dim}"
            )
        stats = artifact.feature_statistics
        if stats is not None and len(stats) != artifact.input_dim:
            raise ArchitectureMismatchError(
                f"Normalization statistics cover {len(stats)} features, "
                f"model expects {artifact.input_dim}"
            )

        return ArchitectureSummary(
            input_dim=artifact.input_dim,
            num_classes=artifact.num_classes,
            parameter_count=artifact.parameter_count,
        )

    def load(self, path, publish=True):
        """Read an artifact from disk, validate it and optionally publish it."""
        artifact = load_artifact(path)
        self.validate_architecture(artifact)
        if publish:
            self.publish(artifact)
        return artifact

    def save(self, path, artifact=None):
        artifact = artifact or self.current()
        if artifact is None:
            raise ValueError("No model to save")
        return save_artifact(artifact, path)

    def history(self):
        with self._lock:
            return list(self._history)

    def clear(self):
        with self._lock:
            self._current = None
        logger.info("Model registry cleared")
