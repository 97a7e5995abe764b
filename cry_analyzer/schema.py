"""
Data model for the cry classification pipeline
Audio samples, feature vectors, predictions and training records
"""

import hashlib
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from .config import (
    DEFAULT_CALIBRATION_FACTOR, DEFAULT_TEMPERATURE, NEED_TYPES,
    NORMALIZATION_RANGE, DEFAULT_EPOCHS, BATCH_SIZE, DEFAULT_LEARNING_RATE,
    DEFAULT_VALIDATION_SPLIT, MIN_ACCURACY_THRESHOLD, DRIFT_WINDOW,
    DRIFT_TOLERANCE, EARLY_STOPPING_PATIENCE, EXTRACTION_WORKERS,
)
from .exceptions import FeatureQualityError, InvalidInputError


class NeedType(str, Enum):
    """Classified need behind an infant vocalization."""

    HUNGER = "hunger"
    TIREDNESS = "tiredness"
    PAIN = "pain"
    DISCOMFORT = "discomfort"

    @classmethod
    def from_index(cls, index):
        return cls(NEED_TYPES[index])

    @property
    def index(self):
        return NEED_TYPES.index(self.value)

    def __str__(self):
        return self.value


def _utcnow():
    return datetime.now(timezone.utc)


def _readonly(values, dtype=np.float32):
    array = np.array(values, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class AudioSample:
    """
    Immutable raw waveform as supplied by the capture client.
    The sample is not validated on construction; call validate() or let
    the FeatureExtractor reject it.
    """

    samples: np.ndarray
    sample_rate: float
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        object.__setattr__(self, "samples", _readonly(self.samples))

    @property
    def duration_s(self):
        if not self.sample_rate:
            return 0.0
        return len(self.samples) / float(self.sample_rate)

    def validate(self):
        """Raise InvalidInputError unless the sample can be processed."""
        if self.samples.ndim != 1:
            raise InvalidInputError(
                f"Expected a mono waveform, got array with shape {self.samples.shape}"
            )
        if self.samples.size == 0:
            raise InvalidInputError("Empty audio sample")
        try:
            rate = float(self.sample_rate)
        except (TypeError, ValueError):
            raise InvalidInputError(f"Invalid sample rate: {self.sample_rate!r}")
        if not math.isfinite(rate) or rate <= 0:
            raise InvalidInputError(f"Invalid sample rate: {self.sample_rate!r}")
        if not np.all(np.isfinite(self.samples)):
            raise InvalidInputError("Audio sample contains non-finite values")

    def fingerprint(self):
        """Content hash used to deduplicate identical prediction requests."""
        digest = hashlib.sha256()
        digest.update(repr(float(self.sample_rate)).encode("ascii"))
        digest.update(self.samples.tobytes())
        return digest.hexdigest()


@dataclass(frozen=True)
class QualityMetrics:
    """Quality of one feature extraction."""

    snr_db: float
    clarity: float
    confidence: float
    latency_ms: float


@dataclass(frozen=True, eq=False)
class FeatureVector:
    """
    Normalized numeric summary of an audio sample.

    Values are ordered like `names` and lie inside `value_range`.
    `noise_level` and `signal_quality` are unnormalized 0..1 scores kept
    outside the vector for the quality gate.
    """

    names: Tuple[str, ...]
    values: np.ndarray
    noise_level: float
    signal_quality: float
    quality: QualityMetrics
    value_range: Tuple[float, float] = NORMALIZATION_RANGE

    def __post_init__(self):
        object.__setattr__(self, "names", tuple(self.names))
        object.__setattr__(self, "values", _readonly(self.values))
        if len(self.names) != len(self.values):
            raise ValueError(
                f"{len(self.names)} feature names for {len(self.values)} values"
            )

    def __len__(self):
        return len(self.values)

    def as_dict(self):
        return {name: float(value) for name, value in zip(self.names, self.values)}

    def ensure_usable(self):
        """Reject vectors whose noise level exceeds their signal quality."""
        if self.noise_level > self.signal_quality:
            raise FeatureQualityError(self.noise_level, self.signal_quality)
        return self


@dataclass(frozen=True)
class CalibrationParams:
    """Temperature scaling parameters applied to raw model scores."""

    temperature: float = DEFAULT_TEMPERATURE
    calibration_factor: float = DEFAULT_CALIBRATION_FACTOR

    def __post_init__(self):
        if not math.isfinite(self.temperature) or self.temperature <= 0:
            raise ValueError(f"Temperature must be positive, got {self.temperature}")
        if not math.isfinite(self.calibration_factor) or self.calibration_factor <= 0:
            raise ValueError(
                f"Calibration factor must be positive, got {self.calibration_factor}"
            )

    def to_dict(self):
        return {"temperature": self.temperature, "calibration_factor": self.calibration_factor}


@dataclass(frozen=True)
class PredictionResult:
    """Calibrated classification of one audio sample."""

    need_type: NeedType
    confidence: float
    probabilities: Tuple[float, ...]
    features: FeatureVector
    model_version: str
    timestamp: datetime
    processing_time_ms: float

    def to_dict(self):
        return {
            "need_type": self.need_type.value,
            "confidence": self.confidence,
            "probabilities": dict(zip(NEED_TYPES, self.probabilities)),
            "features": self.features.as_dict(),
            "model_version": self.model_version,
            "timestamp": self.timestamp.isoformat(),
            "processing_time_ms": self.processing_time_ms,
        }


class RunStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class ModelMetrics:
    """Validation metrics of a trained or evaluated model."""

    accuracy: float
    precision: float
    recall: float
    f1_score: float
    confusion_matrix: Dict[str, Dict[str, int]]
    cross_entropy_loss: Optional[float] = None
    area_under_curve: Optional[float] = None
    sample_count: int = 0
    training_time_s: float = 0.0
    resource_utilization: Dict[str, float] = field(default_factory=dict)
    drift_detected: bool = False
    drift_message: Optional[str] = None
    status: Optional[RunStatus] = None
    model_version: Optional[str] = None

    def to_dict(self):
        return {
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
            "f1_score": self.f1_score,
            "confusion_matrix": self.confusion_matrix,
            "cross_entropy_loss": self.cross_entropy_loss,
            "area_under_curve": self.area_under_curve,
            "sample_count": self.sample_count,
            "training_time_s": self.training_time_s,
            "resource_utilization": dict(self.resource_utilization),
            "drift_detected": self.drift_detected,
            "drift_message": self.drift_message,
            "status": self.status.value if self.status else None,
            "model_version": self.model_version,
        }


@dataclass(frozen=True)
class TrainingConfig:
    """Hyperparameters and acceptance policy for one training run."""

    batch_size: int = BATCH_SIZE
    epochs: int = DEFAULT_EPOCHS
    learning_rate: float = DEFAULT_LEARNING_RATE
    validation_split: float = DEFAULT_VALIDATION_SPLIT
    min_accuracy: float = MIN_ACCURACY_THRESHOLD
    drift_window: int = DRIFT_WINDOW
    drift_tolerance: float = DRIFT_TOLERANCE
    temperature: float = DEFAULT_TEMPERATURE
    calibration_factor: float = DEFAULT_CALIBRATION_FACTOR
    fit_temperature: bool = True
    early_stopping_patience: Optional[int] = EARLY_STOPPING_PATIENCE
    seed: Optional[int] = None
    extraction_workers: int = EXTRACTION_WORKERS
    dataset_version: str = "unversioned"

    def __post_init__(self):
        if self.batch_size <= 0 or self.epochs <= 0:
            raise ValueError("batch_size and epochs must be positive")
        if not 0.0 < self.validation_split < 1.0:
            raise ValueError(
                f"validation_split must be between 0 and 1, got {self.validation_split}"
            )
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")

    def hyperparameters(self):
        return {
            "batch_size": self.batch_size,
            "epochs": self.epochs,
            "learning_rate": self.learning_rate,
            "validation_split": self.validation_split,
        }


@dataclass
class TrainingRun:
    """One invocation of Trainer.train and its outcome."""

    dataset_reference: str
    hyperparameters: Mapping[str, Any]
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    metrics: Optional[ModelMetrics] = None
    status: Optional[RunStatus] = None
    rejection_reason: Optional[str] = None


@dataclass(frozen=True)
class ProcessingQueueEntry:
    """In-flight prediction request held by the processing queue."""

    fingerprint: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: datetime = field(default_factory=_utcnow)
    enqueued_monotonic: float = 0.0
