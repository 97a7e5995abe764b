"""
Versioned, immutable model artifacts and their on-disk format

A saved artifact is a directory with:
    metadata.json   architecture, calibration, normalization, metadata
    weights.npz     layer weights in Keras order (w0, w1, ...)
    statistics.npz  fitted normalization statistics (optional)
"""

import dataclasses
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

import numpy as np

from ..config import (
    NEED_TYPES, HIDDEN_UNITS, MODEL_VERSION_PREFIX, NORMALIZATION_METHOD,
    NORMALIZATION_RANGE, OUTLIER_THRESHOLD, ARTIFACT_METADATA_FILE,
    ARTIFACT_WEIGHTS_FILE, ARTIFACT_STATISTICS_FILE
)
from ..exceptions import ModelLoadError
from ..features.feature_extraction import ExtractionOptions
from ..features.normalization import FeatureStatistics
from ..schema import CalibrationParams

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def new_model_version():
    """Unique, sortable version string for a freshly trained model."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{MODEL_VERSION_PREFIX}-{stamp}-{uuid.uuid4().hex[:8]}"


def _freeze_weights(weights):
    frozen = []
    for w in weights:
        array = np.array(w, dtype=np.float32, copy=True)
        array.setflags(write=False)
        frozen.append(array)
    return tuple(frozen)


@dataclass(frozen=True, eq=False)
class ModelArtifact:
    """
    Trained classifier parameters plus everything needed to reproduce its
    input pipeline. Never mutated after construction; use `replace` to
    derive a new artifact.
    """

    version: str
    weights: Tuple[np.ndarray, ...]
    input_dim: Optional[int]
    num_classes: Optional[int]
    class_names: Tuple[str, ...] = tuple(NEED_TYPES)
    hidden_units: Tuple[int, ...] = HIDDEN_UNITS
    calibration: CalibrationParams = field(default_factory=CalibrationParams)
    feature_names: Tuple[str, ...] = ()
    normalization_method: str = NORMALIZATION_METHOD
    normalization_range: Tuple[float, float] = NORMALIZATION_RANGE
    outlier_threshold: float = OUTLIER_THRESHOLD
    feature_statistics: Optional[FeatureStatistics] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "weights", _freeze_weights(self.weights))
        object.__setattr__(self, "class_names", tuple(self.class_names))
        object.__setattr__(self, "hidden_units", tuple(int(u) for u in self.hidden_units))
        object.__setattr__(self, "feature_names", tuple(self.feature_names))
        object.__setattr__(self, "normalization_range", tuple(self.normalization_range))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def parameter_count(self):
        return int(sum(w.size for w in self.weights))

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)

    def extraction_options(self, base=None):
        """ExtractionOptions that reproduce the normalization this model was trained with."""
        base = base or ExtractionOptions()
        return dataclasses.replace(
            base,
            normalization_method=self.normalization_method,
            target_range=self.normalization_range,
            outlier_threshold=self.outlier_threshold,
            statistics=self.feature_statistics,
        )

    def describe(self):
        return {
            "version": self.version,
            "input_dim": self.input_dim,
            "num_classes": self.num_classes,
            "hidden_units": list(self.hidden_units),
            "parameters": self.parameter_count,
            "calibration": self.calibration.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


def save_artifact(artifact, directory):
    """
    Persist an artifact losslessly to `directory`.
    Returns the directory as a Path.
    """
    path = Path(directory)
    path.mkdir(parents=True, exist_ok=True)

    metadata = {
        "format_version": FORMAT_VERSION,
        "version": artifact.version,
        "input_dim": artifact.input_dim,
        "num_classes": artifact.num_classes,
        "class_names": list(artifact.class_names),
        "hidden_units": list(artifact.hidden_units),
        "calibration": artifact.calibration.to_dict(),
        "feature_names": list(artifact.feature_names),
        "normalization": {
            "method": artifact.normalization_method,
            "range": list(artifact.normalization_range),
            "outlier_threshold": artifact.outlier_threshold,
        },
        "weight_count": len(artifact.weights),
        "created_at": artifact.created_at.isoformat(),
        "metadata": dict(artifact.metadata),
    }
    with open(path / ARTIFACT_METADATA_FILE, "w") as f:
        json.dump(metadata, f, indent=4, default=str)

    np.savez(path / ARTIFACT_WEIGHTS_FILE, **{f"w{i}": w for i, w in enumerate(artifact.weights)})

    if artifact.feature_statistics is not None:
        np.savez(path / ARTIFACT_STATISTICS_FILE, **artifact.feature_statistics.to_arrays())

    logger.info(f"Model artifact {artifact.version} saved to {path}")
    return path


def load_artifact(directory):
    """
    Read an artifact written by save_artifact.
    Shapes are not checked here; ModelRegistry validates before use.
    """
    path = Path(directory)
    metadata_path = path / ARTIFACT_METADATA_FILE
    weights_path = path / ARTIFACT_WEIGHTS_FILE
    if not metadata_path.exists() or not weights_path.exists():
        raise ModelLoadError(f"Model artifact not found at {path}")

    try:
        with open(metadata_path) as f:
            metadata = json.load(f)
        with np.load(weights_path) as archive:
            count = metadata.get("weight_count", len(archive.files))
            weights = [archive[f"w{i}"] for i in range(count)]
        statistics = None
        statistics_path = path / ARTIFACT_STATISTICS_FILE
        if statistics_path.exists():
            with np.load(statistics_path) as archive:
                statistics = FeatureStatistics.from_arrays(archive)
    except (OSError, ValueError, KeyError) as e:
        raise ModelLoadError(f"Could not read model artifact at {path}: {e}") from e

    normalization = metadata.get("normalization", {})
    calibration = metadata.get("calibration", {})
    created_at = metadata.get("created_at")

    artifact = ModelArtifact(
        version=metadata.get("version", path.name),
        weights=weights,
        input_dim=metadata.get("input_dim"),
        num_classes=metadata.get("num_classes"),
        class_names=metadata.get("class_names", NEED_TYPES),
        hidden_units=metadata.get("hidden_units", HIDDEN_UNITS),
        calibration=CalibrationParams(**calibration),
        feature_names=metadata.get("feature_names", ()),
        normalization_method=normalization.get("method", NORMALIZATION_METHOD),
        normalization_range=normalization.get("range", NORMALIZATION_RANGE),
        outlier_threshold=normalization.get("outlier_threshold", OUTLIER_THRESHOLD),
        feature_statistics=statistics,
        created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(timezone.utc),
        metadata=metadata.get("metadata", {}),
    )
    logger.info(f"Model artifact {artifact.version} read from {path}")
    return artifact
