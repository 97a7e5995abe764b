"""
Feature normalization strategies
Min-max, z-score and robust (median/IQR) scaling into a target range,
with outlier clamping so vector dimensionality is always preserved
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from ..config import NORMALIZATION_RANGE, OUTLIER_THRESHOLD

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


def _safe_spread(spread):
    # Constant features have no spread; map them onto the range midpoint
    spread = np.asarray(spread, dtype=np.float64)
    return np.where(spread > _EPSILON, spread, 1.0)


@dataclass(frozen=True, eq=False)
class FeatureStatistics:
    """
    Per-feature reference statistics used by every normalization strategy.
    Fitted on the training partition and carried by the model artifact.
    """

    minimum: np.ndarray
    maximum: np.ndarray
    mean: np.ndarray
    std: np.ndarray
    median: np.ndarray
    iqr: np.ndarray

    def __post_init__(self):
        for name in ("minimum", "maximum", "mean", "std", "median", "iqr"):
            array = np.array(getattr(self, name), dtype=np.float64, copy=True)
            array.setflags(write=False)
            object.__setattr__(self, name, array)

    def __len__(self):
        return len(self.mean)

    @classmethod
    def fit(cls, matrix):
        """Fit statistics column-wise on a (samples, features) matrix."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] == 0:
            raise ValueError(f"Expected a non-empty 2-D matrix, got shape {matrix.shape}")
        q75, q25 = np.percentile(matrix, [75, 25], axis=0)
        return cls(
            minimum=matrix.min(axis=0),
            maximum=matrix.max(axis=0),
            mean=matrix.mean(axis=0),
            std=matrix.std(axis=0),
            median=np.median(matrix, axis=0),
            iqr=q75 - q25,
        )

    @classmethod
    def across_features(cls, values):
        """
        Statistics of a single vector's own values, broadcast to every feature.
        Used when no fitted statistics are available.
        """
        values = np.asarray(values, dtype=np.float64)
        q75, q25 = np.percentile(values, [75, 25])
        size = len(values)
        return cls(
            minimum=np.full(size, values.min()),
            maximum=np.full(size, values.max()),
            mean=np.full(size, values.mean()),
            std=np.full(size, values.std()),
            median=np.full(size, np.median(values)),
            iqr=np.full(size, q75 - q25),
        )

    def to_arrays(self):
        return {
            "minimum": self.minimum,
            "maximum": self.maximum,
            "mean": self.mean,
            "std": self.std,
            "median": self.median,
            "iqr": self.iqr,
        }

    @classmethod
    def from_arrays(cls, arrays):
        return cls(**{key: arrays[key] for key in
                      ("minimum", "maximum", "mean", "std", "median", "iqr")})


class Normalizer(ABC):
    """
    Shared contract for normalization strategies.

    Each strategy maps values onto a unit position where in-distribution
    values fall inside [0, 1]; the base class rescales that position into
    the target range and clamps anything beyond it to the nearest boundary.
    """

    method = None

    def __init__(self, target_range=NORMALIZATION_RANGE, outlier_threshold=OUTLIER_THRESHOLD):
        low, high = target_range
        if not low < high:
            raise ValueError(f"Invalid target range: {target_range}")
        if outlier_threshold <= 0:
            raise ValueError(f"Outlier threshold must be positive, got {outlier_threshold}")
        self.target_range = (float(low), float(high))
        self.outlier_threshold = float(outlier_threshold)

    @abstractmethod
    def standardize(self, values, stats):
        """Map values to their unit position under `stats`."""

    def normalize(self, values, stats):
        values = np.nan_to_num(np.asarray(values, dtype=np.float64))
        if len(stats) != len(values):
            raise ValueError(
                f"Statistics cover {len(stats)} features, vector has {len(values)}"
            )
        unit = self.standardize(values, stats)
        low, high = self.target_range
        scaled = low + unit * (high - low)
        clamped = np.clip(scaled, low, high)
        outliers = int(np.count_nonzero(scaled != clamped))
        if outliers:
            logger.debug(f"Clamped {outliers} outlier feature(s) to {self.target_range}")
        return clamped

    def _centered(self, offsets):
        # [-k, k] spreads map onto [0, 1]
        k = self.outlier_threshold
        return (offsets + k) / (2.0 * k)


class MinMaxNormalizer(Normalizer):
    """
    Scales by the fitted range. The clamping window is `outlier_threshold`
    spans wide, centered on the fitted range, so fitted min and max land
    inside the target range and only values beyond the window are clamped.
    """

    method = "minmax"

    def standardize(self, values, stats):
        span = _safe_spread(stats.maximum - stats.minimum)
        midpoint = (stats.minimum + stats.maximum) / 2.0
        # Spans from the midpoint; +-k/2 spans map onto [0, 1]
        return self._centered(2.0 * (values - midpoint) / span)


class ZScoreNormalizer(Normalizer):
    method = "zscore"

    def standardize(self, values, stats):
        return self._centered((values - stats.mean) / _safe_spread(stats.std))


class RobustNormalizer(Normalizer):
    method = "robust"

    def standardize(self, values, stats):
        return self._centered((values - stats.median) / _safe_spread(stats.iqr))


NORMALIZERS = {
    MinMaxNormalizer.method: MinMaxNormalizer,
    ZScoreNormalizer.method: ZScoreNormalizer,
    RobustNormalizer.method: RobustNormalizer,
}


def get_normalizer(method, target_range=NORMALIZATION_RANGE, outlier_threshold=OUTLIER_THRESHOLD):
    """Build the normalization strategy registered under `method`."""
    try:
        normalizer_cls = NORMALIZERS[method]
    except KeyError:
        raise ValueError(
            f"Unknown normalization method {method!r}; expected one of {sorted(NORMALIZERS)}"
        )
    return normalizer_cls(target_range=target_range, outlier_threshold=outlier_threshold)
