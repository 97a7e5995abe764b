"""
Confidence calibration for raw classifier scores
Temperature scaling followed by softmax, arg-max selection and a
calibration factor; stateless apart from the supplied parameters
"""

import logging

import numpy as np
from scipy.optimize import minimize_scalar

from ..config import NEED_TYPES, TEMPERATURE_BOUNDS
from ..exceptions import ArchitectureMismatchError, InvalidInputError
from ..schema import CalibrationParams, NeedType

logger = logging.getLogger(__name__)


def _as_scores(raw_scores):
    scores = np.asarray(raw_scores, dtype=np.float64)
    if scores.ndim != 1 or scores.size == 0:
        raise InvalidInputError(f"Expected a non-empty 1-D score array, got shape {scores.shape}")
    if not np.all(np.isfinite(scores)):
        raise InvalidInputError("Raw scores contain non-finite values")
    return scores


def softmax(scores, temperature=1.0):
    """Numerically stable softmax over the last axis."""
    scaled = np.asarray(scores, dtype=np.float64) / temperature
    shifted = scaled - np.max(scaled, axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=-1, keepdims=True)


def probabilities(raw_scores, params=None):
    """Temperature-scaled probability distribution over need types."""
    params = params or CalibrationParams()
    scores = _as_scores(raw_scores)
    if scores.size != len(NEED_TYPES):
        raise ArchitectureMismatchError(
            f"Got {scores.size} scores for {len(NEED_TYPES)} need types"
        )
    return softmax(scores, params.temperature)


def calibrate(raw_scores, params=None):
    """
    Convert raw model scores into a need type and calibrated confidence.

    Args:
        raw_scores: one score (logit) per need type, in NEED_TYPES order
        params: CalibrationParams, defaults to the configured temperature
            and calibration factor

    Returns:
        (NeedType, confidence) with confidence in [0, 1]. Exactly equal
        maxima resolve to the lowest class index.
    """
    params = params or CalibrationParams()
    probs = probabilities(raw_scores, params)
    # np.argmax returns the first maximum, which is the lowest class index
    index = int(np.argmax(probs))
    confidence = float(np.clip(probs[index] * params.calibration_factor, 0.0, 1.0))
    return NeedType.from_index(index), confidence


def fit_temperature(logits, labels, bounds=TEMPERATURE_BOUNDS):
    """
    Pick the temperature minimizing negative log-likelihood on held-out data.

    Args:
        logits: (samples, classes) raw scores
        labels: integer class indices

    Returns:
        float temperature within `bounds`
    """
    logits = np.asarray(logits, dtype=np.float64)
    labels = np.asarray(labels, dtype=np.int64)
    if logits.ndim != 2 or len(logits) == 0 or len(logits) != len(labels):
        raise ValueError("fit_temperature needs matching non-empty logits and labels")

    def negative_log_likelihood(temperature):
        probs = softmax(logits, temperature)
        picked = probs[np.arange(len(labels)), labels]
        return -float(np.mean(np.log(np.clip(picked, 1e-12, 1.0))))

    result = minimize_scalar(negative_log_likelihood, bounds=bounds, method="bounded")
    temperature = float(result.x)
    logger.info(f"Fitted calibration temperature {temperature:.3f} (nll={result.fun:.4f})")
    return temperature
