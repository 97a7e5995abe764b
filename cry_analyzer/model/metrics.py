"""
Classification metrics for trained cry classifiers
"""

import logging

import numpy as np
from sklearn.metrics import (
    accuracy_score,
    confusion_matrix,
    log_loss,
    precision_recall_fscore_support,
    roc_auc_score,
)

from ..config import NEED_TYPES
from ..schema import ModelMetrics
from .calibration import softmax

logger = logging.getLogger(__name__)


def confusion_mapping(y_true, y_pred):
    """Confusion matrix as actual need type -> predicted need type -> count."""
    labels = list(range(len(NEED_TYPES)))
    matrix = confusion_matrix(y_true, y_pred, labels=labels)
    return {
        actual: {predicted: int(matrix[i, j]) for j, predicted in enumerate(NEED_TYPES)}
        for i, actual in enumerate(NEED_TYPES)
    }


def compute_metrics(y_true, logits, temperature=1.0):
    """
    Evaluate raw model scores against integer labels.

    Args:
        y_true: class indices in NEED_TYPES order
        logits: (samples, classes) raw scores
        temperature: softmax temperature used for loss and AUC

    Returns:
        ModelMetrics with accuracy, macro precision/recall/F1, confusion
        matrix, cross-entropy loss and one-vs-rest AUC (None when the
        validation set does not contain every class)
    """
    y_true = np.asarray(y_true, dtype=np.int64)
    logits = np.asarray(logits, dtype=np.float64)
    labels = list(range(len(NEED_TYPES)))

    probs = softmax(logits, temperature)
    y_pred = np.argmax(probs, axis=1)

    precision, recall, f1, _ = precision_recall_fscore_support(
        y_true, y_pred, labels=labels, average="macro", zero_division=0
    )

    try:
        loss = float(log_loss(y_true, probs, labels=labels))
    except ValueError as e:
        logger.warning(f"Cross-entropy loss not computable: {e}")
        loss = None

    try:
        auc = float(roc_auc_score(y_true, probs, multi_class="ovr", labels=labels))
    except ValueError as e:
        logger.debug(f"AUC not computable: {e}")
        auc = None
    if auc is not None and not np.isfinite(auc):
        auc = None

    return ModelMetrics(
        accuracy=float(accuracy_score(y_true, y_pred)),
        precision=float(precision),
        recall=float(recall),
        f1_score=float(f1),
        confusion_matrix=confusion_mapping(y_true, y_pred),
        cross_entropy_loss=loss,
        area_under_curve=auc,
        sample_count=int(len(y_true)),
    )
