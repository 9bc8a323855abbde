from __future__ import annotations

from typing import Sequence

import numpy as np
from sklearn.metrics import accuracy_score, f1_score, log_loss, precision_score, recall_score, roc_auc_score

from edge_engine.models.base import TrainingMetrics

PROBA_EPS = 1e-7
DECISION_THRESHOLD = 0.5


def _as_arrays(predictions: Sequence[float], labels: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    p = np.asarray(predictions, dtype=float).reshape(-1)
    y = np.asarray(labels, dtype=float).reshape(-1)
    if len(p) != len(y):
        raise ValueError(f"predictions/labels length mismatch: {len(p)} != {len(y)}")
    p = np.where(np.isfinite(p), p, 0.5)
    y = (np.nan_to_num(y, nan=0.0) >= 0.5).astype(int)
    return p, y


def compute_loss(predictions: Sequence[float], labels: Sequence[float]) -> float:
    """Mean binary cross-entropy; probabilities are clipped away from 0 and 1."""
    p, y = _as_arrays(predictions, labels)
    if len(p) == 0:
        return 0.0
    return float(log_loss(y, np.clip(p, PROBA_EPS, 1.0 - PROBA_EPS), labels=[0, 1]))


def compute_auc(predictions: Sequence[float], labels: Sequence[float]) -> float:
    """Probability that a random positive outranks a random negative.

    Tied scores count as half a win. Returns 0.5 when either class is absent.
    """
    p, y = _as_arrays(predictions, labels)
    if len(np.unique(y)) < 2:
        return 0.5
    return float(roc_auc_score(y, p))


def compute_metrics(predictions: Sequence[float], labels: Sequence[float]) -> TrainingMetrics:
    p, y = _as_arrays(predictions, labels)
    if len(p) == 0:
        return TrainingMetrics()

    pred = (p >= DECISION_THRESHOLD).astype(int)
    return TrainingMetrics(
        epoch=0,
        loss=compute_loss(p, y),
        accuracy=float(accuracy_score(y, pred)),
        precision=float(precision_score(y, pred, zero_division=0)),
        recall=float(recall_score(y, pred, zero_division=0)),
        f1=float(f1_score(y, pred, zero_division=0)),
        auc=compute_auc(p, y),
    )
