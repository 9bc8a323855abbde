from __future__ import annotations

import math
from typing import Any, Sequence

import numpy as np
from scipy.special import expit

from edge_engine.features import coerce_vector
from edge_engine.models.base import EdgeModel, ModelWeights, TrainingMetrics, utc_now_iso
from edge_engine.models.evaluation import compute_metrics

# Keeps sigmoid strictly inside (0, 1) in float64.
LOGIT_CLIP = 30.0
LEARNING_RATE_DECAY = 0.99


def _finite_or_zero(values: np.ndarray) -> np.ndarray:
    return np.where(np.isfinite(values), values, 0.0)


def sigmoid(z: float) -> float:
    if not math.isfinite(z):
        if math.isnan(z):
            return 0.5
        z = LOGIT_CLIP if z > 0 else -LOGIT_CLIP
    z = max(-LOGIT_CLIP, min(LOGIT_CLIP, z))
    return float(expit(z))


def _linear_score(x: np.ndarray, weights: ModelWeights) -> float:
    w = _finite_or_zero(coerce_vector(weights.weights))
    with np.errstate(over="ignore", invalid="ignore"):
        terms = _finite_or_zero(w * _finite_or_zero(x))
        z = float(np.sum(terms))
    bias = float(weights.bias) if math.isfinite(weights.bias) else 0.0
    return z + bias


def predict(features: Sequence[Any] | np.ndarray, weights: ModelWeights) -> float:
    """Probability that the opportunity is profitable, strictly in (0, 1).

    Non-finite features or weights contribute nothing to the score, so a model
    whose weights and bias are all zero always returns exactly 0.5.
    """
    return sigmoid(_linear_score(coerce_vector(features), weights))


def predict_many(features: Sequence[Sequence[Any]] | np.ndarray, weights: ModelWeights) -> np.ndarray:
    return np.asarray([predict(row, weights) for row in features], dtype=float)


def sgd_step(features: Sequence[Any] | np.ndarray, label: float, weights: ModelWeights) -> None:
    x = _finite_or_zero(coerce_vector(features))
    error = predict(x, weights) - label
    lr = weights.learning_rate
    reg = weights.regularization

    w = _finite_or_zero(coerce_vector(weights.weights))
    # L2 applies to weights only, never to the bias.
    updated = w - lr * (error * x + reg * w)
    weights.weights = np.where(np.isfinite(updated), updated, w)

    bias = weights.bias - lr * error
    if math.isfinite(bias):
        weights.bias = bias


def train_batch(
    model: EdgeModel,
    features: Sequence[Sequence[Any]] | np.ndarray,
    labels: Sequence[float] | np.ndarray,
    epochs: int = 10,
    *,
    rng: np.random.Generator | None = None,
) -> TrainingMetrics:
    """Run ``epochs`` passes of shuffled SGD over the batch, mutating ``model``.

    ``training_samples`` grows by the batch size regardless of ``epochs`` and
    the learning rate decays once per epoch for the life of the model.
    """
    n = len(features)
    if len(labels) != n:
        raise ValueError(f"features/labels length mismatch: {n} != {len(labels)}")
    if epochs < 0:
        raise ValueError(f"epochs must be >= 0, got {epochs}")
    if n == 0:
        return model.metrics

    x = np.vstack([_finite_or_zero(coerce_vector(row)) for row in features])
    y = np.clip(np.nan_to_num(np.asarray(labels, dtype=float), nan=0.0), 0.0, 1.0)
    rng = rng or np.random.default_rng()
    order = np.arange(n)

    for _ in range(epochs):
        rng.shuffle(order)  # Fisher-Yates
        for i in order:
            sgd_step(x[i], float(y[i]), model.weights)
        model.weights.learning_rate *= LEARNING_RATE_DECAY

    metrics = compute_metrics(predict_many(x, model.weights), y)
    metrics.epoch = model.metrics.epoch + epochs

    model.metrics = metrics
    model.training_samples += n
    model.last_updated = utc_now_iso()
    return metrics
