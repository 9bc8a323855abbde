from __future__ import annotations

import json
import logging
import math
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

import numpy as np

from edge_engine.config import settings
from edge_engine.features import NUM_FEATURES, FeatureStats, coerce_vector
from edge_engine.models.base import (
    DEFAULT_LEARNING_RATE,
    DEFAULT_REGULARIZATION,
    MODEL_VERSION,
    EdgeModel,
    ModelWeights,
    TrainingMetrics,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# 1: legacy camelCase documents without a schema_version field.
# 2: snake_case, non-finite floats stored as null, Welford state included.
SCHEMA_VERSION = 2


def _get(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _num(value: Any, default: float) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return out if math.isfinite(out) else default


def _encode_vector(values: np.ndarray) -> list[float | None]:
    return [float(v) if math.isfinite(v) else None for v in np.asarray(values, dtype=float)]


def _decode_vector(values: Any, fill: float) -> np.ndarray:
    if not isinstance(values, list):
        return np.full(NUM_FEATURES, fill, dtype=float)
    return coerce_vector([fill if v is None else v for v in values], fill=fill)


def _encode_metrics(metrics: TrainingMetrics | None) -> dict[str, Any] | None:
    if metrics is None:
        return None
    return {k: (v if not isinstance(v, float) or math.isfinite(v) else None) for k, v in metrics.to_dict().items()}


def _decode_metrics(data: Any) -> TrainingMetrics:
    if not isinstance(data, Mapping):
        return TrainingMetrics()
    return TrainingMetrics(
        epoch=int(_num(_get(data, "epoch"), 0.0)),
        loss=_num(_get(data, "loss"), 0.0),
        accuracy=_num(_get(data, "accuracy"), 0.0),
        precision=_num(_get(data, "precision"), 0.0),
        recall=_num(_get(data, "recall"), 0.0),
        f1=_num(_get(data, "f1", "f1Score", "f1_score"), 0.0),
        auc=_num(_get(data, "auc"), 0.5),
    )


def encode_model(model: EdgeModel) -> dict[str, Any]:
    stats = model.stats
    return {
        "schema_version": SCHEMA_VERSION,
        "version": model.version,
        "weights": {
            "weights": _encode_vector(coerce_vector(model.weights.weights)),
            "bias": _num(model.weights.bias, 0.0),
            "learning_rate": _num(model.weights.learning_rate, DEFAULT_LEARNING_RATE),
            "regularization": _num(model.weights.regularization, DEFAULT_REGULARIZATION),
        },
        "stats": {
            "count": int(stats.count),
            "means": _encode_vector(stats.means),
            "stds": _encode_vector(stats.stds),
            "mins": _encode_vector(stats.mins),
            "maxs": _encode_vector(stats.maxs),
            "counts": _encode_vector(stats.counts),
            "m2s": _encode_vector(stats.m2s),
        },
        "metrics": _encode_metrics(model.metrics),
        "validation_metrics": _encode_metrics(model.validation_metrics),
        "training_samples": int(model.training_samples),
        "last_updated": model.last_updated,
        "feature_importance": [{"name": name, "importance": _num(value, 0.0)} for name, value in model.feature_importance],
    }


def _decode_stats(data: Any) -> FeatureStats:
    if not isinstance(data, Mapping):
        return FeatureStats()
    count = max(0, int(_num(_get(data, "count"), 0.0)))
    stds = _decode_vector(_get(data, "stds"), 1.0)
    counts_raw = _get(data, "counts")
    counts = _decode_vector(counts_raw, float(count)) if counts_raw is not None else np.full(NUM_FEATURES, float(count))
    m2_raw = _get(data, "m2s")
    # Legacy documents only carry std; rebuild the Welford accumulator from it.
    m2s = _decode_vector(m2_raw, 0.0) if m2_raw is not None else stds * stds * counts
    return FeatureStats(
        count=count,
        means=_decode_vector(_get(data, "means"), 0.0),
        stds=stds,
        mins=_decode_vector(_get(data, "mins"), np.inf),
        maxs=_decode_vector(_get(data, "maxs"), -np.inf),
        counts=counts,
        m2s=m2s,
    )


def _decode_importance(data: Any) -> list[tuple[str, float]]:
    out: list[tuple[str, float]] = []
    if not isinstance(data, list):
        return out
    for item in data:
        if isinstance(item, Mapping) and "name" in item:
            out.append((str(item["name"]), _num(item.get("importance"), 0.0)))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            out.append((str(item[0]), _num(item[1], 0.0)))
    return out


def decode_model(data: Mapping[str, Any]) -> EdgeModel:
    """Build an ``EdgeModel`` from a stored document, defaulting anything missing."""
    weights_raw = _get(data, "weights", default={})
    if not isinstance(weights_raw, Mapping):
        weights_raw = {}
    learning_rate = _num(_get(weights_raw, "learning_rate", "learningRate"), DEFAULT_LEARNING_RATE)
    validation_raw = _get(data, "validation_metrics", "validationMetrics")
    return EdgeModel(
        version=str(_get(data, "version", default=MODEL_VERSION)),
        weights=ModelWeights(
            weights=_decode_vector(_get(weights_raw, "weights"), 0.0),
            bias=_num(_get(weights_raw, "bias"), 0.0),
            learning_rate=max(0.0, learning_rate),
            regularization=_num(_get(weights_raw, "regularization"), DEFAULT_REGULARIZATION),
        ),
        stats=_decode_stats(_get(data, "stats")),
        metrics=_decode_metrics(_get(data, "metrics")),
        training_samples=max(0, int(_num(_get(data, "training_samples", "trainingSamples"), 0.0))),
        last_updated=str(_get(data, "last_updated", "lastUpdated", default=utc_now_iso())),
        feature_importance=_decode_importance(_get(data, "feature_importance", "featureImportance")),
        validation_metrics=_decode_metrics(validation_raw) if validation_raw is not None else None,
    )


class ModelStore:
    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self.path = Path(path or settings.model_path)

    def save(self, model: EdgeModel, *, raise_on_error: bool = False) -> bool:
        try:
            payload = json.dumps(encode_model(model), indent=2, allow_nan=False)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Failed to save model to %s: %s", self.path, exc)
            if raise_on_error:
                raise
            return False
        logger.info("Model saved to %s with %d training samples", self.path, model.training_samples)
        return True

    def load(self) -> EdgeModel | None:
        if not self.path.exists():
            logger.debug("No model file at %s", self.path)
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, Mapping):
                raise ValueError(f"model document root must be an object, got {type(data).__name__}")
            model = decode_model(data)
        except Exception as exc:
            logger.warning("Failed to load model from %s: %s", self.path, exc)
            return None
        logger.info("Loaded model v%s with %d samples", model.version, model.training_samples)
        return model
