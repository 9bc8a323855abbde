from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

import numpy as np

from edge_engine.features import NUM_FEATURES, FeatureStats, empty_stats

MODEL_VERSION = "1.0.0"
DEFAULT_LEARNING_RATE = 0.01
DEFAULT_REGULARIZATION = 0.001


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ModelWeights:
    weights: np.ndarray = field(default_factory=lambda: np.zeros(NUM_FEATURES, dtype=float))
    bias: float = 0.0
    learning_rate: float = DEFAULT_LEARNING_RATE
    regularization: float = DEFAULT_REGULARIZATION


@dataclass
class TrainingMetrics:
    epoch: int = 0
    loss: float = 0.0
    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1: float = 0.0
    auc: float = 0.5

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class EdgeModel:
    version: str = MODEL_VERSION
    weights: ModelWeights = field(default_factory=ModelWeights)
    stats: FeatureStats = field(default_factory=empty_stats)
    metrics: TrainingMetrics = field(default_factory=TrainingMetrics)
    training_samples: int = 0
    last_updated: str = field(default_factory=utc_now_iso)
    feature_importance: list[tuple[str, float]] = field(default_factory=list)
    # Held-out metrics from the most recent full training run, if any.
    validation_metrics: TrainingMetrics | None = None


def create_new_model(
    *,
    learning_rate: float = DEFAULT_LEARNING_RATE,
    regularization: float = DEFAULT_REGULARIZATION,
) -> EdgeModel:
    return EdgeModel(weights=ModelWeights(learning_rate=learning_rate, regularization=regularization))
