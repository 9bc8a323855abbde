"""Hand-rolled logistic edge model: state, online training and evaluation."""

from edge_engine.models.base import (
    EdgeModel,
    ModelWeights,
    TrainingMetrics,
    create_new_model,
)
from edge_engine.models.evaluation import compute_auc, compute_loss, compute_metrics
from edge_engine.models.importance import (
    compute_feature_importance,
    feature_importance_frame,
    format_feature_importance,
)
from edge_engine.models.logistic import predict, predict_many, sgd_step, sigmoid, train_batch

__all__ = [
    "EdgeModel",
    "ModelWeights",
    "TrainingMetrics",
    "create_new_model",
    "compute_auc",
    "compute_loss",
    "compute_metrics",
    "compute_feature_importance",
    "feature_importance_frame",
    "format_feature_importance",
    "predict",
    "predict_many",
    "sgd_step",
    "sigmoid",
    "train_batch",
]
