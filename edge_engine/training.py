from __future__ import annotations

import copy
import json
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Mapping

import duckdb
import numpy as np
import pandas as pd

from edge_engine.config import TrainingConfig
from edge_engine.db import record_prediction, resolve_prediction
from edge_engine.features import (
    compute_label,
    empty_stats,
    extract_features,
    normalize_features,
    update_stats,
)
from edge_engine.models.base import EdgeModel, TrainingMetrics, create_new_model
from edge_engine.models.evaluation import compute_metrics
from edge_engine.models.importance import compute_feature_importance
from edge_engine.models.logistic import predict_many, train_batch
from edge_engine.scoring import ModelHandle
from edge_engine.store import ModelStore
from edge_engine.types import (
    DIRECTION_BUY_NO,
    DIRECTION_BUY_YES,
    MARKET_CATEGORIES,
    URGENCY_CRITICAL,
    URGENCY_FYI,
    URGENCY_STANDARD,
    Market,
    Opportunity,
)

logger = logging.getLogger(__name__)

# Ledger signal-source names -> opportunity signal keys.
SOURCE_TO_SIGNAL: dict[str, str] = {
    "cross_platform": "cross_platform",
    "sentiment": "sentiment",
    "whale_activity": "whale",
    "sports_odds": "sports_consensus",
    "options_data": "sports_consensus",
    "base_rate": "recency_bias",
}


def _parse_sources(row: Mapping[str, Any]) -> list[str]:
    raw = row.get("signal_sources_json")
    if raw is None:
        raw = row.get("signal_sources")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = [s.strip() for s in raw.split(",") if s.strip()]
    if isinstance(raw, (list, tuple, np.ndarray)):
        return [str(s) for s in raw]
    return []


def _row_float(row: Mapping[str, Any], key: str, default: float = 0.0) -> float:
    try:
        value = float(row.get(key))
    except (TypeError, ValueError, OverflowError):
        return default
    return value if math.isfinite(value) else default


def _primary_source(sources: list[str]) -> str:
    if "cross_platform" in sources:
        return "cross-platform"
    if "sentiment" in sources:
        return "sentiment"
    if "whale_activity" in sources:
        return "whale"
    return "combined"


def record_to_opportunity(row: Mapping[str, Any]) -> Opportunity:
    """Rebuild the opportunity a ledger row was predicted from."""
    sources = _parse_sources(row)
    edge = _row_float(row, "edge")
    confidence = _row_float(row, "confidence")
    category = str(row.get("category") or "other").lower()
    if confidence > 0.8:
        urgency = URGENCY_CRITICAL
    elif confidence > 0.6:
        urgency = URGENCY_STANDARD
    else:
        urgency = URGENCY_FYI

    signals: dict[str, Any] = {}
    for source in sources:
        key = SOURCE_TO_SIGNAL.get(source)
        if key is not None:
            signals[key] = None

    market = Market(
        market_id=str(row.get("market_id") or ""),
        title=str(row.get("market_title") or ""),
        platform=str(row.get("platform") or ""),
        category=category if category in MARKET_CATEGORIES else "other",
        price=_row_float(row, "market_price"),
        volume=0.0,
    )
    return Opportunity(
        edge=abs(edge),
        confidence=confidence,
        urgency=urgency,
        direction=DIRECTION_BUY_YES if edge > 0 else DIRECTION_BUY_NO,
        signals=signals,
        market=market,
        source=_primary_source(sources),
    )


def _resolved_only(frame: pd.DataFrame) -> pd.DataFrame:
    if frame.empty:
        return frame
    mask = pd.Series(True, index=frame.index)
    for col in ("resolved_ts", "actual_outcome", "profit_loss"):
        if col in frame.columns:
            mask &= frame[col].notna()
        else:
            return frame.iloc[0:0]
    return frame.loc[mask]


def rows_resolved_after(frame: pd.DataFrame, since: str | datetime | None) -> pd.DataFrame:
    """Resolved rows whose ``resolved_ts`` is strictly after ``since`` (naive UTC)."""
    resolved = _resolved_only(frame)
    if since is None or resolved.empty:
        return resolved
    try:
        cutoff = pd.Timestamp(since)
    except (TypeError, ValueError):
        logger.warning("Unparseable cutoff %r, using all resolved rows", since)
        return resolved
    if cutoff.tzinfo is not None:
        cutoff = cutoff.tz_convert("UTC").tz_localize(None)
    return resolved.loc[pd.to_datetime(resolved["resolved_ts"]) > cutoff]


def extract_training_rows(frame: pd.DataFrame) -> tuple[list[np.ndarray], list[int]]:
    """Raw (un-normalized) feature vectors and profit labels for resolved rows."""
    features: list[np.ndarray] = []
    labels: list[int] = []
    for row in _resolved_only(frame).to_dict(orient="records"):
        try:
            vec = extract_features(record_to_opportunity(row))
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Skipping ledger row %s: %s", row.get("prediction_id"), exc)
            continue
        features.append(vec)
        labels.append(compute_label(row.get("profit_loss")))
    return features, labels


def _working_copy(model: EdgeModel | None, cfg: TrainingConfig) -> EdgeModel:
    if model is None:
        logger.info("Created new model")
        return create_new_model(learning_rate=cfg.learning_rate, regularization=cfg.regularization)
    # Published models are shared with scorers and must never be mutated in place.
    return copy.deepcopy(model)


def _current_model(store: ModelStore, handle: ModelHandle | None) -> EdgeModel | None:
    if handle is not None:
        return handle.get()
    return store.load()


def _finish(model: EdgeModel, store: ModelStore, handle: ModelHandle | None) -> EdgeModel:
    model.feature_importance = compute_feature_importance(model)
    for name, importance in model.feature_importance[:5]:
        logger.info("  %s: %.1f%%", name, importance * 100)
    store.save(model)
    if handle is not None:
        handle.publish(model)
    return model


def train_from_records(
    frame: pd.DataFrame,
    config: TrainingConfig | None = None,
    *,
    store: ModelStore,
    handle: ModelHandle | None = None,
    rng: np.random.Generator | None = None,
) -> EdgeModel | None:
    """Full retrain from the prediction ledger.

    Running stats are rebuilt from scratch, the most recent ``validation_split``
    share of rows is held out, and the result is saved and published.
    """
    cfg = config or TrainingConfig()
    raw, labels = extract_training_rows(frame)
    logger.info("Found %d resolved predictions", len(raw))
    if len(raw) < cfg.min_samples:
        logger.warning("Insufficient training data: %d < %d required", len(raw), cfg.min_samples)
        return None

    stats = empty_stats()
    for vec in raw:
        update_stats(stats, vec)
    normalized = [normalize_features(vec, stats) for vec in raw]

    split_idx = int(math.floor(len(normalized) * (1.0 - cfg.validation_split)))
    train_x, train_y = normalized[:split_idx], labels[:split_idx]
    val_x, val_y = normalized[split_idx:], labels[split_idx:]
    logger.info("Training: %d samples, Validation: %d samples", len(train_x), len(val_x))

    model = _working_copy(_current_model(store, handle), cfg)
    if model.training_samples > 0:
        # A retrain may slow learning down but never speed it back up.
        model.weights.learning_rate = min(model.weights.learning_rate, cfg.learning_rate)
    else:
        model.weights.learning_rate = cfg.learning_rate
    model.weights.regularization = cfg.regularization
    model.stats = stats

    logger.info("Training for %d epochs...", cfg.epochs)
    train_batch(model, train_x, train_y, cfg.epochs, rng=rng or np.random.default_rng(cfg.seed))

    if val_x:
        model.validation_metrics = compute_metrics(predict_many(val_x, model.weights), val_y)
        logger.info(
            "Validation metrics: accuracy=%.1f%% auc=%.3f f1=%.3f",
            model.validation_metrics.accuracy * 100,
            model.validation_metrics.auc,
            model.validation_metrics.f1,
        )
    else:
        model.validation_metrics = None

    return _finish(model, store, handle)


def update_model_incremental(
    frame: pd.DataFrame,
    config: TrainingConfig | None = None,
    *,
    store: ModelStore,
    handle: ModelHandle | None = None,
    rng: np.random.Generator | None = None,
) -> EdgeModel | None:
    """Fold newly resolved predictions into the current model.

    Falls back to a full retrain when no model exists yet.
    """
    cfg = config or TrainingConfig()
    raw, labels = extract_training_rows(frame)
    if not raw:
        logger.info("No new resolved records for model update")
        return None

    current = _current_model(store, handle)
    if current is None:
        logger.info("No existing model, performing full training")
        return train_from_records(frame, cfg, store=store, handle=handle, rng=rng)

    logger.info("Updating model with %d new samples", len(raw))
    model = _working_copy(current, cfg)
    normalized: list[np.ndarray] = []
    for vec in raw:
        normalized.append(normalize_features(vec, model.stats))
        update_stats(model.stats, vec)

    metrics = train_batch(
        model,
        normalized,
        labels,
        cfg.incremental_epochs,
        rng=rng or np.random.default_rng(cfg.seed),
    )
    logger.info("Model updated. New accuracy: %.1f%%", metrics.accuracy * 100)
    return _finish(model, store, handle)


def evaluate_model(model: EdgeModel, frame: pd.DataFrame) -> TrainingMetrics:
    raw, labels = extract_training_rows(frame)
    if not raw:
        return TrainingMetrics()
    normalized = [normalize_features(vec, model.stats) for vec in raw]
    return compute_metrics(predict_many(normalized, model.weights), labels)


SYNTHETIC_CATEGORIES: tuple[tuple[str, float], ...] = (
    ("sports", 0.52),
    ("politics", 0.48),
    ("weather", 0.55),
    ("macro", 0.45),
    ("entertainment", 0.50),
)
SYNTHETIC_SOURCES: tuple[str, ...] = (
    "cross_platform",
    "sentiment",
    "whale_activity",
    "options_data",
    "base_rate",
)


def generate_synthetic_predictions(
    conn: duckdb.DuckDBPyConnection,
    n: int = 50,
    *,
    seed: int | None = None,
    start_ts: datetime | None = None,
) -> int:
    """Write ``n`` resolved synthetic predictions whose win rate rises with edge and confidence."""
    rng = np.random.default_rng(seed)
    base_ts = start_ts or datetime(2026, 1, 1)
    for i in range(n):
        category, base_win_rate = SYNTHETIC_CATEGORIES[int(rng.integers(len(SYNTHETIC_CATEGORIES)))]
        edge = 0.05 + float(rng.random()) * 0.15
        confidence = 0.5 + float(rng.random()) * 0.4
        market_price = 0.3 + float(rng.random()) * 0.4
        n_sources = 1 + int(rng.integers(3))
        sources = list(rng.choice(SYNTHETIC_SOURCES, size=n_sources, replace=False))
        market_id = f"synthetic_{i}"

        record_prediction(
            conn,
            market_id=market_id,
            market_title=f"Synthetic {category} market #{i}",
            platform="kalshi",
            category=category,
            our_estimate=market_price + edge,
            market_price=market_price,
            confidence=confidence,
            signal_sources=[str(s) for s in sources],
            predicted_ts=base_ts + timedelta(minutes=i),
        )
        win_prob = base_win_rate + edge * 0.5 + (confidence - 0.5) * 0.2
        resolve_prediction(conn, market_id, bool(rng.random() < win_prob), resolved_ts=base_ts + timedelta(days=1, minutes=i))
    logger.info("Created %d synthetic predictions", n)
    return n
