from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import pandas as pd

from edge_engine.config import ScoringConfig
from edge_engine.features import extract_features, normalize_features
from edge_engine.models.base import EdgeModel
from edge_engine.models.logistic import predict
from edge_engine.store import ModelStore
from edge_engine.types import Opportunity, ScoredOpportunity

logger = logging.getLogger(__name__)

NEUTRAL_ML_SCORE = 0.5


class ModelHandle:
    """Lazily loaded, explicitly invalidated reference to the current model.

    A published model is treated as immutable: retraining builds a new
    ``EdgeModel`` and hands it to ``publish`` instead of editing this one.
    """

    def __init__(self, store: ModelStore | None = None) -> None:
        self.store = store or ModelStore()
        self._lock = threading.Lock()
        self._model: EdgeModel | None = None
        self._loaded = False

    def get(self) -> EdgeModel | None:
        with self._lock:
            if not self._loaded:
                self._model = self.store.load()
                self._loaded = True
                if self._model is None:
                    logger.debug("No ML model available, using raw confidence")
            return self._model

    def invalidate(self) -> None:
        with self._lock:
            self._model = None
            self._loaded = False

    def publish(self, model: EdgeModel) -> None:
        with self._lock:
            self._model = model
            self._loaded = True


@dataclass(frozen=True)
class ModelStatus:
    available: bool
    version: str
    training_samples: int
    last_updated: str
    accuracy: float


def get_model_status(handle: ModelHandle) -> ModelStatus:
    model = handle.get()
    if model is None:
        return ModelStatus(available=False, version="N/A", training_samples=0, last_updated="Never", accuracy=0.0)
    return ModelStatus(
        available=True,
        version=model.version,
        training_samples=model.training_samples,
        last_updated=model.last_updated,
        accuracy=model.metrics.accuracy,
    )


def _finite(value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return out if math.isfinite(out) else 0.0


class Scorer:
    def __init__(self, handle: ModelHandle, config: ScoringConfig | None = None) -> None:
        self.handle = handle
        self.config = config or ScoringConfig()

    def usable_model(self) -> EdgeModel | None:
        """The current model, or ``None`` when its output should be ignored."""
        model = self.handle.get()
        if model is None or model.training_samples < self.config.min_training_samples:
            return None
        gate = self.config.min_validation_auc
        if gate is not None:
            validation = model.validation_metrics
            if validation is None or validation.auc < gate:
                return None
        return model

    def ml_weight(self, model: EdgeModel) -> float:
        return min(self.config.max_ml_weight, model.training_samples / self.config.ml_weight_sample_scale)

    def urgency_multiplier(self, urgency: str | None) -> float:
        return self.config.urgency_multipliers.get(str(urgency), 1.0)

    def _assemble(self, opportunity: Opportunity, ml_score: float, adjusted_confidence: float) -> ScoredOpportunity:
        # Signed edge: for negative edges a higher urgency multiplier ranks the item lower.
        expected_value = _finite(opportunity.edge) * adjusted_confidence
        rank_score = expected_value * self.urgency_multiplier(opportunity.urgency) * (0.5 + 0.5 * ml_score)
        return ScoredOpportunity(
            opportunity=opportunity,
            ml_score=ml_score,
            adjusted_confidence=adjusted_confidence,
            expected_value=expected_value,
            rank_score=rank_score,
        )

    def fallback(self, opportunity: Opportunity) -> ScoredOpportunity:
        return self._assemble(opportunity, NEUTRAL_ML_SCORE, _finite(opportunity.confidence))

    def score(self, opportunity: Opportunity) -> ScoredOpportunity:
        model = self.usable_model()
        if model is None:
            return self.fallback(opportunity)
        confidence = _finite(opportunity.confidence)
        try:
            features = normalize_features(extract_features(opportunity), model.stats)
            ml_score = predict(features, model.weights)
        except Exception as exc:
            logger.debug("ML scoring failed: %s", exc)
            return self.fallback(opportunity)
        weight = self.ml_weight(model)
        adjusted = (1.0 - weight) * confidence + weight * ml_score
        return self._assemble(opportunity, ml_score, adjusted)

    def score_and_rank(self, opportunities: Iterable[Opportunity]) -> list[ScoredOpportunity]:
        scored: list[ScoredOpportunity] = []
        for opportunity in opportunities:
            try:
                scored.append(self.score(opportunity))
            except Exception as exc:
                logger.warning("Scoring failed, using heuristic confidence: %s", exc)
                scored.append(self.fallback(opportunity))
        # sorted() is stable, so ties keep their input order.
        return sorted(scored, key=lambda s: s.rank_score, reverse=True)

    def enhance_opportunities(self, opportunities: Sequence[Opportunity], top_n: int | None = None) -> list[ScoredOpportunity]:
        limit = self.config.top_n if top_n is None else top_n
        scored = self.score_and_rank(opportunities)
        if scored and self.usable_model() is not None:
            n = len(scored)
            logger.info(
                "ML scoring: avg ML=%.0f%%, orig conf=%.0f%%, adj conf=%.0f%%",
                100 * sum(s.ml_score for s in scored) / n,
                100 * sum(_finite(s.confidence) for s in scored) / n,
                100 * sum(s.adjusted_confidence for s in scored) / n,
            )
        return scored[:limit]

    def filter_by_ml_confidence(
        self,
        scored: Iterable[ScoredOpportunity],
        min_ml_score: float | None = None,
    ) -> list[ScoredOpportunity]:
        threshold = self.config.min_ml_score if min_ml_score is None else min_ml_score
        return [s for s in scored if s.ml_score >= threshold]

    def model_status(self) -> ModelStatus:
        return get_model_status(self.handle)


def adjust_position_for_ml(scored: ScoredOpportunity, base_kelly: float) -> float:
    """Shrink the stake when the model is skeptical, grow it (capped) when confident."""
    if scored.ml_score < 0.45:
        return base_kelly * 0.5
    if scored.ml_score > 0.65:
        return min(base_kelly * 1.25, 0.25)
    return base_kelly


def format_scored_opportunity(scored: ScoredOpportunity) -> str:
    title = scored.market.title if scored.market and scored.market.title else "Untitled market"
    lines = [
        f"**{title}**",
        "",
        f"Direction: {scored.direction}",
        f"Edge: {scored.edge * 100:.1f}%",
        f"Original Confidence: {scored.confidence * 100:.0f}%",
        f"ML Score: {scored.ml_score * 100:.0f}%",
        f"Adjusted Confidence: {scored.adjusted_confidence * 100:.0f}%",
        f"Expected Value: {scored.expected_value * 100:.2f}%",
        f"Rank Score: {scored.rank_score:.3f}",
    ]
    return "\n".join(lines)


def scored_frame(scored: Iterable[ScoredOpportunity]) -> pd.DataFrame:
    rows = [s.to_dict() for s in scored]
    if not rows:
        return pd.DataFrame(
            columns=["market_id", "title", "edge", "confidence", "urgency", "direction", "signals",
                     "ml_score", "adjusted_confidence", "expected_value", "rank_score"]
        )
    return pd.DataFrame(rows)
