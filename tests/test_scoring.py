from __future__ import annotations

import math
import tempfile
import unittest
from pathlib import Path

import numpy as np

from edge_engine.config import ScoringConfig
from edge_engine.features import NUM_FEATURES
from edge_engine.models import ModelWeights, TrainingMetrics, create_new_model
from edge_engine.scoring import (
    ModelHandle,
    Scorer,
    adjust_position_for_ml,
    format_scored_opportunity,
    get_model_status,
    scored_frame,
)
from edge_engine.store import ModelStore
from edge_engine.types import DIRECTION_BUY_NO, Market, Opportunity, ScoredOpportunity


def _opp(edge: float = 0.10, confidence: float = 0.75, urgency: str = "standard", market_id: str = "m") -> Opportunity:
    return Opportunity(
        edge=edge,
        confidence=confidence,
        urgency=urgency,
        signals={"cross_platform": None},
        market=Market(market_id=market_id, title=f"Market {market_id}", price=0.5),
    )


def _model(samples: int, weights: np.ndarray | None = None):
    model = create_new_model()
    if weights is not None:
        model.weights = ModelWeights(weights=weights)
    model.training_samples = samples
    return model


class CountingStore(ModelStore):
    def __init__(self, path: Path, model=None) -> None:
        super().__init__(path)
        self.model = model
        self.loads = 0

    def load(self):
        self.loads += 1
        return self.model


class ScorerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.model_path = Path(self._tmp.name) / "edge-model.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def scorer(self, model=None, config: ScoringConfig | None = None) -> Scorer:
        handle = ModelHandle(ModelStore(self.model_path))
        if model is not None:
            handle.publish(model)
        return Scorer(handle, config)


class FallbackTests(ScorerTestCase):
    def test_no_model_uses_raw_confidence(self) -> None:
        scored = self.scorer().score(_opp())
        self.assertEqual(scored.ml_score, 0.5)
        self.assertEqual(scored.adjusted_confidence, 0.75)
        self.assertAlmostEqual(scored.expected_value, 0.075)
        self.assertAlmostEqual(scored.rank_score, 0.075 * 1.0 * 0.75)

    def test_undertrained_model_is_ignored(self) -> None:
        scored = self.scorer(_model(19, np.ones(NUM_FEATURES))).score(_opp(confidence=0.9))
        self.assertEqual(scored.ml_score, 0.5)
        self.assertEqual(scored.adjusted_confidence, 0.9)

    def test_broken_model_falls_back_per_item(self) -> None:
        model = _model(100)
        model.stats = None
        ranked = self.scorer(model).score_and_rank([_opp(market_id="a"), _opp(edge=0.2, market_id="b")])
        self.assertEqual([s.market.market_id for s in ranked], ["b", "a"])
        for s in ranked:
            self.assertEqual(s.ml_score, 0.5)
            self.assertEqual(s.adjusted_confidence, 0.75)

    def test_non_finite_edge_gives_finite_rank(self) -> None:
        scored = self.scorer().score(_opp(edge=float("nan"), confidence=float("inf")))
        self.assertTrue(math.isfinite(scored.rank_score))
        self.assertEqual(scored.expected_value, 0.0)


class BlendingTests(ScorerTestCase):
    def test_blend_weight_grows_with_samples(self) -> None:
        scorer = self.scorer()
        self.assertAlmostEqual(scorer.ml_weight(_model(100)), 0.5)
        self.assertAlmostEqual(scorer.ml_weight(_model(20)), 0.1)
        self.assertEqual(scorer.ml_weight(_model(1000)), 0.6)

    def test_adjusted_confidence_blend(self) -> None:
        scored = self.scorer(_model(100)).score(_opp(confidence=0.9))
        self.assertEqual(scored.ml_score, 0.5)
        self.assertAlmostEqual(scored.adjusted_confidence, 0.7)

        capped = self.scorer(_model(1000)).score(_opp(confidence=0.9))
        self.assertAlmostEqual(capped.adjusted_confidence, 0.4 * 0.9 + 0.6 * 0.5)

    def test_trained_model_moves_ml_score(self) -> None:
        weights = np.zeros(NUM_FEATURES)
        weights[1] = 2.0
        scored = self.scorer(_model(200, weights)).score(_opp(confidence=0.9))
        self.assertGreater(scored.ml_score, 0.5)
        self.assertLess(scored.ml_score, 1.0)

    def test_validation_gate(self) -> None:
        config = ScoringConfig(min_validation_auc=0.6)
        model = _model(100)
        self.assertEqual(self.scorer(model, config).score(_opp(confidence=0.9)).adjusted_confidence, 0.9)

        model.validation_metrics = TrainingMetrics(auc=0.55)
        self.assertEqual(self.scorer(model, config).score(_opp(confidence=0.9)).adjusted_confidence, 0.9)

        model.validation_metrics = TrainingMetrics(auc=0.7)
        self.assertAlmostEqual(self.scorer(model, config).score(_opp(confidence=0.9)).adjusted_confidence, 0.7)


class RankingTests(ScorerTestCase):
    def test_urgency_orders_equal_candidates(self) -> None:
        opps = [_opp(urgency="fyi", market_id="f"), _opp(urgency="critical", market_id="c"), _opp(urgency="standard", market_id="s")]
        ranked = self.scorer().score_and_rank(opps)
        self.assertEqual([s.market.market_id for s in ranked], ["c", "s", "f"])
        self.assertAlmostEqual(ranked[0].rank_score / ranked[1].rank_score, 1.5)
        self.assertAlmostEqual(ranked[2].rank_score / ranked[1].rank_score, 0.5)

    def test_negative_edges_reverse_urgency_order(self) -> None:
        opps = [_opp(edge=-0.1, urgency="critical", market_id="c"), _opp(edge=-0.1, urgency="fyi", market_id="f")]
        ranked = self.scorer().score_and_rank(opps)
        self.assertEqual([s.market.market_id for s in ranked], ["f", "c"])
        self.assertLess(ranked[0].expected_value, 0.0)

    def test_oversized_edge_does_not_abort_batch(self) -> None:
        huge = Opportunity(edge=10**400, confidence=10**400, market=Market(market_id="huge", volume=10**400))
        for scorer in (self.scorer(), self.scorer(_model(100))):
            ranked = scorer.score_and_rank([_opp(market_id="ok"), huge])
            self.assertEqual(len(ranked), 2)
            self.assertEqual(ranked[0].market.market_id, "ok")
            self.assertEqual(ranked[1].expected_value, 0.0)
            self.assertTrue(all(math.isfinite(s.rank_score) for s in ranked))

    def test_unknown_urgency_is_neutral(self) -> None:
        scorer = self.scorer()
        self.assertEqual(scorer.urgency_multiplier(None), 1.0)
        self.assertEqual(scorer.urgency_multiplier("someday"), 1.0)

    def test_rank_is_non_increasing(self) -> None:
        rng = np.random.default_rng(17)
        model = _model(500, rng.normal(size=NUM_FEATURES))
        scorer = self.scorer(model)
        self.assertEqual(scorer.score_and_rank([]), [])
        self.assertEqual(len(scorer.score_and_rank([_opp()])), 1)

        opps = [
            _opp(
                edge=float(rng.normal(0.05, 0.1)),
                confidence=float(rng.random()),
                urgency=str(rng.choice(["critical", "standard", "fyi"])),
                market_id=str(i),
            )
            for i in range(40)
        ]
        ranks = [s.rank_score for s in scorer.score_and_rank(opps)]
        self.assertEqual(len(ranks), 40)
        for a, b in zip(ranks, ranks[1:]):
            self.assertGreaterEqual(a, b)

    def test_ties_keep_input_order(self) -> None:
        ranked = self.scorer().score_and_rank([_opp(market_id=str(i)) for i in range(5)])
        self.assertEqual([s.market.market_id for s in ranked], ["0", "1", "2", "3", "4"])

    def test_enhance_truncates(self) -> None:
        opps = [_opp(edge=0.01 * (i + 1), market_id=str(i)) for i in range(12)]
        scorer = self.scorer()
        self.assertEqual(len(scorer.enhance_opportunities(opps)), 10)
        top = scorer.enhance_opportunities(opps, top_n=3)
        self.assertEqual([s.market.market_id for s in top], ["11", "10", "9"])

    def test_filter_by_ml_confidence(self) -> None:
        scorer = self.scorer()
        scored = scorer.score_and_rank([_opp()])
        self.assertEqual(scorer.filter_by_ml_confidence(scored), [])
        self.assertEqual(len(scorer.filter_by_ml_confidence(scored, 0.5)), 1)


class ModelHandleTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "edge-model.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_loads_once_until_invalidated(self) -> None:
        model = _model(50)
        store = CountingStore(self.path, model)
        handle = ModelHandle(store)
        self.assertIs(handle.get(), model)
        self.assertIs(handle.get(), model)
        self.assertEqual(store.loads, 1)
        handle.invalidate()
        handle.get()
        self.assertEqual(store.loads, 2)

    def test_missing_model_is_cached(self) -> None:
        store = CountingStore(self.path, None)
        handle = ModelHandle(store)
        self.assertIsNone(handle.get())
        self.assertIsNone(handle.get())
        self.assertEqual(store.loads, 1)

    def test_publish_replaces_without_loading(self) -> None:
        store = CountingStore(self.path, None)
        handle = ModelHandle(store)
        replacement = _model(80)
        handle.publish(replacement)
        self.assertIs(handle.get(), replacement)
        self.assertEqual(store.loads, 0)

    def test_status(self) -> None:
        handle = ModelHandle(CountingStore(self.path, None))
        status = get_model_status(handle)
        self.assertFalse(status.available)
        self.assertEqual(status.version, "N/A")
        self.assertEqual(status.last_updated, "Never")
        self.assertEqual(status.training_samples, 0)

        model = _model(64)
        model.metrics = TrainingMetrics(accuracy=0.625)
        handle.publish(model)
        status = Scorer(handle).model_status()
        self.assertTrue(status.available)
        self.assertEqual(status.training_samples, 64)
        self.assertEqual(status.accuracy, 0.625)


class HelperTests(unittest.TestCase):
    def _scored(self, ml_score: float) -> ScoredOpportunity:
        return ScoredOpportunity(
            opportunity=Opportunity(edge=0.08, confidence=0.7, direction=DIRECTION_BUY_NO, market=Market(title="Fed cut in March")),
            ml_score=ml_score,
            adjusted_confidence=0.6,
            expected_value=0.048,
            rank_score=0.036,
        )

    def test_adjust_position_for_ml(self) -> None:
        self.assertAlmostEqual(adjust_position_for_ml(self._scored(0.3), 0.1), 0.05)
        self.assertAlmostEqual(adjust_position_for_ml(self._scored(0.5), 0.1), 0.1)
        self.assertAlmostEqual(adjust_position_for_ml(self._scored(0.8), 0.1), 0.125)
        self.assertEqual(adjust_position_for_ml(self._scored(0.8), 0.4), 0.25)

    def test_format(self) -> None:
        text = format_scored_opportunity(self._scored(0.62))
        self.assertIn("Fed cut in March", text)
        self.assertIn("Direction: BUY_NO", text)
        self.assertIn("ML Score: 62%", text)
        self.assertIn("Edge: 8.0%", text)

    def test_frame_columns(self) -> None:
        frame = scored_frame([self._scored(0.6)])
        self.assertEqual(len(frame), 1)
        self.assertEqual(frame["title"].iloc[0], "Fed cut in March")
        self.assertEqual(list(frame.columns), list(scored_frame([]).columns))


if __name__ == "__main__":
    unittest.main()
