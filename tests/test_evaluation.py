from __future__ import annotations

import math
import unittest

import numpy as np

from edge_engine.features import FEATURE_NAMES, NUM_FEATURES
from edge_engine.models import (
    ModelWeights,
    compute_auc,
    compute_feature_importance,
    compute_loss,
    compute_metrics,
    create_new_model,
    feature_importance_frame,
    format_feature_importance,
)


class MetricsTests(unittest.TestCase):
    def test_perfect_separation(self) -> None:
        m = compute_metrics([0.9, 0.8, 0.2, 0.1], [1, 1, 0, 0])
        self.assertEqual(m.accuracy, 1.0)
        self.assertEqual(m.auc, 1.0)
        self.assertEqual(m.precision, 1.0)
        self.assertEqual(m.recall, 1.0)
        self.assertEqual(m.f1, 1.0)

    def test_inverted_scores(self) -> None:
        m = compute_metrics([0.1, 0.2, 0.8, 0.9], [1, 1, 0, 0])
        self.assertEqual(m.accuracy, 0.0)
        self.assertEqual(m.auc, 0.0)
        self.assertEqual(m.precision, 0.0)
        self.assertEqual(m.f1, 0.0)

    def test_empty_input(self) -> None:
        m = compute_metrics([], [])
        self.assertEqual(m.accuracy, 0.0)
        self.assertEqual(m.auc, 0.5)
        self.assertEqual(m.loss, 0.0)

    def test_single_class_auc_is_half(self) -> None:
        self.assertEqual(compute_auc([0.2, 0.9, 0.4], [1, 1, 1]), 0.5)
        self.assertEqual(compute_auc([0.2, 0.9, 0.4], [0, 0, 0]), 0.5)

    def test_ties_count_half(self) -> None:
        self.assertEqual(compute_auc([0.5, 0.5, 0.5, 0.5], [1, 0, 1, 0]), 0.5)

    def test_auc_matches_pairwise_count(self) -> None:
        rng = np.random.default_rng(7)
        labels = rng.integers(0, 2, size=120)
        scores = np.round(rng.random(120) * 0.6 + 0.4 * labels, 1)
        pos = scores[labels == 1]
        neg = scores[labels == 0]
        wins = (pos[:, None] > neg[None, :]).sum() + 0.5 * (pos[:, None] == neg[None, :]).sum()
        self.assertAlmostEqual(compute_auc(scores, labels), wins / (len(pos) * len(neg)), places=12)

    def test_loss_is_clipped(self) -> None:
        loss = compute_loss([0.0, 1.0], [1, 0])
        self.assertTrue(math.isfinite(loss))
        self.assertAlmostEqual(loss, -math.log(1e-7), places=4)
        self.assertAlmostEqual(compute_loss([0.5, 0.5], [1, 0]), math.log(2.0))

    def test_threshold_confusion_counts(self) -> None:
        m = compute_metrics([0.7, 0.6, 0.4, 0.55], [1, 0, 1, 0])
        self.assertAlmostEqual(m.accuracy, 0.25)
        self.assertAlmostEqual(m.precision, 1 / 3)
        self.assertAlmostEqual(m.recall, 0.5)
        self.assertAlmostEqual(m.f1, 0.4)

    def test_length_mismatch(self) -> None:
        with self.assertRaises(ValueError):
            compute_metrics([0.5, 0.5], [1])


class FeatureImportanceTests(unittest.TestCase):
    def test_sums_to_one_and_sorted(self) -> None:
        model = create_new_model()
        rng = np.random.default_rng(3)
        model.weights = ModelWeights(weights=rng.normal(size=NUM_FEATURES))
        importance = compute_feature_importance(model)
        values = [v for _, v in importance]
        self.assertEqual(len(importance), NUM_FEATURES)
        self.assertAlmostEqual(sum(values), 1.0, delta=1e-6)
        self.assertEqual(values, sorted(values, reverse=True))
        self.assertEqual({name for name, _ in importance}, set(FEATURE_NAMES))

    def test_pairs_names_positionally(self) -> None:
        model = create_new_model()
        w = np.zeros(NUM_FEATURES)
        w[2] = -3.0
        w[5] = 1.0
        model.weights = ModelWeights(weights=w)
        importance = compute_feature_importance(model)
        self.assertEqual(importance[0], (FEATURE_NAMES[2], 0.75))
        self.assertEqual(importance[1], (FEATURE_NAMES[5], 0.25))

    def test_zero_weights_give_zero_importance(self) -> None:
        importance = compute_feature_importance(create_new_model())
        self.assertEqual(len(importance), NUM_FEATURES)
        self.assertTrue(all(v == 0.0 for _, v in importance))

    def test_frame_and_format(self) -> None:
        importance = [("confidence", 0.6), ("edge_magnitude", 0.4)]
        frame = feature_importance_frame(importance)
        self.assertEqual(list(frame.columns), ["feature", "importance"])
        self.assertEqual(frame["feature"].iloc[0], "confidence")
        self.assertTrue(feature_importance_frame([]).empty)
        text = format_feature_importance(importance)
        self.assertIn("confidence", text)
        self.assertIn("60.0%", text)


if __name__ == "__main__":
    unittest.main()
