from __future__ import annotations

import numpy as np
import pandas as pd

from edge_engine.features import FEATURE_NAMES, coerce_vector
from edge_engine.models.base import EdgeModel


def compute_feature_importance(model: EdgeModel) -> list[tuple[str, float]]:
    """Share of total absolute weight carried by each feature, largest first."""
    w = coerce_vector(model.weights.weights)
    abs_w = np.abs(np.where(np.isfinite(w), w, 0.0))
    total = float(abs_w.sum()) or 1.0
    pairs = [(name, float(v / total)) for name, v in zip(FEATURE_NAMES, abs_w)]
    return sorted(pairs, key=lambda item: item[1], reverse=True)


def feature_importance_frame(importance: list[tuple[str, float]]) -> pd.DataFrame:
    if not importance:
        return pd.DataFrame(columns=["feature", "importance"])
    rows = [{"feature": name, "importance": float(value)} for name, value in importance]
    return pd.DataFrame(rows).sort_values("importance", ascending=False, kind="stable").reset_index(drop=True)


def format_feature_importance(importance: list[tuple[str, float]], *, top: int = 10) -> str:
    lines = ["Top Feature Importance:", ""]
    for name, value in importance[:top]:
        bar = "#" * int(round(value * 50))
        lines.append(f"  {name:<25} {bar} {value * 100:.1f}%")
    return "\n".join(lines)
