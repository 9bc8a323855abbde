from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

import numpy as np

from edge_engine.types import (
    DIRECTION_BUY_NO,
    DIRECTION_BUY_YES,
    MARKET_CATEGORIES,
    Opportunity,
)

FEATURE_NAMES: tuple[str, ...] = (
    # edge characteristics
    "edge_magnitude",
    "edge_direction",
    "confidence",
    "urgency_score",
    # price characteristics
    "market_price",
    "price_extremity",
    "implied_fair_value",
    # signal sources
    "src_cross_platform",
    "src_sentiment",
    "src_whale",
    "src_combined",
    "src_sports_odds",
    "src_weather",
    "src_fed_speech",
    "src_measles",
    "src_earnings",
    # convergence
    "signal_count",
    "signal_agreement",
    # category
    "cat_politics",
    "cat_crypto",
    "cat_macro",
    "cat_sports",
    "cat_entertainment",
    "cat_weather",
    "cat_other",
    # market
    "log_volume",
    "has_close_time",
    "time_to_close_days",
    # derived
    "kelly_fraction",
    "expected_value",
    "risk_adjusted_edge",
)

NUM_FEATURES = len(FEATURE_NAMES)
_IDX = {name: i for i, name in enumerate(FEATURE_NAMES)}

URGENCY_SCORES: dict[str, float] = {"critical": 1.0, "standard": 0.5, "fyi": 0.2}

# Each one-hot source flag fires when any of its keys is present in ``signals``.
SIGNAL_SOURCE_KEYS: dict[str, tuple[str, ...]] = {
    "src_cross_platform": ("cross_platform", "crossPlatform"),
    "src_sentiment": ("sentiment",),
    "src_whale": ("whale", "whale_conviction", "whaleConviction"),
    "src_sports_odds": ("sports_consensus", "sportsConsensus"),
    "src_weather": ("weather_bias", "weatherBias"),
    "src_fed_speech": ("fed_speech", "fedSpeech"),
    "src_measles": ("measles",),
    "src_earnings": ("earnings",),
}
# Independent detectors that count toward signal_count but have no one-hot slot.
EXTRA_SIGNAL_KEYS: tuple[tuple[str, ...], ...] = (
    ("recency_bias", "recencyBias"),
    ("fed_regime", "fedRegime"),
    ("injury_overreaction", "injuryOverreaction"),
)

NORMALIZED_CLIP = 10.0
STD_EPSILON = 1e-3

FeatureVector = np.ndarray


def _finite(value: Any, default: float = 0.0) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return out if math.isfinite(out) else default


def coerce_vector(values: Iterable[Any] | None, *, fill: float = 0.0) -> np.ndarray:
    """Return a float vector of exactly ``NUM_FEATURES`` entries (pad or truncate)."""
    out = np.full(NUM_FEATURES, fill, dtype=float)
    if values is None:
        return out
    raw = list(values)[:NUM_FEATURES]
    for i, v in enumerate(raw):
        try:
            out[i] = float(v)
        except (TypeError, ValueError, OverflowError):
            out[i] = fill
    return out


def _has_any(signals: Mapping[str, Any], keys: tuple[str, ...]) -> bool:
    return any(k in signals for k in keys)


def _days_until(close_time: Any, now: datetime) -> float:
    if isinstance(close_time, datetime):
        close_dt = close_time
    else:
        try:
            close_dt = datetime.fromisoformat(str(close_time).replace("Z", "+00:00"))
        except ValueError:
            return 0.0
    if close_dt.tzinfo is None:
        close_dt = close_dt.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return max(0.0, (close_dt - now).total_seconds() / 86_400.0)


def extract_features(opportunity: Opportunity, *, now: datetime | None = None) -> FeatureVector:
    """Encode an opportunity as a fixed-length vector.

    Unknown or missing fields fall back to 0 and non-finite inputs are replaced
    by 0, so the result is always finite. ``now`` pins the clock for the
    time-to-close feature.
    """
    f = np.zeros(NUM_FEATURES, dtype=float)
    signals = opportunity.signals if isinstance(opportunity.signals, Mapping) else {}

    edge = abs(_finite(opportunity.edge))
    confidence = _finite(opportunity.confidence)
    if opportunity.direction == DIRECTION_BUY_YES:
        direction = 1.0
    elif opportunity.direction == DIRECTION_BUY_NO:
        direction = -1.0
    else:
        direction = 0.0

    f[_IDX["edge_magnitude"]] = edge
    f[_IDX["edge_direction"]] = direction
    f[_IDX["confidence"]] = confidence
    f[_IDX["urgency_score"]] = URGENCY_SCORES.get(str(opportunity.urgency), 0.0)

    market = opportunity.market
    extremity = 0.0
    if market is not None and market.price is not None:
        price = _finite(market.price)
        extremity = abs(price - 0.5)
        f[_IDX["market_price"]] = price
        f[_IDX["price_extremity"]] = extremity
        f[_IDX["implied_fair_value"]] = price + direction * edge if direction else 0.0

    for name, keys in SIGNAL_SOURCE_KEYS.items():
        f[_IDX[name]] = 1.0 if _has_any(signals, keys) else 0.0
    f[_IDX["src_combined"]] = 1.0 if opportunity.source == "combined" else 0.0

    groups = tuple(SIGNAL_SOURCE_KEYS.values()) + EXTRA_SIGNAL_KEYS
    signal_count = sum(1 for keys in groups if _has_any(signals, keys))
    f[_IDX["signal_count"]] = float(signal_count)
    f[_IDX["signal_agreement"]] = 1.0 if signal_count >= 2 else 0.0

    if market is not None:
        category = market.category if market.category in MARKET_CATEGORIES else "other"
        f[_IDX[f"cat_{category}"]] = 1.0
        f[_IDX["log_volume"]] = math.log(max(1.0, _finite(market.volume, 1.0)))
        if market.close_time:
            f[_IDX["has_close_time"]] = 1.0
            f[_IDX["time_to_close_days"]] = _days_until(market.close_time, now or datetime.now(timezone.utc))

    f[_IDX["kelly_fraction"]] = _finite(opportunity.kelly_fraction)
    f[_IDX["expected_value"]] = edge * confidence
    f[_IDX["risk_adjusted_edge"]] = edge / (1.0 + extremity)
    return np.where(np.isfinite(f), f, 0.0)


def compute_label(profit_loss: Any) -> int:
    """1 when the resolved trade made money, else 0."""
    return 1 if _finite(profit_loss) > 0.0 else 0


@dataclass
class FeatureStats:
    count: int = 0
    means: np.ndarray = field(default_factory=lambda: np.zeros(NUM_FEATURES, dtype=float))
    stds: np.ndarray = field(default_factory=lambda: np.ones(NUM_FEATURES, dtype=float))
    mins: np.ndarray = field(default_factory=lambda: np.full(NUM_FEATURES, np.inf, dtype=float))
    maxs: np.ndarray = field(default_factory=lambda: np.full(NUM_FEATURES, -np.inf, dtype=float))
    # Welford bookkeeping; a dimension skipped for a non-finite value keeps its own count.
    counts: np.ndarray = field(default_factory=lambda: np.zeros(NUM_FEATURES, dtype=float))
    m2s: np.ndarray = field(default_factory=lambda: np.zeros(NUM_FEATURES, dtype=float))


def empty_stats() -> FeatureStats:
    return FeatureStats()


def update_stats(stats: FeatureStats, features: Iterable[Any]) -> None:
    x = coerce_vector(features, fill=np.nan)
    ok = np.isfinite(x)
    stats.count += 1
    if not ok.any():
        return

    stats.counts[ok] += 1.0
    n = stats.counts[ok]
    delta = x[ok] - stats.means[ok]
    stats.means[ok] += delta / n
    stats.m2s[ok] += delta * (x[ok] - stats.means[ok])
    stats.stds[ok] = np.sqrt(np.maximum(stats.m2s[ok], 0.0) / n)
    stats.mins[ok] = np.minimum(stats.mins[ok], x[ok])
    stats.maxs[ok] = np.maximum(stats.maxs[ok], x[ok])


def normalize_features(features: Iterable[Any], stats: FeatureStats) -> FeatureVector:
    x = coerce_vector(features, fill=np.nan)
    means = np.where(np.isfinite(stats.means), stats.means, 0.0)
    stds = np.where(np.isfinite(stats.stds), stats.stds, 1.0)
    with np.errstate(invalid="ignore", over="ignore"):
        z = (x - means) / np.maximum(stds, STD_EPSILON)
    z = np.where(np.isfinite(z), z, 0.0)
    return np.clip(z, -NORMALIZED_CLIP, NORMALIZED_CLIP)
