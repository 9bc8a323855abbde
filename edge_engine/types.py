from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping

DIRECTION_BUY_YES = "BUY_YES"
DIRECTION_BUY_NO = "BUY_NO"

URGENCY_CRITICAL = "critical"
URGENCY_STANDARD = "standard"
URGENCY_FYI = "fyi"

MARKET_CATEGORIES: tuple[str, ...] = (
    "politics",
    "crypto",
    "macro",
    "sports",
    "entertainment",
    "weather",
    "other",
)

# Upstream detectors send either form; "BUY YES" is the legacy spelling.
_DIRECTION_ALIASES = {
    "BUY_YES": DIRECTION_BUY_YES,
    "BUY YES": DIRECTION_BUY_YES,
    "YES": DIRECTION_BUY_YES,
    "BUY_NO": DIRECTION_BUY_NO,
    "BUY NO": DIRECTION_BUY_NO,
    "NO": DIRECTION_BUY_NO,
}


def normalize_direction(value: Any) -> str | None:
    if value is None:
        return None
    return _DIRECTION_ALIASES.get(str(value).strip().upper())


def normalize_urgency(value: Any) -> str | None:
    if value is None:
        return None
    key = str(value).strip().lower()
    return key if key in (URGENCY_CRITICAL, URGENCY_STANDARD, URGENCY_FYI) else None


def _float_or(value: Any, default: float) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return out if math.isfinite(out) else default


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


@dataclass(frozen=True)
class Market:
    market_id: str = ""
    title: str = ""
    platform: str = ""
    category: str = "other"
    price: float | None = None
    volume: float | None = None
    close_time: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "Market | None":
        if not isinstance(data, Mapping):
            return None
        price = _first(data, "price")
        volume = _first(data, "volume")
        return cls(
            market_id=str(_first(data, "market_id", "id") or ""),
            title=str(_first(data, "title", "question") or ""),
            platform=str(_first(data, "platform") or ""),
            category=str(_first(data, "category") or "other").lower(),
            price=None if price is None else _float_or(price, 0.0),
            volume=None if volume is None else _float_or(volume, 0.0),
            close_time=_first(data, "close_time", "closeTime"),
        )


@dataclass(frozen=True)
class Opportunity:
    """Candidate trade produced by an upstream edge detector.

    Only presence or absence of ``signals`` keys is ever read; payloads are
    carried through untouched for downstream formatting.
    """

    edge: float
    confidence: float
    urgency: str | None = URGENCY_STANDARD
    direction: str | None = DIRECTION_BUY_YES
    signals: Mapping[str, Any] = field(default_factory=dict)
    market: Market | None = None
    source: str | None = None
    kelly_fraction: float | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Opportunity":
        signals = _first(data, "signals")
        kelly = _first(data, "kelly_fraction", "kellyFraction")
        sizing = _first(data, "sizing")
        if kelly is None and isinstance(sizing, Mapping):
            kelly = _first(sizing, "kelly_fraction", "kellyFraction")
        return cls(
            edge=_float_or(_first(data, "edge"), 0.0),
            confidence=_float_or(_first(data, "confidence"), 0.0),
            urgency=normalize_urgency(_first(data, "urgency")),
            direction=normalize_direction(_first(data, "direction")),
            signals=dict(signals) if isinstance(signals, Mapping) else {},
            market=Market.from_mapping(_first(data, "market")),
            source=_first(data, "source"),
            kelly_fraction=None if kelly is None else _float_or(kelly, 0.0),
        )


@dataclass(frozen=True)
class ScoredOpportunity:
    opportunity: Opportunity
    ml_score: float
    adjusted_confidence: float
    expected_value: float
    rank_score: float

    @property
    def edge(self) -> float:
        return self.opportunity.edge

    @property
    def confidence(self) -> float:
        return self.opportunity.confidence

    @property
    def urgency(self) -> str | None:
        return self.opportunity.urgency

    @property
    def direction(self) -> str | None:
        return self.opportunity.direction

    @property
    def signals(self) -> Mapping[str, Any]:
        return self.opportunity.signals

    @property
    def market(self) -> Market | None:
        return self.opportunity.market

    def to_dict(self) -> dict[str, Any]:
        market = self.opportunity.market
        return {
            "market_id": market.market_id if market else "",
            "title": market.title if market else "",
            "edge": self.edge,
            "confidence": self.confidence,
            "urgency": self.urgency,
            "direction": self.direction,
            "signals": ",".join(sorted(self.signals)),
            "ml_score": self.ml_score,
            "adjusted_confidence": self.adjusted_confidence,
            "expected_value": self.expected_value,
            "rank_score": self.rank_score,
        }
