from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover - optional dependency handling
    yaml = None


@dataclass(frozen=True)
class Settings:
    model_path: str = os.getenv("EDGE_MODEL_PATH", "data/edge-model.json")
    db_path: str = os.getenv("EDGE_DB_PATH", "data/predictions.duckdb")
    log_level: str = os.getenv("EDGE_LOG_LEVEL", "INFO")


settings = Settings()


# Urgency buckets map to a time-sensitivity multiplier on the rank score.
URGENCY_MULTIPLIERS: dict[str, float] = {
    "critical": 1.5,
    "standard": 1.0,
    "fyi": 0.5,
}
# Below this many training samples the model output is ignored entirely.
MIN_TRAINING_SAMPLES = 20
# Upper bound on the share of adjusted confidence taken from the model.
MAX_ML_WEIGHT = 0.6
# Sample count at which the model share would reach 1.0 if uncapped.
ML_WEIGHT_SAMPLE_SCALE = 200.0


@dataclass
class TrainingConfig:
    epochs: int = 50
    incremental_epochs: int = 10
    validation_split: float = 0.2
    min_samples: int = 20
    learning_rate: float = 0.01
    regularization: float = 0.001
    seed: int | None = None


@dataclass
class ScoringConfig:
    min_training_samples: int = MIN_TRAINING_SAMPLES
    max_ml_weight: float = MAX_ML_WEIGHT
    ml_weight_sample_scale: float = ML_WEIGHT_SAMPLE_SCALE
    urgency_multipliers: dict[str, float] = field(default_factory=lambda: dict(URGENCY_MULTIPLIERS))
    min_validation_auc: float | None = None
    min_ml_score: float = 0.55
    top_n: int = 10


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def default_runtime_config() -> dict[str, Any]:
    return {
        "training": {
            "epochs": 50,
            "incremental_epochs": 10,
            "validation_split": 0.2,
            "min_samples": 20,
            "learning_rate": 0.01,
            "regularization": 0.001,
            "seed": None,
        },
        "scoring": {
            "min_training_samples": MIN_TRAINING_SAMPLES,
            "max_ml_weight": MAX_ML_WEIGHT,
            "ml_weight_sample_scale": ML_WEIGHT_SAMPLE_SCALE,
            "urgency_multipliers": dict(URGENCY_MULTIPLIERS),
            "min_validation_auc": None,
            "min_ml_score": 0.55,
            "top_n": 10,
        },
    }


def load_runtime_config(path: str | os.PathLike[str] | None = None) -> dict[str, Any]:
    cfg = default_runtime_config()
    if path is None:
        path = os.getenv("EDGE_RUNTIME_CONFIG")
    if not path:
        return cfg
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")
    if yaml is None:
        raise RuntimeError("PyYAML is required to load YAML config files. Install `pyyaml`.")
    loaded = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config root must be a mapping: {p}")
    return _deep_merge(cfg, loaded)


def _section_to_dataclass(cls: type, section: dict[str, Any] | None):
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in (section or {}).items() if k in known}
    return cls(**kwargs)


def training_config_from(cfg: dict[str, Any]) -> TrainingConfig:
    return _section_to_dataclass(TrainingConfig, cfg.get("training"))


def scoring_config_from(cfg: dict[str, Any]) -> ScoringConfig:
    scoring = _section_to_dataclass(ScoringConfig, cfg.get("scoring"))
    scoring.urgency_multipliers = _deep_merge(URGENCY_MULTIPLIERS, scoring.urgency_multipliers or {})
    return scoring


def configure_logging(level: str | int | None = None) -> None:
    logging.basicConfig(
        level=level or settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
