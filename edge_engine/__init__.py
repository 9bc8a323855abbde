"""Online-learned edge prediction engine for ranking prediction-market opportunities."""

__all__ = [
    "config",
    "db",
    "features",
    "models",
    "scoring",
    "store",
    "training",
    "types",
]
