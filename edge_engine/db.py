from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import duckdb
import pandas as pd

from edge_engine.config import settings

logger = logging.getLogger(__name__)

# Simulated stake used to price the outcome of each resolved prediction.
SIMULATED_POSITION_USD = 100.0

PREDICTION_COLUMNS: tuple[str, ...] = (
    "prediction_id",
    "market_id",
    "market_title",
    "platform",
    "category",
    "predicted_ts",
    "our_estimate",
    "market_price",
    "edge",
    "confidence",
    "signal_sources_json",
    "resolved_ts",
    "actual_outcome",
    "market_price_at_resolution",
    "was_correct_direction",
    "brier_contribution",
    "profit_loss",
)

SCHEMA_SQL: Iterable[str] = (
    """
    CREATE TABLE IF NOT EXISTS edge_predictions (
        prediction_id VARCHAR PRIMARY KEY,
        market_id VARCHAR,
        market_title VARCHAR,
        platform VARCHAR,
        category VARCHAR,
        predicted_ts TIMESTAMP,
        our_estimate DOUBLE,
        market_price DOUBLE,
        edge DOUBLE,
        confidence DOUBLE,
        signal_sources_json VARCHAR,
        resolved_ts TIMESTAMP,
        actual_outcome BOOLEAN,
        market_price_at_resolution DOUBLE,
        was_correct_direction BOOLEAN,
        brier_contribution DOUBLE,
        profit_loss DOUBLE
    );
    """,
)


INDEX_SQL: Iterable[str] = (
    "CREATE INDEX IF NOT EXISTS idx_edge_predictions_market ON edge_predictions(market_id);",
    "CREATE INDEX IF NOT EXISTS idx_edge_predictions_resolved ON edge_predictions(resolved_ts);",
)


def get_connection(db_path: str | None = None) -> duckdb.DuckDBPyConnection:
    target_path = db_path or settings.db_path
    if target_path != ":memory:":
        Path(target_path).parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(target_path)


def init_db(conn: duckdb.DuckDBPyConnection) -> None:
    for stmt in SCHEMA_SQL:
        conn.execute(stmt)
    for stmt in INDEX_SQL:
        conn.execute(stmt)


def simulated_profit_loss(edge: float, market_price: float, outcome: bool) -> float:
    """P&L of a fixed stake placed on the side the edge points to."""
    if edge > 0:
        return SIMULATED_POSITION_USD * (1.0 - market_price) if outcome else -SIMULATED_POSITION_USD * market_price
    return SIMULATED_POSITION_USD * market_price if not outcome else -SIMULATED_POSITION_USD * (1.0 - market_price)


def record_prediction(
    conn: duckdb.DuckDBPyConnection,
    *,
    market_id: str,
    market_title: str,
    platform: str,
    category: str,
    our_estimate: float,
    market_price: float,
    confidence: float,
    signal_sources: Iterable[str],
    predicted_ts: datetime | None = None,
) -> str:
    prediction_id = f"pred_{uuid.uuid4().hex[:12]}"
    conn.execute(
        """
        INSERT INTO edge_predictions (
            prediction_id, market_id, market_title, platform, category, predicted_ts,
            our_estimate, market_price, edge, confidence, signal_sources_json
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            prediction_id,
            market_id,
            market_title,
            platform,
            category,
            predicted_ts or datetime.now(timezone.utc).replace(tzinfo=None),
            float(our_estimate),
            float(market_price),
            float(our_estimate) - float(market_price),
            float(confidence),
            json.dumps(list(signal_sources)),
        ],
    )
    logger.info("Recorded prediction %s for %s", prediction_id, market_title[:40])
    return prediction_id


def resolve_prediction(
    conn: duckdb.DuckDBPyConnection,
    market_id: str,
    outcome: bool,
    *,
    final_market_price: float | None = None,
    resolved_ts: datetime | None = None,
) -> dict[str, Any] | None:
    """Resolve the oldest pending prediction for ``market_id``; ``None`` if there is none."""
    row = conn.execute(
        """
        SELECT prediction_id, our_estimate, market_price, edge
        FROM edge_predictions
        WHERE market_id = ? AND resolved_ts IS NULL
        ORDER BY predicted_ts
        LIMIT 1
        """,
        [market_id],
    ).fetchone()
    if row is None:
        logger.warning("No pending prediction found for market %s", market_id)
        return None

    prediction_id, our_estimate, market_price, edge = row
    outcome_value = 1.0 if outcome else 0.0
    brier = (float(our_estimate) - outcome_value) ** 2
    correct = (float(our_estimate) > 0.5) == bool(outcome)
    pnl = simulated_profit_loss(float(edge), float(market_price), bool(outcome))
    conn.execute(
        """
        UPDATE edge_predictions
        SET resolved_ts = ?, actual_outcome = ?, market_price_at_resolution = ?,
            was_correct_direction = ?, brier_contribution = ?, profit_loss = ?
        WHERE prediction_id = ?
        """,
        [
            resolved_ts or datetime.now(timezone.utc).replace(tzinfo=None),
            bool(outcome),
            final_market_price,
            correct,
            brier,
            pnl,
            prediction_id,
        ],
    )
    logger.info("Resolved prediction %s for market %s -> %s", prediction_id, market_id, "YES" if outcome else "NO")
    return {
        "prediction_id": prediction_id,
        "market_id": market_id,
        "actual_outcome": bool(outcome),
        "was_correct_direction": correct,
        "brier_contribution": brier,
        "profit_loss": pnl,
    }


def load_predictions(conn: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    return conn.execute("SELECT * FROM edge_predictions ORDER BY predicted_ts, prediction_id").df()


def load_resolved_predictions(conn: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    return conn.execute(
        """
        SELECT *
        FROM edge_predictions
        WHERE resolved_ts IS NOT NULL
          AND actual_outcome IS NOT NULL
          AND profit_loss IS NOT NULL
        ORDER BY predicted_ts, prediction_id
        """
    ).df()
