from __future__ import annotations

import argparse
from pathlib import Path
import sys

sys.path.append(str(Path(__file__).resolve().parents[1]))

from edge_engine.config import configure_logging, load_runtime_config, settings, training_config_from
from edge_engine.db import get_connection, init_db, load_predictions, load_resolved_predictions
from edge_engine.models.importance import format_feature_importance
from edge_engine.scoring import ModelHandle, get_model_status
from edge_engine.store import ModelStore
from edge_engine.training import (
    generate_synthetic_predictions,
    rows_resolved_after,
    train_from_records,
    update_model_incremental,
)


def _print_status(handle: ModelHandle, conn) -> None:
    status = get_model_status(handle)
    print("Model Status:")
    print(f"  Available: {'Yes' if status.available else 'No'}")
    if status.available:
        print(f"  Version: {status.version}")
        print(f"  Training Samples: {status.training_samples}")
        print(f"  Last Updated: {status.last_updated}")
        print(f"  Accuracy: {status.accuracy * 100:.1f}%")

    predictions = load_predictions(conn)
    resolved = load_resolved_predictions(conn)
    profitable = int((resolved["profit_loss"] > 0).sum()) if not resolved.empty else 0
    print()
    print("Prediction Stats:")
    print(f"  Total: {len(predictions)}")
    print(f"  Resolved: {len(resolved)}")
    share = 100.0 * profitable / len(resolved) if len(resolved) else 0.0
    print(f"  Profitable: {profitable} ({share:.1f}%)")
    if not resolved.empty:
        print(f"  Total P&L: ${float(resolved['profit_loss'].sum()):.2f}")
        print(f"  Avg Brier: {float(resolved['brier_contribution'].mean()):.4f}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Train the edge prediction model from resolved predictions.")
    parser.add_argument("--config", default=None, help="YAML runtime config overlay.")
    parser.add_argument("--db-path", default=settings.db_path)
    parser.add_argument("--model-path", default=settings.model_path)
    parser.add_argument("--epochs", type=int, default=None)
    parser.add_argument("--lr", type=float, default=None, help="Learning rate.")
    parser.add_argument("--reg", type=float, default=None, help="L2 regularization strength.")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--synthetic", type=int, nargs="?", const=50, default=0, help="Seed N synthetic predictions first.")
    parser.add_argument("--status", action="store_true", help="Show model status and exit.")
    parser.add_argument("--incremental", action="store_true", help="Fold resolved rows into the existing model.")
    args = parser.parse_args()

    configure_logging()
    cfg = training_config_from(load_runtime_config(args.config))
    if args.epochs is not None:
        cfg.epochs = args.epochs
    if args.lr is not None:
        cfg.learning_rate = args.lr
    if args.reg is not None:
        cfg.regularization = args.reg
    if args.seed is not None:
        cfg.seed = args.seed

    conn = get_connection(args.db_path)
    init_db(conn)
    store = ModelStore(args.model_path)
    handle = ModelHandle(store)

    if args.status:
        _print_status(handle, conn)
        return

    if args.synthetic:
        generate_synthetic_predictions(conn, args.synthetic, seed=cfg.seed)

    print(f"Training configuration: epochs={cfg.epochs} lr={cfg.learning_rate} reg={cfg.regularization}")
    resolved = load_resolved_predictions(conn)
    if len(resolved) < cfg.min_samples:
        raise SystemExit(
            f"INSUFFICIENT_DATA: need at least {cfg.min_samples} resolved predictions, have {len(resolved)}. "
            "Wait for markets to resolve or pass `--synthetic`."
        )

    current = handle.get()
    if args.incremental and current is not None:
        fresh = rows_resolved_after(resolved, current.last_updated)
        print(f"Incremental update with {len(fresh)} newly resolved predictions")
        model = update_model_incremental(fresh, cfg, store=store, handle=handle)
        if model is None:
            print("Model already up to date.")
            return
    else:
        model = train_from_records(resolved, cfg, store=store, handle=handle)
    if model is None:
        raise SystemExit("Training failed or insufficient data.")

    print()
    print("Training complete!")
    _print_status(handle, conn)
    print()
    print(format_feature_importance(model.feature_importance))


if __name__ == "__main__":
    main()
