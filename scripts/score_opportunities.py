from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

sys.path.append(str(Path(__file__).resolve().parents[1]))

from edge_engine.config import configure_logging, load_runtime_config, scoring_config_from, settings
from edge_engine.scoring import ModelHandle, Scorer, scored_frame
from edge_engine.store import ModelStore
from edge_engine.types import Opportunity


def main() -> None:
    parser = argparse.ArgumentParser(description="Score and rank a JSON list of opportunities.")
    parser.add_argument("path", help="JSON file holding a list of opportunity objects.")
    parser.add_argument("--config", default=None, help="YAML runtime config overlay.")
    parser.add_argument("--model-path", default=settings.model_path)
    parser.add_argument("--top", type=int, default=None)
    parser.add_argument("--out", default=None, help="Optional CSV output path.")
    args = parser.parse_args()

    configure_logging()
    raw = json.loads(Path(args.path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise SystemExit(f"Expected a JSON list of opportunities in {args.path}")
    opportunities = [Opportunity.from_mapping(item) for item in raw if isinstance(item, dict)]

    scorer = Scorer(ModelHandle(ModelStore(args.model_path)), scoring_config_from(load_runtime_config(args.config)))
    ranked = scorer.enhance_opportunities(opportunities, top_n=args.top)
    frame = scored_frame(ranked)
    print(frame.to_string(index=False))
    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        frame.to_csv(out, index=False)
        print(f"Output: {out}")


if __name__ == "__main__":
    main()
