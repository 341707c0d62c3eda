"""
Batch geolocation evaluator.

Reads document records (a JSON Lines file or a Hugging Face dataset), builds
a grid from the training split, ranks cells for every document of the
evaluation split and prints a JSON report.

Every `GridLocateConfig` field can be set through a `GRIDLOCATE_<FIELD>`
environment variable, e.g.:
    GRIDLOCATE_GRID_TYPE=kd
    GRIDLOCATE_KD_BUCKET_SIZE=100
    GRIDLOCATE_RANKER=smoothed-partial-kl-divergence
    GRIDLOCATE_NUM_WORKERS=4

Command-line flags override the environment.

Run with:
    uv run python evaluator.py data/wiki-geo.jsonl --eval-split dev
"""

import argparse
import json
import logging
import os
import sys

from datasets import load_dataset

from gridlocate.config import EVALUATORS, GRID_TYPES, RANKERS, GridLocateConfig
from gridlocate.counters import ExperimentStats
from gridlocate.documents import records_from_dataset
from gridlocate.driver import GridLocateDriver

DEFAULT_EVAL_SPLIT = os.environ.get("EVAL_SPLIT", "dev")


def load_records(source: str, hf_split: str = "train") -> list[dict]:
    """Records from a local JSON/JSON Lines file or a named Hugging Face dataset."""
    if source.endswith((".json", ".jsonl")):
        dataset = load_dataset("json", data_files=source, split="train")
        return list(records_from_dataset(dataset))
    return list(records_from_dataset(source, split=hf_split))


def evaluate_with_options(source: str, eval_split: str = DEFAULT_EVAL_SPLIT, **overrides) -> dict:
    """
    Run one evaluation.

    Args:
        source: JSON Lines path or Hugging Face dataset name.
        eval_split: Split tag of the records to evaluate.
        **overrides: `GridLocateConfig` fields overriding the environment.

    Returns:
        Counters and results of the run. On error, returns error=1.0.
    """
    try:
        config = GridLocateConfig.from_env(**overrides)
        records = load_records(source)
        counters = ExperimentStats()
        driver = GridLocateDriver(config, counters=counters, eval_split=eval_split)
        evaluator = driver.run(records)
    except Exception as e:
        return {"error": 1.0, "error_message": str(e)}

    stats = evaluator.evalstats
    return {
        "error": 0.0,
        "grid": repr(driver.grid),
        "ranker": repr(driver.ranker),
        "documents_evaluated": evaluator.documents_processed,
        "documents_skipped": evaluator.documents_skipped,
        "instances": stats.total_instances,
        "results": counters.results,
        "counters": counters.as_dict(),
    }


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Evaluate document geolocation on a grid.")
    parser.add_argument("source", help="JSON Lines file or Hugging Face dataset name.")
    parser.add_argument("--eval-split", default=DEFAULT_EVAL_SPLIT, help="Split to evaluate (default: dev).")
    parser.add_argument("--grid-type", choices=GRID_TYPES, help="Grid type.")
    parser.add_argument("--ranker", choices=RANKERS, help="Ranking method.")
    parser.add_argument("--evaluator", choices=EVALUATORS, help="Evaluator type.")
    parser.add_argument("--rerank-top-n", type=int, help="Rerank this many top cells (0 = off).")
    parser.add_argument("--num-test-docs", type=int, help="Stop after this many documents (0 = all).")
    parser.add_argument("--num-workers", type=int, help="Evaluation threads.")
    parser.add_argument("--oracle", action="store_true", help="Always predict the correct cell.")
    parser.add_argument("--verbose", action="store_true", help="Log at INFO level.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    overrides = {
        "grid_type": args.grid_type,
        "ranker": args.ranker,
        "evaluator": args.evaluator,
        "rerank_top_n": args.rerank_top_n,
        "num_test_docs": args.num_test_docs,
        "num_workers": args.num_workers,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if args.oracle:
        overrides["oracle_results"] = True

    results = evaluate_with_options(args.source, eval_split=args.eval_split, **overrides)
    print(json.dumps(results, indent=2))
    if results["error"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
