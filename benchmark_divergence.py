"""
Benchmark divergence scoring of one query against every cell.

Compares:
- direct: per-cell fast_kl_divergence, query counts flattened on every call
- cached: per-cell fast_kl_divergence with a warm KLDivergenceCache
- matrix: CellScoreMatrix scoring all cells at once

Cells and queries are synthetic Zipfian word-count samples.

Usage:
    uv run python benchmark_divergence.py
    uv run python benchmark_divergence.py --num-cells 2000 --num-queries 50
"""

import argparse
import time

import numpy as np
from tqdm import tqdm

from gridlocate.divergence import CellScoreMatrix, KLDivergenceCache, fast_kl_divergence
from gridlocate.langmodel import LangModelFactory
from gridlocate.memoizer import Memoizer


def make_lang_models(
    factory: LangModelFactory, rng: np.random.Generator, num: int, vocab_size: int, tokens: int
):
    lms = []
    for _ in range(num):
        words = rng.zipf(1.3, size=tokens) % vocab_size
        lm = factory.create_lang_model()
        ids, counts = np.unique(words, return_counts=True)
        for word, count in zip(ids.tolist(), counts.tolist()):
            lm.add_gram(f"w{word}", float(count))
        lm.finish_before_global()
        lms.append(lm)
    return lms


def benchmark_method(cells, queries, method: str, num_runs: int = 3) -> tuple[float, float, list]:
    """
    Benchmark a scoring method.

    Returns:
        (mean_time, std_time, scores per query)
    """
    times = []
    results = None
    matrix = CellScoreMatrix(cells) if method == "matrix" else None
    for _ in range(num_runs):
        cache = KLDivergenceCache()
        start = time.perf_counter()
        if method == "matrix":
            results = [matrix.fast_kl_divergence(q, cache=cache) for q in queries]
        else:
            results = [
                np.array(
                    [
                        fast_kl_divergence(q, cell, cache=cache if method == "cached" else None)
                        for cell in cells
                    ]
                )
                for q in queries
            ]
        times.append(time.perf_counter() - start)
    return float(np.mean(times)), float(np.std(times)), results


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark divergence scoring.")
    parser.add_argument("--num-cells", type=int, default=500)
    parser.add_argument("--num-queries", type=int, default=20)
    parser.add_argument("--vocab-size", type=int, default=20000)
    parser.add_argument("--cell-tokens", type=int, default=5000)
    parser.add_argument("--query-tokens", type=int, default=200)
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    rng = np.random.default_rng(args.seed)
    factory = LangModelFactory(memoizer=Memoizer())
    cells = make_lang_models(factory, rng, args.num_cells, args.vocab_size, args.cell_tokens)
    queries = make_lang_models(factory, rng, args.num_queries, args.vocab_size, args.query_tokens)
    for lm in tqdm(cells, desc="Noting cells globally"):
        factory.note_lang_model_globally(lm)
    factory.finish_global_backoff_stats()
    for lm in cells + queries:
        lm.finish_after_global()

    baseline = None
    print(f"{'method':<8} {'mean (s)':>10} {'std (s)':>10} {'speedup':>8}")
    for method in ("direct", "cached", "matrix"):
        mean, std, results = benchmark_method(cells, queries, method)
        if baseline is None:
            baseline_time, baseline = mean, results
        same = all(np.allclose(a, b, rtol=1e-9, atol=1e-12) for a, b in zip(baseline, results))
        flag = "" if same else "  MISMATCH"
        print(f"{method:<8} {mean:>10.4f} {std:>10.4f} {baseline_time / mean:>7.1f}x{flag}")


if __name__ == "__main__":
    main()
