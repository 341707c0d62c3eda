"""
Run configuration handed to the grid-location core.

Flags are parsed by an external driver; the core only sees this structure.
`GridLocateConfig.from_env()` mirrors how the evaluators read `EVAL_*`
variables, using a `GRIDLOCATE_` prefix.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields

from gridlocate.errors import InvariantViolation

GRID_TYPES = ("fixed", "kd")
SPLIT_METHODS = ("halfway", "median", "maxmargin")
SMOOTHING_METHODS = ("jelinek-mercer", "dirichlet", "pseudo-good-turing")
CENTER_METHODS = ("centroid", "center")
COORD_HANDLING = ("accept", "validate", "coerce", "coerce-warn")
RANKERS = (
    "kl-divergence",
    "smoothed-kl-divergence",
    "smoothed-partial-kl-divergence",
    "dirichlet-kl-divergence",
    "cosine-similarity",
    "partial-cosine-similarity",
    "smoothed-cosine-similarity",
    "smoothed-partial-cosine-similarity",
    "average-cell-probability",
)
EVALUATORS = ("ranked", "mean-shift")

ENV_PREFIX = "GRIDLOCATE_"


@dataclass
class GridLocateConfig:
    # Coordinates
    coord_handling: str = "validate"

    # Grid
    grid_type: str = "kd"
    degrees_per_cell: float = 1.0
    width_of_cell: int = 1
    center_method: str = "centroid"
    kd_bucket_size: int = 200
    kd_split_method: str = "halfway"
    kd_use_backoff: bool = False
    kd_interpolate_weight: float = 0.0
    kd_cutoff_bucket_size: int = 0
    subdivide_factor: int = 1

    # Language models
    smoothing: str = "pseudo-good-turing"
    jelinek_factor: float = 0.3
    dirichlet_factor: float = 500.0
    interpolate: bool = False
    tf_idf: bool = False
    normlm: bool = False
    min_word_count: int = 1
    lowercase: bool = True
    ignore_stopwords: bool = False
    grid_word_count_field: str = "unigram-counts"
    rerank_word_count_field: str = "unigram-counts"

    # Ranking
    ranker: str = "kl-divergence"
    rerank_top_n: int = 0
    rerank_ranker: str = "smoothed-kl-divergence"
    oracle_results: bool = False
    lru_cache_size: int = 400
    vectorized_scoring: bool = True

    # Evaluation
    evaluator: str = "ranked"
    skip_initial_test_docs: int = 0
    every_nth_test_doc: int = 1
    num_test_docs: int = 0
    max_time_per_stage: float = 0.0
    num_workers: int = 1
    k_best: int = 10
    mean_shift_window: float = 1.0
    mean_shift_max_stddev: float = 1e-10
    mean_shift_max_iterations: int = 100
    print_results: bool = False
    show_progress: bool = False

    def validate(self) -> None:
        """
        Raise `ValueError` for unknown choices or out-of-range values, and
        `InvariantViolation` for settings that cannot be combined.
        """
        choices = {
            "coord_handling": COORD_HANDLING,
            "grid_type": GRID_TYPES,
            "kd_split_method": SPLIT_METHODS,
            "smoothing": SMOOTHING_METHODS,
            "center_method": CENTER_METHODS,
            "ranker": RANKERS,
            "rerank_ranker": RANKERS,
            "evaluator": EVALUATORS,
        }
        for name, allowed in choices.items():
            value = getattr(self, name)
            if value not in allowed:
                raise ValueError(f"{name}={value!r}; expected one of {', '.join(allowed)}")
        if self.degrees_per_cell <= 0:
            raise ValueError("degrees_per_cell must be positive")
        if self.width_of_cell < 1:
            raise ValueError("width_of_cell must be at least 1")
        if self.kd_bucket_size < 1:
            raise ValueError("kd_bucket_size must be at least 1")
        if not 0.0 <= self.kd_interpolate_weight < 1.0:
            raise ValueError("kd_interpolate_weight must be in [0, 1)")
        if self.kd_cutoff_bucket_size and self.kd_cutoff_bucket_size <= self.kd_bucket_size:
            raise ValueError("kd_cutoff_bucket_size must exceed kd_bucket_size")
        if self.kd_use_backoff and self.kd_cutoff_bucket_size > 0:
            raise InvariantViolation(
                "kd_use_backoff cannot be combined with "
                f"kd_cutoff_bucket_size={self.kd_cutoff_bucket_size}"
            )
        if not 0.0 <= self.jelinek_factor <= 1.0:
            raise ValueError("jelinek_factor must be in [0, 1]")
        if self.dirichlet_factor <= 0:
            raise ValueError("dirichlet_factor must be positive")
        if self.every_nth_test_doc < 1:
            raise ValueError("every_nth_test_doc must be at least 1")
        if self.num_workers < 1:
            raise ValueError("num_workers must be at least 1")
        if self.rerank_top_n < 0:
            raise ValueError("rerank_top_n must be non-negative")

    @property
    def separate_rerank_lm(self) -> bool:
        return self.rerank_word_count_field != self.grid_word_count_field

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides) -> GridLocateConfig:
        """Build a config from `GRIDLOCATE_<FIELD>` variables plus keyword overrides."""
        environ = os.environ if environ is None else environ
        values: dict = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _parse_value(raw, type(getattr(cls, f.name)))
        values.update(overrides)
        config = cls(**values)
        config.validate()
        return config


def _parse_value(raw: str, kind: type):
    if kind is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if kind is int:
        return int(raw)
    if kind is float:
        return float(raw)
    return raw


__all__ = [
    "GridLocateConfig",
    "GRID_TYPES",
    "SPLIT_METHODS",
    "SMOOTHING_METHODS",
    "CENTER_METHODS",
    "RANKERS",
    "EVALUATORS",
]
