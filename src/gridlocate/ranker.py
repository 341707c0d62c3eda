"""
Rankers: score the cells of a finalized grid against a document.

Every ranker returns (cell, score) pairs sorted best first; higher scores are
always better, so KL-divergences are negated. Cells with equal scores keep
the grid's enumeration order.

Usage:
    ranker = create_ranker_from_config(grid, config)
    ranked = ranker.evaluate(doc)
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from gridlocate.config import GridLocateConfig
from gridlocate.divergence import (
    CellScoreMatrix,
    KLDivergenceCache,
    fast_cosine_similarity,
    fast_dirichlet_kl_divergence,
    fast_kl_divergence,
    fast_smoothed_cosine_similarity,
    smoothed_kl_divergence,
    thread_local_cache,
)
from gridlocate.errors import DegenerateDistributionError, InvariantViolation

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from gridlocate.cell import GridCell
    from gridlocate.documents import GridDoc
    from gridlocate.grid import Grid
    from gridlocate.langmodel import LangModel

logger = logging.getLogger(__name__)

RankedCells = list[tuple["GridCell", float]]


class GridRanker:
    """Base ranker; subclasses implement `score_cells`."""

    def __init__(self, grid: Grid, name: str):
        self.grid = grid
        self.name = name
        self._cells: list[GridCell] | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    @property
    def cells(self) -> list[GridCell]:
        """The grid's non-empty cells, fetched once."""
        if self._cells is None:
            self._cells = self.grid.iter_nonempty_cells()
        return self._cells

    def score_cells(self, doc: GridDoc, cells: Sequence[GridCell]) -> NDArray[np.float64]:
        raise NotImplementedError

    def rank_cells(self, doc: GridDoc, cells: Sequence[GridCell]) -> RankedCells:
        scores = np.asarray(self.score_cells(doc, cells), dtype=np.float64)
        if np.isnan(scores).any():
            raise InvariantViolation(f"NaN score from {self!r} for document {doc!r}")
        order = np.argsort(-scores, kind="stable")
        return [(cells[i], float(scores[i])) for i in order]

    def evaluate(
        self,
        doc: GridDoc,
        correct_cell: GridCell | None = None,
        include_correct: bool = False,
    ) -> RankedCells:
        """
        Rank every non-empty cell.

        With `include_correct`, the correct cell is ranked as well even if it
        is not among the grid's non-empty cells.
        """
        cells = self.cells
        if include_correct and correct_cell is not None and correct_cell not in cells:
            cells = [*cells, correct_cell]
        return self.rank_cells(doc, cells)


# -----------------------------------------------------------------------------
# Language-model rankers
# -----------------------------------------------------------------------------

Scorer = Callable[["LangModel", "LangModel", KLDivergenceCache], float]


@dataclass(frozen=True)
class ScoringMethod:
    scorer: Scorer
    negate: bool
    # Name of the matching CellScoreMatrix method, if one exists.
    matrix_method: str | None = None
    matrix_kwargs: tuple = ()


def _partial(fn, partial: bool) -> Scorer:
    def scorer(self, other, cache):
        return fn(self, other, partial=partial, cache=cache)

    scorer.__name__ = f"{fn.__name__}_{'partial' if partial else 'full'}"
    return scorer


SCORING_METHODS: dict[str, ScoringMethod] = {
    "kl-divergence": ScoringMethod(
        _partial(fast_kl_divergence, True), negate=True, matrix_method="fast_kl_divergence"
    ),
    "dirichlet-kl-divergence": ScoringMethod(
        _partial(fast_dirichlet_kl_divergence, True),
        negate=True,
        matrix_method="fast_dirichlet_kl_divergence",
    ),
    "smoothed-kl-divergence": ScoringMethod(_partial(smoothed_kl_divergence, False), negate=True),
    "smoothed-partial-kl-divergence": ScoringMethod(
        _partial(smoothed_kl_divergence, True), negate=True
    ),
    "cosine-similarity": ScoringMethod(
        _partial(fast_cosine_similarity, False),
        negate=False,
        matrix_method="cosine_similarity",
        matrix_kwargs=(("partial", False),),
    ),
    "partial-cosine-similarity": ScoringMethod(
        _partial(fast_cosine_similarity, True),
        negate=False,
        matrix_method="cosine_similarity",
        matrix_kwargs=(("partial", True),),
    ),
    "smoothed-cosine-similarity": ScoringMethod(
        _partial(fast_smoothed_cosine_similarity, False), negate=False
    ),
    "smoothed-partial-cosine-similarity": ScoringMethod(
        _partial(fast_smoothed_cosine_similarity, True), negate=False
    ),
}


class LangModelRanker(GridRanker):
    """
    Compares the document's language model with each cell's.

    Args:
        grid: A finalized grid.
        name: Key of `SCORING_METHODS`.
        use_rerank_lm: Compare the rerank models instead of the grid models.
        vectorized: Score the full cell list through a `CellScoreMatrix`
            when the method has a vectorized form.
    """

    def __init__(self, grid: Grid, name: str, use_rerank_lm: bool = False, vectorized: bool = True):
        super().__init__(grid, name)
        if name not in SCORING_METHODS:
            raise ValueError(f"Unknown language-model ranker {name!r}")
        self.method = SCORING_METHODS[name]
        self.use_rerank_lm = use_rerank_lm
        self.vectorized = vectorized and self.method.matrix_method is not None
        self._matrix: CellScoreMatrix | None = None
        self._matrix_lock = threading.Lock()

    def _lm(self, holder) -> LangModel:
        return holder.rerank_lm if self.use_rerank_lm else holder.grid_lm

    def _score_matrix(self) -> CellScoreMatrix:
        with self._matrix_lock:
            if self._matrix is None:
                self._matrix = CellScoreMatrix([self._lm(cell) for cell in self.cells])
            return self._matrix

    def score_cell(self, doc: GridDoc, cell: GridCell) -> float:
        score = self.method.scorer(self._lm(doc), self._lm(cell), thread_local_cache())
        return -score if self.method.negate else score

    def score_cells(self, doc: GridDoc, cells: Sequence[GridCell]) -> NDArray[np.float64]:
        if self.vectorized and cells is self.cells:
            matrix = self._score_matrix()
            method = getattr(matrix, self.method.matrix_method)
            scores = method(self._lm(doc), cache=thread_local_cache(), **dict(self.method.matrix_kwargs))
            return -scores if self.method.negate else scores
        return np.array([self.score_cell(doc, cell) for cell in cells], dtype=np.float64)


# -----------------------------------------------------------------------------
# Average cell probability
# -----------------------------------------------------------------------------


class WordCellDistCache:
    """LRU cache of per-word distributions over cells."""

    def __init__(self, capacity: int = 400):
        self.capacity = capacity
        self.cache: OrderedDict[int, NDArray[np.float64]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self._lock = threading.Lock()

    def get(self, word: int) -> NDArray[np.float64] | None:
        with self._lock:
            dist = self.cache.get(word)
            if dist is None:
                self.misses += 1
                return None
            self.cache.move_to_end(word)
            self.hits += 1
            return dist

    def put(self, word: int, dist: NDArray[np.float64]) -> None:
        with self._lock:
            if word in self.cache:
                self.cache.move_to_end(word)
            elif len(self.cache) >= self.capacity:
                self.cache.popitem(last=False)
            self.cache[word] = dist


class AverageCellProbabilityRanker(GridRanker):
    """
    Scores a cell by its probability under the count-weighted average of
    the document's per-word cell distributions. A word's cell distribution
    is its relative frequency in each cell, normalized over cells.
    """

    def __init__(self, grid: Grid, name: str = "average-cell-probability", lru_cache_size: int = 400):
        super().__init__(grid, name)
        self.word_dists = WordCellDistCache(lru_cache_size)

    def get_word_cell_dist(self, word: int) -> NDArray[np.float64]:
        dist = self.word_dists.get(word)
        if dist is None:
            dist = np.array([cell.grid_lm.lookup_word(word) for cell in self.cells], dtype=np.float64)
            total = dist.sum()
            if total != 0:
                dist /= total
            self.word_dists.put(word, dist)
        return dist

    def get_cell_dist_for_lang_model(self, lm: LangModel) -> NDArray[np.float64]:
        cellprobs = np.zeros(len(self.cells), dtype=np.float64)
        for word, count in lm.iter_grams():
            cellprobs += count * self.get_word_cell_dist(word)
        total = cellprobs.sum()
        if not total > 0:
            raise DegenerateDistributionError(
                f"No cell probability mass for a document with {lm.num_types} word types"
            )
        return cellprobs / total

    def score_cells(self, doc: GridDoc, cells: Sequence[GridCell]) -> NDArray[np.float64]:
        probs = self.get_cell_dist_for_lang_model(doc.grid_lm)
        index = {id(cell): i for i, cell in enumerate(self.cells)}
        return np.array(
            [probs[index[id(cell)]] if id(cell) in index else 0.0 for cell in cells],
            dtype=np.float64,
        )


# -----------------------------------------------------------------------------
# Reranking
# -----------------------------------------------------------------------------


class Reranker(GridRanker):
    """
    Ranks with `initial`, then rescores the top `top_n` cells with `rerank`.

    The rescored cells come first, followed by the rest of the initial
    ranking in its original order and with its original scores.
    """

    def __init__(self, initial: GridRanker, rerank: GridRanker, top_n: int):
        super().__init__(initial.grid, f"{initial.name}+{rerank.name}")
        if top_n < 1:
            raise ValueError("top_n must be at least 1")
        self.initial_ranker = initial
        self.rerank_ranker = rerank
        self.top_n = top_n

    def evaluate_with_initial_ranking(
        self,
        doc: GridDoc,
        correct_cell: GridCell | None = None,
        include_correct: bool = False,
    ) -> tuple[RankedCells, RankedCells]:
        initial = self.initial_ranker.evaluate(doc, correct_cell, include_correct)
        subset = [cell for cell, _ in initial[: self.top_n]]
        if include_correct and correct_cell is not None and correct_cell not in subset:
            subset.append(correct_cell)
        reranked = self.rerank_ranker.rank_cells(doc, subset)
        chosen = {id(cell) for cell in subset}
        rest = [(cell, score) for cell, score in initial if id(cell) not in chosen]
        return initial, reranked + rest

    def evaluate(
        self,
        doc: GridDoc,
        correct_cell: GridCell | None = None,
        include_correct: bool = False,
    ) -> RankedCells:
        return self.evaluate_with_initial_ranking(doc, correct_cell, include_correct)[1]

    def score_cells(self, doc: GridDoc, cells: Sequence[GridCell]) -> NDArray[np.float64]:
        return self.rerank_ranker.score_cells(doc, cells)


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------


def create_ranker(
    name: str,
    grid: Grid,
    config: GridLocateConfig | None = None,
    use_rerank_lm: bool = False,
) -> GridRanker:
    config = config or grid.config
    if name == "average-cell-probability":
        return AverageCellProbabilityRanker(grid, name, lru_cache_size=config.lru_cache_size)
    return LangModelRanker(grid, name, use_rerank_lm=use_rerank_lm, vectorized=config.vectorized_scoring)


def create_ranker_from_config(grid: Grid, config: GridLocateConfig | None = None) -> GridRanker:
    config = config or grid.config
    ranker = create_ranker(config.ranker, grid, config)
    if config.rerank_top_n > 0:
        rerank = create_ranker(config.rerank_ranker, grid, config, use_rerank_lm=True)
        ranker = Reranker(ranker, rerank, config.rerank_top_n)
    logger.info("Using ranker %r", ranker)
    return ranker


# Rank reported when the correct cell is absent from a ranking.
CORRECT_RANK_NOT_FOUND = 1_000_000_000

__all__ = [
    "GridRanker",
    "LangModelRanker",
    "AverageCellProbabilityRanker",
    "WordCellDistCache",
    "Reranker",
    "SCORING_METHODS",
    "create_ranker",
    "create_ranker_from_config",
    "CORRECT_RANK_NOT_FOUND",
]
