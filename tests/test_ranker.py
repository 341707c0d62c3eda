import numpy as np
import pytest

from conftest import make_record, make_test_docs
from gridlocate.config import RANKERS, GridLocateConfig
from gridlocate.coords import SphereCoord
from gridlocate.errors import DegenerateDistributionError, InvariantViolation
from gridlocate.ranker import (
    SCORING_METHODS,
    AverageCellProbabilityRanker,
    GridRanker,
    LangModelRanker,
    Reranker,
    WordCellDistCache,
    create_ranker,
    create_ranker_from_config,
)


def query_for(grid, i, split="dev", **extra):
    counts = {f"place{i}": 2, f"thing{i}": 1, **extra}
    (doc,) = make_test_docs(grid, [make_record(f"q{i}", "", counts, split=split)])
    return doc


def cell_of(grid, docs, i):
    return grid.find_best_cell_for_coord(docs[i].coord)


@pytest.mark.parametrize("name", RANKERS)
def test_matching_cell_ranks_first(separated_fixed_grid, name):
    grid, docs = separated_fixed_grid
    ranker = create_ranker(name, grid)
    # Every cell backs off to the same place:thing ratio its own counts have, so
    # the shared word is what separates the matching cell under smoothed cosine.
    for i in (0, 3, 9):
        ranked = ranker.evaluate(query_for(grid, i, common=1))
        assert len(ranked) == len(docs)
        assert ranked[0][0] is cell_of(grid, docs, i)
        scores = [score for _, score in ranked]
        assert scores == sorted(scores, reverse=True)


@pytest.mark.parametrize("name", [n for n, m in SCORING_METHODS.items() if m.matrix_method])
def test_vectorized_scores_match_per_cell(separated_fixed_grid, name):
    grid, _ = separated_fixed_grid
    doc = query_for(grid, 4)
    fast = LangModelRanker(grid, name, vectorized=True)
    slow = LangModelRanker(grid, name, vectorized=False)
    assert fast.vectorized and not slow.vectorized
    np.testing.assert_allclose(
        fast.score_cells(doc, fast.cells), slow.score_cells(doc, slow.cells), rtol=1e-9, atol=1e-12
    )


def test_kl_scores_are_negated(separated_fixed_grid):
    grid, _ = separated_fixed_grid
    ranked = create_ranker("kl-divergence", grid).evaluate(query_for(grid, 2))
    assert all(score <= 1e-12 for _, score in ranked)


class ConstantRanker(GridRanker):
    def __init__(self, grid, value):
        super().__init__(grid, "constant")
        self.value = value

    def score_cells(self, doc, cells):
        return np.full(len(cells), self.value)


def test_ties_keep_grid_order(separated_fixed_grid):
    grid, _ = separated_fixed_grid
    ranker = ConstantRanker(grid, 1.0)
    ranked = ranker.evaluate(query_for(grid, 1))
    assert [cell for cell, _ in ranked] == grid.iter_nonempty_cells()


def test_nan_score_is_an_invariant_violation(separated_fixed_grid):
    grid, _ = separated_fixed_grid
    with pytest.raises(InvariantViolation):
        ConstantRanker(grid, float("nan")).evaluate(query_for(grid, 1))


def test_unknown_ranker_name(separated_fixed_grid):
    grid, _ = separated_fixed_grid
    with pytest.raises(ValueError):
        LangModelRanker(grid, "bm25")


def test_average_cell_probability(separated_fixed_grid):
    grid, docs = separated_fixed_grid
    ranker = AverageCellProbabilityRanker(grid, lru_cache_size=2)
    doc = query_for(grid, 5)
    probs = ranker.get_cell_dist_for_lang_model(doc.grid_lm)
    assert probs.sum() == pytest.approx(1.0)
    ranked = ranker.evaluate(doc)
    assert ranked[0][0] is cell_of(grid, docs, 5)
    # place5 and thing5 occur only in their own cell.
    assert ranked[0][1] == pytest.approx(1.0)
    assert len(ranker.word_dists.cache) <= 2


def test_average_cell_probability_unknown_words(separated_fixed_grid):
    grid, _ = separated_fixed_grid
    (doc,) = make_test_docs(grid, [make_record("q", "", {"unheard": 1}, split="dev")])
    with pytest.raises(DegenerateDistributionError):
        AverageCellProbabilityRanker(grid).evaluate(doc)


def test_include_correct_adds_empty_cell(separated_fixed_grid):
    grid, docs = separated_fixed_grid
    empty = grid.find_best_cell_for_coord(SphereCoord(0.5, 0.5), create_non_recorded=True)
    ranker = AverageCellProbabilityRanker(grid)
    ranked = ranker.evaluate(query_for(grid, 0), empty, include_correct=True)
    assert len(ranked) == len(docs) + 1
    assert any(cell is empty for cell, _ in ranked)
    assert len(ranker.evaluate(query_for(grid, 0), empty)) == len(docs)


def test_word_cell_dist_cache_evicts_least_recent():
    cache = WordCellDistCache(capacity=2)
    cache.put(1, np.zeros(1))
    cache.put(2, np.zeros(1))
    assert cache.get(1) is not None
    cache.put(3, np.zeros(1))
    assert cache.get(2) is None
    assert cache.get(1) is not None and cache.get(3) is not None
    assert cache.hits == 3 and cache.misses == 1


def test_reranker_reorders_only_top_cells(separated_fixed_grid):
    grid, docs = separated_fixed_grid
    initial = ConstantRanker(grid, 0.0)
    rerank = create_ranker("cosine-similarity", grid)
    reranker = Reranker(initial, rerank, top_n=5)
    doc = query_for(grid, 3)
    first, final = reranker.evaluate_with_initial_ranking(doc)
    cells = grid.iter_nonempty_cells()
    assert [cell for cell, _ in first] == cells
    assert final[0][0] is cell_of(grid, docs, 3)
    assert {id(cell) for cell, _ in final[:5]} == {id(cell) for cell in cells[:5]}
    assert final[5:] == first[5:]


def test_reranker_includes_correct_cell(separated_fixed_grid):
    grid, docs = separated_fixed_grid
    reranker = Reranker(ConstantRanker(grid, 0.0), create_ranker("cosine-similarity", grid), top_n=2)
    correct = cell_of(grid, docs, 8)
    _, final = reranker.evaluate_with_initial_ranking(query_for(grid, 8), correct, include_correct=True)
    assert final[0][0] is correct
    assert len(final) == len(docs)


def test_reranker_rejects_zero_top_n(separated_fixed_grid):
    grid, _ = separated_fixed_grid
    ranker = create_ranker("kl-divergence", grid)
    with pytest.raises(ValueError):
        Reranker(ranker, ranker, top_n=0)


def test_create_ranker_from_config(separated_fixed_grid):
    grid, _ = separated_fixed_grid
    plain = create_ranker_from_config(grid, GridLocateConfig(ranker="partial-cosine-similarity"))
    assert isinstance(plain, LangModelRanker)
    reranking = create_ranker_from_config(
        grid, GridLocateConfig(rerank_top_n=3, rerank_ranker="smoothed-kl-divergence")
    )
    assert isinstance(reranking, Reranker)
    assert reranking.rerank_ranker.use_rerank_lm
    assert reranking.top_n == 3
