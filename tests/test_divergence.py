import math
import threading

import numpy as np
import pytest

from gridlocate.divergence import (
    CellScoreMatrix,
    KLDivergenceCache,
    exhaustive_kl_divergence,
    fast_cosine_similarity,
    fast_dirichlet_kl_divergence,
    fast_kl_divergence,
    fast_smoothed_cosine_similarity,
    smoothed_kl_divergence,
    thread_local_cache,
)
from gridlocate.errors import DegenerateDistributionError, InvariantViolation
from gridlocate.langmodel import LangModelFactory
from gridlocate.memoizer import Memoizer
from gridlocate.smoothing import DirichletSmoothing, JelinekMercerSmoothing, PseudoGoodTuringSmoothing

CELLS = [
    {"the": 10, "beach": 6, "sun": 4, "surf": 2},
    {"the": 8, "snow": 5, "ski": 3, "lodge": 1},
    {"the": 3, "city": 7, "subway": 4, "beach": 1},
    {"desert": 5, "sand": 3, "sun": 2},
]


def build(smoothing, cells=CELLS, queries=()):
    factory = LangModelFactory(smoothing=smoothing, memoizer=Memoizer())
    lms = []
    for counts in cells:
        lm = factory.create_lang_model()
        for word, count in counts.items():
            lm.add_gram(word, count)
        lm.finish_before_global()
        factory.note_lang_model_globally(lm)
        lms.append(lm)
    qlms = []
    for counts in queries:
        lm = factory.create_lang_model()
        for word, count in counts.items():
            lm.add_gram(word, count)
        lm.finish_before_global()
        qlms.append(lm)
    factory.finish_global_backoff_stats()
    for lm in lms + qlms:
        lm.finish_after_global()
    return lms, qlms


QUERY = {"beach": 2, "sun": 1, "the": 3, "surfboard": 1}


def test_identical_documents_kl_zero_and_cosine_one():
    (a, b), _ = build(JelinekMercerSmoothing(factor=0.0), cells=[{"the": 5, "cat": 3}, {"the": 5, "cat": 3}])
    assert smoothed_kl_divergence(a, b, partial=False) == pytest.approx(0.0, abs=1e-12)
    assert fast_kl_divergence(a, b) == pytest.approx(0.0, abs=1e-3)
    assert fast_cosine_similarity(a, b, partial=False) == pytest.approx(1.0)
    assert fast_cosine_similarity(a, b, partial=True) == pytest.approx(1.0)


def test_cosine_is_symmetric():
    lms, _ = build(PseudoGoodTuringSmoothing())
    for a in lms:
        for b in lms:
            assert fast_cosine_similarity(a, b, partial=False) == pytest.approx(
                fast_cosine_similarity(b, a, partial=False)
            )


@pytest.mark.parametrize(
    "fn",
    [
        fast_kl_divergence,
        fast_dirichlet_kl_divergence,
        smoothed_kl_divergence,
        fast_cosine_similarity,
        fast_smoothed_cosine_similarity,
    ],
)
def test_cache_is_transparent(fn):
    lms, (query,) = build(JelinekMercerSmoothing(), queries=[QUERY])
    cold = [fn(query, cell) for cell in lms]
    cache = KLDivergenceCache()
    warm = [fn(query, cell, cache=cache) for cell in lms]
    assert warm == cold
    assert cache.misses == 1
    assert cache.hits == len(lms) - 1


def test_cache_detects_size_change():
    factory = LangModelFactory(memoizer=Memoizer())
    lm = factory.create_lang_model()
    lm.add_gram("a")
    cache = KLDivergenceCache()
    cache.arrays_for(lm)
    lm.add_gram("b")
    with pytest.raises(InvariantViolation):
        cache.arrays_for(lm)


def test_thread_local_cache_per_thread():
    caches = []

    def grab():
        caches.append(thread_local_cache())

    threads = [threading.Thread(target=grab) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert caches[0] is not caches[1]
    assert thread_local_cache() is thread_local_cache()


@pytest.mark.parametrize(
    "smoothing",
    [
        JelinekMercerSmoothing(factor=0.3),
        JelinekMercerSmoothing(interpolate=True, factor=0.3),
        DirichletSmoothing(mu=20.0),
        PseudoGoodTuringSmoothing(),
    ],
)
def test_full_smoothed_kl_matches_exhaustive_sum(smoothing):
    lms, (query,) = build(smoothing, queries=[QUERY])
    for p in lms + [query]:
        for q in lms:
            assert smoothed_kl_divergence(p, q, partial=False) == pytest.approx(
                exhaustive_kl_divergence(p, q), rel=1e-9, abs=1e-12
            )


def test_partial_smoothed_kl_is_a_subset_of_terms():
    lms, (query,) = build(JelinekMercerSmoothing(), queries=[QUERY])
    for q in lms:
        full = smoothed_kl_divergence(query, q, partial=False)
        partial = smoothed_kl_divergence(query, q, partial=True)
        assert math.isfinite(partial) and math.isfinite(full)
        assert partial != full


def test_fast_kl_ignores_partial_flag():
    lms, (query,) = build(JelinekMercerSmoothing(), queries=[QUERY])
    for q in lms:
        assert fast_kl_divergence(query, q, partial=True) == fast_kl_divergence(query, q, partial=False)


def test_query_of_unseen_words_is_finite():
    lms, (query,) = build(JelinekMercerSmoothing(), queries=[{"xylophone": 2, "quokka": 1}])
    for cell in lms:
        for fn in (fast_kl_divergence, fast_dirichlet_kl_divergence):
            score = fn(query, cell)
            assert math.isfinite(score)
        full = smoothed_kl_divergence(query, cell, partial=False)
        assert not math.isnan(full)
        assert math.isfinite(full)
        assert fast_cosine_similarity(query, cell) == 0.0


def test_empty_query_is_degenerate():
    lms, (query,) = build(JelinekMercerSmoothing(), queries=[{}])
    with pytest.raises(DegenerateDistributionError):
        fast_kl_divergence(query, lms[0])
    with pytest.raises(DegenerateDistributionError):
        fast_cosine_similarity(query, lms[0])
    for partial in (True, False):
        with pytest.raises(DegenerateDistributionError):
            smoothed_kl_divergence(query, lms[0], partial=partial)
        with pytest.raises(DegenerateDistributionError):
            fast_smoothed_cosine_similarity(query, lms[0], partial=partial)


def test_closer_cell_scores_better():
    lms, (query,) = build(JelinekMercerSmoothing(), queries=[QUERY])
    kls = [fast_kl_divergence(query, cell) for cell in lms]
    cosines = [fast_cosine_similarity(query, cell) for cell in lms]
    assert int(np.argmin(kls)) == 0
    assert int(np.argmax(cosines)) == 0


def test_smoothed_cosine_in_range():
    lms, (query,) = build(DirichletSmoothing(mu=5.0), queries=[QUERY])
    for cell in lms:
        for partial in (True, False):
            assert 0.0 <= fast_smoothed_cosine_similarity(query, cell, partial=partial) <= 1.0 + 1e-12


def test_cell_score_matrix_matches_per_cell_functions():
    lms, (query,) = build(JelinekMercerSmoothing(), queries=[QUERY])
    matrix = CellScoreMatrix(lms)
    assert len(matrix) == len(lms)
    np.testing.assert_allclose(
        matrix.fast_kl_divergence(query), [fast_kl_divergence(query, c) for c in lms], rtol=1e-9
    )
    np.testing.assert_allclose(
        matrix.fast_dirichlet_kl_divergence(query),
        [fast_dirichlet_kl_divergence(query, c) for c in lms],
        rtol=1e-9,
    )
    for partial in (True, False):
        np.testing.assert_allclose(
            matrix.cosine_similarity(query, partial=partial),
            [fast_cosine_similarity(query, c, partial=partial) for c in lms],
            rtol=1e-9,
            atol=1e-12,
        )
