"""
Fast divergence and similarity between language models.

P (`self`) is the query document's model and Q (`other`) a candidate cell's
model. A query is compared against thousands of cells before the next query
comes along, so P's grams and counts are flattened into numpy arrays once and
kept in a single-slot `KLDivergenceCache`; only lookups into Q remain per
call. The cache is a pure speed-up: every function builds the same arrays
when called without one, so results are identical either way.

Functions:
1. fast_kl_divergence - P as raw relative frequencies, Q add-constant smoothed
2. fast_dirichlet_kl_divergence - Q mixed with the global distribution
3. smoothed_kl_divergence - both sides through `LangModel.gram_prob`
4. fast_cosine_similarity / fast_smoothed_cosine_similarity

`CellScoreMatrix` scores one query against every cell at once with a scipy
CSR matrix of cell counts.

Usage:
    from gridlocate.divergence import fast_kl_divergence, thread_local_cache

    score = fast_kl_divergence(doc_lm, cell_lm, cache=thread_local_cache())
"""

from __future__ import annotations

import math
import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING

import numpy as np
from scipy.sparse import csr_matrix

from gridlocate.errors import DegenerateDistributionError, InvariantViolation

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from gridlocate.langmodel import LangModel


# =============================================================================
# Configuration
# =============================================================================

# Add-constant smoothing of Q in fast_kl_divergence.
ALPHA_SMOOTHED = 0.01

# Weight of Q's own estimate in fast_dirichlet_kl_divergence.
DIRICHLET_SMOOTHING_PARAMETER = 0.999

# Global probability used for grams never seen anywhere, when the global
# statistics do not provide one.
UNSEEN_WORD_PROB_FLOOR = 1e-10


# =============================================================================
# Flat-array cache
# =============================================================================


class KLDivergenceCache:
    """
    Flattened grams and counts of the most recently used P.

    Not thread-safe: each worker thread owns one (see `thread_local_cache`).
    """

    def __init__(self):
        self._lang_model: LangModel | None = None
        self._size = 0
        self.keys: NDArray[np.int64] = np.empty(0, dtype=np.int64)
        self.values: NDArray[np.float64] = np.empty(0, dtype=np.float64)
        self.hits = 0
        self.misses = 0

    def arrays_for(self, lm: LangModel) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
        if lm is self._lang_model:
            if len(lm.counts) != self._size:
                raise InvariantViolation(
                    f"Cached model changed size from {self._size} to {len(lm.counts)}"
                )
            self.hits += 1
            return self.keys, self.values
        self.keys, self.values = flatten_counts(lm)
        self._lang_model = lm
        self._size = len(lm.counts)
        self.misses += 1
        return self.keys, self.values

    def clear(self) -> None:
        self._lang_model = None
        self._size = 0
        self.keys = np.empty(0, dtype=np.int64)
        self.values = np.empty(0, dtype=np.float64)


_thread_caches = threading.local()


def thread_local_cache() -> KLDivergenceCache:
    """The calling thread's cache, created on first use."""
    cache = getattr(_thread_caches, "cache", None)
    if cache is None:
        cache = KLDivergenceCache()
        _thread_caches.cache = cache
    return cache


def flatten_counts(lm: LangModel) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
    size = len(lm.counts)
    keys = np.fromiter(lm.counts.keys(), dtype=np.int64, count=size)
    values = np.fromiter(lm.counts.values(), dtype=np.float64, count=size)
    return keys, values


def _p_arrays(
    lm: LangModel, cache: KLDivergenceCache | None
) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
    if cache is None:
        return flatten_counts(lm)
    return cache.arrays_for(lm)


def _lookup(mapping, keys: NDArray[np.int64]) -> NDArray[np.float64]:
    """Values of `mapping` at `keys`, 0.0 for absent keys."""
    return np.fromiter(
        (mapping.get(k, 0.0) for k in keys.tolist()), dtype=np.float64, count=len(keys)
    )


def _kl_terms(p: NDArray[np.float64], q: NDArray[np.float64]) -> float:
    """Sum of p * (log p - log q) over entries where both are positive."""
    mask = (p > 0) & (q > 0)
    if not mask.any():
        return 0.0
    pm, qm = p[mask], q[mask]
    return float(np.sum(pm * (np.log(pm) - np.log(qm))))


def _check_query(lm: LangModel) -> None:
    if not lm.num_tokens > 0:
        raise DegenerateDistributionError(
            f"Query language model has no tokens ({lm.num_tokens}); "
            f"divergence is undefined"
        )


# =============================================================================
# KL-divergence
# =============================================================================


def fast_kl_divergence(
    self: LangModel,
    other: LangModel,
    partial: bool = True,
    cache: KLDivergenceCache | None = None,
) -> float:
    """
    KL(P || Q) with P as raw relative frequencies and Q add-constant smoothed.

        p(w) = count_P(w) / |P|
        q(w) = (count_Q(w) + alpha / V^2) / (|Q| + alpha / V)

    where V = |types(P)| + |types(Q)| - |types(P) & types(Q)|. Terms with
    p(w) = 0 vanish, so the sum over P's grams is already exact and
    `partial` does not change the result.

    Raises:
        DegenerateDistributionError: If P has no tokens or V is zero.
    """
    _check_query(self)
    keys, pvalues = _p_arrays(self, cache)
    qcounts = _lookup(other.counts, keys)
    num_common = int(np.count_nonzero(qcounts))
    vocab_size = len(keys) + len(other.counts) - num_common
    if vocab_size <= 0:
        raise DegenerateDistributionError("Empty joint vocabulary in fast_kl_divergence")
    inv_vocab_size = 1.0 / vocab_size
    p = pvalues / self.num_tokens
    q = (qcounts + ALPHA_SMOOTHED * inv_vocab_size * inv_vocab_size) / (
        other.num_tokens + ALPHA_SMOOTHED * inv_vocab_size
    )
    return _kl_terms(p, q)


def _backoff_owprobs(lm: LangModel, keys: NDArray[np.int64]) -> NDArray[np.float64]:
    stats = lm.factory.global_stats
    owprobs = _lookup(stats.overall_word_probs, keys)
    unseen_prob = stats.globally_unseen_word_prob or UNSEEN_WORD_PROB_FLOOR
    owprobs[owprobs == 0.0] = unseen_prob
    return owprobs


def fast_dirichlet_kl_divergence(
    self: LangModel,
    other: LangModel,
    partial: bool = True,
    cache: KLDivergenceCache | None = None,
) -> float:
    """
    KL(P || Q) with Q mixed with the global distribution:

        q(w) = count_Q(w) * 0.999 / |Q| + owprob(w) * 0.001

    Like `fast_kl_divergence`, exact over P's grams regardless of `partial`.
    """
    _check_query(self)
    keys, pvalues = _p_arrays(self, cache)
    qcounts = _lookup(other.counts, keys)
    owprobs = _backoff_owprobs(self, keys)
    p = pvalues / self.num_tokens
    q = owprobs * (1.0 - DIRICHLET_SMOOTHING_PARAMETER)
    if other.num_tokens > 0:
        q = q + qcounts * DIRICHLET_SMOOTHING_PARAMETER / other.num_tokens
    return _kl_terms(p, q)


def smoothed_kl_divergence(
    self: LangModel,
    other: LangModel,
    partial: bool = True,
    cache: KLDivergenceCache | None = None,
) -> float:
    """
    KL(P || Q) over the smoothed distributions of both models.

    1. Grams of P.
    2. Unless `partial`: grams of Q absent from P.
    3. Unless `partial`: all grams seen globally but in neither model, in
       closed form. For such a gram p = u_P * owprob / m_P and
       q = u_Q * owprob / m_Q (m being the overall unseen mass, 1.0 under
       interpolation), so the terms sum to

           u_P / m_P * [(log u_P - log m_P) - (log u_Q - log m_Q)] * S

       where S is the global probability of the grams in neither model.

    Grams with zero probability under Q (never seen anywhere) are skipped.
    """
    _check_query(self)
    keys, _ = _p_arrays(self, cache)
    owprobs = self.factory.overall_word_probs
    p_owprobs = _lookup(owprobs, keys)
    p = self.gram_probs(keys)
    q = other.probs_from_arrays(_lookup(other.counts, keys), p_owprobs)
    kldiv = _kl_terms(p, q)
    if partial:
        return kldiv

    pcounts = self.counts
    diff_keys = np.fromiter(
        (g for g in other.counts if g not in pcounts), dtype=np.int64
    )
    diff_owprobs = _lookup(owprobs, diff_keys)
    q_diff = other.probs_from_arrays(_lookup(other.counts, diff_keys), diff_owprobs)
    p_diff = self.probs_from_arrays(np.zeros(len(diff_keys)), diff_owprobs)
    kldiv += _kl_terms(p_diff, q_diff)

    kldiv += _closed_form_neither(
        self, other, float(np.sum(p_owprobs)) + float(np.sum(diff_owprobs))
    )
    return kldiv


def _closed_form_neither(self: LangModel, other: LangModel, owprob_sum_either: float) -> float:
    the_sum = 1.0 - owprob_sum_either
    u_p, m_p = self.unseen_mass, self.overall_unseen_mass
    u_q, m_q = other.unseen_mass, other.overall_unseen_mass
    if the_sum <= 0 or u_p <= 0 or m_p <= 0:
        return 0.0
    if u_q <= 0 or m_q <= 0:
        return math.inf
    factor1 = (math.log(u_p) - math.log(m_p)) - (math.log(u_q) - math.log(m_q))
    factor2 = u_p / m_p * factor1
    return factor2 * the_sum


def exhaustive_kl_divergence(self: LangModel, other: LangModel) -> float:
    """KL(P || Q) summed gram by gram over the full global vocabulary."""
    vocab = set(self.factory.overall_word_probs)
    vocab.update(self.counts)
    vocab.update(other.counts)
    kldiv = 0.0
    for gram in vocab:
        p = self.gram_prob(gram)
        q = other.gram_prob(gram)
        if p > 0 and q > 0:
            kldiv += p * (math.log(p) - math.log(q))
    return kldiv


# =============================================================================
# Cosine similarity
# =============================================================================


def _cosine(pqsum: float, p2sum: float, q2sum: float) -> float:
    if pqsum == 0.0 or p2sum <= 0 or q2sum <= 0:
        return 0.0
    return pqsum / (math.sqrt(p2sum) * math.sqrt(q2sum))


def fast_cosine_similarity(
    self: LangModel,
    other: LangModel,
    partial: bool = True,
    cache: KLDivergenceCache | None = None,
) -> float:
    """
    Cosine similarity of the raw relative-frequency vectors.

    With `partial`, Q's norm only covers grams of P.
    """
    _check_query(self)
    if not other.num_tokens > 0:
        return 0.0
    keys, pvalues = _p_arrays(self, cache)
    p = pvalues / self.num_tokens
    q = _lookup(other.counts, keys) / other.num_tokens
    pqsum = float(np.dot(p, q))
    p2sum = float(np.dot(p, p))
    if partial:
        q2sum = float(np.dot(q, q))
    else:
        qall = np.fromiter(other.counts.values(), dtype=np.float64) / other.num_tokens
        q2sum = float(np.dot(qall, qall))
    return _cosine(pqsum, p2sum, q2sum)


def fast_smoothed_cosine_similarity(
    self: LangModel,
    other: LangModel,
    partial: bool = True,
    cache: KLDivergenceCache | None = None,
) -> float:
    """
    Cosine similarity using discounted counts for seen grams and the
    renormalized global distribution for grams unseen in a model. Grams in
    neither model are always ignored; with `partial` grams only in Q are too.
    """
    _check_query(self)
    keys, pvalues = _p_arrays(self, cache)
    owprobs = self.factory.overall_word_probs
    pfact = (1.0 - self.unseen_mass) / self.normalization_factor
    qfact = (1.0 - other.unseen_mass) / other.normalization_factor
    qfact_unseen = (
        other.unseen_mass / other.overall_unseen_mass if other.overall_unseen_mass > 0 else 0.0
    )
    qcounts = _lookup(other.counts, keys)
    p = pvalues * pfact
    q = np.where(qcounts != 0, qcounts * qfact, _lookup(owprobs, keys) * qfact_unseen)
    pqsum = float(np.dot(p, q))
    p2sum = float(np.dot(p, p))
    q2sum = float(np.dot(q, q))
    if not partial:
        pfact_unseen = (
            self.unseen_mass / self.overall_unseen_mass if self.overall_unseen_mass > 0 else 0.0
        )
        pcounts = self.counts
        diff = [(g, c) for g, c in other.counts.items() if g not in pcounts]
        if diff:
            diff_keys = np.array([g for g, _ in diff], dtype=np.int64)
            p2 = _lookup(owprobs, diff_keys) * pfact_unseen
            q2 = np.array([c for _, c in diff], dtype=np.float64) * qfact
            pqsum += float(np.dot(p2, q2))
            p2sum += float(np.dot(p2, p2))
            q2sum += float(np.dot(q2, q2))
    return _cosine(pqsum, p2sum, q2sum)


# =============================================================================
# Scoring against all cells at once
# =============================================================================


class CellScoreMatrix:
    """
    Counts of many models in one CSR matrix (rows = models, columns = gram ids).

    Scores a query against every row with vectorized numpy operations;
    results match the per-model functions above.
    """

    def __init__(self, lang_models: Sequence[LangModel]):
        self.lang_models = list(lang_models)
        rows: list[int] = []
        cols: list[int] = []
        data: list[float] = []
        for row, lm in enumerate(self.lang_models):
            for gram, count in lm.iter_grams():
                rows.append(row)
                cols.append(gram)
                data.append(count)
        self.num_rows = len(self.lang_models)
        self.vocab_size = max(cols) + 1 if cols else 0
        self.counts = csr_matrix(
            (
                np.array(data, dtype=np.float64),
                (np.array(rows, dtype=np.int64), np.array(cols, dtype=np.int64)),
            ),
            shape=(self.num_rows, self.vocab_size),
        )
        self.num_tokens = np.array([lm.num_tokens for lm in self.lang_models], dtype=np.float64)
        self.num_types = np.array([len(lm.counts) for lm in self.lang_models], dtype=np.float64)
        sq = self.counts.multiply(self.counts).sum(axis=1)
        self.sq_norms = np.asarray(sq, dtype=np.float64).ravel()

    def __len__(self) -> int:
        return self.num_rows

    def _query_counts(self, keys: NDArray[np.int64]) -> NDArray[np.float64]:
        """Dense (num_rows, len(keys)) block of counts, zero for unknown grams."""
        block = np.zeros((self.num_rows, len(keys)), dtype=np.float64)
        in_vocab = keys < self.vocab_size
        if in_vocab.any():
            block[:, in_vocab] = self.counts[:, keys[in_vocab]].toarray()
        return block

    def fast_kl_divergence(
        self, lm: LangModel, cache: KLDivergenceCache | None = None
    ) -> NDArray[np.float64]:
        _check_query(lm)
        keys, pvalues = _p_arrays(lm, cache)
        qcounts = self._query_counts(keys)
        num_common = np.count_nonzero(qcounts, axis=1)
        vocab_sizes = len(keys) + self.num_types - num_common
        if np.any(vocab_sizes <= 0):
            raise DegenerateDistributionError("Empty joint vocabulary in fast_kl_divergence")
        inv = 1.0 / vocab_sizes
        q = (qcounts + (ALPHA_SMOOTHED * inv * inv)[:, np.newaxis]) / (
            self.num_tokens + ALPHA_SMOOTHED * inv
        )[:, np.newaxis]
        p = pvalues / lm.num_tokens
        mask = p > 0
        pm = p[mask]
        return np.sum(pm * (np.log(pm) - np.log(q[:, mask])), axis=1)

    def fast_dirichlet_kl_divergence(
        self, lm: LangModel, cache: KLDivergenceCache | None = None
    ) -> NDArray[np.float64]:
        _check_query(lm)
        keys, pvalues = _p_arrays(lm, cache)
        qcounts = self._query_counts(keys)
        owprobs = _backoff_owprobs(lm, keys)
        safe_tokens = np.where(self.num_tokens > 0, self.num_tokens, 1.0)
        q = (
            qcounts * DIRICHLET_SMOOTHING_PARAMETER / safe_tokens[:, np.newaxis]
            + owprobs * (1.0 - DIRICHLET_SMOOTHING_PARAMETER)
        )
        p = pvalues / lm.num_tokens
        mask = p > 0
        pm = p[mask]
        return np.sum(pm * (np.log(pm) - np.log(q[:, mask])), axis=1)

    def cosine_similarity(
        self, lm: LangModel, partial: bool = True, cache: KLDivergenceCache | None = None
    ) -> NDArray[np.float64]:
        _check_query(lm)
        keys, pvalues = _p_arrays(lm, cache)
        qcounts = self._query_counts(keys)
        safe_tokens = np.where(self.num_tokens > 0, self.num_tokens, 1.0)
        p = pvalues / lm.num_tokens
        q = qcounts / safe_tokens[:, np.newaxis]
        pqsum = q @ p
        p2sum = float(np.dot(p, p))
        if partial:
            q2sum = np.sum(q * q, axis=1)
        else:
            q2sum = self.sq_norms / (safe_tokens * safe_tokens)
        denom = np.sqrt(p2sum) * np.sqrt(q2sum)
        scores = np.zeros(self.num_rows, dtype=np.float64)
        valid = (pqsum != 0.0) & (denom > 0)
        scores[valid] = pqsum[valid] / denom[valid]
        return scores


__all__ = [
    "KLDivergenceCache",
    "thread_local_cache",
    "flatten_counts",
    "fast_kl_divergence",
    "fast_dirichlet_kl_divergence",
    "smoothed_kl_divergence",
    "exhaustive_kl_divergence",
    "fast_cosine_similarity",
    "fast_smoothed_cosine_similarity",
    "CellScoreMatrix",
    "ALPHA_SMOOTHED",
    "DIRICHLET_SMOOTHING_PARAMETER",
]
