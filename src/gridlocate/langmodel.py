"""
Discounted unigram language models.

Each document and each grid cell carries a `LangModel`: a table of gram
counts (grams are memoized integer ids) plus the smoothing parameters that
turn the counts into a probability distribution over the whole vocabulary.

Lifecycle of a model:

1. Accumulating: `add_gram` / `add_document` / `add_language_model`.
2. `finish_before_global()`: infrequent grams are dropped.
3. The factory folds models into global statistics with
   `note_lang_model_globally()` and freezes them once with
   `finish_global_backoff_stats()`.
4. `finish_after_global()`: unseen mass, overall unseen mass and the
   normalization factor are computed exactly once.

After step 4 only `gram_prob` and the comparison functions in
`gridlocate.divergence` are used, except for `blend_with`, which k-d-tree
interpolation applies top-down to finished cell models.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING
from urllib.parse import unquote

import numpy as np

from gridlocate.config import GridLocateConfig
from gridlocate.errors import (
    DegenerateDistributionError,
    InvariantViolation,
    LangModelCreationError,
)
from gridlocate.memoizer import Memoizer, default_memoizer
from gridlocate.smoothing import (
    PseudoGoodTuringSmoothing,
    SmoothingStrategy,
    smoothing_from_config,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

Gram = int

# Tolerance for floating-point drift above 1.0 in probabilities.
PROB_TOLERANCE = 1e-9

# -----------------------------------------------------------------------------
# Tokenization
# -----------------------------------------------------------------------------

ENGLISH_STOPWORDS: frozenset[str] = frozenset([
    "a", "an", "and", "are", "as", "at", "be", "been", "but", "by", "can",
    "do", "for", "from", "had", "has", "have", "he", "her", "him", "his",
    "how", "i", "if", "in", "into", "is", "it", "its", "me", "my", "no",
    "not", "of", "on", "or", "our", "out", "s", "she", "so", "some", "such",
    "t", "than", "that", "the", "their", "them", "then", "there", "these",
    "they", "this", "to", "too", "us", "very", "was", "we", "were", "what",
    "when", "where", "which", "who", "will", "with", "would", "you", "your",
])

_TOKEN_PATTERN = re.compile(r"\w+")


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens."""
    return _TOKEN_PATTERN.findall(text.lower())


# -----------------------------------------------------------------------------
# Global statistics
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class GlobalStats:
    """
    Frozen corpus-wide statistics.

    `overall_word_probs` is the probability of each gram across all noted
    documents (optionally TF-IDF weighted); it is the back-off distribution.
    """

    overall_word_probs: Mapping[Gram, float]
    document_freq: Mapping[Gram, float]
    num_documents: int
    global_normalization_factor: float
    total_num_word_types: int
    total_num_word_tokens: float
    globally_unseen_word_prob: float = 0.0


class GlobalStatsAccumulator:
    """Mutable counts collected during the bootstrapping pass."""

    def __init__(self):
        self.word_counts: dict[Gram, float] = {}
        self.document_freq: dict[Gram, float] = {}
        self.num_documents = 0
        self.total_num_word_tokens = 0.0
        self._lock = threading.Lock()

    def note(self, lm: LangModel) -> None:
        with self._lock:
            for gram, count in lm.iter_grams():
                self.word_counts[gram] = self.word_counts.get(gram, 0.0) + count
                self.total_num_word_tokens += count
                self.document_freq[gram] = self.document_freq.get(gram, 0.0) + 1
            self.num_documents += 1

    def freeze(self, tf_idf: bool) -> GlobalStats:
        """Convert the counts to probabilities and return the snapshot."""
        with self._lock:
            if tf_idf:
                weighted = {
                    gram: count * math.log(self.num_documents / self.document_freq[gram])
                    for gram, count in self.word_counts.items()
                }
            else:
                weighted = dict(self.word_counts)
            normalization = sum(weighted.values())
            if weighted and not normalization > 0:
                raise DegenerateDistributionError(
                    f"Global normalization factor is {normalization} over "
                    f"{len(weighted)} word types and {self.num_documents} documents"
                )
            probs = {gram: value / normalization for gram, value in weighted.items()}
            return GlobalStats(
                overall_word_probs=MappingProxyType(probs),
                document_freq=MappingProxyType(dict(self.document_freq)),
                num_documents=self.num_documents,
                global_normalization_factor=normalization,
                total_num_word_types=len(self.word_counts),
                total_num_word_tokens=self.total_num_word_tokens,
            )


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------


class LangModelFactory:
    """
    Creates language models and owns the global back-off statistics.

    Args:
        smoothing: Smoothing strategy shared by every model of this factory.
        tf_idf: Weight global and per-model counts by inverse document frequency.
        normlm: L2-normalize per-model counts after finishing.
        min_word_count: Grams with a smaller count are dropped by
            `finish_before_global`.
        memoizer: Token/id table; defaults to the process-wide one.
        lowercase: Lowercase tokens when building models from text fields.
        stopwords: Tokens skipped when building models from text fields.
    """

    def __init__(
        self,
        smoothing: SmoothingStrategy | None = None,
        tf_idf: bool = False,
        normlm: bool = False,
        min_word_count: int = 1,
        memoizer: Memoizer | None = None,
        lowercase: bool = True,
        stopwords: frozenset[str] = frozenset(),
    ):
        self.smoothing = smoothing or PseudoGoodTuringSmoothing()
        self.tf_idf = tf_idf
        self.normlm = normlm
        self.min_word_count = min_word_count
        self.memoizer = memoizer or default_memoizer()
        self.lowercase = lowercase
        self.stopwords = stopwords
        self._accumulator: GlobalStatsAccumulator | None = GlobalStatsAccumulator()
        self._global_stats: GlobalStats | None = None

    @classmethod
    def from_config(cls, config: GridLocateConfig) -> LangModelFactory:
        return cls(
            smoothing=smoothing_from_config(config),
            tf_idf=config.tf_idf,
            normlm=config.normlm,
            min_word_count=config.min_word_count,
            lowercase=config.lowercase,
            stopwords=ENGLISH_STOPWORDS if config.ignore_stopwords else frozenset(),
        )

    @property
    def interpolate(self) -> bool:
        return self.smoothing.interpolate

    @property
    def owp_adjusted(self) -> bool:
        """Whether global statistics have been frozen."""
        return self._global_stats is not None

    @property
    def global_stats(self) -> GlobalStats:
        if self._global_stats is None:
            raise InvariantViolation("Global back-off statistics have not been finished")
        return self._global_stats

    @property
    def overall_word_probs(self) -> Mapping[Gram, float]:
        return self.global_stats.overall_word_probs

    def create_lang_model(self) -> LangModel:
        return LangModel(self)

    def note_lang_model_globally(self, lm: LangModel) -> None:
        if self._accumulator is None:
            raise InvariantViolation(
                "note_lang_model_globally() called after global statistics were frozen"
            )
        self._accumulator.note(lm)

    def finish_global_backoff_stats(self) -> None:
        if self._accumulator is None:
            raise InvariantViolation("finish_global_backoff_stats() called twice")
        stats = self._accumulator.freeze(self.tf_idf)
        self._accumulator = None
        self._global_stats = stats
        logger.info(
            "Global back-off stats: %d documents, %d word types, %.0f word tokens",
            stats.num_documents,
            stats.total_num_word_types,
            stats.total_num_word_tokens,
        )

    def gram_to_string(self, gram: Gram) -> str:
        return self.memoizer.unmemoize(gram)

    # ----- builders -----

    def create_lang_model_from_tokens(self, tokens: Iterable[str]) -> LangModel:
        lm = self.create_lang_model()
        lm.add_document(tokens)
        return lm

    def create_lang_model_from_counts(
        self, counts_field: str, importance: float = 1.0
    ) -> LangModel:
        """
        Build a model from a count field such as "the:5 cat:3".

        Words and counts are %-escaped so they can hold ':' and spaces.

        Raises:
            LangModelCreationError: On an entry without a count or with a
                count that is not a non-negative number.
        """
        lm = self.create_lang_model()
        for gram, count in parse_count_field(counts_field):
            if self.lowercase:
                gram = gram.lower()
            if gram in self.stopwords:
                continue
            lm.add_gram(gram, count * importance)
        return lm


def parse_count_field(counts_field: str) -> Iterator[tuple[str, float]]:
    for entry in counts_field.split():
        word, sep, count_text = entry.rpartition(":")
        if not sep or not word:
            raise LangModelCreationError(f"Missing count in entry {entry!r}")
        try:
            count = float(unquote(count_text))
        except ValueError as e:
            raise LangModelCreationError(f"Bad count in entry {entry!r}: {e}") from e
        if not count >= 0 or math.isinf(count):
            raise LangModelCreationError(f"Bad count in entry {entry!r}")
        yield unquote(word), count


# -----------------------------------------------------------------------------
# Language model
# -----------------------------------------------------------------------------


class LangModel:
    """A discounted unigram language model tied to a `LangModelFactory`."""

    def __init__(self, factory: LangModelFactory):
        self.factory = factory
        self.counts: dict[Gram, float] = {}
        self.num_tokens = 0.0
        self.finished_before_global = False
        self.finished = False
        # Total probability mass reserved for grams unseen in this model.
        self.unseen_mass = 0.5
        # 1 - sum of overall_word_probs over the grams of this model.
        self.overall_unseen_mass = 1.0
        self.normalization_factor = 0.0

    def __repr__(self) -> str:
        return (
            f"LangModel({self.num_types} types, {self.num_tokens:g} tokens, "
            f"{self.unseen_mass:.2f} unseen mass)"
        )

    def __len__(self) -> int:
        return len(self.counts)

    def __contains__(self, gram: Gram) -> bool:
        return gram in self.counts

    @property
    def num_types(self) -> int:
        return len(self.counts)

    def contains(self, gram: Gram) -> bool:
        return gram in self.counts

    def get_gram(self, gram: Gram) -> float:
        return self.counts.get(gram, 0.0)

    def iter_grams(self) -> Iterator[tuple[Gram, float]]:
        return iter(self.counts.items())

    def gram_to_string(self, gram: Gram) -> str:
        return self.factory.gram_to_string(gram)

    def _to_gram(self, word: Gram | str) -> Gram:
        if isinstance(word, str):
            return self.factory.memoizer.memoize(word)
        return word

    # ----- accumulation -----

    def _check_mutable(self, operation: str) -> None:
        if self.finished_before_global:
            raise InvariantViolation(f"{operation}() called on a finished language model {self!r}")

    def add_gram(self, word: Gram | str, count: float = 1.0) -> None:
        self._check_mutable("add_gram")
        if not count >= 0:
            raise InvariantViolation(f"Negative or NaN count {count} for gram {word!r}")
        gram = self._to_gram(word)
        self.counts[gram] = self.counts.get(gram, 0.0) + count
        self.num_tokens += count

    def add_document(self, tokens: Iterable[str]) -> None:
        self._check_mutable("add_document")
        lowercase, stopwords = self.factory.lowercase, self.factory.stopwords
        for token in tokens:
            if lowercase:
                token = token.lower()
            if token in stopwords:
                continue
            self.add_gram(token)

    def add_language_model(self, other: LangModel, partial: float = 1.0) -> None:
        """Add `partial` times the counts of `other` into this model."""
        self._check_mutable("add_language_model")
        for gram, count in other.iter_grams():
            self.counts[gram] = self.counts.get(gram, 0.0) + partial * count
        self.num_tokens += partial * other.num_tokens

    # ----- finishing -----

    def finish_before_global(self) -> None:
        if self.finished_before_global:
            raise InvariantViolation(f"finish_before_global() called twice on {self!r}")
        min_count = self.factory.min_word_count
        dropped = [
            gram for gram, count in self.counts.items() if count <= 0 or count < min_count
        ]
        for gram in dropped:
            self.num_tokens -= self.counts.pop(gram)
        self.finished_before_global = True

    def finish_after_global(self) -> None:
        if self.finished:
            raise InvariantViolation(f"finish_after_global() called twice on {self!r}")
        if not self.finished_before_global:
            raise InvariantViolation(
                f"finish_after_global() called before finish_before_global() on {self!r}"
            )
        stats = self.factory.global_stats
        # Unseen mass is estimated from the raw counts, before any reweighting.
        self.unseen_mass = self.factory.smoothing.unseen_mass(
            self.num_tokens, self.counts.values()
        )
        if self.factory.tf_idf:
            for gram, count in self.counts.items():
                idf = math.log(stats.num_documents / (stats.document_freq.get(gram, 0.0) + 1))
                # Unseen or ubiquitous grams would get a zero or negative weight.
                if idf <= 0:
                    idf = 0.0001
                self.counts[gram] = count * idf
        if self.factory.normlm:
            sumsq = sum(count * count for count in self.counts.values())
            if sumsq > 0:
                scale = 1.0 / math.sqrt(sumsq)
                for gram in self.counts:
                    self.counts[gram] *= scale
        self._compute_normalization()
        self.finished = True

    def _compute_normalization(self) -> None:
        owprobs = self.factory.global_stats.overall_word_probs
        self.num_tokens = sum(self.counts.values())
        if self.factory.interpolate:
            self.overall_unseen_mass = 1.0
        else:
            self.overall_unseen_mass = 1.0 - sum(
                owprobs.get(gram, 0.0) for gram in self.counts
            )
        self.normalization_factor = self.num_tokens
        if self.normalization_factor == 0:
            self.normalization_factor = 1.0

    def blend_with(self, parent: LangModel, weight: float) -> None:
        """
        Shrink own counts toward `parent`.

        Every own count is scaled by (1 - weight) and weight * parent count is
        added for each gram of the parent; a blended value that does not
        exceed `weight` is left out. Smoothing parameters are recomputed.
        """
        if not 0.0 <= weight < 1.0:
            raise InvariantViolation(f"Blend weight {weight} outside [0, 1)")
        for gram in self.counts:
            self.counts[gram] *= 1.0 - weight
        for gram, count in parent.iter_grams():
            newv = self.counts.get(gram, 0.0) + weight * count
            if newv > weight:
                self.counts[gram] = newv
        self.num_tokens = sum(self.counts.values())
        if self.finished:
            self.unseen_mass = self.factory.smoothing.unseen_mass(
                self.num_tokens, self.counts.values()
            )
            self._compute_normalization()

    # ----- probabilities -----

    def gram_prob(self, word: Gram | str) -> float:
        """
        Smoothed probability of `word`, in [0, 1].

        Raises:
            InvariantViolation: If the model is not finished or the computed
                value is NaN or outside [0, 1].
        """
        if not self.finished:
            raise InvariantViolation(f"gram_prob() called on unfinished model {self!r}")
        if isinstance(word, str):
            gram = self.factory.memoizer.lookup(word)
        else:
            gram = word
        count = self.counts.get(gram, 0.0) if gram is not None else 0.0
        owprob = self.factory.overall_word_probs.get(gram, 0.0) if gram is not None else 0.0
        seen = count > 0
        mle = count / self.normalization_factor
        if self.factory.interpolate:
            backoff = owprob
        elif seen or owprob == 0.0 or self.overall_unseen_mass <= 0:
            backoff = 0.0
        else:
            backoff = owprob / self.overall_unseen_mass
        prob = float(self.factory.smoothing.combine(mle, backoff, self.unseen_mass, seen))
        # Written so that NaN fails the check.
        if not (0.0 <= prob <= 1.0 + PROB_TOLERANCE):
            raise InvariantViolation(
                f"Bad probability {prob} for gram {word!r}: count={count}, "
                f"owprob={owprob}, normalization_factor={self.normalization_factor}, "
                f"unseen_mass={self.unseen_mass}, "
                f"overall_unseen_mass={self.overall_unseen_mass}"
            )
        return min(prob, 1.0)

    def gram_probs(self, grams: NDArray[np.int64]) -> NDArray[np.float64]:
        """Vectorized `gram_prob` over an array of gram ids."""
        gram_list = grams.tolist()
        owprobs = self.factory.overall_word_probs
        counts = np.fromiter(
            (self.counts.get(g, 0.0) for g in gram_list), dtype=np.float64, count=len(gram_list)
        )
        backoff = np.fromiter(
            (owprobs.get(g, 0.0) for g in gram_list), dtype=np.float64, count=len(gram_list)
        )
        return self.probs_from_arrays(counts, backoff)

    def probs_from_arrays(
        self, counts: NDArray[np.float64], owprobs: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        """Smoothed probabilities given aligned count and global-probability arrays."""
        seen = counts > 0
        mle = counts / self.normalization_factor
        if self.factory.interpolate:
            backoff = owprobs
        elif self.overall_unseen_mass > 0:
            backoff = np.where(seen, 0.0, owprobs / self.overall_unseen_mass)
        else:
            backoff = np.zeros_like(owprobs)
        return self.factory.smoothing.combine(mle, backoff, self.unseen_mass, seen)

    def lookup_word(self, word: Gram | str) -> float:
        """Unsmoothed relative frequency of `word`."""
        gram = self.factory.memoizer.lookup(word) if isinstance(word, str) else word
        if gram is None or self.num_tokens == 0:
            return 0.0
        return self.counts.get(gram, 0.0) / self.num_tokens

    def get_most_contributing_grams(
        self, doc_lm: LangModel, others: Iterable[LangModel] = ()
    ) -> list[tuple[Gram, float]]:
        """
        Grams of `doc_lm` ranked by how much they favour this model.

        The contribution of a gram is its document count times the log ratio
        of its probability here to its mean probability in `others` (or to
        its global probability when `others` is empty).
        """
        others = list(others)
        owprobs = self.factory.overall_word_probs
        contributions = []
        for gram, count in doc_lm.iter_grams():
            p = self.gram_prob(gram)
            if others:
                q = sum(other.gram_prob(gram) for other in others) / len(others)
            else:
                q = owprobs.get(gram, 0.0)
            if p <= 0 or q <= 0:
                continue
            contributions.append((gram, count * (math.log(p) - math.log(q))))
        contributions.sort(key=lambda item: item[1], reverse=True)
        return contributions

    # ----- comparison shortcuts -----

    def kl_divergence(self, other: LangModel, partial: bool = True) -> float:
        from gridlocate.divergence import smoothed_kl_divergence

        return smoothed_kl_divergence(self, other, partial=partial)

    def cosine_similarity(
        self, other: LangModel, partial: bool = True, smoothed: bool = False
    ) -> float:
        from gridlocate.divergence import (
            fast_cosine_similarity,
            fast_smoothed_cosine_similarity,
        )

        if smoothed:
            return fast_smoothed_cosine_similarity(self, other, partial=partial)
        return fast_cosine_similarity(self, other, partial=partial)


# -----------------------------------------------------------------------------
# Per-document pair of models
# -----------------------------------------------------------------------------


class DocLangModel:
    """
    The language models of one document or cell.

    `grid_lm` is used for grid placement and ranking; `rerank_lm` for
    reranking. When both roles share configuration they are the same object.
    """

    def __init__(self, grid_lm: LangModel, rerank_lm: LangModel | None = None):
        self.grid_lm = grid_lm
        self.rerank_lm = grid_lm if rerank_lm is None else rerank_lm

    def __iter__(self) -> Iterator[LangModel]:
        if self.rerank_lm is self.grid_lm:
            return iter((self.grid_lm,))
        return iter((self.grid_lm, self.rerank_lm))

    def __len__(self) -> int:
        return 1 if self.rerank_lm is self.grid_lm else 2

    @property
    def finished(self) -> bool:
        return all(lm.finished for lm in self)

    def add_language_model(self, other: DocLangModel, partial: float = 1.0) -> None:
        if len(self) != len(other):
            raise InvariantViolation(
                f"Mismatched model counts: {len(self)} vs {len(other)}"
            )
        for mine, theirs in zip(self, other):
            mine.add_language_model(theirs, partial)

    def add_gram(self, gram: Gram | str, count: float = 1.0) -> None:
        for lm in self:
            lm.add_gram(gram, count)

    def finish_before_global(self) -> None:
        for lm in self:
            lm.finish_before_global()

    def finish_after_global(self) -> None:
        for lm in self:
            lm.finish_after_global()

    def blend_with(self, parent: DocLangModel, weight: float) -> None:
        for mine, theirs in zip(self, parent):
            mine.blend_with(theirs, weight)


class DocLangModelFactory:
    """The factories behind a `DocLangModel`; shared when both roles coincide."""

    def __init__(
        self,
        grid_factory: LangModelFactory,
        rerank_factory: LangModelFactory | None = None,
    ):
        self.grid_lang_model_factory = grid_factory
        self.rerank_lang_model_factory = grid_factory if rerank_factory is None else rerank_factory

    @classmethod
    def from_config(cls, config: GridLocateConfig) -> DocLangModelFactory:
        grid_factory = LangModelFactory.from_config(config)
        if not config.separate_rerank_lm:
            return cls(grid_factory)
        return cls(grid_factory, LangModelFactory.from_config(config))

    def __iter__(self) -> Iterator[LangModelFactory]:
        if self.rerank_lang_model_factory is self.grid_lang_model_factory:
            return iter((self.grid_lang_model_factory,))
        return iter((self.grid_lang_model_factory, self.rerank_lang_model_factory))

    def create_lang_model(self) -> DocLangModel:
        grid_lm = self.grid_lang_model_factory.create_lang_model()
        if self.rerank_lang_model_factory is self.grid_lang_model_factory:
            return DocLangModel(grid_lm)
        return DocLangModel(grid_lm, self.rerank_lang_model_factory.create_lang_model())

    def note_lang_model_globally(self, lang_model: DocLangModel) -> None:
        for factory, lm in zip(self, lang_model):
            factory.note_lang_model_globally(lm)

    def finish_global_backoff_stats(self) -> None:
        for factory in self:
            factory.finish_global_backoff_stats()


__all__ = [
    "Gram",
    "GlobalStats",
    "GlobalStatsAccumulator",
    "LangModelFactory",
    "LangModel",
    "DocLangModel",
    "DocLangModelFactory",
    "ENGLISH_STOPWORDS",
    "tokenize",
    "parse_count_field",
]
