"""
Smoothing strategies for discounted unigram language models.

A strategy decides how much probability mass to take away from a model's
maximum-likelihood estimate (the "unseen mass") and how to combine the
discounted estimate with the global back-off distribution:

1. Jelinek-Mercer uses a constant unseen mass.
2. Dirichlet uses a mass that shrinks as the document gets longer:
   mu / (num_tokens + mu).
3. Pseudo Good-Turing uses the empirical probability of having seen a gram
   exactly once.

Combination is either interpolation, where every word mixes both
distributions,

    p(w) = mle(w) * (1 - unseen_mass) + owprob(w) * unseen_mass

or back-off, where the global distribution is only consulted for words
absent from the model,

    p(w) = mle(w) * (1 - unseen_mass)                          if w seen
    p(w) = unseen_mass * owprob(w) / overall_unseen_mass       otherwise

Words never seen anywhere get probability zero under back-off.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import numpy as np

from gridlocate.config import GridLocateConfig


@dataclass(frozen=True)
class SmoothingStrategy:
    """Base strategy. Subclasses provide `unseen_mass`."""

    interpolate: bool = False

    name = "base"

    def unseen_mass(self, num_tokens: float, counts: Iterable[float]) -> float:
        raise NotImplementedError

    def combine(self, mle_prob, backoff_prob, unseen_mass: float, seen):
        """
        Combine a model's MLE estimate with its back-off estimate.

        Args:
            mle_prob: count / normalization factor (0 for unseen words).
            backoff_prob: global probability, already divided by the model's
                overall unseen mass in back-off mode.
            unseen_mass: mass reserved for words unseen in the model.
            seen: whether the word occurs in the model.

        All arguments except `unseen_mass` may also be numpy arrays of equal
        shape, in which case an array is returned.
        """
        if self.interpolate:
            return mle_prob * (1.0 - unseen_mass) + backoff_prob * unseen_mass
        return np.where(seen, mle_prob * (1.0 - unseen_mass), unseen_mass * backoff_prob)


@dataclass(frozen=True)
class JelinekMercerSmoothing(SmoothingStrategy):
    factor: float = 0.3

    name = "jelinek-mercer"

    def unseen_mass(self, num_tokens: float, counts: Iterable[float]) -> float:
        # An empty model has nothing of its own to discount.
        if num_tokens <= 0:
            return 1.0
        return self.factor


@dataclass(frozen=True)
class DirichletSmoothing(SmoothingStrategy):
    mu: float = 500.0

    name = "dirichlet"

    def unseen_mass(self, num_tokens: float, counts: Iterable[float]) -> float:
        return self.mu / (num_tokens + self.mu)


@dataclass(frozen=True)
class PseudoGoodTuringSmoothing(SmoothingStrategy):
    min_unseen_mass: float = 0.01
    max_unseen_mass: float = 0.5

    name = "pseudo-good-turing"

    def unseen_mass(self, num_tokens: float, counts: Iterable[float]) -> float:
        if num_tokens <= 0:
            return 1.0
        seen_once = sum(1 for count in counts if count == 1)
        mass = seen_once / num_tokens
        return min(max(mass, self.min_unseen_mass), self.max_unseen_mass)


def smoothing_from_config(config: GridLocateConfig) -> SmoothingStrategy:
    if config.smoothing == "jelinek-mercer":
        return JelinekMercerSmoothing(interpolate=config.interpolate, factor=config.jelinek_factor)
    if config.smoothing == "dirichlet":
        return DirichletSmoothing(interpolate=config.interpolate, mu=config.dirichlet_factor)
    if config.smoothing == "pseudo-good-turing":
        return PseudoGoodTuringSmoothing(interpolate=config.interpolate)
    raise ValueError(f"Unknown smoothing method {config.smoothing!r}")


__all__ = [
    "SmoothingStrategy",
    "JelinekMercerSmoothing",
    "DirichletSmoothing",
    "PseudoGoodTuringSmoothing",
    "smoothing_from_config",
]
