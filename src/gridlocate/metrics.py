import numpy as np

# Accuracy@161: fraction of predictions within 161 km (100 miles).
ACCURACY_DISTANCE_KM = 161.0


def mean_distance(dists: np.ndarray) -> float:
    """
    Computes the mean error distance.

    Args:
        dists: 1D array of error distances.

    Returns:
        Mean distance (0.0 for no distances).
    """
    dists = np.asarray(dists, dtype=np.float64)
    if dists.size == 0:
        return 0.0
    return float(np.mean(dists))


def median_distance(dists: np.ndarray) -> float:
    """
    Computes the median error distance.

    Args:
        dists: 1D array of error distances.

    Returns:
        Median distance (0.0 for no distances).
    """
    dists = np.asarray(dists, dtype=np.float64)
    if dists.size == 0:
        return 0.0
    return float(np.median(dists))


def accuracy_at_distance(dists: np.ndarray, threshold: float = ACCURACY_DISTANCE_KM) -> float:
    """
    Computes the fraction of error distances at most `threshold`.

    Args:
        dists: 1D array of error distances.
        threshold: Distance cutoff, in the same units as `dists`.

    Returns:
        Accuracy at the cutoff.
    """
    dists = np.asarray(dists, dtype=np.float64)
    if dists.size == 0:
        return 0.0
    return float(np.count_nonzero(dists <= threshold) / dists.size)


def reciprocal_rank(rank: int, max_rank: int | None = None) -> float:
    """
    Computes Reciprocal Rank (RR) of the correct cell.

    Args:
        rank: 1-based rank of the correct cell.
        max_rank: Ranks beyond this count as not retrieved.

    Returns:
        1 / rank, or 0.0 when the rank is past `max_rank`.
    """
    if rank < 1 or (max_rank is not None and rank > max_rank):
        return 0.0
    return 1.0 / rank


def mean_reciprocal_rank(ranks: list[int], max_rank: int | None = None) -> float:
    """
    Computes Mean Reciprocal Rank (MRR) over multiple documents.

    Args:
        ranks: 1-based ranks of the correct cell, one per document.
        max_rank: Ranks beyond this count as not retrieved.

    Returns:
        Mean reciprocal rank score.
    """
    if not ranks:
        return 0.0
    return float(np.mean([reciprocal_rank(r, max_rank) for r in ranks]))


def running_minimum(dists: np.ndarray) -> np.ndarray:
    """
    Best distance seen so far at each position of a ranking.

    Args:
        dists: 1D array of distances in rank order.

    Returns:
        Array whose i-th entry is the minimum of `dists[: i + 1]`.
    """
    dists = np.asarray(dists, dtype=np.float64)
    if dists.size == 0:
        return dists
    return np.minimum.accumulate(dists)
