"""
Mean-shift mode seeking over candidate coordinates.

Every point is shifted towards the Gaussian-weighted mean of the original
points until the shifts stop spreading or the iteration limit is reached.
The shifted points collapse onto the densest region, so their mean is a
better point estimate than the mean of the raw candidates.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

import numpy as np

from gridlocate.coords import coord_to_point, point_to_coord

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class MeanShift:
    """
    Args:
        window: Kernel bandwidth, in coordinate units (degrees for sphere
            coordinates).
        max_stddev: Stop once the standard deviation of the per-point
            movement in an iteration falls below this.
        max_iterations: Hard limit on iterations.
    """

    def __init__(self, window: float = 1.0, max_stddev: float = 1e-10, max_iterations: int = 100):
        if window <= 0:
            raise ValueError("window must be positive")
        self.window = window
        self.max_stddev = max_stddev
        self.max_iterations = max_iterations

    def shift(self, points: NDArray[np.float64], anchors: NDArray[np.float64]) -> NDArray[np.float64]:
        """One step: move each point to the kernel-weighted mean of the anchors."""
        diffs = points[:, np.newaxis, :] - anchors[np.newaxis, :, :]
        sq_dists = np.sum(diffs * diffs, axis=2)
        weights = np.exp(-sq_dists / (2.0 * self.window * self.window))
        totals = weights.sum(axis=1, keepdims=True)
        # Points far from every anchor have no weight and stay put.
        stuck = totals[:, 0] == 0
        totals[stuck] = 1.0
        shifted = weights @ anchors / totals
        shifted[stuck] = points[stuck]
        return shifted

    def mean_shift(self, points: Sequence) -> NDArray[np.float64]:
        """Shift every point to convergence; returns the shifted points as rows."""
        anchors = np.asarray(points, dtype=np.float64)
        if anchors.ndim == 1:
            anchors = anchors[:, np.newaxis]
        current = anchors.copy()
        for iteration in range(self.max_iterations):
            shifted = self.shift(current, anchors)
            movement = np.sqrt(np.sum((shifted - current) ** 2, axis=1))
            current = shifted
            if movement.std() < self.max_stddev:
                logger.debug("Mean shift converged after %d iterations", iteration + 1)
                break
        return current

    def vec_mean(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.asarray(points, dtype=np.float64).mean(axis=0)

    def find_mode(self, coords: Sequence):
        """Mean of the shifted coordinates, as a coordinate."""
        if not coords:
            raise ValueError("No coordinates to shift")
        points = [coord_to_point(coord) for coord in coords]
        return point_to_coord(self.vec_mean(self.mean_shift(points)))


__all__ = ["MeanShift"]
