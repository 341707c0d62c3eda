"""
Grid cells.

A cell aggregates the language models of the training documents assigned to
it. It is populated while its grid is building, finished exactly once when
the grid is finalized, and read-only afterwards.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from gridlocate.coords import coord_to_point, point_to_coord
from gridlocate.errors import InvariantViolation

if TYPE_CHECKING:
    from gridlocate.documents import GridDoc
    from gridlocate.grid import Grid
    from gridlocate.kdtree import KdNode


class GridCell:
    def __init__(self, grid: Grid):
        self.grid = grid
        self.lang_model = grid.docfact.lang_model_factory.create_lang_model()
        self.num_docs = 0
        self.finished = False
        self._point_sum: np.ndarray | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.format_location()}, {self.num_docs} docs)"

    @property
    def grid_lm(self):
        return self.lang_model.grid_lm

    @property
    def rerank_lm(self):
        return self.lang_model.rerank_lm

    def add_document(self, doc: GridDoc) -> None:
        if self.finished:
            raise InvariantViolation(f"add_document() called on finished cell {self!r}")
        self.lang_model.add_language_model(doc.lang_model)
        self.num_docs += 1
        point = np.asarray(coord_to_point(doc.coord), dtype=np.float64)
        self._point_sum = point if self._point_sum is None else self._point_sum + point

    def finish(self) -> None:
        if self.finished:
            raise InvariantViolation(f"finish() called twice on cell {self!r}")
        self.lang_model.finish_before_global()
        self.lang_model.finish_after_global()
        self.finished = True

    @property
    def centroid(self):
        """Mean coordinate of the added documents; the true center when empty."""
        if self._point_sum is None:
            return self.true_center
        return point_to_coord(self._point_sum / self.num_docs)

    @property
    def true_center(self):
        raise NotImplementedError

    @property
    def central_point(self):
        if self.grid.center_method == "centroid":
            return self.centroid
        return self.true_center

    def format_location(self) -> str:
        raise NotImplementedError

    def format_indices(self) -> str:
        raise NotImplementedError


class RectangularCell(GridCell):
    """A cell with an axis-aligned extent given by its south-west and north-east corners."""

    @property
    def southwest(self):
        raise NotImplementedError

    @property
    def northeast(self):
        raise NotImplementedError

    @property
    def true_center(self):
        sw = np.asarray(coord_to_point(self.southwest))
        ne = np.asarray(coord_to_point(self.northeast))
        return point_to_coord((sw + ne) / 2.0)

    def format_location(self) -> str:
        return f"{self.southwest}-{self.northeast}"


class FixedGridCell(RectangularCell):
    """Cell of a fixed grid, identified by the region indices of its south-west corner."""

    def __init__(self, grid: Grid, latind: int, longind: int):
        super().__init__(grid)
        self.latind = latind
        self.longind = longind

    @property
    def southwest(self):
        return self.grid.region_indices_to_coord(self.latind, self.longind)

    @property
    def northeast(self):
        width = self.grid.width_of_cell
        return self.grid.region_indices_to_coord(self.latind + width, self.longind + width)

    @property
    def true_center(self):
        half = self.grid.width_of_cell / 2.0
        return self.grid.region_indices_to_coord(self.latind + half, self.longind + half)

    def format_indices(self) -> str:
        return f"{self.latind},{self.longind}"


class KdTreeCell(RectangularCell):
    """Cell wrapping one node (leaf or internal) of a k-d tree."""

    def __init__(self, grid: Grid, node: KdNode):
        super().__init__(grid)
        self.node = node

    @property
    def southwest(self):
        return point_to_coord(self.node.min_limit)

    @property
    def northeast(self):
        return point_to_coord(self.node.max_limit)

    def format_indices(self) -> str:
        """Path from the root, e.g. "40<25>12": '<' for a left child, '>' for a right one."""
        tree = self.grid.kdtree
        path = []
        node = self.node
        parent = tree.parent(node)
        while parent is not None:
            arrow = "<" if parent.left == node.index else ">"
            path.append(f"{arrow}{node.size}")
            node, parent = parent, tree.parent(parent)
        path.append(str(node.size))
        return "".join(reversed(path))


__all__ = ["GridCell", "RectangularCell", "FixedGridCell", "KdTreeCell"]
