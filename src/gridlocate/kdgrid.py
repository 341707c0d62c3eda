"""
Adaptive grid backed by a k-d tree.

Construction:
1. Every training coordinate is inserted into the tree.
2. The tree is balanced and every node, internal or leaf, is wrapped in a
   `KdTreeCell`; the raw points are then dropped.
3. Training documents are walked a second time and each is added to its
   leaf's cell and to the cells of all the leaf's ancestors.

The cells returned by `iter_nonempty_cells` (the "leaf set") are:
- every node, with `kd_use_backoff`;
- a leaf set handed down from a coarser grid (hierarchical classification);
- the tree leaves, with no cutoff;
- otherwise the nodes reached by splitting breadth-first every node holding
  at least `kd_cutoff_bucket_size` points.

Lookup walks from a point's natural leaf towards the root until it meets a
node in the leaf set.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from tqdm import tqdm

from gridlocate.cell import KdTreeCell
from gridlocate.config import GridLocateConfig
from gridlocate.coords import coord_to_point
from gridlocate.errors import InvariantViolation
from gridlocate.grid import Grid, GridState
from gridlocate.kdtree import KdNode, KdTree

if TYPE_CHECKING:
    from gridlocate.documents import GridDoc, GridDocFactory

logger = logging.getLogger(__name__)


class KdTreeGrid(Grid):
    """
    K-d-tree grid.

    Args:
        docfact: Document factory supplying language-model factories and counters.
        config: Run configuration (bucket size, split method, backoff,
            interpolation weight and cutoff bucket size).
        existing_grid: A coarser grid whose tree and cells are shared, for
            levels below the first in hierarchical classification.
        existing_grid_new_leaves: The leaf set to expose at this level; must
            be given exactly when `existing_grid` is.
        cutoff_bucket_size: Overrides `config.kd_cutoff_bucket_size`.
        dimensions: 2 for latitude/longitude, 1 for time coordinates.
    """

    short_type = "kd"

    def __init__(
        self,
        docfact: GridDocFactory,
        config: GridLocateConfig | None = None,
        existing_grid: KdTreeGrid | None = None,
        existing_grid_new_leaves: Sequence[KdNode] = (),
        cutoff_bucket_size: int | None = None,
        dimensions: int = 2,
    ):
        super().__init__(docfact, config)
        self.bucket_size = self.config.kd_bucket_size
        self.split_method = self.config.kd_split_method
        self.use_backoff = self.config.kd_use_backoff
        self.interpolate_weight = self.config.kd_interpolate_weight
        self.cutoff_bucket_size = (
            self.config.kd_cutoff_bucket_size if cutoff_bucket_size is None else cutoff_bucket_size
        )
        self.existing_grid = existing_grid
        self.existing_grid_new_leaves = list(existing_grid_new_leaves)

        if self.use_backoff and self.cutoff_bucket_size > 0:
            raise InvariantViolation(
                "Back-off cells cannot be combined with a cutoff bucket size: "
                f"kd_use_backoff={self.use_backoff}, cutoff_bucket_size={self.cutoff_bucket_size}"
            )
        if (existing_grid is None) != (len(self.existing_grid_new_leaves) == 0):
            raise InvariantViolation(
                "An existing grid and a leaf set must be given together: "
                f"existing_grid={existing_grid!r}, {len(self.existing_grid_new_leaves)} leaves"
            )
        if self.cutoff_bucket_size > 0:
            if self.cutoff_bucket_size <= self.bucket_size:
                raise InvariantViolation(
                    f"Cutoff bucket size {self.cutoff_bucket_size} must exceed "
                    f"bucket size {self.bucket_size}"
                )
            if existing_grid is not None:
                raise InvariantViolation("A cutoff bucket size cannot be used with an existing grid")

        if existing_grid is not None:
            self.kdtree = existing_grid.kdtree
            self.nodes_to_cell = existing_grid.nodes_to_cell
        else:
            self.kdtree = KdTree(dimensions, self.bucket_size, self.split_method)
            self.nodes_to_cell: dict[int, KdTreeCell] = {}
        self.leaf_nodes: set[int] = set()

    def cell_for_node(self, node: KdNode) -> KdTreeCell:
        return self.nodes_to_cell[node.index]

    # ----- building -----

    def _add_training_documents(self, docs: Iterable[GridDoc]) -> None:
        if self.existing_grid is not None:
            return
        docs = list(docs)
        for doc in docs:
            if doc.coord is not None:
                self.kdtree.add_point(coord_to_point(doc.coord))
        self.kdtree.balance()
        for node in tqdm(
            self.kdtree.nodes, desc="Generating k-d tree cells", disable=not self.show_progress
        ):
            self.nodes_to_cell[node.index] = KdTreeCell(self, node)
        self.kdtree.annihilate_data()

        def add_document(doc: GridDoc) -> None:
            leaf = self.kdtree.get_leaf(coord_to_point(doc.coord))
            for node in self.kdtree.ancestors(leaf):
                self.nodes_to_cell[node.index].add_document(doc)

        self.default_add_training_documents_to_grid(docs, add_document)
        if logger.isEnabledFor(logging.DEBUG):
            self.describe_kd_tree()

    def _initialize_cells(self) -> None:
        if not self.kdtree.balanced:
            # No training documents were added.
            self.kdtree.balance()
            for node in self.kdtree.nodes:
                self.nodes_to_cell[node.index] = KdTreeCell(self, node)
        if self.use_backoff:
            leaves = self.kdtree.nodes
        elif self.existing_grid_new_leaves:
            leaves = self.existing_grid_new_leaves
        elif self.cutoff_bucket_size == 0:
            leaves = self.kdtree.leaves()
        else:
            leaves = self.kdtree.nodes_to_cutoff(self.cutoff_bucket_size)
        self.leaf_nodes = {node.index for node in leaves}

        if self.existing_grid is not None:
            return
        for cell in tqdm(
            self.nodes_to_cell.values(), desc="Finishing cells", disable=not self.show_progress
        ):
            cell.finish()
        if self.interpolate_weight > 0:
            self._interpolate_top_down()

    def _interpolate_top_down(self) -> None:
        """Blend each cell with its parent; nodes are in breadth-first order, root first."""
        weight = self.interpolate_weight
        for node in tqdm(
            self.kdtree.nodes, desc="Interpolating k-d tree cells", disable=not self.show_progress
        ):
            parent = self.kdtree.parent(node)
            if parent is None:
                continue
            self.cell_for_node(node).lang_model.blend_with(
                self.cell_for_node(parent).lang_model, weight
            )

    # ----- querying -----

    def _find_best_cell_for_coord(self, coord, create_non_recorded: bool) -> KdTreeCell | None:
        node: KdNode | None = self.kdtree.get_leaf(coord_to_point(coord))
        while node.index not in self.leaf_nodes:
            node = self.kdtree.parent(node)
            if node is None:
                raise InvariantViolation(f"No cell in the leaf set contains {coord}")
        return self.cell_for_node(node)

    def _nonempty_cells(self) -> Iterable[KdTreeCell]:
        return (
            self.nodes_to_cell[index]
            for index in sorted(self.leaf_nodes)
            if self.kdtree.nodes[index].size > 0
        )

    # ----- hierarchical classification -----

    def get_nodes_to_subdivide_depth(self, nodes: Sequence[KdNode]) -> list[KdNode]:
        return self.kdtree.nodes_to_depth(nodes, self.config.subdivide_factor)

    def create_subdivided_grid(self) -> KdTreeGrid:
        """A finer grid sharing this tree, exposing nodes `subdivide_factor` levels down."""
        self._require(GridState.FINALIZED, "create_subdivided_grid")
        leaves = [self.kdtree.nodes[index] for index in sorted(self.leaf_nodes)]
        grid = KdTreeGrid(
            self.docfact,
            self.config,
            existing_grid=self,
            existing_grid_new_leaves=self.get_nodes_to_subdivide_depth(leaves),
            cutoff_bucket_size=0,
            dimensions=self.kdtree.dimensions,
        )
        return grid

    def get_subdivided_cells(self, cell: KdTreeCell) -> list[KdTreeCell]:
        return [self.cell_for_node(node) for node in self.get_nodes_to_subdivide_depth([cell.node])]

    def describe_kd_tree(self) -> None:
        for node in self._preorder():
            logger.debug(
                "%s%d#: %s - %s: %r",
                "  " * node.depth,
                node.size,
                node.min_limit,
                node.max_limit,
                self.nodes_to_cell.get(node.index),
            )

    def _preorder(self) -> list[KdNode]:
        order = []
        stack = [self.kdtree.root]
        while stack:
            node = stack.pop()
            order.append(node)
            if not node.is_leaf:
                stack.extend((self.kdtree.nodes[node.right], self.kdtree.nodes[node.left]))
        return order


__all__ = ["KdTreeGrid"]
