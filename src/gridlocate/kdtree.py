"""
K-d tree stored as an arena of node records.

Nodes live in a flat list and refer to their parent and children by index,
so there are no reference cycles. Points are accumulated with `add_point`,
then `balance()` splits every node holding more than `bucket_size` points.
Nodes are numbered in breadth-first order, so `nodes` is already ordered
root first and every parent precedes its children.

Split methods:
1. halfway - midpoint of the node's bounding box along the widest dimension
2. median - median of the points along the widest dimension
3. maxmargin - middle of the largest gap between consecutive point values

After balancing, `annihilate_data()` drops the raw points; node sizes and
bounding boxes stay.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from gridlocate.config import SPLIT_METHODS
from gridlocate.errors import InvariantViolation

if TYPE_CHECKING:
    from numpy.typing import NDArray

NO_NODE = -1


@dataclass
class KdNode:
    index: int
    parent: int
    depth: int
    size: int
    min_limit: tuple[float, ...]
    max_limit: tuple[float, ...]
    left: int = NO_NODE
    right: int = NO_NODE
    split_dim: int = NO_NODE
    split_value: float = 0.0
    # Row numbers into the point array; only populated while balancing.
    members: NDArray[np.int64] | None = field(default=None, repr=False)

    @property
    def is_leaf(self) -> bool:
        return self.left == NO_NODE


class KdTree:
    def __init__(self, dimensions: int = 2, bucket_size: int = 200, split_method: str = "halfway"):
        if split_method not in SPLIT_METHODS:
            raise ValueError(f"Unknown split method {split_method!r}")
        if bucket_size < 1:
            raise ValueError("bucket_size must be at least 1")
        self.dimensions = dimensions
        self.bucket_size = bucket_size
        self.split_method = split_method
        self.nodes: list[KdNode] = []
        self._points: list[tuple[float, ...]] | None = []
        self.balanced = False

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def root(self) -> KdNode:
        if not self.nodes:
            raise InvariantViolation("K-d tree has not been balanced")
        return self.nodes[0]

    def add_point(self, point: Sequence[float]) -> None:
        if self.balanced or self._points is None:
            raise InvariantViolation("add_point() called on a balanced k-d tree")
        if len(point) != self.dimensions:
            raise ValueError(f"Expected {self.dimensions}-dimensional point, got {point!r}")
        self._points.append(tuple(float(v) for v in point))

    # -------------------------------------------------------------------------
    # Balancing
    # -------------------------------------------------------------------------

    def balance(self) -> None:
        if self.balanced or self._points is None:
            raise InvariantViolation("balance() called twice on a k-d tree")
        points = np.array(self._points, dtype=np.float64).reshape(-1, self.dimensions)
        self.nodes = [self._make_node(points, np.arange(len(points)), NO_NODE, 0)]
        queue = deque([0])
        while queue:
            node = self.nodes[queue.popleft()]
            split = self._choose_split(points, node)
            if split is None:
                continue
            dim, value, left_members, right_members = split
            node.split_dim, node.split_value = dim, value
            node.left = len(self.nodes)
            self.nodes.append(self._make_node(points, left_members, node.index, node.depth + 1))
            node.right = len(self.nodes)
            self.nodes.append(self._make_node(points, right_members, node.index, node.depth + 1))
            queue.extend((node.left, node.right))
        for node in self.nodes:
            node.members = None
        self.balanced = True

    def _make_node(
        self, points: NDArray[np.float64], members: NDArray[np.int64], parent: int, depth: int
    ) -> KdNode:
        if len(members):
            sub = points[members]
            min_limit = tuple(float(v) for v in sub.min(axis=0))
            max_limit = tuple(float(v) for v in sub.max(axis=0))
        else:
            min_limit = max_limit = (0.0,) * self.dimensions
        return KdNode(
            index=len(self.nodes),
            parent=parent,
            depth=depth,
            size=len(members),
            min_limit=min_limit,
            max_limit=max_limit,
            members=members,
        )

    def _choose_split(self, points: NDArray[np.float64], node: KdNode):
        """(dim, value, left members, right members), or None for a leaf."""
        if node.size <= self.bucket_size:
            return None
        widths = np.subtract(node.max_limit, node.min_limit)
        dim = int(np.argmax(widths))
        if widths[dim] <= 0:
            # All points coincide.
            return None
        values = points[node.members, dim]
        value = self._split_value(values, node.min_limit[dim], node.max_limit[dim])
        go_left = values <= value
        if go_left.all() or not go_left.any():
            value = (node.min_limit[dim] + node.max_limit[dim]) / 2.0
            go_left = values <= value
        return dim, value, node.members[go_left], node.members[~go_left]

    def _split_value(self, values: NDArray[np.float64], lo: float, hi: float) -> float:
        if self.split_method == "median":
            return float(np.median(values))
        if self.split_method == "maxmargin":
            ordered = np.unique(values)
            gaps = np.diff(ordered)
            i = int(np.argmax(gaps))
            return float((ordered[i] + ordered[i + 1]) / 2.0)
        return (lo + hi) / 2.0

    def annihilate_data(self) -> None:
        """Drop the raw points; node sizes and limits are kept."""
        self._points = None

    # -------------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------------

    def get_leaf(self, point: Sequence[float]) -> KdNode:
        node = self.root
        while not node.is_leaf:
            if point[node.split_dim] <= node.split_value:
                node = self.nodes[node.left]
            else:
                node = self.nodes[node.right]
        return node

    def parent(self, node: KdNode) -> KdNode | None:
        return None if node.parent == NO_NODE else self.nodes[node.parent]

    def children(self, node: KdNode) -> tuple[KdNode, ...]:
        """Both children, or the node itself for a leaf."""
        if node.is_leaf:
            return (node,)
        return (self.nodes[node.left], self.nodes[node.right])

    def ancestors(self, node: KdNode) -> Iterator[KdNode]:
        """`node` and every node above it, up to the root."""
        current: KdNode | None = node
        while current is not None:
            yield current
            current = self.parent(current)

    def leaves(self) -> list[KdNode]:
        return [node for node in self.nodes if node.is_leaf]

    def nodes_to_cutoff(self, cutoff: int) -> list[KdNode]:
        """
        Descend breadth-first from the root, splitting every node holding at
        least `cutoff` points, until nothing changes.
        """
        level = [self.root]
        while True:
            next_level = [
                child
                for node in level
                for child in (self.children(node) if node.size >= cutoff else (node,))
            ]
            if len(next_level) == len(level):
                return level
            level = next_level

    def nodes_to_depth(self, nodes: Sequence[KdNode], depth: int) -> list[KdNode]:
        level = list(nodes)
        for _ in range(depth):
            level = [child for node in level for child in self.children(node)]
        return level


__all__ = ["KdTree", "KdNode", "NO_NODE"]
