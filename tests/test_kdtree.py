import numpy as np
import pytest

from gridlocate.errors import InvariantViolation
from gridlocate.kdtree import KdTree

SQUARE = [(0.0, 0.0), (0.0, 1.0), (1.0, 0.0), (1.0, 1.0)]


def build(points, bucket_size=2, split_method="median", dimensions=2):
    tree = KdTree(dimensions, bucket_size, split_method)
    for point in points:
        tree.add_point(point)
    tree.balance()
    return tree


def test_square_median_split_bucket_two():
    tree = build(SQUARE)
    leaves = tree.leaves()
    assert len(leaves) == 2
    assert sum(leaf.size for leaf in leaves) == 4
    assert tree.root.split_dim == 0
    assert tree.root.split_value == pytest.approx(0.5)


@pytest.mark.parametrize("split_method", ["halfway", "median", "maxmargin"])
def test_every_point_reaches_a_leaf_within_bounds(split_method):
    rng = np.random.default_rng(0)
    points = [tuple(p) for p in rng.uniform(-50, 50, size=(200, 2))]
    tree = build(points, bucket_size=10, split_method=split_method)
    assert sum(leaf.size for leaf in tree.leaves()) == len(points)
    for point in points:
        leaf = tree.get_leaf(point)
        assert leaf.is_leaf
        assert all(lo <= v <= hi for lo, v, hi in zip(leaf.min_limit, point, leaf.max_limit))
    assert all(leaf.size <= 10 for leaf in tree.leaves())


def test_nodes_are_breadth_first():
    tree = build(SQUARE, bucket_size=1)
    for node in tree.nodes:
        parent = tree.parent(node)
        if parent is not None:
            assert parent.index < node.index
            assert parent.depth + 1 == node.depth
    assert len(tree.leaves()) == 4


def test_coincident_points_stay_in_one_leaf():
    tree = build([(1.0, 1.0)] * 5, bucket_size=2)
    assert len(tree) == 1
    assert tree.root.size == 5


def test_maxmargin_splits_at_largest_gap():
    tree = build([(0.0,), (1.0,), (2.0,), (10.0,)], bucket_size=3, split_method="maxmargin", dimensions=1)
    assert tree.root.split_value == pytest.approx(6.0)


def test_ancestors_end_at_root():
    tree = build(SQUARE, bucket_size=1)
    leaf = tree.get_leaf((1.0, 1.0))
    chain = list(tree.ancestors(leaf))
    assert chain[0] is leaf
    assert chain[-1] is tree.root


def test_nodes_to_cutoff():
    rng = np.random.default_rng(1)
    points = [tuple(p) for p in rng.uniform(0, 10, size=(64, 2))]
    tree = build(points, bucket_size=4)
    nodes = tree.nodes_to_cutoff(20)
    assert sum(node.size for node in nodes) == 64
    for node in nodes:
        assert node.size < 20 or node.is_leaf


def test_nodes_to_depth():
    tree = build(SQUARE, bucket_size=1)
    assert len(tree.nodes_to_depth([tree.root], 1)) == 2
    assert len(tree.nodes_to_depth([tree.root], 5)) == 4


def test_lifecycle_errors():
    tree = build(SQUARE)
    with pytest.raises(InvariantViolation):
        tree.add_point((0.5, 0.5))
    with pytest.raises(InvariantViolation):
        tree.balance()
    with pytest.raises(ValueError):
        KdTree(2, 2, "random")
    with pytest.raises(ValueError):
        KdTree(2, 2).add_point((1.0,))
