"""Tree build, partition and permutation coverage."""

import logging

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from gnpx import (
    BallBound,
    HRectBound,
    TreeBuildConfig,
    build_tree,
    get_subtree_frontier,
    partition_range,
    permute,
    unpermute,
)


def _sample_points(n: int = 200, dim: int = 3, seed: int = 0) -> jnp.ndarray:
    key = jax.random.PRNGKey(seed)
    return jax.random.uniform(key, (n, dim), minval=-1.0, maxval=1.0, dtype=jnp.float64)


def test_partition_range_splits_and_tracks_permutation():
    rng = np.random.default_rng(0)
    points = rng.uniform(size=(50, 2))
    original = points.copy()
    old_from_new = np.arange(50)

    split = partition_range(points, old_from_new, 0, 50, 1, 0.5)

    assert np.all(points[:split, 1] < 0.5)
    assert np.all(points[split:, 1] >= 0.5)
    np.testing.assert_array_equal(points, original[old_from_new])
    assert sorted(old_from_new.tolist()) == list(range(50))


def test_partition_range_respects_subrange():
    points = np.array([[3.0], [0.0], [2.0], [1.0], [9.0]])
    old_from_new = np.arange(5)

    split = partition_range(points, old_from_new, 1, 4, 0, 1.5)

    assert split == 3
    assert points[0, 0] == 3.0
    assert points[4, 0] == 9.0
    assert points[1, 0] == 0.0


@pytest.mark.parametrize("split_rule", ["midpoint", "median"])
@pytest.mark.parametrize("bound_type", ["hrect", "ball"])
def test_build_tree_partition_invariants(split_rule, bound_type):
    points = _sample_points()
    tree = build_tree(points, leaf_size=8, split_rule=split_rule, bound_type=bound_type)
    host = tree.to_host()

    # Every original index lands at exactly one tree position.
    assert sorted(host.old_from_new.tolist()) == list(range(tree.num_points))
    assert jnp.allclose(tree.points, points[tree.old_from_new])
    assert jnp.array_equal(tree.new_from_old[tree.old_from_new], jnp.arange(tree.num_points))

    for node in range(tree.num_nodes):
        rows = host.points[host.node_slice(node)]
        assert np.all(rows >= host.bbox_min[node])
        assert np.all(rows <= host.bbox_max[node])
        if host.is_leaf(node):
            assert host.count(node) <= 8
            continue
        left = int(host.left_child[node])
        right = int(host.right_child[node])
        dim = int(tree.split_dim[node])
        value = float(tree.split_value[node])
        assert left > node and right > node
        assert host.parent[left] == node and host.parent[right] == node
        assert host.node_start[left] == host.node_start[node]
        assert host.node_end[left] == host.node_start[right]
        assert host.node_end[right] == host.node_end[node]
        assert np.all(host.points[host.node_slice(left), dim] < value)
        assert np.all(host.points[host.node_slice(right), dim] >= value)


def test_build_tree_node_bounds_are_tight():
    tree = build_tree(_sample_points(n=64), leaf_size=4)
    host = tree.to_host()
    for node in range(tree.num_nodes):
        rows = host.points[host.node_slice(node)]
        bound = tree.node_bound(node)
        assert isinstance(bound, HRectBound)
        np.testing.assert_array_equal(bound.lo, rows.min(axis=0))
        np.testing.assert_array_equal(bound.hi, rows.max(axis=0))


def test_build_tree_ball_bounds_contain_points():
    tree = build_tree(_sample_points(n=64), leaf_size=4, bound_type="ball")
    host = tree.to_host()
    for node in range(tree.num_nodes):
        bound = tree.node_bound(node)
        assert isinstance(bound, BallBound)
        for point in host.points[host.node_slice(node)]:
            assert np.linalg.norm(point - bound.center) <= bound.radius + 1e-12


def test_build_tree_bounds_match_bound_constructors():
    points = _sample_points(n=48)
    tree = build_tree(points, leaf_size=6, bound_type="ball")
    host = tree.to_host()
    for node in range(tree.num_nodes):
        rows = host.points[host.node_slice(node)]
        box = HRectBound.from_points(rows)
        ball = BallBound.from_points(rows)
        np.testing.assert_array_equal(host.bbox_min[node], box.lo)
        np.testing.assert_array_equal(host.bbox_max[node], box.hi)
        np.testing.assert_allclose(host.ball_center[node], ball.center, rtol=0, atol=1e-15)
        assert host.ball_radius[node] == pytest.approx(ball.radius, abs=1e-15)


def test_leaf_size_at_least_n_gives_single_leaf():
    tree = build_tree(_sample_points(n=30), leaf_size=30)
    assert tree.num_nodes == 1
    assert tree.num_leaves == 1
    assert jnp.array_equal(tree.leaf_nodes, jnp.array([0]))


def test_identical_points_stop_splitting():
    points = jnp.ones((50, 2))
    tree = build_tree(points, leaf_size=2)
    assert tree.num_nodes == 1
    assert tree.to_host().count(0) == 50


def test_weights_follow_permutation_and_unpermute_round_trip():
    points = _sample_points(n=40)
    weights = jnp.arange(40, dtype=jnp.float64) + 1.0
    tree = build_tree(points, weights, leaf_size=3)

    assert jnp.allclose(tree.weights, weights[tree.old_from_new])
    assert tree.total_weight == pytest.approx(float(jnp.sum(weights)))
    assert jnp.allclose(unpermute(tree, tree.weights), weights)
    assert jnp.allclose(permute(tree, weights), tree.weights)


def test_subtree_frontier_covers_points_once():
    tree = build_tree(_sample_points(n=300), leaf_size=10)
    host = tree.to_host()
    frontier = [int(node) for node in get_subtree_frontier(tree, 64)]

    covered = []
    for node in frontier:
        assert host.count(node) <= 64 or host.is_leaf(node)
        covered.extend(range(int(host.node_start[node]), int(host.node_end[node])))
    assert covered == list(range(tree.num_points))
    assert get_subtree_frontier(tree, 10_000).tolist() == [0]


def test_build_tree_config_overrides_keywords():
    tree = build_tree(_sample_points(n=40), config=TreeBuildConfig(leaf_size=40))
    assert tree.num_nodes == 1
    assert tree.leaf_size == 40


def test_build_tree_logs_splits(caplog):
    with caplog.at_level(logging.DEBUG, logger="gnpx.tree"):
        build_tree(_sample_points(n=20), leaf_size=5)
    assert any("Split node 0" in record.getMessage() for record in caplog.records)


@pytest.mark.parametrize(
    "points",
    [
        np.zeros((0, 3)),
        np.zeros((5,)),
        np.array([[0.0, np.nan]]),
    ],
)
def test_build_tree_rejects_malformed_points(points):
    with pytest.raises(ValueError):
        build_tree(points)


def test_build_tree_rejects_bad_parameters():
    points = _sample_points(n=10)
    with pytest.raises(ValueError):
        build_tree(points, leaf_size=0)
    with pytest.raises(ValueError):
        build_tree(points, jnp.ones((3,)))
    with pytest.raises(ValueError):
        build_tree(points, -jnp.ones((10,)))
    with pytest.raises(ValueError):
        get_subtree_frontier(build_tree(points), 0)
