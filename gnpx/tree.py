"""Binary space-partitioning tree over weighted point sets.

Trees are built on the host. Point rows are permuted in place so that every
node owns a contiguous ``[node_start, node_end)`` slice of ``points``; node
ids are assigned in pre-order, so the root is node ``0`` and every child id
exceeds its parent id. ``-1`` marks a missing child.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import cached_property
from typing import Literal, Optional

import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, ArrayLike, jaxtyped

from .bounds import (
    BallBound,
    DRange,
    HRectBound,
    ball_range_distance_sq,
    hrect_mid_distance_sq,
    hrect_range_distance_sq,
)
from .dtypes import HOST_INDEX_DTYPE, INDEX_DTYPE, REAL_DTYPE
from .protocols import BoundProtocol

logger = logging.getLogger(__name__)

SplitRule = Literal["midpoint", "median"]
BoundType = Literal["hrect", "ball"]

_SPLIT_RULES = ("midpoint", "median")
_BOUND_TYPES = ("hrect", "ball")


@dataclass(frozen=True)
class TreeBuildConfig:
    """Parameters controlling how a tree is split."""

    leaf_size: int = 20
    split_rule: SplitRule = "midpoint"
    bound_type: BoundType = "hrect"

    def __post_init__(self) -> None:
        if int(self.leaf_size) < 1:
            raise ValueError(f"leaf_size must be >= 1, received {self.leaf_size}")
        if self.split_rule not in _SPLIT_RULES:
            raise ValueError(f"Unknown split_rule: {self.split_rule}")
        if self.bound_type not in _BOUND_TYPES:
            raise ValueError(f"Unknown bound_type: {self.bound_type}")


@dataclass(frozen=True)
class HostTree:
    """Numpy view of a :class:`SpaceTree` used by the host recursion."""

    points: np.ndarray
    weights: np.ndarray
    old_from_new: np.ndarray
    node_start: np.ndarray
    node_end: np.ndarray
    parent: np.ndarray
    left_child: np.ndarray
    right_child: np.ndarray
    bbox_min: np.ndarray
    bbox_max: np.ndarray
    ball_center: np.ndarray
    ball_radius: np.ndarray
    bound_type: str

    @property
    def num_nodes(self) -> int:
        return int(self.node_start.shape[0])

    def is_leaf(self, node: int) -> bool:
        return self.left_child[node] < 0

    def count(self, node: int) -> int:
        return int(self.node_end[node] - self.node_start[node])

    def node_slice(self, node: int) -> slice:
        return slice(int(self.node_start[node]), int(self.node_end[node]))

    def node_bound(self, node: int) -> BoundProtocol:
        if self.bound_type == "ball":
            return BallBound(self.ball_center[node], float(self.ball_radius[node]))
        return HRectBound(self.bbox_min[node], self.bbox_max[node])

    def range_distance_sq(self, node: int, other: "HostTree", other_node: int) -> DRange:
        """Squared-distance range between ``node`` and a node of ``other``."""

        if self.bound_type == "ball":
            lo, hi = ball_range_distance_sq(
                self.ball_center[node],
                self.ball_radius[node],
                other.ball_center[other_node],
                other.ball_radius[other_node],
            )
        else:
            lo, hi = hrect_range_distance_sq(
                self.bbox_min[node],
                self.bbox_max[node],
                other.bbox_min[other_node],
                other.bbox_max[other_node],
            )
        return DRange(float(lo), float(hi))

    def mid_distance_sq(self, node: int, other: "HostTree", other_node: int) -> float:
        if self.bound_type == "ball":
            delta = self.ball_center[node] - other.ball_center[other_node]
            return float(np.dot(delta, delta))
        return float(
            hrect_mid_distance_sq(
                self.bbox_min[node],
                self.bbox_max[node],
                other.bbox_min[other_node],
                other.bbox_max[other_node],
            )
        )


@dataclass(frozen=True)
class SpaceTree:
    """Arena-allocated binary tree plus the permuted point table."""

    points: Array
    weights: Array
    old_from_new: Array
    new_from_old: Array
    node_start: Array
    node_end: Array
    parent: Array
    left_child: Array
    right_child: Array
    split_dim: Array
    split_value: Array
    bbox_min: Array
    bbox_max: Array
    ball_center: Array
    ball_radius: Array
    leaf_size: int
    bound_type: str

    @property
    def num_points(self) -> int:
        """Return the number of points in the tree."""

        return int(self.points.shape[0])

    @property
    def dimension(self) -> int:
        """Return spatial dimensionality of the points."""

        return int(self.points.shape[1])

    @property
    def num_nodes(self) -> int:
        return int(self.node_start.shape[0])

    @property
    def leaf_nodes(self) -> Array:
        return jnp.nonzero(self.left_child < 0)[0].astype(INDEX_DTYPE)

    @property
    def num_leaves(self) -> int:
        return int(jnp.sum(self.left_child < 0))

    @property
    def total_weight(self) -> float:
        return float(jnp.sum(self.weights))

    @cached_property
    def _host_view(self) -> HostTree:
        return HostTree(
            points=np.asarray(self.points),
            weights=np.asarray(self.weights),
            old_from_new=np.asarray(self.old_from_new),
            node_start=np.asarray(self.node_start),
            node_end=np.asarray(self.node_end),
            parent=np.asarray(self.parent),
            left_child=np.asarray(self.left_child),
            right_child=np.asarray(self.right_child),
            bbox_min=np.asarray(self.bbox_min),
            bbox_max=np.asarray(self.bbox_max),
            ball_center=np.asarray(self.ball_center),
            ball_radius=np.asarray(self.ball_radius),
            bound_type=self.bound_type,
        )

    def to_host(self) -> HostTree:
        """Return (and cache) a numpy view of the tree."""

        return self._host_view

    def node_bound(self, node: int) -> BoundProtocol:
        """Return the bound of ``node`` as an ``HRectBound`` or ``BallBound``."""

        return self.to_host().node_bound(int(node))


def partition_range(
    points: np.ndarray,
    old_from_new: np.ndarray,
    begin: int,
    end: int,
    dim: int,
    split_value: float,
) -> int:
    """Partition rows ``[begin, end)`` in place around ``split_value``.

    Rows with ``points[:, dim] < split_value`` end up on the left, the rest on
    the right; ``old_from_new`` is swapped in lockstep. Returns the index of
    the first right-hand row.
    """

    left = begin
    right = end - 1
    column = points[:, dim]
    while True:
        while left <= right and column[left] < split_value:
            left += 1
        while left <= right and column[right] >= split_value:
            right -= 1
        if left > right:
            return left
        points[[left, right]] = points[[right, left]]
        old_from_new[[left, right]] = old_from_new[[right, left]]
        left += 1
        right -= 1


def _validate_points(points: ArrayLike) -> np.ndarray:
    points_arr = np.array(points, dtype=np.float64, copy=True)
    if points_arr.ndim != 2:
        raise ValueError(
            "points must have shape (n_points, dim); "
            f"received ndim={points_arr.ndim}"
        )
    if points_arr.shape[0] < 1:
        raise ValueError("points must contain at least one row")
    if points_arr.shape[1] < 1:
        raise ValueError("points must have dim >= 1")
    if not np.all(np.isfinite(points_arr)):
        raise ValueError("points must be finite")
    return points_arr


def _validate_weights(weights: Optional[ArrayLike], num_points: int) -> np.ndarray:
    if weights is None:
        return np.ones((num_points,), dtype=np.float64)
    weights_arr = np.array(weights, dtype=np.float64, copy=True)
    if weights_arr.shape != (num_points,):
        raise ValueError(
            f"weights must have shape ({num_points},); received {weights_arr.shape}"
        )
    if not np.all(np.isfinite(weights_arr)):
        raise ValueError("weights must be finite")
    if np.any(weights_arr < 0.0):
        raise ValueError("weights must be non-negative")
    return weights_arr


def _choose_split_value(
    block: np.ndarray, dim: int, lo: float, hi: float, split_rule: str
) -> float:
    midpoint = 0.5 * (lo + hi)
    if split_rule == "midpoint":
        return midpoint
    median = float(np.median(block[:, dim]))
    # ``< split`` goes left, so a median equal to the minimum empties the left side.
    if median <= lo or median > hi:
        return midpoint
    return median


@jaxtyped(typechecker=beartype)
def build_tree(
    points: ArrayLike,
    weights: Optional[ArrayLike] = None,
    *,
    leaf_size: int = 20,
    split_rule: SplitRule = "midpoint",
    bound_type: BoundType = "hrect",
    config: Optional[TreeBuildConfig] = None,
) -> SpaceTree:
    """Build a kd-tree by recursively splitting the widest bound dimension.

    Args:
        points: Point table with shape ``(n_points, dim)``.
        weights: Optional non-negative per-point weights; defaults to ones.
        leaf_size: Nodes with at most this many points become leaves.
        split_rule: ``"midpoint"`` splits the bound in half, ``"median"`` at
            the coordinate median.
        bound_type: ``"hrect"`` or ``"ball"`` node bounds for pruning.
        config: When provided, overrides the three keyword parameters.

    Returns:
        A :class:`SpaceTree` whose ``points``/``weights`` are in tree order.
    """

    if config is None:
        config = TreeBuildConfig(
            leaf_size=leaf_size, split_rule=split_rule, bound_type=bound_type
        )
    pts = _validate_points(points)
    n, dim = pts.shape
    wts = _validate_weights(weights, n)
    old_from_new = np.arange(n, dtype=HOST_INDEX_DTYPE)

    node_start: list[int] = []
    node_end: list[int] = []
    parent: list[int] = []
    left_child: list[int] = []
    right_child: list[int] = []
    split_dim: list[int] = []
    split_value: list[float] = []
    bbox_min: list[np.ndarray] = []
    bbox_max: list[np.ndarray] = []
    ball_center: list[np.ndarray] = []
    ball_radius: list[float] = []

    # (begin, end, parent, is_left); right pushed before left keeps pre-order ids.
    stack = [(0, n, -1, False)]
    while stack:
        begin, end, parent_id, is_left = stack.pop()
        node = len(node_start)
        if parent_id >= 0:
            if is_left:
                left_child[parent_id] = node
            else:
                right_child[parent_id] = node

        block = pts[begin:end]
        box = HRectBound.from_points(block)
        ball = BallBound.from_points(block)
        lo, hi = box.lo, box.hi
        node_start.append(begin)
        node_end.append(end)
        parent.append(parent_id)
        left_child.append(-1)
        right_child.append(-1)
        bbox_min.append(lo)
        bbox_max.append(hi)
        ball_center.append(ball.center)
        ball_radius.append(ball.radius)

        widths = hi - lo
        dim_id = int(np.argmax(widths))
        if end - begin <= config.leaf_size or widths[dim_id] <= 0.0:
            split_dim.append(-1)
            split_value.append(0.0)
            continue

        value = _choose_split_value(
            block, dim_id, float(lo[dim_id]), float(hi[dim_id]), config.split_rule
        )
        split = partition_range(pts, old_from_new, begin, end, dim_id, value)
        if split == begin or split == end:
            # Adjacent floats: the midpoint rounded onto an endpoint.
            split_dim.append(-1)
            split_value.append(0.0)
            continue

        split_dim.append(dim_id)
        split_value.append(value)
        logger.debug(
            "Split node %d [%d, %d) at %d: dim=%d value=%g extent=[%g, %g]",
            node,
            begin,
            end,
            split,
            dim_id,
            value,
            lo[dim_id],
            hi[dim_id],
        )
        stack.append((split, end, node, False))
        stack.append((begin, split, node, True))

    if not np.array_equal(np.sort(old_from_new), np.arange(n)):
        raise RuntimeError("tree build did not produce a permutation")
    new_from_old = np.empty_like(old_from_new)
    new_from_old[old_from_new] = np.arange(n, dtype=HOST_INDEX_DTYPE)

    logger.debug(
        "Built %s tree: %d points, %d nodes, leaf_size=%d",
        config.bound_type,
        n,
        len(node_start),
        config.leaf_size,
    )

    return SpaceTree(
        points=jnp.asarray(pts, dtype=REAL_DTYPE),
        weights=jnp.asarray(wts[old_from_new], dtype=REAL_DTYPE),
        old_from_new=jnp.asarray(old_from_new, dtype=INDEX_DTYPE),
        new_from_old=jnp.asarray(new_from_old, dtype=INDEX_DTYPE),
        node_start=jnp.asarray(node_start, dtype=INDEX_DTYPE),
        node_end=jnp.asarray(node_end, dtype=INDEX_DTYPE),
        parent=jnp.asarray(parent, dtype=INDEX_DTYPE),
        left_child=jnp.asarray(left_child, dtype=INDEX_DTYPE),
        right_child=jnp.asarray(right_child, dtype=INDEX_DTYPE),
        split_dim=jnp.asarray(split_dim, dtype=INDEX_DTYPE),
        split_value=jnp.asarray(split_value, dtype=REAL_DTYPE),
        bbox_min=jnp.asarray(np.stack(bbox_min), dtype=REAL_DTYPE),
        bbox_max=jnp.asarray(np.stack(bbox_max), dtype=REAL_DTYPE),
        ball_center=jnp.asarray(np.stack(ball_center), dtype=REAL_DTYPE),
        ball_radius=jnp.asarray(ball_radius, dtype=REAL_DTYPE),
        leaf_size=int(config.leaf_size),
        bound_type=config.bound_type,
    )


@jaxtyped(typechecker=beartype)
def unpermute(tree: SpaceTree, values: ArrayLike) -> Array:
    """Map per-point values from tree order back to original order."""

    values_arr = jnp.asarray(values)
    if values_arr.shape[0] != tree.num_points:
        raise ValueError(
            f"values must have leading size {tree.num_points}; received {values_arr.shape[0]}"
        )
    return values_arr[tree.new_from_old]


@jaxtyped(typechecker=beartype)
def permute(tree: SpaceTree, values: ArrayLike) -> Array:
    """Map per-point values from original order into tree order."""

    values_arr = jnp.asarray(values)
    if values_arr.shape[0] != tree.num_points:
        raise ValueError(
            f"values must have leading size {tree.num_points}; received {values_arr.shape[0]}"
        )
    return values_arr[tree.old_from_new]


@jaxtyped(typechecker=beartype)
def get_subtree_frontier(tree: SpaceTree, max_points: int) -> Array:
    """Shallowest nodes owning at most ``max_points`` points (leaves always qualify).

    The returned nodes are disjoint, cover every point, and are sorted by
    their starting row.
    """

    if max_points < 1:
        raise ValueError(f"max_points must be >= 1, received {max_points}")
    host = tree.to_host()
    frontier = []
    pending = [0]
    while pending:
        node = pending.pop()
        if host.count(node) <= max_points or host.is_leaf(node):
            frontier.append(node)
            continue
        pending.append(int(host.left_child[node]))
        pending.append(int(host.right_child[node]))
    frontier.sort(key=lambda node: int(host.node_start[node]))
    return jnp.asarray(frontier, dtype=INDEX_DTYPE)


__all__ = [
    "BoundType",
    "HostTree",
    "SpaceTree",
    "SplitRule",
    "TreeBuildConfig",
    "build_tree",
    "get_subtree_frontier",
    "partition_range",
    "permute",
    "unpermute",
]
