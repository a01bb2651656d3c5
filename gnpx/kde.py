"""Dual-tree kernel density estimation.

:class:`DualtreeKde` plugs kernel sums into :class:`~gnpx.dualtree.DualtreeDfs`.
Each query point carries lower/estimate/upper bounds on its (unnormalized)
kernel sum; pruned node pairs contribute finite-difference (or Monte Carlo)
corrections, leaf pairs are summed exactly with a jit-compiled block kernel.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import partial
from typing import NamedTuple, Optional

import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, ArrayLike, jaxtyped

from .dtypes import REAL_DTYPE
from .dualtree import DualtreeDfs, PruneStatistics, log_prune_statistics
from .kernels import Kernel
from .pruning import (
    PRUNE_MONTE_CARLO,
    PruneDecision,
    finite_difference_prune,
    monte_carlo_prune,
)
from .statistics import KdeNodeStatistics
from .tree import BoundType, SpaceTree, SplitRule, TreeBuildConfig, build_tree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DualtreeKdeConfig:
    """Accuracy and tree parameters for dual-tree kernel sums."""

    relative_error: float = 0.1
    threshold: float = 0.0
    probability: float = 1.0
    leaf_size: int = 20
    split_rule: SplitRule = "midpoint"
    bound_type: BoundType = "hrect"
    leave_one_out: bool = False
    num_monte_carlo_samples: int = 25
    monte_carlo_sample_multiple: int = 1
    seed: int = 0

    def tree_config(self) -> TreeBuildConfig:
        return TreeBuildConfig(
            leaf_size=self.leaf_size,
            split_rule=self.split_rule,
            bound_type=self.bound_type,
        )


_GLOBAL_KDE_CONFIG: Optional[DualtreeKdeConfig] = None


def _validate_kde_config(config: DualtreeKdeConfig) -> None:
    if not (math.isfinite(config.relative_error) and config.relative_error >= 0.0):
        raise ValueError("relative_error must be finite and >= 0")
    if not (math.isfinite(config.threshold) and config.threshold >= 0.0):
        raise ValueError("threshold must be finite and >= 0")
    if not 0.0 < config.probability <= 1.0:
        raise ValueError("probability must be in (0, 1]")
    if config.num_monte_carlo_samples < 2:
        raise ValueError("num_monte_carlo_samples must be >= 2")
    if config.monte_carlo_sample_multiple < 1:
        raise ValueError("monte_carlo_sample_multiple must be >= 1")
    config.tree_config()


def set_default_kde_config(config: Optional[DualtreeKdeConfig]) -> None:
    """Set the module-level fallback configuration for dual-tree KDE."""

    if config is not None:
        _validate_kde_config(config)

    global _GLOBAL_KDE_CONFIG
    _GLOBAL_KDE_CONFIG = config


def _resolve_kde_config(config: Optional[DualtreeKdeConfig]) -> DualtreeKdeConfig:
    if config is None:
        config = _GLOBAL_KDE_CONFIG
    if config is None:
        config = DualtreeKdeConfig()
    _validate_kde_config(config)
    return config


class KdeResult(NamedTuple):
    """Per-query density estimates and bounds in original query order."""

    densities: Array
    lower: Array
    upper: Array
    used_error: Array
    n_pruned: Array
    statistics: PruneStatistics


def _next_power_of_two(value: int) -> int:
    value = max(1, int(value))
    return 1 << (value - 1).bit_length()


def _pairwise_squared_distances(queries: Array, points: Array) -> Array:
    """Return squared pairwise distances with shape ``(n_queries, n_points)``."""

    deltas = queries[:, None, :] - points[None, :, :]
    return jnp.sum(deltas * deltas, axis=-1)


@partial(jax.jit, static_argnames=("kernel",))
def _block_kernel_sums(
    kernel: Kernel, queries: Array, references: Array, reference_weights: Array
) -> Array:
    d2 = _pairwise_squared_distances(queries, references)
    return jnp.sum(kernel.eval_unnorm_on_sq(d2) * reference_weights[None, :], axis=1)


def _pad_rows(block: np.ndarray, size: int) -> np.ndarray:
    pad = size - block.shape[0]
    if pad == 0:
        return block
    filler = np.zeros((pad,) + block.shape[1:], dtype=block.dtype)
    return np.concatenate([block, filler], axis=0)


def leaf_kernel_sums(
    kernel: Kernel,
    queries: np.ndarray,
    references: np.ndarray,
    reference_weights: np.ndarray,
) -> np.ndarray:
    """Exact weighted kernel sums of a reference block at each query row.

    Blocks are zero-padded to power-of-two sizes (padded references get zero
    weight) so repeated leaf pairs reuse a small set of compiled shapes.
    """

    n_q = queries.shape[0]
    q_size = _next_power_of_two(n_q)
    r_size = _next_power_of_two(references.shape[0])
    sums = _block_kernel_sums(
        kernel,
        _pad_rows(queries, q_size),
        _pad_rows(references, r_size),
        _pad_rows(reference_weights, r_size),
    )
    return np.asarray(sums)[:n_q]


class DualtreeKde:
    """Kernel density sums as a dual-tree problem.

    Args:
        query_tree: Tree over the query points.
        reference_tree: Tree over the weighted reference points.
        kernel: Kernel evaluated on squared distances.
        config: Accuracy parameters; ``leave_one_out`` needs ``monochromatic``.
        monochromatic: Query and reference trees are the same object.
        total_weight: Weight used to split the error budget. Defaults to the
            reference tree's total weight; a larger global weight lets a
            reference subset run as one piece of a bigger problem.
    """

    def __init__(
        self,
        query_tree: SpaceTree,
        reference_tree: SpaceTree,
        kernel: Kernel,
        *,
        config: Optional[DualtreeKdeConfig] = None,
        monochromatic: bool = False,
        total_weight: Optional[float] = None,
    ):
        self.config = _resolve_kde_config(config)
        if self.config.leave_one_out and not monochromatic:
            raise ValueError("leave_one_out requires a monochromatic computation")
        if query_tree.dimension != reference_tree.dimension:
            raise ValueError(
                "queries and references must share dimensionality; "
                f"received {query_tree.dimension} and {reference_tree.dimension}"
            )
        self.query_tree = query_tree
        self.reference_tree = reference_tree
        self.kernel = kernel
        self.monochromatic = bool(monochromatic)
        self._q = query_tree.to_host()
        self._r = reference_tree.to_host()
        self.query_stats = KdeNodeStatistics.from_tree(self._q)
        if monochromatic:
            self.reference_stats = self.query_stats
        else:
            self.reference_stats = KdeNodeStatistics.from_tree(self._r)
        self.reference_weight = float(self.reference_stats.weight_sum[0])
        self.root_weight = (
            self.reference_weight if total_weight is None else float(total_weight)
        )
        if not self.root_weight > 0.0:
            raise ValueError("reference weights must sum to a positive value")
        if self.root_weight < self.reference_weight:
            raise ValueError("total_weight must be at least the reference tree's weight")
        self.k_zero = float(kernel.eval_unnorm_on_sq_host(0.0))
        self.norm_constant = kernel.calc_norm_constant(self._q.points.shape[1])
        # ``threshold`` is an absolute error on the normalized density.
        self.threshold = self.config.threshold * self.norm_constant * self.root_weight
        self._monte_carlo_min_count = (
            self.config.num_monte_carlo_samples * self.config.monte_carlo_sample_multiple
        )

        n_q = self._q.points.shape[0]
        self.densities_l = np.zeros((n_q,), dtype=np.float64)
        self.densities_e = np.zeros((n_q,), dtype=np.float64)
        self.densities_u = np.zeros((n_q,), dtype=np.float64)
        self.used_error = np.zeros((n_q,), dtype=np.float64)
        self.n_pruned = np.zeros((n_q,), dtype=np.float64)
        self.reset()

    def reset(self) -> None:
        self.query_stats.reset()
        self.densities_l.fill(0.0)
        self.densities_e.fill(0.0)
        self.densities_u.fill(self.reference_weight * self.k_zero)
        self.used_error.fill(0.0)
        self.n_pruned.fill(0.0)
        self._rng = np.random.default_rng(self.config.seed)

    def _flush_leaf(self, qnode: int) -> None:
        stats = self.query_stats
        rows = self._q.node_slice(qnode)
        self.densities_l[rows] += stats.postponed_l[qnode]
        self.densities_e[rows] += stats.postponed_e[qnode]
        self.densities_u[rows] += stats.postponed_u[qnode]
        self.used_error[rows] += stats.postponed_used_error[qnode]
        self.n_pruned[rows] += stats.postponed_n_pruned[qnode]
        stats.clear_postponed(qnode)

    def _refresh_leaf(self, qnode: int) -> None:
        stats = self.query_stats
        rows = self._q.node_slice(qnode)
        stats.mass_l[qnode] = np.min(self.densities_l[rows])
        stats.used_error[qnode] = np.max(self.used_error[rows])
        stats.n_pruned[qnode] = np.min(self.n_pruned[rows])

    def prunable(self, qnode: int, rnode: int, probability: float) -> PruneDecision:
        dsqd_range = self._q.range_distance_sq(qnode, self._r, rnode)
        decision = finite_difference_prune(
            self.kernel,
            dsqd_range,
            float(self.reference_stats.weight_sum[rnode]),
            self.query_stats.corrected_mass_l(qnode),
            self.root_weight,
            self.config.relative_error,
            self.threshold,
        )
        if decision.can_prune or probability >= 1.0:
            return decision
        if not self._q.is_leaf(qnode) or self._r.count(rnode) < self._monte_carlo_min_count:
            return decision

        self._flush_leaf(qnode)
        self._refresh_leaf(qnode)
        q_rows = self._q.node_slice(qnode)
        r_rows = self._r.node_slice(rnode)
        sampled = monte_carlo_prune(
            self.kernel,
            dsqd_range,
            self._q.points[q_rows],
            self.densities_l[q_rows],
            self._r.points[r_rows],
            self._r.weights[r_rows],
            self.root_weight,
            self.config.relative_error,
            self.threshold,
            probability,
            self.config.num_monte_carlo_samples,
            self._rng,
        )
        return sampled if sampled.can_prune else decision

    def apply_prune(self, qnode: int, rnode: int, decision: PruneDecision) -> None:
        if decision.kind != PRUNE_MONTE_CARLO:
            self.query_stats.add_postponed(
                qnode,
                decision.dl,
                decision.de,
                decision.du,
                decision.used_error,
                decision.n_pruned,
            )
            return
        rows = self._q.node_slice(qnode)
        self.densities_l[rows] += decision.dl
        self.densities_e[rows] += decision.point_de
        self.densities_u[rows] += decision.du
        self.used_error[rows] += decision.point_used_error
        self.n_pruned[rows] += decision.n_pruned
        self._refresh_leaf(qnode)

    def base_case(self, qnode: int, rnode: int) -> None:
        self._flush_leaf(qnode)
        q_rows = self._q.node_slice(qnode)
        r_rows = self._r.node_slice(rnode)
        sums = leaf_kernel_sums(
            self.kernel,
            self._q.points[q_rows],
            self._r.points[r_rows],
            self._r.weights[r_rows],
        )
        reference_weight = float(self.reference_stats.weight_sum[rnode])
        self.densities_l[q_rows] += sums
        self.densities_e[q_rows] += sums
        self.densities_u[q_rows] += sums - reference_weight * self.k_zero
        self.n_pruned[q_rows] += reference_weight
        self._refresh_leaf(qnode)

    def push_down(self, qnode: int, left: int, right: int) -> None:
        self.query_stats.push_down(qnode, left, right)

    def refine(self, qnode: int, left: int, right: int) -> None:
        self.query_stats.refine_from_children(qnode, left, right)

    def finalize_leaf(self, qnode: int) -> None:
        self._flush_leaf(qnode)
        self._refresh_leaf(qnode)

    def partner_distance_sq(self, qnode: int, rnode: int) -> float:
        return self._q.mid_distance_sq(qnode, self._r, rnode)

    def _original_order(self, values: np.ndarray) -> np.ndarray:
        out = np.empty_like(values)
        out[self._q.old_from_new] = values
        return out

    def result(self, statistics: PruneStatistics, *, normalize: bool = True) -> KdeResult:
        """Collect per-point sums in original query order."""

        lower = self.densities_l.copy()
        estimate = self.densities_e.copy()
        upper = self.densities_u.copy()
        used_error = self.used_error.copy()
        denominator = np.full_like(lower, self.root_weight)
        if self.config.leave_one_out:
            self_term = self._q.weights * self.k_zero
            lower = np.maximum(lower - self_term, 0.0)
            estimate = estimate - self_term
            upper = upper - self_term
            denominator = denominator - self._q.weights
            if np.any(denominator <= 0.0):
                raise ValueError(
                    "leave_one_out needs positive reference weight besides each point"
                )
        if normalize:
            scale = 1.0 / (self.norm_constant * denominator)
            lower = lower * scale
            estimate = estimate * scale
            upper = upper * scale
            used_error = used_error * scale
        return KdeResult(
            densities=jnp.asarray(self._original_order(estimate), dtype=REAL_DTYPE),
            lower=jnp.asarray(self._original_order(lower), dtype=REAL_DTYPE),
            upper=jnp.asarray(self._original_order(upper), dtype=REAL_DTYPE),
            used_error=jnp.asarray(self._original_order(used_error), dtype=REAL_DTYPE),
            n_pruned=jnp.asarray(self._original_order(self.n_pruned), dtype=REAL_DTYPE),
            statistics=statistics,
        )


@jaxtyped(typechecker=beartype)
def dualtree_kde(
    references: ArrayLike,
    queries: Optional[ArrayLike] = None,
    weights: Optional[ArrayLike] = None,
    *,
    kernel: Kernel,
    config: Optional[DualtreeKdeConfig] = None,
    normalize: bool = True,
) -> KdeResult:
    """Estimate weighted kernel densities of ``references`` at ``queries``.

    With ``queries=None`` the references are also the queries and a single
    tree serves both roles.
    """

    cfg = _resolve_kde_config(config)
    monochromatic = queries is None
    if cfg.leave_one_out and not monochromatic:
        raise ValueError("leave_one_out requires queries=None")
    reference_tree = build_tree(references, weights, config=cfg.tree_config())
    if monochromatic:
        query_tree = reference_tree
    else:
        query_tree = build_tree(queries, config=cfg.tree_config())

    logger.info(
        "Starting dual-tree KDE on bandwidth %g: %d queries, %d references, "
        "relative_error=%g, probability=%g",
        kernel.bandwidth,
        query_tree.num_points,
        reference_tree.num_points,
        cfg.relative_error,
        cfg.probability,
    )
    problem = DualtreeKde(
        query_tree, reference_tree, kernel, config=cfg, monochromatic=monochromatic
    )
    engine = DualtreeDfs(query_tree, reference_tree, problem, monochromatic=monochromatic)
    stats = engine.compute(cfg.probability)
    log_prune_statistics(stats, logger=logger)
    return problem.result(stats, normalize=normalize)


def _kernel_sums_tiled(
    kernel: Kernel,
    queries: Array,
    references: Array,
    weights: Array,
    *,
    point_block_size: int,
) -> Array:
    if point_block_size < 1:
        raise ValueError(f"point_block_size must be >= 1, received {point_block_size}")

    num_points, dim = references.shape
    block_size = min(int(point_block_size), num_points)
    num_blocks = (num_points + block_size - 1) // block_size
    pad = num_blocks * block_size - num_points

    if pad > 0:
        points_padded = jnp.concatenate(
            [references, jnp.zeros((pad, dim), dtype=references.dtype)], axis=0
        )
        weights_padded = jnp.concatenate(
            [weights, jnp.zeros((pad,), dtype=weights.dtype)], axis=0
        )
    else:
        points_padded = references
        weights_padded = weights

    def body(block_idx, sums):
        start = block_idx * block_size
        block_points = jax.lax.dynamic_slice(points_padded, (start, 0), (block_size, dim))
        block_weights = jax.lax.dynamic_slice(weights_padded, (start,), (block_size,))
        d2 = _pairwise_squared_distances(queries, block_points)
        return sums + jnp.sum(kernel.eval_unnorm_on_sq(d2) * block_weights[None, :], axis=1)

    init = jnp.zeros((queries.shape[0],), dtype=REAL_DTYPE)
    return jax.lax.fori_loop(0, num_blocks, body, init)


def _validate_naive_inputs(
    references: ArrayLike, queries: Optional[ArrayLike], weights: Optional[ArrayLike]
) -> tuple[Array, Array, Array]:
    refs = jnp.asarray(references, dtype=REAL_DTYPE)
    if refs.ndim != 2 or refs.shape[0] < 1:
        raise ValueError("references must have shape (n_points, dim) with n_points >= 1")
    qs = refs if queries is None else jnp.asarray(queries, dtype=REAL_DTYPE)
    if qs.ndim != 2 or qs.shape[1] != refs.shape[1]:
        raise ValueError(
            "queries and references must share last-dimension size; "
            f"received {qs.shape} and {refs.shape}"
        )
    if weights is None:
        wts = jnp.ones((refs.shape[0],), dtype=REAL_DTYPE)
    else:
        wts = jnp.asarray(weights, dtype=REAL_DTYPE)
        if wts.shape != (refs.shape[0],):
            raise ValueError(
                f"weights must have shape ({refs.shape[0]},); received {wts.shape}"
            )
        if not bool(jnp.all(jnp.isfinite(wts))):
            raise ValueError("weights must be finite")
        if bool(jnp.any(wts < 0.0)):
            raise ValueError("weights must be non-negative")
    return refs, qs, wts


@jaxtyped(typechecker=beartype)
def naive_kde(
    references: ArrayLike,
    queries: Optional[ArrayLike] = None,
    weights: Optional[ArrayLike] = None,
    *,
    kernel: Kernel,
    leave_one_out: bool = False,
    normalize: bool = True,
    point_block_size: int = 1024,
) -> Array:
    """Exhaustive weighted kernel sums, tiled over reference blocks."""

    refs, qs, wts = _validate_naive_inputs(references, queries, weights)
    if leave_one_out and queries is not None:
        raise ValueError("leave_one_out requires queries=None")
    total_weight = float(jnp.sum(wts))
    if not total_weight > 0.0:
        raise ValueError("reference weights must sum to a positive value")

    sums = _kernel_sums_tiled(kernel, qs, refs, wts, point_block_size=point_block_size)
    denominator = jnp.full_like(sums, total_weight)
    if leave_one_out:
        k_zero = float(kernel.eval_unnorm_on_sq_host(0.0))
        sums = sums - wts * k_zero
        denominator = denominator - wts
        if bool(jnp.any(denominator <= 0.0)):
            raise ValueError(
                "leave_one_out needs positive reference weight besides each point"
            )
    if not normalize:
        return sums
    return sums / (kernel.calc_norm_constant(int(refs.shape[1])) * denominator)


__all__ = [
    "DualtreeKde",
    "DualtreeKdeConfig",
    "KdeResult",
    "dualtree_kde",
    "leaf_kernel_sums",
    "naive_kde",
    "set_default_kde_config",
]
