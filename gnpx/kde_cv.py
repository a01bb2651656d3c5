"""Least-squares cross-validation (LSCV) scores for Gaussian KDE bandwidths.

For a Gaussian kernel the integrated squared density estimate reduces to a
kernel sum with bandwidth ``sqrt(2) h``, so the score needs two
monochromatic sums over the same tree::

    (S1 / ((sqrt 2)^d C_h W) - 2 S2 / (C_h W) + 2 k(0) / C_h) / N

where ``S1``/``S2`` are the all-pairs sums at ``sqrt(2) h`` and ``h``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import NamedTuple, Optional

import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, ArrayLike, jaxtyped

from .dtypes import REAL_DTYPE
from .dualtree import DualtreeDfs, combine_prune_statistics, log_prune_statistics
from .kde import DualtreeKde, DualtreeKdeConfig, _resolve_kde_config, naive_kde
from .kernels import GaussianKernel
from .tree import build_tree

logger = logging.getLogger(__name__)


class BandwidthSelection(NamedTuple):
    """Best candidate bandwidth and the score of every candidate."""

    bandwidth: float
    scores: Array


def _combine_lscv(
    first_sum: float,
    second_sum: float,
    bandwidth: float,
    dim: int,
    total_weight: float,
    num_points: int,
) -> float:
    kernel = GaussianKernel(bandwidth)
    norm_constant = kernel.calc_norm_constant(dim)
    first_mult = 1.0 / (math.sqrt(2.0) ** dim * norm_constant)
    second_mult = 1.0 / norm_constant
    k_zero = float(kernel.eval_unnorm_on_sq_host(0.0))
    return (
        first_sum * first_mult / total_weight
        - 2.0 * second_sum * second_mult / total_weight
        + 2.0 * k_zero / norm_constant
    ) / num_points


@jaxtyped(typechecker=beartype)
def lscv_score(
    points: ArrayLike,
    weights: Optional[ArrayLike] = None,
    *,
    bandwidth: float,
    config: Optional[DualtreeKdeConfig] = None,
) -> float:
    """LSCV score of a Gaussian KDE with ``bandwidth``, via two dual-tree sums."""

    cfg = replace(_resolve_kde_config(config), leave_one_out=False)
    tree = build_tree(points, weights, config=cfg.tree_config())
    logger.info("Starting dual-tree LSCV on bandwidth %g", bandwidth)

    sums = []
    stats = None
    for kernel in (GaussianKernel(math.sqrt(2.0) * bandwidth), GaussianKernel(bandwidth)):
        problem = DualtreeKde(tree, tree, kernel, config=cfg, monochromatic=True)
        engine = DualtreeDfs(tree, tree, problem, monochromatic=True)
        run = engine.compute(cfg.probability)
        stats = run if stats is None else combine_prune_statistics(stats, run)
        sums.append(float(np.sum(problem.densities_e)))
    log_prune_statistics(stats, logger=logger)

    return _combine_lscv(
        sums[0],
        sums[1],
        bandwidth,
        tree.dimension,
        tree.total_weight,
        tree.num_points,
    )


@jaxtyped(typechecker=beartype)
def naive_lscv_score(
    points: ArrayLike,
    weights: Optional[ArrayLike] = None,
    *,
    bandwidth: float,
) -> float:
    """Exhaustive counterpart of :func:`lscv_score`."""

    points_arr = jnp.asarray(points, dtype=REAL_DTYPE)
    sums = [
        float(
            jnp.sum(
                naive_kde(points_arr, None, weights, kernel=kernel, normalize=False)
            )
        )
        for kernel in (GaussianKernel(math.sqrt(2.0) * bandwidth), GaussianKernel(bandwidth))
    ]
    total_weight = (
        float(points_arr.shape[0])
        if weights is None
        else float(jnp.sum(jnp.asarray(weights, dtype=REAL_DTYPE)))
    )
    return _combine_lscv(
        sums[0],
        sums[1],
        bandwidth,
        int(points_arr.shape[1]),
        total_weight,
        int(points_arr.shape[0]),
    )


@jaxtyped(typechecker=beartype)
def select_bandwidth_lscv(
    points: ArrayLike,
    bandwidths: ArrayLike,
    weights: Optional[ArrayLike] = None,
    *,
    config: Optional[DualtreeKdeConfig] = None,
) -> BandwidthSelection:
    """Score every candidate bandwidth and return the minimizer."""

    candidates = np.asarray(bandwidths, dtype=np.float64).reshape(-1)
    if candidates.size < 1:
        raise ValueError("bandwidths must contain at least one candidate")
    scores = np.array(
        [
            lscv_score(points, weights, bandwidth=float(h), config=config)
            for h in candidates
        ]
    )
    best = int(np.argmin(scores))
    logger.info(
        "LSCV selected bandwidth %g (score %g) from %d candidates",
        candidates[best],
        scores[best],
        candidates.size,
    )
    return BandwidthSelection(
        bandwidth=float(candidates[best]),
        scores=jnp.asarray(scores, dtype=REAL_DTYPE),
    )


__all__ = [
    "BandwidthSelection",
    "lscv_score",
    "naive_lscv_score",
    "select_bandwidth_lscv",
]
