"""Pruning rules for kernel sums over a query/reference node pair.

A rule inspects the squared-distance range between two node bounds, bounds
the reference node's contribution to every point of the query node, and
decides whether that contribution can be charged to the query node as a
postponed correction instead of being computed point by point.
"""

from __future__ import annotations

import math
from typing import NamedTuple, Optional

import jax.scipy.stats as jss
import numpy as np

from .bounds import DRange
from .kernels import Kernel, kernel_value_range

PRUNE_FINITE_DIFFERENCE = "finite_difference"
PRUNE_MONTE_CARLO = "monte_carlo"
PRUNE_KINDS = (PRUNE_FINITE_DIFFERENCE, PRUNE_MONTE_CARLO)


class PruneDecision(NamedTuple):
    """Outcome of a pruning test plus the corrections to apply on success."""

    can_prune: bool
    kind: str
    dl: float
    de: float
    du: float
    used_error: float
    n_pruned: float
    point_de: Optional[np.ndarray] = None
    point_used_error: Optional[np.ndarray] = None


def allowed_error(
    reference_weight: float,
    new_mass_l: float,
    root_weight: float,
    relative_error: float,
    threshold: float,
):
    """Share of the global error budget owed to a reference node.

    ``new_mass_l`` may be an array of per-point lower bounds.
    """

    if not root_weight > 0.0:
        raise ValueError(f"root_weight must be positive, received {root_weight}")
    return (
        reference_weight
        * np.maximum(relative_error * np.asarray(new_mass_l), threshold)
        / root_weight
    )


def _check_finite(kind: str, *values: float) -> None:
    for value in values:
        if not math.isfinite(value):
            raise FloatingPointError(f"{kind} pruning produced a non-finite delta: {value}")


def finite_difference_prune(
    kernel: Kernel,
    dsqd_range: DRange,
    reference_weight: float,
    query_mass_l: float,
    root_weight: float,
    relative_error: float,
    threshold: float,
) -> PruneDecision:
    """Bound the contribution by the kernel values at the distance extremes."""

    if reference_weight == 0.0:
        return PruneDecision(True, PRUNE_FINITE_DIFFERENCE, 0.0, 0.0, 0.0, 0.0, 0.0)

    k_range = kernel_value_range(kernel, dsqd_range)
    k_zero = float(kernel.eval_unnorm_on_sq_host(0.0))
    dl = k_range.lo * reference_weight
    de = 0.5 * (k_range.lo + k_range.hi) * reference_weight
    du = (k_range.hi - k_zero) * reference_weight
    used_error = 0.5 * k_range.width * reference_weight
    _check_finite(PRUNE_FINITE_DIFFERENCE, dl, de, du, used_error)

    budget = float(
        allowed_error(
            reference_weight, query_mass_l + dl, root_weight, relative_error, threshold
        )
    )
    return PruneDecision(
        used_error <= budget,
        PRUNE_FINITE_DIFFERENCE,
        dl,
        de,
        du,
        used_error,
        reference_weight,
    )


def normal_quantile(probability: float) -> float:
    """Two-sided standard normal quantile for a coverage ``probability``."""

    return float(jss.norm.ppf(0.5 * (1.0 + probability)))


def monte_carlo_prune(
    kernel: Kernel,
    dsqd_range: DRange,
    query_points: np.ndarray,
    query_mass_l: np.ndarray,
    reference_points: np.ndarray,
    reference_weights: np.ndarray,
    root_weight: float,
    relative_error: float,
    threshold: float,
    probability: float,
    num_samples: int,
    rng: np.random.Generator,
) -> PruneDecision:
    """Estimate each query point's sum from a uniform sample of references.

    The per-point standard error is scaled by the normal quantile of
    ``(1 + probability) / 2``. Lower and upper corrections stay the
    deterministic finite-difference ones, and estimates are clipped into
    that interval.
    """

    if num_samples < 2:
        raise ValueError(f"num_samples must be >= 2, received {num_samples}")
    num_references = reference_points.shape[0]
    reference_weight = float(np.sum(reference_weights))
    k_range = kernel_value_range(kernel, dsqd_range)
    k_zero = float(kernel.eval_unnorm_on_sq_host(0.0))
    dl = k_range.lo * reference_weight
    du = (k_range.hi - k_zero) * reference_weight

    sample = rng.integers(0, num_references, size=num_samples)
    deltas = query_points[:, None, :] - reference_points[sample][None, :, :]
    dsqd = np.sum(deltas * deltas, axis=-1)
    contributions = (
        num_references
        * reference_weights[sample][None, :]
        * kernel.eval_unnorm_on_sq_host(dsqd)
    )
    point_de = np.clip(
        np.mean(contributions, axis=1), dl, k_range.hi * reference_weight
    )
    point_used_error = (
        normal_quantile(probability)
        * np.std(contributions, axis=1, ddof=1)
        / math.sqrt(num_samples)
    )
    _check_finite(PRUNE_MONTE_CARLO, dl, du, float(np.max(point_used_error)))

    budget = allowed_error(
        reference_weight,
        np.asarray(query_mass_l) + dl,
        root_weight,
        relative_error,
        threshold,
    )
    return PruneDecision(
        bool(np.all(point_used_error <= budget)),
        PRUNE_MONTE_CARLO,
        dl,
        float(np.mean(point_de)),
        du,
        float(np.max(point_used_error)),
        reference_weight,
        point_de=point_de,
        point_used_error=point_used_error,
    )


__all__ = [
    "PRUNE_FINITE_DIFFERENCE",
    "PRUNE_KINDS",
    "PRUNE_MONTE_CARLO",
    "PruneDecision",
    "allowed_error",
    "finite_difference_prune",
    "monte_carlo_prune",
    "normal_quantile",
]
